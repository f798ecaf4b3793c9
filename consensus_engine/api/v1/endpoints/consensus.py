# consensus_engine/api/v1/endpoints/consensus.py
from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from consensus_engine.api.errors import to_http_exception
from consensus_engine.core.errors import ConsensusEngineError
from consensus_engine.db.deps import get_db
from consensus_engine.schemas.consensus import ConsensusResult, ConsensusSummary
from consensus_engine.services import consensus_service

router = APIRouter(tags=["consensus"])


@router.post("/{submission_id}", response_model=ConsensusResult)
def finalize_submission(
    submission_id: int,
    recompute: bool = False,
    db: Session = Depends(get_db),
):
    """
    Run consensus for one submission. Divergent reviews come back with
    ``divergent=true`` and a vote case instead of a final score.
    """
    try:
        return consensus_service.calculate_consensus(db, submission_id, recompute=recompute)
    except ConsensusEngineError as e:
        raise to_http_exception(e)


@router.get("/summary", response_model=ConsensusSummary)
def consensus_summary(
    since: datetime | None = None,
    db: Session = Depends(get_db),
):
    return consensus_service.get_consensus_summary(db, since)
