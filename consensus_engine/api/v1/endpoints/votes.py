# consensus_engine/api/v1/endpoints/votes.py
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from consensus_engine.api.errors import to_http_exception
from consensus_engine.core.errors import ConsensusEngineError
from consensus_engine.db.deps import get_db
from consensus_engine.models.vote import VoteCaseStatus
from consensus_engine.schemas.vote import (
    VoteCandidate,
    VoteCasePublic,
    VoteConsensus,
    VoteCreate,
    VotePublic,
    VoteResolution,
)
from consensus_engine.services import vote_service

router = APIRouter(tags=["votes"])


@router.get("/cases", response_model=List[VoteCasePublic])
def list_vote_cases(
    case_status: VoteCaseStatus | None = VoteCaseStatus.OPEN_FOR_VOTING,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
):
    return vote_service.list_cases(db, status=case_status, skip=skip, limit=limit)


@router.get("/candidates", response_model=List[VoteCandidate])
def list_vote_candidates(db: Session = Depends(get_db)):
    return vote_service.find_vote_candidates(db)


@router.post("/", response_model=VotePublic, status_code=status.HTTP_201_CREATED)
def cast_vote(
    vote_in: VoteCreate,
    db: Session = Depends(get_db),
):
    try:
        return vote_service.cast_vote(
            db,
            vote_in.submission_id,
            vote_in.wallet_address,
            vote_in.vote_xp,
            vote_in.signature,
        )
    except ConsensusEngineError as e:
        raise to_http_exception(e)


@router.get("/{submission_id}/consensus", response_model=VoteConsensus)
def get_vote_consensus(
    submission_id: int,
    db: Session = Depends(get_db),
):
    if vote_service.get_case(db, submission_id) is None:
        raise HTTPException(status_code=404, detail="Vote case not found")
    return vote_service.check_vote_consensus(db, submission_id)


@router.post("/{submission_id}/resolve", response_model=VoteResolution)
def resolve_vote_case(
    submission_id: int,
    db: Session = Depends(get_db),
):
    try:
        return vote_service.resolve_case(db, submission_id)
    except ConsensusEngineError as e:
        raise to_http_exception(e)
