# consensus_engine/schemas/consensus.py
from pydantic import BaseModel


class ConsensusResult(BaseModel):
    submission_id: int
    final_xp: int | None = None  # None while the case is divergent
    consensus_score: float
    confidence: str  # high / medium / low
    review_count: int
    peer_xp: float | None = None
    ai_xp: int | None = None
    agreement: float
    peer_std_dev: float
    outliers: list[int] = []  # review ids left out of the weighted mean
    divergent: bool = False
    details: dict = {}


class ConsensusSummary(BaseModel):
    total_finalized: int
    avg_consensus_score: float
    avg_review_count: float
    by_agreement: dict[str, int]
