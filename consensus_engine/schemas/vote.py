# consensus_engine/schemas/vote.py
from datetime import datetime

from pydantic import BaseModel, Field


class VoteCreate(BaseModel):
    submission_id: int
    wallet_address: str = Field(min_length=1, max_length=128)
    vote_xp: int = Field(ge=0, le=300)
    signature: str = Field(min_length=1)


class VotePublic(BaseModel):
    id: int
    submission_id: int
    wallet_address: str
    voter_identity: str
    vote_xp: int
    created_at: datetime

    model_config = {"from_attributes": True}


class VoteCasePublic(BaseModel):
    id: int
    submission_id: int
    status: str
    peer_std_dev: float | None = None
    opened_at: datetime
    closed_at: datetime | None = None
    winning_xp: int | None = None
    losing_xp: int | None = None
    total_votes: int

    model_config = {"from_attributes": True}


class VoteCandidate(BaseModel):
    submission_id: int
    std_dev: float
    review_count: int
    min_xp: int
    max_xp: int


class VoteConsensus(BaseModel):
    submission_id: int
    has_consensus: bool
    total_votes: int
    winning_xp: int | None = None
    losing_xp: int | None = None
    leader_share: float = 0.0
    distribution: dict[int, int] = {}


class VoteResolution(BaseModel):
    submission_id: int
    winning_xp: int
    losing_xp: int | None = None
    final_xp: int | None = None
    validated_review_ids: list[int] = []
    invalidated_review_ids: list[int] = []


class ExpiredCases(BaseModel):
    expired: list[int] = []  # submission ids flagged for admin review
