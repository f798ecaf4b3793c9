# consensus_engine/schemas/award.py
from datetime import datetime

from pydantic import BaseModel, Field

from consensus_engine.schemas.aggregation import ItemResult


class MonthlyWinnerPublic(BaseModel):
    id: int
    month: str
    rank: int
    user_id: int
    xp_awarded: int
    awarded_at: datetime

    model_config = {"from_attributes": True}


class AwardResult(BaseModel):
    month: str
    winners: list[MonthlyWinnerPublic] = []
    newly_awarded: list[int] = []  # winner ids created by this run
    skipped_selection: bool = False
    topped_up: int = 0


class BulkAwardRequest(BaseModel):
    months: list[str] = Field(min_length=1)


class BulkAwardResult(BaseModel):
    results: list[AwardResult] = []
    errors: list[ItemResult] = []


class WinnerAdjustment(BaseModel):
    winner_id: int
    user_id: int
    month: str
    delta: int


class TopUpResult(BaseModel):
    month: str
    adjustments: list[WinnerAdjustment] = []


class RevokeResult(BaseModel):
    revoked: list[WinnerAdjustment] = []


class WinnerOverride(BaseModel):
    user_id: int
    rank: int = Field(default=1, ge=1, le=3)
    xp_awarded: int | None = None
    reason: str | None = None


class StandingRow(BaseModel):
    rank: int
    user_id: int
    username: str | None = None
    points: int
    eligible: bool
    reasons: list[str] = []


class MonthPreview(BaseModel):
    month: str
    items: list[StandingRow] = []
    winners: list[MonthlyWinnerPublic] = []
