# consensus_engine/schemas/admin.py
from pydantic import BaseModel, Field


class SubmissionOverride(BaseModel):
    final_xp: int = Field(ge=0)
    reason: str = Field(min_length=1)


class ReviewCorrection(BaseModel):
    xp_score: int = Field(ge=0, le=300)
    reason: str = Field(min_length=1)


class XpAdjustment(BaseModel):
    amount: int
    reason: str = Field(min_length=1)


class AdminActionResult(BaseModel):
    target: str
    previous_value: int | None = None
    new_value: int
    ledger_delta: int
    user_total_xp: int | None = None
    recomputed: bool = False
