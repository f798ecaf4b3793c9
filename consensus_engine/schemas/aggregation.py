# consensus_engine/schemas/aggregation.py
from pydantic import BaseModel


class ItemResult(BaseModel):
    target: str  # e.g. "submission:12", "user:3"
    success: bool
    detail: str | None = None


class BatchResult(BaseModel):
    processed: int = 0
    skipped: int = 0
    errors: list[ItemResult] = []
    items: list[ItemResult] = []


class AggregationResult(BaseModel):
    submission_id: int
    finalized: bool
    final_xp: int | None = None
    author_id: int
    author_total_xp: int
    divergent: bool = False
    confidence: str | None = None


class WeeklyResetResult(BaseModel):
    year: int
    week_number: int
    already_closed: bool
    missed_assignments: int = 0
    penalties_applied: int = 0
    users_with_stats: int = 0
    streaks_awarded: int = 0
    errors: list[ItemResult] = []


class WeeklyInsights(BaseModel):
    year: int
    week_number: int
    total_xp: int
    active_users: int
    reviews_done: int
    reviews_missed: int
    streaks_awarded: int
    top_users: list[dict] = []
    closed: bool = False


class ReconciliationReport(BaseModel):
    checked: int
    mismatches: list[dict] = []
