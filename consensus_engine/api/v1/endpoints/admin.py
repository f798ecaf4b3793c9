# consensus_engine/api/v1/endpoints/admin.py
from dataclasses import asdict
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from consensus_engine.api.errors import to_http_exception
from consensus_engine.core.errors import ConsensusEngineError
from consensus_engine.db.deps import get_db
from consensus_engine.models.review import PeerReview
from consensus_engine.schemas.admin import (
    AdminActionResult,
    ReviewCorrection,
    SubmissionOverride,
    XpAdjustment,
)
from consensus_engine.schemas.aggregation import (
    BatchResult,
    ReconciliationReport,
    WeeklyInsights,
    WeeklyResetResult,
)
from consensus_engine.schemas.award import (
    AwardResult,
    BulkAwardRequest,
    BulkAwardResult,
    MonthlyWinnerPublic,
    MonthPreview,
    RevokeResult,
    TopUpResult,
    WinnerOverride,
)
from consensus_engine.services import (
    admin_service,
    aggregation_service,
    monthly_award_service,
    weekly_service,
)
from consensus_engine.services.divergence_auditor import run_audit
from consensus_engine.services.reliability.scorer import get_reliability_scores

router = APIRouter(tags=["admin"])


# ---- monthly winners ----

@router.get("/winners", response_model=List[MonthlyWinnerPublic])
def list_winners(
    month: str | None = None,
    db: Session = Depends(get_db),
):
    return monthly_award_service.list_winners(db, month)


@router.get("/winners/{month}/preview", response_model=MonthPreview)
def preview_month(month: str, db: Session = Depends(get_db)):
    try:
        return monthly_award_service.preview_month(db, month)
    except ConsensusEngineError as e:
        raise to_http_exception(e)


@router.post("/winners/bulk-award", response_model=BulkAwardResult)
def bulk_award(body: BulkAwardRequest, db: Session = Depends(get_db)):
    return monthly_award_service.bulk_award(db, body.months)


@router.post("/winners/{month}/award", response_model=AwardResult)
def award_month(month: str, db: Session = Depends(get_db)):
    try:
        return monthly_award_service.award_monthly_winner(db, month, triggered_by="admin")
    except ConsensusEngineError as e:
        raise to_http_exception(e)


@router.post("/winners/{month}/top-up", response_model=TopUpResult)
def top_up_month(month: str, db: Session = Depends(get_db)):
    try:
        return monthly_award_service.top_up_monthly_winner_xp(db, month, triggered_by="admin")
    except ConsensusEngineError as e:
        raise to_http_exception(e)


@router.post("/winners/{month}/override", response_model=MonthlyWinnerPublic)
def override_winner(
    month: str,
    body: WinnerOverride,
    db: Session = Depends(get_db),
):
    try:
        return monthly_award_service.override_winner(
            db, month, body.user_id, body.rank, body.xp_awarded, body.reason
        )
    except ConsensusEngineError as e:
        raise to_http_exception(e)


@router.post("/winners/{month}/revoke-all", response_model=RevokeResult)
def revoke_month(month: str, db: Session = Depends(get_db)):
    try:
        return monthly_award_service.revoke_monthly_winners(db, month)
    except ConsensusEngineError as e:
        raise to_http_exception(e)


@router.post("/winners/revoke-all", response_model=RevokeResult)
def revoke_all(db: Session = Depends(get_db)):
    return monthly_award_service.revoke_all_monthly_winners(db)


@router.delete("/winners/{winner_id}", response_model=RevokeResult)
def revoke_winner(winner_id: int, db: Session = Depends(get_db)):
    return monthly_award_service.revoke_monthly_winner_by_id(db, winner_id)


# ---- periodic jobs ----

@router.post("/jobs/weekly-reset", response_model=WeeklyResetResult)
def run_weekly_reset(
    now: datetime | None = None,
    db: Session = Depends(get_db),
):
    return weekly_service.process_weekly_reset(db, now, triggered_by="admin")


@router.get("/weekly-insights/{year}/{week}", response_model=WeeklyInsights)
def weekly_insights(year: int, week: int, db: Session = Depends(get_db)):
    return weekly_service.get_weekly_insights(db, year, week)


@router.post("/jobs/process-submissions", response_model=BatchResult)
def run_process_submissions(db: Session = Depends(get_db)):
    return aggregation_service.process_ready_submissions(db, triggered_by="admin")


@router.post("/jobs/reconcile", response_model=ReconciliationReport)
def run_reconcile(db: Session = Depends(get_db)):
    return aggregation_service.reconcile_user_totals(db, triggered_by="admin")


# ---- overrides ----

@router.post("/submissions/{submission_id}/override", response_model=AdminActionResult)
def override_submission(
    submission_id: int,
    body: SubmissionOverride,
    db: Session = Depends(get_db),
):
    try:
        return admin_service.override_submission_xp(db, submission_id, body.final_xp, body.reason)
    except ConsensusEngineError as e:
        raise to_http_exception(e)


@router.post("/reviews/{review_id}/correct", response_model=AdminActionResult)
def correct_review(
    review_id: int,
    body: ReviewCorrection,
    db: Session = Depends(get_db),
):
    try:
        return admin_service.correct_peer_review(db, review_id, body.xp_score, body.reason)
    except ConsensusEngineError as e:
        raise to_http_exception(e)


@router.post("/users/{user_id}/adjust-xp", response_model=AdminActionResult)
def adjust_xp(
    user_id: int,
    body: XpAdjustment,
    db: Session = Depends(get_db),
):
    try:
        return admin_service.adjust_user_xp(db, user_id, body.amount, body.reason)
    except ConsensusEngineError as e:
        raise to_http_exception(e)


# ---- reliability ----

@router.get("/reliability/audit")
def reliability_audit(db: Session = Depends(get_db)):
    reviewer_ids = [row[0] for row in db.query(PeerReview.reviewer_id).distinct().all()]
    report = run_audit(get_reliability_scores(db, reviewer_ids))
    return {**asdict(report), "signal_delta": report.signal_delta}
