# consensus_engine/services/weekly_service.py
"""
Weekly window close.

Closing ISO week W marks overdue assignments as missed (with a penalty),
rebuilds WeeklyStats for W, advances streaks and resets the weekly counters.
A WeekWindow row is the claim on W: once it exists, re-running the reset for
W changes nothing.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from consensus_engine.core.config import settings
from consensus_engine.core.time_utils import previous_week, utcnow, week_bounds
from consensus_engine.db.transaction import run_in_transaction
from consensus_engine.models.ledger import TransactionType, WeeklyStats, WeekWindow, XpTransaction
from consensus_engine.models.review import (
    OUTSTANDING_ASSIGNMENT_STATUSES,
    AssignmentStatus,
    PeerReview,
    ReviewAssignment,
)
from consensus_engine.models.user import User
from consensus_engine.schemas.aggregation import WeeklyInsights, WeeklyResetResult
from consensus_engine.services import audit_service, ledger_service

logger = logging.getLogger(__name__)

TOP_USERS_IN_INSIGHTS = 5


@dataclass
class _UserWeek:
    xp_total: int = 0
    reviews_done: int = 0
    reviews_missed: int = 0


def _collect_week(db: Session, start: datetime, end: datetime) -> dict[int, _UserWeek]:
    weeks: dict[int, _UserWeek] = {}

    xp_rows = (
        db.query(XpTransaction.user_id, func.sum(XpTransaction.amount))
        .filter(XpTransaction.created_at >= start, XpTransaction.created_at < end)
        .group_by(XpTransaction.user_id)
        .all()
    )
    for user_id, total in xp_rows:
        weeks.setdefault(user_id, _UserWeek()).xp_total = int(total or 0)

    review_rows = (
        db.query(PeerReview.reviewer_id, func.count(PeerReview.id))
        .filter(
            PeerReview.is_superseded.is_(False),
            PeerReview.created_at >= start,
            PeerReview.created_at < end,
        )
        .group_by(PeerReview.reviewer_id)
        .all()
    )
    for user_id, count in review_rows:
        weeks.setdefault(user_id, _UserWeek()).reviews_done = int(count)

    missed_rows = (
        db.query(ReviewAssignment.reviewer_id, func.count(ReviewAssignment.id))
        .filter(
            ReviewAssignment.status == AssignmentStatus.MISSED,
            ReviewAssignment.deadline >= start,
            ReviewAssignment.deadline < end,
        )
        .group_by(ReviewAssignment.reviewer_id)
        .all()
    )
    for user_id, count in missed_rows:
        weeks.setdefault(user_id, _UserWeek()).reviews_missed = int(count)

    return weeks


def _build_insights(
    db: Session,
    year: int,
    week: int,
    weeks: dict[int, _UserWeek],
    streaks_awarded: int,
    closed: bool,
) -> WeeklyInsights:
    ranked = sorted(
        ((user_id, w) for user_id, w in weeks.items() if w.xp_total > 0),
        key=lambda item: (-item[1].xp_total, item[0]),
    )[:TOP_USERS_IN_INSIGHTS]
    names = dict(
        db.query(User.id, User.username).filter(User.id.in_([uid for uid, _ in ranked])).all()
    ) if ranked else {}

    return WeeklyInsights(
        year=year,
        week_number=week,
        total_xp=sum(w.xp_total for w in weeks.values()),
        active_users=sum(1 for w in weeks.values() if w.xp_total or w.reviews_done),
        reviews_done=sum(w.reviews_done for w in weeks.values()),
        reviews_missed=sum(w.reviews_missed for w in weeks.values()),
        streaks_awarded=streaks_awarded,
        top_users=[
            {"user_id": uid, "username": names.get(uid), "xp": w.xp_total}
            for uid, w in ranked
        ],
        closed=closed,
    )


def _close_week(db: Session, year: int, week: int, now: datetime) -> WeeklyResetResult:
    start, end = week_bounds(year, week)

    # claim the window first; a concurrent close fails here on the unique key
    window = WeekWindow(year=year, week_number=week, closed_at=now)
    db.add(window)
    db.flush()

    overdue = (
        db.query(ReviewAssignment)
        .filter(
            ReviewAssignment.status.in_(OUTSTANDING_ASSIGNMENT_STATUSES),
            ReviewAssignment.deadline < end,
        )
        .with_for_update()
        .all()
    )
    penalty_ts = end - timedelta(seconds=1)
    penalties = 0
    touched: set[int] = set()
    for assignment in overdue:
        assignment.status = AssignmentStatus.MISSED
        reviewer = db.get(User, assignment.reviewer_id)
        if reviewer is not None:
            reviewer.missed_reviews = (reviewer.missed_reviews or 0) + 1
        tx = ledger_service.reconcile_credit(
            db,
            user_id=assignment.reviewer_id,
            source_id=ledger_service.source_ref("assignment", assignment.id),
            target_amount=settings.MISSED_REVIEW_PENALTY_XP,
            type=TransactionType.PENALTY,
            description=f"Missed review assignment {assignment.id}",
            created_at=penalty_ts,
        )
        if tx is not None:
            penalties += 1
        touched.add(assignment.reviewer_id)
    db.flush()

    weeks = _collect_week(db, start, end)
    streaks = 0
    for user in db.query(User).order_by(User.id).all():
        w = weeks.get(user.id, _UserWeek())
        earned = w.xp_total >= settings.STREAK_MIN_WEEKLY_XP
        user.streak_weeks = (user.streak_weeks or 0) + 1 if earned else 0
        streaks += int(earned)

        if user.id not in weeks:
            continue
        stats = (
            db.query(WeeklyStats)
            .filter(
                WeeklyStats.user_id == user.id,
                WeeklyStats.year == year,
                WeeklyStats.week_number == week,
            )
            .first()
        )
        if stats is None:
            stats = WeeklyStats(user_id=user.id, year=year, week_number=week)
            db.add(stats)
        stats.xp_total = w.xp_total
        stats.reviews_done = w.reviews_done
        stats.reviews_missed = w.reviews_missed
        stats.earned_streak = earned

    # current_week_xp is recomputed for the week that contains `now`
    all_users = [row[0] for row in db.query(User.id).all()]
    ledger_service.refresh_cached_totals(db, all_users, now)

    insights = _build_insights(db, year, week, weeks, streaks, closed=True)
    window.summary = insights.model_dump()

    return WeeklyResetResult(
        year=year,
        week_number=week,
        already_closed=False,
        missed_assignments=len(overdue),
        penalties_applied=penalties,
        users_with_stats=len(weeks),
        streaks_awarded=streaks,
    )


def process_weekly_reset(
    db: Session,
    now: Optional[datetime] = None,
    *,
    triggered_by: str = "system",
) -> WeeklyResetResult:
    """Close the ISO week before ``now``. Safe to re-run for the same week."""
    now = now or utcnow()
    year, week = previous_week(now)

    existing = (
        db.query(WeekWindow)
        .filter(WeekWindow.year == year, WeekWindow.week_number == week)
        .first()
    )
    if existing is not None:
        logger.info(f"Week {year}-W{week:02d} already closed, nothing to do")
        return WeeklyResetResult(year=year, week_number=week, already_closed=True)

    try:
        result = run_in_transaction(db, _close_week, year, week, now)
    except IntegrityError:
        logger.info(f"Week {year}-W{week:02d} was closed concurrently")
        return WeeklyResetResult(year=year, week_number=week, already_closed=True)

    logger.info(
        f"Closed week {year}-W{week:02d}: missed={result.missed_assignments} "
        f"penalties={result.penalties_applied} streaks={result.streaks_awarded}"
    )
    audit_service.record_automation(
        db,
        job_name="weekly_reset",
        job_type="WEEKLY_RESET",
        status=audit_service.status_for(result.errors),
        triggered_by=triggered_by,
        result=result.model_dump(),
    )
    return result


def get_weekly_insights(db: Session, year: int, week: int) -> WeeklyInsights:
    window = (
        db.query(WeekWindow)
        .filter(WeekWindow.year == year, WeekWindow.week_number == week)
        .first()
    )
    if window is not None and window.summary:
        return WeeklyInsights(**window.summary)

    start, end = week_bounds(year, week)
    weeks = _collect_week(db, start, end)
    return _build_insights(db, year, week, weeks, streaks_awarded=0, closed=False)
