# consensus_engine/services/reliability/scorer.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from consensus_engine.core.time_utils import utcnow
from consensus_engine.models.ledger import TransactionType, XpTransaction
from consensus_engine.models.review import AssignmentStatus, PeerReview, ReviewAssignment
from consensus_engine.models.submission import Submission, SubmissionStatus
from consensus_engine.models.user import User
from consensus_engine.services.reliability.formulas import (
    Formula,
    active_formula,
    get_formula,
    score_with,
    shadow_formulas,
)
from consensus_engine.services.reliability.metrics import (
    ReliabilityMetrics,
    ReviewerHistory,
    ReviewRecord,
    calculate_reviewer_metrics,
)

logger = logging.getLogger(__name__)


@dataclass
class ReliabilityScore:
    score: float
    metrics: ReliabilityMetrics
    formula_id: str
    timestamp: datetime
    # Shadow formulas: exposed for comparison, never used by consensus
    shadow_scores: dict[str, float] = field(default_factory=dict)


def load_reviewer_histories(
    db: Session,
    reviewer_ids: Iterable[int],
    *,
    since: Optional[datetime] = None,
) -> dict[int, ReviewerHistory]:
    requested = set(reviewer_ids)
    ids = sorted(
        row[0] for row in db.query(User.id).filter(User.id.in_(requested)).all()
    ) if requested else []
    histories = {reviewer_id: ReviewerHistory(reviewer_id=reviewer_id) for reviewer_id in ids}
    if not ids:
        return histories

    review_query = (
        db.query(PeerReview, Submission.final_xp, Submission.status)
        .join(Submission, Submission.id == PeerReview.submission_id)
        .filter(
            PeerReview.reviewer_id.in_(ids),
            PeerReview.is_superseded.is_(False),
        )
        .order_by(PeerReview.id)
    )
    if since is not None:
        review_query = review_query.filter(PeerReview.created_at >= since)

    for review, final_xp, status in review_query.all():
        histories[review.reviewer_id].reviews.append(
            ReviewRecord(
                xp_score=review.xp_score,
                quality_rating=review.quality_rating,
                is_late=bool(review.is_late),
                judgment_status=review.judgment_status,
                final_xp=final_xp if status == SubmissionStatus.FINALIZED else None,
            )
        )

    missed_query = (
        db.query(ReviewAssignment.reviewer_id, func.count(ReviewAssignment.id))
        .filter(
            ReviewAssignment.reviewer_id.in_(ids),
            ReviewAssignment.status == AssignmentStatus.MISSED,
        )
        .group_by(ReviewAssignment.reviewer_id)
    )
    if since is not None:
        missed_query = missed_query.filter(ReviewAssignment.deadline >= since)
    for reviewer_id, count in missed_query.all():
        histories[reviewer_id].missed_reviews = int(count)

    penalty_query = (
        db.query(XpTransaction.user_id, func.sum(XpTransaction.amount))
        .filter(
            XpTransaction.user_id.in_(ids),
            XpTransaction.type == TransactionType.PENALTY,
        )
        .group_by(XpTransaction.user_id)
    )
    if since is not None:
        penalty_query = penalty_query.filter(XpTransaction.created_at >= since)
    for user_id, total in penalty_query.all():
        histories[user_id].penalty_total = abs(int(total or 0))

    return histories


def score_metrics(
    metrics: ReliabilityMetrics,
    formula: Optional[Formula] = None,
    shadows: Optional[list[Formula]] = None,
) -> tuple[float, dict[str, float]]:
    formula = formula or active_formula()
    shadows = shadow_formulas() if shadows is None else shadows
    values = metrics.values()
    score = score_with(formula, values)
    shadow_scores = {
        shadow.id: score_with(shadow, values)
        for shadow in shadows
        if shadow.id != formula.id
    }
    return score, shadow_scores


def get_reliability_scores(
    db: Session,
    reviewer_ids: Iterable[int],
    *,
    since: Optional[datetime] = None,
    formula_id: Optional[str] = None,
) -> dict[int, ReliabilityScore]:
    """
    Trust score per reviewer from their review history.

    The active formula (or ``formula_id``) produces ``score``; every enabled
    shadow formula is evaluated over the same metrics into ``shadow_scores``.
    """
    formula = get_formula(formula_id) if formula_id else active_formula()
    shadows = shadow_formulas()
    timestamp = utcnow()

    results: dict[int, ReliabilityScore] = {}
    for reviewer_id, history in load_reviewer_histories(db, reviewer_ids, since=since).items():
        metrics = calculate_reviewer_metrics(history)
        score, shadow_scores = score_metrics(metrics, formula, shadows)
        results[reviewer_id] = ReliabilityScore(
            score=score,
            metrics=metrics,
            formula_id=formula.id,
            timestamp=timestamp,
            shadow_scores=shadow_scores,
        )
    logger.debug(f"Computed reliability for {len(results)} reviewers with {formula.id}")
    return results


def get_shadow_score(
    db: Session,
    reviewer_id: int,
    shadow_formula_id: str = "CUSTOM_V1",
) -> Optional[ReliabilityScore]:
    scores = get_reliability_scores(db, [reviewer_id])
    result = scores.get(reviewer_id)
    if result is None:
        return None

    shadow = get_formula(shadow_formula_id)
    return ReliabilityScore(
        score=score_with(shadow, result.metrics.values()),
        metrics=result.metrics,
        formula_id=shadow.id,
        timestamp=result.timestamp,
    )
