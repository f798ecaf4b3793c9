# consensus_engine/services/consensus_service.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import numpy as np
from sqlalchemy import func
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from consensus_engine.core.config import settings
from consensus_engine.core.errors import (
    AlreadyFinalized,
    InsufficientReviews,
    SubmissionNotFound,
)
from consensus_engine.core.time_utils import utcnow, week_number
from consensus_engine.db.transaction import run_in_transaction
from consensus_engine.models.automation_log import ShadowConsensusLog
from consensus_engine.models.ledger import TransactionType
from consensus_engine.models.review import (
    OUTSTANDING_ASSIGNMENT_STATUSES,
    AssignmentStatus,
    PeerReview,
    ReviewAssignment,
)
from consensus_engine.models.submission import Submission, SubmissionStatus
from consensus_engine.schemas.consensus import ConsensusResult, ConsensusSummary
from consensus_engine.services import ledger_service, vote_service
from consensus_engine.services.reliability.scorer import ReliabilityScore, get_reliability_scores

logger = logging.getLogger(__name__)

DEFAULT_RELIABILITY = 1.0


@dataclass
class _Computed:
    final_xp: int
    peer_xp: float
    consensus_score: float
    confidence: str
    included: list[PeerReview]
    outliers: list[PeerReview]
    weights: dict[int, float]


def _get_submission(db: Session, submission_id: int) -> Submission:
    submission = db.get(Submission, submission_id)
    if submission is None:
        raise SubmissionNotFound(f"submission {submission_id} not found")
    return submission


def _active_reviews(db: Session, submission_id: int) -> list[PeerReview]:
    return (
        db.query(PeerReview)
        .filter(
            PeerReview.submission_id == submission_id,
            PeerReview.is_superseded.is_(False),
        )
        .order_by(PeerReview.id)
        .all()
    )


def _check_ready(db: Session, submission: Submission) -> list[PeerReview]:
    """
    Reviews to finalize with, or InsufficientReviews.

    Every assignment still PENDING/IN_PROGRESS blocks. MISSED and REASSIGNED
    assignments do not count against the review total.
    """
    outstanding = (
        db.query(func.count(ReviewAssignment.id))
        .filter(
            ReviewAssignment.submission_id == submission.id,
            ReviewAssignment.status.in_(OUTSTANDING_ASSIGNMENT_STATUSES),
        )
        .scalar()
    )
    if outstanding:
        raise InsufficientReviews(
            f"submission {submission.id} has {outstanding} outstanding assignments"
        )

    reviews = _active_reviews(db, submission.id)
    if not reviews:
        raise InsufficientReviews(f"submission {submission.id} has no completed reviews")

    completed = (
        db.query(func.count(ReviewAssignment.id))
        .filter(
            ReviewAssignment.submission_id == submission.id,
            ReviewAssignment.status == AssignmentStatus.COMPLETED,
        )
        .scalar()
    )
    if len(reviews) < (completed or 0):
        raise InsufficientReviews(
            f"submission {submission.id} has {len(reviews)} reviews for {completed} completed assignments"
        )
    return reviews


def confidence_label(agreement: float, avg_reliability: float, review_count: int) -> str:
    value = 0.4 * agreement + 0.4 * avg_reliability + 0.2 * min(review_count / 5, 1.0)
    if value >= settings.HIGH_CONFIDENCE_THRESHOLD:
        return "high"
    if value >= settings.MEDIUM_CONFIDENCE_THRESHOLD:
        return "medium"
    return "low"


def agreement_score(std_dev: float) -> float:
    return max(0.0, min(1.0, 1.0 - std_dev / settings.AGREEMENT_MAX_STD_DEV))


def is_divergent(std_dev: float, review_count: int) -> bool:
    return (
        review_count >= settings.DIVERGENCE_MIN_REVIEWS
        and std_dev > settings.DIVERGENCE_THRESHOLD
    )


def peer_std_dev(scores: list[int]) -> float:
    """Sample standard deviation, matching the PostgreSQL STDDEV aggregate."""
    if len(scores) < 2:
        return 0.0
    return float(np.std(scores, ddof=1))


def split_outliers(reviews: list[PeerReview]) -> tuple[list[PeerReview], list[PeerReview]]:
    if len(reviews) < 3:
        return list(reviews), []

    scores = np.array([r.xp_score for r in reviews], dtype=float)
    std_dev = float(scores.std())
    if std_dev == 0:
        return list(reviews), []

    z = np.abs(scores - scores.mean()) / std_dev
    included = [r for r, zi in zip(reviews, z) if zi <= settings.OUTLIER_Z_THRESHOLD]
    outliers = [r for r, zi in zip(reviews, z) if zi > settings.OUTLIER_Z_THRESHOLD]
    if not included:
        return list(reviews), []
    return included, outliers


def weighted_peer_xp(reviews: list[PeerReview], weights: dict[int, float]) -> float:
    scores = [float(r.xp_score) for r in reviews]
    w = [weights.get(r.reviewer_id, DEFAULT_RELIABILITY) for r in reviews]
    if sum(w) <= 0:
        return float(np.mean(scores))
    return float(np.average(scores, weights=w))


def blend(peer_xp: float, ai_xp: Optional[int]) -> int:
    if ai_xp is None:
        return int(round(peer_xp))
    return int(round(settings.PEER_BLEND_WEIGHT * peer_xp + settings.AI_BLEND_WEIGHT * ai_xp))


def _compute(
    submission: Submission,
    reviews: list[PeerReview],
    reliability: dict[int, ReliabilityScore],
) -> _Computed:
    included, outliers = split_outliers(reviews)
    weights = {reviewer_id: r.score for reviewer_id, r in reliability.items()}
    peer_xp = weighted_peer_xp(included, weights)
    final_xp = blend(peer_xp, submission.ai_xp)

    agreement = agreement_score(float(np.std([r.xp_score for r in reviews])))
    avg_reliability = float(np.mean([
        weights.get(r.reviewer_id, DEFAULT_RELIABILITY) for r in included
    ]))
    return _Computed(
        final_xp=final_xp,
        peer_xp=peer_xp,
        consensus_score=agreement,
        confidence=confidence_label(agreement, avg_reliability, len(reviews)),
        included=included,
        outliers=outliers,
        weights=weights,
    )


def _finalize(
    db: Session,
    submission_id: int,
    computed: _Computed,
    reviews: list[PeerReview],
    *,
    recompute: bool,
) -> set[int]:
    submission = (
        db.query(Submission)
        .filter(Submission.id == submission_id)
        .with_for_update()
        .populate_existing()
        .one()
    )
    if submission.status == SubmissionStatus.FINALIZED and not recompute:
        raise AlreadyFinalized(f"submission {submission_id} is already finalized")

    now = utcnow()
    submission.final_xp = computed.final_xp
    submission.peer_xp = computed.peer_xp
    submission.consensus_score = computed.consensus_score
    submission.review_count = len(reviews)
    submission.status = SubmissionStatus.FINALIZED
    if submission.finalized_at is None:
        submission.finalized_at = now
    submission.week_number = week_number(submission.finalized_at)

    touched = {submission.user_id}
    ledger_service.reconcile_credit(
        db,
        user_id=submission.user_id,
        source_id=ledger_service.source_ref("submission", submission_id),
        target_amount=computed.final_xp,
        type=TransactionType.SUBMISSION_REWARD,
        description=f"Consensus XP for submission {submission_id}",
    )

    # Superseded reviews are reconciled to zero so a correction moves the reward
    all_reviews = db.query(PeerReview).filter(PeerReview.submission_id == submission_id).all()
    for review in all_reviews:
        accurate = abs(review.xp_score - computed.final_xp) <= settings.REVIEW_ACCURACY_WINDOW
        target = settings.REVIEW_REWARD_XP if accurate and not review.is_superseded else 0
        tx = ledger_service.reconcile_credit(
            db,
            user_id=review.reviewer_id,
            source_id=ledger_service.source_ref("review", review.id),
            target_amount=target,
            type=TransactionType.PEER_REVIEW,
            description=f"Accurate review of submission {submission_id}",
        )
        if tx is not None:
            touched.add(review.reviewer_id)

    ledger_service.refresh_cached_totals(db, touched)
    return touched


def _log_shadow_consensus(
    db: Session,
    submission: Submission,
    computed: _Computed,
    reliability: dict[int, ReliabilityScore],
) -> None:
    shadow_ids = sorted({fid for r in reliability.values() for fid in r.shadow_scores})
    if not shadow_ids:
        return
    try:
        for formula_id in shadow_ids:
            weights = {
                reviewer_id: r.shadow_scores[formula_id]
                for reviewer_id, r in reliability.items()
                if formula_id in r.shadow_scores
            }
            shadow_xp = blend(weighted_peer_xp(computed.included, weights), submission.ai_xp)
            db.add(ShadowConsensusLog(
                submission_id=submission.id,
                active_formula_id=settings.ACTIVE_FORMULA,
                active_score=float(computed.final_xp),
                shadow_formula_id=formula_id,
                shadow_score=float(shadow_xp),
                delta=float(shadow_xp - computed.final_xp),
            ))
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning(f"Shadow consensus logging failed for submission {submission.id}: {e}")


def calculate_consensus(
    db: Session,
    submission_id: int,
    *,
    allow_divergent: bool = False,
    recompute: bool = False,
) -> ConsensusResult:
    """
    Finalize a submission's XP from its peer reviews and AI score.

    Divergent reviews (std dev above the threshold) open a vote case and leave
    the submission under peer review, unless ``allow_divergent`` is set by the
    vote resolution path. ``recompute`` re-runs an already finalized
    submission; the ledger only receives the difference.
    """
    submission = _get_submission(db, submission_id)
    if submission.status == SubmissionStatus.FINALIZED and not recompute:
        raise AlreadyFinalized(f"submission {submission_id} is already finalized")

    reviews = _check_ready(db, submission)
    scores = [r.xp_score for r in reviews]
    std_dev = peer_std_dev(scores)

    if is_divergent(std_dev, len(reviews)) and not allow_divergent:
        vote_service.open_case(db, submission_id, std_dev)
        logger.info(
            f"Submission {submission_id} is divergent (std dev {std_dev:.1f}), sent to community vote"
        )
        return ConsensusResult(
            submission_id=submission_id,
            consensus_score=agreement_score(float(np.std(scores))),
            confidence="low",
            review_count=len(reviews),
            ai_xp=submission.ai_xp,
            agreement=agreement_score(float(np.std(scores))),
            peer_std_dev=std_dev,
            divergent=True,
            details={"scores": scores},
        )

    reliability = get_reliability_scores(db, {r.reviewer_id for r in reviews})
    computed = _compute(submission, reviews, reliability)

    try:
        run_in_transaction(db, _finalize, submission_id, computed, reviews, recompute=recompute)
    except StaleDataError as e:
        raise AlreadyFinalized(
            f"submission {submission_id} was finalized concurrently"
        ) from e

    logger.info(
        f"Finalized submission {submission_id}: final_xp={computed.final_xp} "
        f"peer_xp={computed.peer_xp:.1f} confidence={computed.confidence}"
    )
    _log_shadow_consensus(db, submission, computed, reliability)

    return ConsensusResult(
        submission_id=submission_id,
        final_xp=computed.final_xp,
        consensus_score=computed.consensus_score,
        confidence=computed.confidence,
        review_count=len(reviews),
        peer_xp=computed.peer_xp,
        ai_xp=submission.ai_xp,
        agreement=computed.consensus_score,
        peer_std_dev=std_dev,
        outliers=[r.id for r in computed.outliers],
        details={
            "scores": scores,
            "weights": {
                str(r.reviewer_id): computed.weights.get(r.reviewer_id, DEFAULT_RELIABILITY)
                for r in computed.included
            },
            "formula_id": settings.ACTIVE_FORMULA,
        },
    )


def get_consensus_summary(db: Session, since: Optional[datetime] = None) -> ConsensusSummary:
    query = db.query(Submission).filter(Submission.status == SubmissionStatus.FINALIZED)
    if since is not None:
        query = query.filter(Submission.finalized_at >= since)
    submissions = query.all()

    buckets = {"high": 0, "medium": 0, "low": 0}
    for sub in submissions:
        score = sub.consensus_score or 0.0
        if score >= settings.HIGH_CONFIDENCE_THRESHOLD:
            buckets["high"] += 1
        elif score >= settings.MEDIUM_CONFIDENCE_THRESHOLD:
            buckets["medium"] += 1
        else:
            buckets["low"] += 1

    return ConsensusSummary(
        total_finalized=len(submissions),
        avg_consensus_score=float(np.mean([s.consensus_score or 0.0 for s in submissions])) if submissions else 0.0,
        avg_review_count=float(np.mean([s.review_count or 0 for s in submissions])) if submissions else 0.0,
        by_agreement=buckets,
    )
