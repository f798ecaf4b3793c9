# consensus_engine/services/reliability/metrics.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from consensus_engine.core.config import settings
from consensus_engine.models.review import JudgmentStatus

EXTREME_MISS_POINTS = 50


@dataclass(frozen=True)
class ReviewRecord:
    xp_score: int
    quality_rating: Optional[int]
    is_late: bool
    judgment_status: JudgmentStatus
    final_xp: Optional[int]  # consensus of the reviewed submission, once finalized


@dataclass
class ReviewerHistory:
    reviewer_id: int
    reviews: list[ReviewRecord] = field(default_factory=list)
    missed_reviews: int = 0
    penalty_total: int = 0  # absolute XP taken by PENALTY transactions


@dataclass(frozen=True)
class ReviewHistoryEntry:
    reviewer_xp_score: int
    deviation: float


@dataclass(frozen=True)
class ReliabilityMetrics:
    reviewer_id: int
    total_reviews: int
    late_reviews: int
    missed_reviews: int
    votes_validated: int
    votes_invalidated: int

    # Normalized 0-1; None means no data for this reviewer
    timeliness: Optional[float]
    quality: Optional[float]
    accuracy: Optional[float]
    vote_validation: Optional[float]
    experience: float
    missed_penalty: float
    penalty_score: float
    review_variance: Optional[float]
    late_percentage: Optional[float]

    extreme_miss_count: int
    avg_deviation: float
    avg_quality_rating: float
    review_history: tuple[ReviewHistoryEntry, ...] = ()

    def values(self) -> dict[str, Optional[float]]:
        return {
            "timeliness": self.timeliness,
            "quality": self.quality,
            "accuracy": self.accuracy,
            "vote_validation": self.vote_validation,
            "experience": self.experience,
            "missed_penalty": self.missed_penalty,
            "penalty_score": self.penalty_score,
            "review_variance": self.review_variance,
            "late_percentage": self.late_percentage,
        }


def calculate_reviewer_metrics(history: ReviewerHistory) -> ReliabilityMetrics:
    reviews = history.reviews
    total = len(reviews)

    missed_penalty = max(0.0, 1.0 - history.missed_reviews * 0.25)
    penalty_score = max(0.0, 1.0 - abs(history.penalty_total) / 100.0)

    if total == 0:
        return ReliabilityMetrics(
            reviewer_id=history.reviewer_id,
            total_reviews=0,
            late_reviews=0,
            missed_reviews=history.missed_reviews,
            votes_validated=0,
            votes_invalidated=0,
            timeliness=None,
            quality=None,
            accuracy=None,
            vote_validation=None,
            experience=0.0,
            missed_penalty=missed_penalty,
            penalty_score=penalty_score,
            review_variance=None,
            late_percentage=None,
            extreme_miss_count=0,
            avg_deviation=0.0,
            avg_quality_rating=0.0,
        )

    late = sum(1 for r in reviews if r.is_late)
    timeliness = 1.0 - late / total

    ratings = [r.quality_rating for r in reviews if r.quality_rating is not None]
    avg_rating = float(np.mean(ratings)) if ratings else 0.0
    quality = (avg_rating - 1.0) / 4.0 if ratings else None

    history_entries = tuple(
        ReviewHistoryEntry(reviewer_xp_score=r.xp_score, deviation=float(abs(r.xp_score - r.final_xp)))
        for r in reviews
        if r.final_xp is not None
    )
    if history_entries:
        avg_deviation = float(np.mean([h.deviation for h in history_entries]))
        accuracy = max(0.0, 1.0 - avg_deviation / settings.MAX_DEVIATION_FOR_ACCURACY)
    else:
        avg_deviation = 0.0
        accuracy = None

    validated = sum(1 for r in reviews if r.judgment_status == JudgmentStatus.VALIDATED)
    invalidated = sum(1 for r in reviews if r.judgment_status == JudgmentStatus.INVALIDATED)
    if validated or invalidated:
        vote_validation = min(1.0, max(
            0.0,
            settings.VOTE_VALIDATION_BASELINE
            + validated * settings.VOTE_VALIDATION_BONUS
            - invalidated * settings.VOTE_VALIDATION_PENALTY,
        ))
    else:
        vote_validation = None

    experience = min(1.0, total / settings.MAX_REVIEWS_FOR_EXPERIENCE)

    std_dev = float(np.std([r.xp_score for r in reviews]))
    review_variance = max(0.0, 1.0 - std_dev / settings.MAX_STD_DEV_FOR_VARIANCE)

    extreme = sum(1 for h in history_entries if h.deviation > EXTREME_MISS_POINTS)

    return ReliabilityMetrics(
        reviewer_id=history.reviewer_id,
        total_reviews=total,
        late_reviews=late,
        missed_reviews=history.missed_reviews,
        votes_validated=validated,
        votes_invalidated=invalidated,
        timeliness=timeliness,
        quality=quality,
        accuracy=accuracy,
        vote_validation=vote_validation,
        experience=experience,
        missed_penalty=missed_penalty,
        penalty_score=penalty_score,
        review_variance=review_variance,
        late_percentage=timeliness,
        extreme_miss_count=extreme,
        avg_deviation=avg_deviation,
        avg_quality_rating=avg_rating,
        review_history=history_entries,
    )
