"""
Inverse-signal audit of the reliability formula.

If reviewers the fixed rule calls "bad" turn out more accurate than the "good"
ones, either the formula or its inputs are wrong. This module looks for the
usual explanations. It only reads the scores it is given.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional

import numpy as np

from consensus_engine.services.reliability.formulas import identify_bad, identify_good
from consensus_engine.services.reliability.metrics import ReliabilityMetrics, ReviewHistoryEntry

ACCURATE_MIN_ACCURACY = 0.7
INACCURATE_MIN_DEVIATION = 20.0
EXTREME_LOW_SCORE = 10
EXTREME_HIGH_SCORE = 90


class RootCause(str, enum.Enum):
    CALCULATION_BUG = "CALCULATION_BUG"
    SLOW_BUT_THOUGHTFUL = "SLOW_BUT_THOUGHTFUL"
    POLARIZED_FAST_REVIEWERS = "POLARIZED_FAST_REVIEWERS"
    SAMPLE_SIZE_ARTIFACT = "SAMPLE_SIZE_ARTIFACT"
    CONSENSUS_BIAS = "CONSENSUS_BIAS"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class AuditReviewer:
    id: int
    timeliness: float
    accuracy: float
    avg_deviation: float
    total_reviews: int
    review_history: tuple[ReviewHistoryEntry, ...] = ()
    reason: Optional[str] = None

    @classmethod
    def from_metrics(cls, metrics: ReliabilityMetrics, reason: Optional[str] = None) -> "AuditReviewer":
        return cls(
            id=metrics.reviewer_id,
            timeliness=metrics.timeliness if metrics.timeliness is not None else 1.0,
            accuracy=metrics.accuracy if metrics.accuracy is not None else 0.0,
            avg_deviation=metrics.avg_deviation,
            total_reviews=metrics.total_reviews,
            review_history=metrics.review_history,
            reason=reason,
        )


@dataclass(frozen=True)
class DetectedPattern:
    id: str
    name: str
    description: str
    confidence: float
    affected_reviewers: tuple[int, ...] = ()
    suggested_action: str = ""


@dataclass
class AuditReport:
    is_inverse_signal: bool
    bad_avg_accuracy: float
    good_avg_accuracy: float
    all_bad: list[AuditReviewer] = field(default_factory=list)
    all_good: list[AuditReviewer] = field(default_factory=list)
    middle_tier: list[AuditReviewer] = field(default_factory=list)
    bad_but_accurate: list[AuditReviewer] = field(default_factory=list)
    good_but_inaccurate: list[AuditReviewer] = field(default_factory=list)
    patterns: list[DetectedPattern] = field(default_factory=list)
    root_cause: RootCause = RootCause.UNKNOWN

    @property
    def signal_delta(self) -> float:
        return self.bad_avg_accuracy - self.good_avg_accuracy


def calculate_std_dev(values: Iterable[float]) -> float:
    values = list(values)
    if not values:
        return 0.0
    return float(np.std(values))


def _mean_deviation(reviewer: AuditReviewer) -> float:
    if not reviewer.review_history:
        return 0.0
    return float(np.mean([h.deviation for h in reviewer.review_history]))


def detect_patterns(
    bad_but_accurate: list[AuditReviewer],
    good_but_inaccurate: list[AuditReviewer],
) -> list[DetectedPattern]:
    patterns: list[DetectedPattern] = []

    slow = [r for r in bad_but_accurate if r.timeliness < 0.7 and r.accuracy > 0.75]
    if len(slow) >= 3:
        patterns.append(DetectedPattern(
            id="slow-thoughtful",
            name="Slow but Thoughtful",
            description=f"{len(slow)} reviewers are consistently late but highly accurate.",
            confidence=len(slow) / max(1, len(bad_but_accurate)),
            affected_reviewers=tuple(r.id for r in slow),
            suggested_action="Consider reducing timeliness weight.",
        ))

    polarized = [
        r for r in good_but_inaccurate
        if any(
            h.reviewer_xp_score <= EXTREME_LOW_SCORE or h.reviewer_xp_score >= EXTREME_HIGH_SCORE
            for h in r.review_history
        )
    ]
    if len(polarized) >= 3:
        patterns.append(DetectedPattern(
            id="polarized-fast",
            name="Polarized Fast Reviewers",
            description=f"{len(polarized)} fast reviewers give extreme scores (0-10 or 90+).",
            confidence=len(polarized) / max(1, len(good_but_inaccurate)),
            affected_reviewers=tuple(r.id for r in polarized),
            suggested_action="Add score polarization penalty to formula.",
        ))

    # High deviation with a high accuracy score cannot both be right
    inverted = [
        r for r in bad_but_accurate
        if _mean_deviation(r) > INACCURATE_MIN_DEVIATION and r.accuracy > 0.7
    ]
    if len(inverted) >= 2:
        patterns.append(DetectedPattern(
            id="calculation-bug",
            name="Possible Calculation Bug",
            description=f"{len(inverted)} reviewers have high deviation but high accuracy score.",
            confidence=0.9,
            affected_reviewers=tuple(r.id for r in inverted),
            suggested_action="Audit the accuracy metric calculation.",
        ))

    if len(bad_but_accurate) < 3 or len(good_but_inaccurate) < 3:
        patterns.append(DetectedPattern(
            id="sample-size",
            name="Small Sample Size",
            description="Not enough reviewers to draw reliable conclusions.",
            confidence=0.3,
            suggested_action="Collect more data before making formula changes.",
        ))

    return patterns


def infer_root_cause(
    patterns: list[DetectedPattern],
    bad_but_accurate: list[AuditReviewer],
    good_but_inaccurate: list[AuditReviewer],
) -> RootCause:
    by_id = {p.id: p for p in patterns}

    def seen(pattern_id: str, min_confidence: float) -> bool:
        pattern = by_id.get(pattern_id)
        return pattern is not None and pattern.confidence > min_confidence

    if seen("calculation-bug", 0.7):
        return RootCause.CALCULATION_BUG
    if seen("slow-thoughtful", 0.5):
        return RootCause.SLOW_BUT_THOUGHTFUL
    if seen("polarized-fast", 0.5):
        return RootCause.POLARIZED_FAST_REVIEWERS
    if "sample-size" in by_id:
        return RootCause.SAMPLE_SIZE_ARTIFACT

    fast_scores = [h.reviewer_xp_score for r in good_but_inaccurate for h in r.review_history]
    slow_scores = [h.reviewer_xp_score for r in bad_but_accurate for h in r.review_history]
    if fast_scores and slow_scores:
        # fast reviewers clustered around each other rather than the truth
        if calculate_std_dev(fast_scores) < calculate_std_dev(slow_scores) * 0.5:
            return RootCause.CONSENSUS_BIAS

    return RootCause.UNKNOWN


def _avg_accuracy(reviewers: list[AuditReviewer]) -> float:
    if not reviewers:
        return 0.0
    return float(np.mean([r.accuracy for r in reviewers]))


def build_audit_sets(scores: Mapping[int, object]) -> AuditReport:
    """
    Split reliability results into the audit tiers.

    ``scores`` maps reviewer id to anything with a ``metrics`` attribute
    (ReliabilityScore) or to ReliabilityMetrics directly.
    """
    all_bad: list[AuditReviewer] = []
    all_good: list[AuditReviewer] = []
    middle: list[AuditReviewer] = []

    for reviewer_id in sorted(scores):
        value = scores[reviewer_id]
        metrics: ReliabilityMetrics = getattr(value, "metrics", value)
        is_bad, reasons = identify_bad(metrics)
        if is_bad:
            all_bad.append(AuditReviewer.from_metrics(metrics, "; ".join(reasons) or None))
            continue
        is_good, _ = identify_good(metrics)
        if is_good:
            all_good.append(AuditReviewer.from_metrics(metrics))
        else:
            middle.append(AuditReviewer.from_metrics(metrics))

    bad_avg = _avg_accuracy(all_bad)
    good_avg = _avg_accuracy(all_good)

    return AuditReport(
        is_inverse_signal=bool(all_bad and all_good and bad_avg > good_avg),
        bad_avg_accuracy=bad_avg,
        good_avg_accuracy=good_avg,
        all_bad=all_bad,
        all_good=all_good,
        middle_tier=middle,
        bad_but_accurate=[r for r in all_bad if r.accuracy >= ACCURATE_MIN_ACCURACY],
        good_but_inaccurate=[r for r in all_good if r.avg_deviation > INACCURATE_MIN_DEVIATION],
    )


def run_audit(scores: Mapping[int, object]) -> AuditReport:
    report = build_audit_sets(scores)
    report.patterns = detect_patterns(report.bad_but_accurate, report.good_but_inaccurate)
    report.root_cause = infer_root_cause(
        report.patterns, report.bad_but_accurate, report.good_but_inaccurate
    )
    return report
