"""
Reliability formulas.

A formula is immutable, versioned data: a weight per metric plus optional
default values for metrics a reviewer has no data for. New formulas are added
to the registry below; the consensus and reliability call sites never branch
on a formula id.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

from consensus_engine.core.config import settings

METRIC_NAMES = (
    "timeliness",
    "quality",
    "accuracy",
    "vote_validation",
    "experience",
    "missed_penalty",
    "penalty_score",
    "review_variance",
    "late_percentage",
)

# Metrics that absorb redistributed weight even when their own weight is 0
BASELINE_METRICS = ("timeliness", "experience", "penalty_score")


@dataclass(frozen=True)
class Formula:
    id: str
    version: int
    name: str
    description: str
    weights: Mapping[str, float]
    default_values: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self):
        unknown = (set(self.weights) | set(self.default_values)) - set(METRIC_NAMES)
        if unknown:
            raise ValueError(f"formula {self.id} references unknown metrics: {sorted(unknown)}")
        full = {name: float(self.weights.get(name, 0.0)) for name in METRIC_NAMES}
        object.__setattr__(self, "weights", MappingProxyType(full))
        object.__setattr__(self, "default_values", MappingProxyType(dict(self.default_values)))


LEGACY_FORMULA = Formula(
    id="LEGACY",
    version=1,
    name="Formula A: Current (Baseline)",
    description="Legacy production formula: 30% timeliness + 70% quality",
    weights={"timeliness": 0.30, "quality": 0.70},
    default_values={"quality": 0.625},  # 3.5 out of 5
)

CUSTOM_V1_FORMULA = Formula(
    id="CUSTOM_V1",
    version=1,
    name="Custom Formula V1",
    description="Data-driven: experience, timeliness and penalties dominate",
    weights={
        "timeliness": 0.317,
        "accuracy": 0.028,
        "vote_validation": 0.014,
        "experience": 0.399,
        "missed_penalty": 0.022,
        "penalty_score": 0.133,
        "review_variance": 0.032,
        "late_percentage": 0.055,
    },
    default_values={"vote_validation": 0.65},
)

CUSTOM_V2_FORMULA = Formula(
    id="CUSTOM_V2",
    version=1,
    name="Custom Formula V2 (Vote Validation)",
    description="Vote-validation focus on top of experience and accuracy",
    weights={
        "timeliness": 0.099,
        "accuracy": 0.153,
        "vote_validation": 0.161,
        "experience": 0.396,
        "missed_penalty": 0.048,
        "penalty_score": 0.020,
        "review_variance": 0.012,
        "late_percentage": 0.111,
    },
    default_values={"vote_validation": 0.65},
)

FORMULAS: Mapping[str, Formula] = MappingProxyType(
    {f.id: f for f in (LEGACY_FORMULA, CUSTOM_V1_FORMULA, CUSTOM_V2_FORMULA)}
)


def get_formula(formula_id: str) -> Formula:
    try:
        return FORMULAS[formula_id]
    except KeyError:
        raise ValueError(f"unknown reliability formula: {formula_id}") from None


def active_formula() -> Formula:
    return get_formula(settings.ACTIVE_FORMULA)


def shadow_formulas() -> list[Formula]:
    if not settings.ENABLE_SHADOW_MODE:
        return []
    return [
        get_formula(formula_id)
        for formula_id in settings.SHADOW_FORMULAS
        if formula_id != settings.ACTIVE_FORMULA
    ]


def effective_weights(formula: Formula) -> dict[str, float]:
    weights = dict(formula.weights)
    if not settings.USE_VOTE_VALIDATION:
        weights["vote_validation"] = 0.0
    return weights


def calculate_score(
    values: Mapping[str, Optional[float]],
    weights: Mapping[str, float],
    default_values: Optional[Mapping[str, float]] = None,
) -> float:
    """
    Weighted sum of normalized metrics, clamped to [0, 1].

    An undefined metric (None) takes its default value when the formula has
    one. Otherwise its weight is split evenly over the active metrics: those
    with data and either a positive weight or membership in BASELINE_METRICS.
    """
    default_values = default_values or {}
    resolved: dict[str, Optional[float]] = {}
    adjusted = {name: float(weights.get(name, 0.0)) for name in METRIC_NAMES}
    missing: list[str] = []

    for name in METRIC_NAMES:
        value = values.get(name)
        if value is None and name in default_values:
            value = default_values[name]
        resolved[name] = value
        if value is None and adjusted[name] > 0:
            missing.append(name)

    if missing:
        pool = sum(adjusted[name] for name in missing)
        for name in missing:
            adjusted[name] = 0.0
        active = [
            name
            for name in METRIC_NAMES
            if resolved[name] is not None
            and (adjusted[name] > 0 or name in BASELINE_METRICS)
        ]
        if active:
            share = pool / len(active)
            for name in active:
                adjusted[name] += share

    score = sum(
        (resolved[name] or 0.0) * adjusted[name]
        for name in METRIC_NAMES
    )
    return max(0.0, min(1.0, score))


def score_with(formula: Formula, values: Mapping[str, Optional[float]]) -> float:
    return calculate_score(values, effective_weights(formula), formula.default_values)


def identify_bad(metrics) -> tuple[bool, list[str]]:
    """
    Fixed "bad reviewer" rule, independent of the active formula.

    Any hard failure is enough; otherwise two soft failures are needed.
    """
    reasons: list[str] = []
    if metrics.missed_penalty < 0.75:
        reasons.append("Misses 25%+ of assignments")
    if metrics.penalty_score < 0.80:
        reasons.append("Admin penalties (20+ points)")
    if reasons:
        return True, reasons

    soft: list[str] = []
    if metrics.timeliness is not None and metrics.timeliness < 0.70:
        soft.append("Very late (<70%)")
    if metrics.accuracy is not None and metrics.accuracy < 0.50 and metrics.total_reviews > 5:
        soft.append("Very low accuracy (<50%)")
    return len(soft) >= 2, soft


def identify_good(metrics) -> tuple[bool, list[str]]:
    core = (
        metrics.experience >= 0.50
        and metrics.missed_penalty >= 0.90
        and metrics.penalty_score >= 0.90
        and (metrics.timeliness or 0.0) >= 0.85
    )
    if not core:
        return False, []

    strengths: list[str] = []
    if metrics.experience >= 1.0:
        strengths.append("Veteran (50+ reviews)")
    if (metrics.timeliness or 0.0) >= 0.95:
        strengths.append("Very punctual (95%+)")
    if metrics.accuracy is not None and metrics.accuracy >= 0.70:
        strengths.append("Accurate (70%+)")
    return len(strengths) >= 1, strengths


def classify_reviewers(metrics_list) -> dict[str, list]:
    good, middle, bad = [], [], []
    for metrics in metrics_list:
        is_bad, _ = identify_bad(metrics)
        if is_bad:
            bad.append(metrics)
            continue
        is_good, _ = identify_good(metrics)
        if is_good:
            good.append(metrics)
        else:
            middle.append(metrics)
    return {"good": good, "middle": middle, "bad": bad}
