"""
Urgency scoring over recent error composition.

The weights below are policy, not physics: the failure rate is simply the
error count divided by the window length in hours, which over-weights short
windows. Tune against real failure distributions before relying on the
exact thresholds.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Literal

UrgencyLevel = Literal["low", "medium", "high", "critical"]

CRITICAL_POINTS_PER_ERROR = 25
CRITICAL_POINTS_CAP = 50

HIGH_FAILURE_RATE = 5.0  # errors per hour
MODERATE_FAILURE_RATE = 2.0

CATEGORY_BONUSES: dict[str, int] = {
    "authentication": 20,
    "quota": 15,
    "network": 10,
}

# (threshold, bonus), first match wins
VOLUME_BONUSES: tuple[tuple[int, int], ...] = ((50, 15), (20, 10), (10, 5))

LEVEL_THRESHOLDS: tuple[tuple[int, UrgencyLevel], ...] = (
    (80, "critical"),
    (60, "high"),
    (30, "medium"),
)
IMMEDIATE_ACTION_THRESHOLD = 80


@dataclass
class UrgencyInputs:
    critical_errors: Any = 0
    total_errors: Any = 0
    time_range_hours: Any = 24
    by_category: Any = field(default_factory=dict)


@dataclass(frozen=True)
class UrgencyScore:
    score: int
    level: UrgencyLevel
    factors: tuple[str, ...]
    requires_immediate_action: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "level": self.level,
            "factors": list(self.factors),
            "requires_immediate_action": self.requires_immediate_action,
        }


def _count(value: Any) -> float:
    """Coerce to a finite non-negative number; anything else counts as zero."""
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number) or math.isinf(number) or number < 0:
        return 0.0
    return number


def level_for(score: int) -> UrgencyLevel:
    for threshold, level in LEVEL_THRESHOLDS:
        if score >= threshold:
            return level
    return "low"


def calculate_urgency_score(inputs: UrgencyInputs | None) -> UrgencyScore:
    """Score 0-100; never raises, missing or bad inputs add nothing."""
    inputs = inputs or UrgencyInputs()
    factors: list[str] = []
    score = 0.0

    critical = _count(inputs.critical_errors)
    if critical > 0:
        points = min(critical * CRITICAL_POINTS_PER_ERROR, CRITICAL_POINTS_CAP)
        score += points
        factors.append(f"{int(critical)} critical error(s)")

    total = _count(inputs.total_errors)
    hours = max(_count(inputs.time_range_hours), 1.0)
    failure_rate = total / hours
    if failure_rate > HIGH_FAILURE_RATE:
        score += 20
        factors.append(f"High failure rate ({failure_rate:.1f}/hour)")
    elif failure_rate > MODERATE_FAILURE_RATE:
        score += 10
        factors.append(f"Elevated failure rate ({failure_rate:.1f}/hour)")

    by_category = inputs.by_category if isinstance(inputs.by_category, dict) else {}
    for category, bonus in CATEGORY_BONUSES.items():
        if _count(by_category.get(category)) > 0:
            score += bonus
            factors.append(f"{category.replace('_', ' ').capitalize()} errors present")

    for threshold, bonus in VOLUME_BONUSES:
        if total > threshold:
            score += bonus
            factors.append(f"More than {threshold} errors")
            break

    final = int(min(max(score, 0), 100))
    return UrgencyScore(
        score=final,
        level=level_for(final),
        factors=tuple(factors),
        requires_immediate_action=final >= IMMEDIATE_ACTION_THRESHOLD,
    )
