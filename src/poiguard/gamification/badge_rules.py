"""Badge requirement rules.

Stored requirements are JSON objects such as
``{"type": "category_visits", "value": 5, "category": "museum"}``. They are
parsed once into typed rules and evaluated with an exhaustive match.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, assert_never


@dataclass(frozen=True)
class VisitCountRule:
    threshold: int
    category: str | None = None


@dataclass(frozen=True)
class PointsRule:
    threshold: int


@dataclass(frozen=True)
class LevelRule:
    threshold: int


BadgeRule = VisitCountRule | PointsRule | LevelRule


@dataclass
class UserProgress:
    visit_count: int = 0
    category_visits: dict[str, int] = field(default_factory=dict)
    total_points: int = 0
    level: int = 1


def _threshold(mapping: Mapping[str, Any]) -> int:
    try:
        value = int(mapping["value"])
    except (KeyError, TypeError, ValueError) as exc:
        msg = f"badge requirement needs an integer 'value': {dict(mapping)!r}"
        raise ValueError(msg) from exc
    if value < 0:
        msg = f"badge requirement value must be >= 0, got {value}"
        raise ValueError(msg)
    return value


def parse_rule(mapping: Mapping[str, Any]) -> BadgeRule:
    """Parse a stored requirement. Raises ValueError on unknown or malformed input."""
    rule_type = mapping.get("type")
    if rule_type == "visits_count":
        return VisitCountRule(threshold=_threshold(mapping))
    if rule_type == "category_visits":
        category = mapping.get("category")
        if not category:
            msg = "category_visits requirement needs a 'category'"
            raise ValueError(msg)
        return VisitCountRule(threshold=_threshold(mapping), category=str(category))
    if rule_type == "points":
        return PointsRule(threshold=_threshold(mapping))
    if rule_type == "level":
        return LevelRule(threshold=_threshold(mapping))
    msg = f"Unknown badge requirement type: {rule_type!r}"
    raise ValueError(msg)


def evaluate(rule: BadgeRule, progress: UserProgress) -> bool:
    match rule:
        case VisitCountRule(threshold=threshold, category=None):
            return progress.visit_count >= threshold
        case VisitCountRule(threshold=threshold, category=category):
            return progress.category_visits.get(category, 0) >= threshold
        case PointsRule(threshold=threshold):
            return progress.total_points >= threshold
        case LevelRule(threshold=threshold):
            return progress.level >= threshold
        case _:
            assert_never(rule)
