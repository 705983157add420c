"""
Progress arithmetic for the task hierarchy.

Pure helpers shared by every level of the roll-up:

    - round_half_up:  0.5 always rounds away from zero (12.5 → 13)
    - aggregate:      weighted mean of child progress values
    - leaf_progress:  percentage of done todos
    - clamp_progress: coerce a manually entered value into 0-100

An empty child list is 0% complete, never NaN.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from labops.core.exceptions import ValidationError


def round_half_up(value: float) -> int:
    """Round to the nearest integer with ties going up."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def clamp_progress(value: Any) -> int:
    """Return *value* as an integer percentage between 0 and 100.

    ``None``, unparseable and non-finite input count as 0.
    """
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return max(0, min(100, round_half_up(number)))


def parse_weight(value: Any) -> float:
    """Return a roll-up weight; missing means 1.

    Raises:
        ValidationError: if the weight is not a finite, non-negative number.
    """
    if value is None:
        return 1.0
    try:
        weight = float(value)
    except (TypeError, ValueError):
        raise ValidationError("Progress weight must be a number", details={"weight": value}) from None
    if not math.isfinite(weight):
        raise ValidationError("Progress weight must be a finite number", details={"weight": str(value)})
    if weight < 0:
        raise ValidationError("Progress weight must not be negative", details={"weight": weight})
    return weight


def _read(child: Any, key: str, default: Any) -> Any:
    if isinstance(child, Mapping):
        return child.get(key, default)
    return getattr(child, key, default)


def aggregate(children: Iterable[Any]) -> int:
    """Weighted mean of the children's ``progress``, rounded half up.

    Each child is a mapping or an object exposing ``progress`` and an
    optional ``weight`` (default 1).

    Raises:
        ValidationError: if any weight is negative or not a finite number.
    """
    total_weight = 0.0
    weighted_sum = 0.0
    for child in children:
        weight = _read(child, "weight", 1)
        weight = parse_weight(weight)
        progress = clamp_progress(_read(child, "progress", 0))
        total_weight += weight
        weighted_sum += weight * float(progress)

    if total_weight == 0:
        return 0
    return round_half_up(weighted_sum / total_weight)


def leaf_progress(todos: Iterable[Any]) -> int:
    """Percentage of todos marked done; 0 when there are none."""
    total = 0
    done = 0
    for todo in todos:
        total += 1
        if _read(todo, "done", False):
            done += 1
    if total == 0:
        return 0
    return round_half_up(100 * done / total)
