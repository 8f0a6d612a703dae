"""
Core Utility Functions.

Small numeric and time helpers shared by the feed pipeline stages.
"""

from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, TypeVar

import numpy as np

T = TypeVar("T")


# =============================================================================
# Numeric
# =============================================================================

def clamp(value: float, lower: float = 0.0, upper: float = 1.0) -> float:
    """Clamp ``value`` into ``[lower, upper]``. NaN collapses to ``lower``."""
    if value != value:  # NaN
        return lower
    return float(min(upper, max(lower, value)))


def pool_max(values: Iterable[float], floor: float = 1.0) -> float:
    """
    Maximum of a pool of values with a minimum denominator.

    Used to normalize counts against the candidate pool so an all-zero pool
    never divides by zero.

    Example:
        >>> pool_max([0, 3, 2])
        3.0
        >>> pool_max([])
        1.0
    """
    arr = np.asarray(list(values), dtype=float)
    if arr.size == 0:
        return float(floor)
    return float(max(floor, np.nanmax(arr)))


# =============================================================================
# Time
# =============================================================================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a Postgres/ISO-8601 timestamp into an aware UTC datetime.

    Accepts datetimes, ISO strings (with ``Z`` or offsets) and returns None
    for anything unparseable.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def hours_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / 3600.0


# =============================================================================
# Collections
# =============================================================================

def chunk_list(items: List[T], chunk_size: int) -> List[List[T]]:
    """Split a list into chunks of the given size."""
    return [items[i:i + chunk_size] for i in range(0, len(items), chunk_size)]

