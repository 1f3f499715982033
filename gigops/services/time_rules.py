"""
Time rules for gig windows.
All conflict arithmetic runs on absolute UTC instants; a gig's timezone is
only used to interpret naive input and for display.
"""
from datetime import datetime
from typing import Any, Optional, Tuple
import pytz

from ..config import settings
from ..errors import ValidationError

INCLUSIVE = "inclusive"
EXCLUSIVE = "exclusive"


def validate_timezone(timezone_str: str) -> str:
    if not timezone_str or not timezone_str.strip():
        raise ValidationError("Timezone is required")
    try:
        pytz.timezone(timezone_str.strip())
    except pytz.UnknownTimeZoneError:
        raise ValidationError(f"Unknown timezone: {timezone_str}")
    return timezone_str.strip()


def to_utc(value: datetime, timezone_str: Optional[str] = None) -> datetime:
    """
    Normalize an instant to timezone-aware UTC.

    Naive datetimes are read as local time in ``timezone_str`` (or the
    configured default zone).
    """
    if value.tzinfo is None:
        tz = pytz.timezone(timezone_str or settings.tz_default)
        value = tz.localize(value)
    return value.astimezone(pytz.UTC)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Values read back from SQLite lose their tzinfo; they were stored as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=pytz.UTC)
    return value.astimezone(pytz.UTC)


def validate_window(start: datetime, end: datetime) -> None:
    if start is None or end is None:
        raise ValidationError("Start and end times are required")
    if ensure_utc(start) >= ensure_utc(end):
        raise ValidationError("Start must be before end")


def resolve_boundary(boundary: Optional[str] = None) -> str:
    boundary = (boundary or settings.kit_conflict_boundary).lower()
    if boundary not in (INCLUSIVE, EXCLUSIVE):
        raise ValidationError(f"Unknown boundary policy: {boundary}")
    return boundary


def overlap_conditions(start1, end1, start2, end2, boundary: Optional[str] = None) -> Tuple[Any, Any]:
    """
    The two comparisons that make window 1 overlap window 2.

    exclusive: start1 < end2 AND end1 > start2 (half-open, back-to-back is fine)
    inclusive: start1 <= end2 AND end1 >= start2 (touching windows conflict)

    Operands may be datetimes or SQLAlchemy column expressions, so the
    conflict query and in-memory checks share one definition.
    """
    if resolve_boundary(boundary) == INCLUSIVE:
        return start1 <= end2, end1 >= start2
    return start1 < end2, end1 > start2


def windows_overlap(
    start1: datetime,
    end1: datetime,
    start2: datetime,
    end2: datetime,
    boundary: Optional[str] = None,
) -> bool:
    """Check whether two gig windows overlap."""
    return all(overlap_conditions(*(ensure_utc(v) for v in (start1, end1, start2, end2)), boundary=boundary))
