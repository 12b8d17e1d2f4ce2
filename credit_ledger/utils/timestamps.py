"""
Point-in-time normalization for historical balance queries.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Union

from credit_ledger.exceptions import InvalidArgumentError

# Epoch values above this are read as milliseconds (13+ digits).
MILLISECOND_THRESHOLD = 9_999_999_999

PointInTime = Union[datetime, int, float, Decimal]


def to_utc_datetime(point_in_time: PointInTime) -> datetime:
    """
    Normalize a datetime or Unix epoch into a timezone-aware UTC datetime.

    Naive datetimes are taken to be UTC. Integer epochs in milliseconds are
    floored to whole seconds, matching how second-precision callers would
    express the same instant.
    """
    if isinstance(point_in_time, datetime):
        if point_in_time.tzinfo is None:
            return point_in_time.replace(tzinfo=timezone.utc)
        return point_in_time.astimezone(timezone.utc)

    if isinstance(point_in_time, bool) or not isinstance(point_in_time, (int, float, Decimal)):
        raise InvalidArgumentError(
            f"Point in time must be a datetime or Unix timestamp, got {point_in_time!r}."
        )

    seconds: Union[int, float]
    if isinstance(point_in_time, int):
        seconds = point_in_time // 1000 if point_in_time > MILLISECOND_THRESHOLD else point_in_time
    else:
        value = float(point_in_time)
        seconds = value / 1000 if value > MILLISECOND_THRESHOLD else value

    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise InvalidArgumentError(f"Timestamp out of range: {point_in_time!r}.") from exc


__all__ = ["MILLISECOND_THRESHOLD", "PointInTime", "to_utc_datetime"]
