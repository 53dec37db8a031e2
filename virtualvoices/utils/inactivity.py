"""
Inactivity window arithmetic for the bot auto-reactivation job.

Timestamps in record payloads come from several writers (webhooks, imports,
this service) so they may be ISO strings, datetimes or epoch milliseconds.
Everything is normalized to aware UTC datetimes before comparing.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union
import math
import pytz

TimestampValue = Union[str, int, float, datetime, None]


def utcnow() -> datetime:
    return datetime.now(pytz.utc)


def to_utc(value: datetime) -> datetime:
    """Naive datetimes are stored in UTC"""
    if value.tzinfo is None:
        return pytz.utc.localize(value)
    return value.astimezone(pytz.utc)


def format_timestamp(value: datetime) -> str:
    """Serialize a datetime for a JSON record payload"""
    return to_utc(value).isoformat()


def parse_timestamp(value: TimestampValue) -> Optional[datetime]:
    """
    Parse a timestamp stored in a record payload.
    Returns None for missing values, raises ValueError for garbage.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        return to_utc(value)

    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")

    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=pytz.utc)
        except (OverflowError, OSError) as e:
            raise ValueError(f"Invalid timestamp: {value!r}") from e

    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return to_utc(datetime.fromisoformat(text))
        except ValueError as e:
            raise ValueError(f"Invalid timestamp: {value!r}") from e

    raise ValueError(f"Invalid timestamp: {value!r}")


def last_activity_time(deactivated_at: datetime, last_message_at: Optional[datetime]) -> datetime:
    """Most recent of the deactivation time and the last message"""
    if last_message_at is not None and last_message_at > deactivated_at:
        return last_message_at
    return deactivated_at


def inactive_minutes(last_activity: datetime, now: datetime) -> int:
    """Whole minutes elapsed since the last activity (floored)"""
    return (to_utc(now) - to_utc(last_activity)) // timedelta(minutes=1)


def threshold_minutes(data: Dict[str, Any], default: int) -> Union[int, float]:
    """Per-prospect inactivity threshold, falling back to the default when unset or zero"""
    value = data.get("inactivityThreshold")
    if not value or isinstance(value, bool):
        return default
    threshold = float(value)
    # Fractional thresholds are compared as they are, 30.5 waits until minute 31
    return int(threshold) if threshold.is_integer() else threshold


def minutes_until_reactivation(threshold: Union[int, float], minutes: int) -> int:
    """Whole minutes left before the job picks the prospect up, never negative"""
    return max(0, math.ceil(threshold - minutes))


def is_auto_reactivation_enabled(data: Dict[str, Any]) -> bool:
    # Missing flag means enabled, only an explicit true keeps it on otherwise
    return data.get("autoReactivationEnabled", True) is True


def is_bot_active(data: Dict[str, Any]) -> bool:
    return data.get("ia") is not False


def is_reactivation_candidate(data: Dict[str, Any]) -> bool:
    """Bot switched off, deactivation tracked and auto-reactivation not disabled"""
    return (
        data.get("ia") is False
        and data.get("iaDeactivatedAt") not in (None, "")
        and is_auto_reactivation_enabled(data)
    )
