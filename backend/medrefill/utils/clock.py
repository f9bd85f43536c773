"""Time helpers shared by models and services.

"Today" is a calendar date in the pharmacy's timezone (``APP_TIMEZONE``);
stored timestamps are always UTC.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from medrefill.config import get_settings

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def app_timezone() -> ZoneInfo:
    tz_name = get_settings().APP_TIMEZONE
    try:
        return ZoneInfo(tz_name)
    except (KeyError, ValueError):
        logger.warning("Unknown APP_TIMEZONE %r, falling back to UTC", tz_name)
        return ZoneInfo("UTC")


def local_today() -> date:
    return datetime.now(app_timezone()).date()


def utc_day_bounds(day: date) -> tuple[datetime, datetime]:
    """Start (inclusive) and end (exclusive) of a local calendar day, in UTC."""
    tz = app_timezone()
    start = datetime.combine(day, datetime.min.time(), tzinfo=tz)
    end = start + timedelta(days=1)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def seconds_until_next_run(now: datetime, hour: int, minute: int = 0) -> float:
    """Seconds from ``now`` (timezone-aware) until the next ``hour:minute``
    wall-clock time in the same timezone.  A run time equal to ``now`` is
    scheduled for the following day.
    """
    next_run = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if now >= next_run:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()
