"""
Send pacing helpers.

Randomised gaps between sends keep blast traffic from looking like a bot,
and the sending-hours window keeps messages out of the night in the
target timezone.
"""

import logging
import random
from datetime import datetime, timedelta
from typing import Dict, Optional

import pytz

import config

logger = logging.getLogger("blast.pacing")


def get_random_interval(min_seconds: int, max_seconds: int) -> int:
    """Uniform integer delay in [min_seconds, max_seconds], both inclusive."""
    if max_seconds < min_seconds:
        min_seconds, max_seconds = max_seconds, min_seconds
    return random.randint(min_seconds, max_seconds)


def _local_now(now: datetime = None) -> datetime:
    tz = pytz.timezone(config.TARGET_TIMEZONE)
    if now is None:
        return datetime.now(tz)
    if now.tzinfo is None:
        now = pytz.utc.localize(now)
    return now.astimezone(tz)


def is_within_sending_hours(now: datetime = None) -> bool:
    """
    True between SENDING_HOUR_START (inclusive) and SENDING_HOUR_END
    (exclusive) in TARGET_TIMEZONE. Naive datetimes are taken as UTC.
    Always True when ENFORCE_SENDING_HOURS is off.
    """
    if not config.ENFORCE_SENDING_HOURS:
        return True
    hour = _local_now(now).hour
    return config.SENDING_HOUR_START <= hour < config.SENDING_HOUR_END


def seconds_until_sending_window(now: datetime = None) -> int:
    """Seconds until the next window opens, 0 if it is open now."""
    if is_within_sending_hours(now):
        return 0
    tz = pytz.timezone(config.TARGET_TIMEZONE)
    local = _local_now(now)
    opens = local.replace(tzinfo=None, hour=config.SENDING_HOUR_START, minute=0, second=0, microsecond=0)
    if local.hour >= config.SENDING_HOUR_END:
        opens = opens + timedelta(days=1)
    # localize() picks the right offset if DST changes overnight
    opens = tz.localize(opens)
    return max(int((opens - local).total_seconds()), 1)


def seconds_until(target: Optional[datetime], now: datetime = None) -> float:
    """Seconds from now until a naive-UTC `target`, never negative."""
    if target is None:
        return 0.0
    now = now or datetime.utcnow()
    return max((target - now).total_seconds(), 0.0)


def local_datetime_context(now: datetime = None) -> Dict[str, str]:
    """Date, time and weekday in TARGET_TIMEZONE, for time-aware message wording."""
    local = _local_now(now)
    return {
        "date": local.strftime("%A, %d %B %Y"),
        "time": local.strftime("%H:%M"),
        "day": local.strftime("%A"),
        "timezone": config.TARGET_TIMEZONE,
    }
