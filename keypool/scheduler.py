"""Lazy, time-windowed usage resets."""

import logging
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional

from keypool.models import (
    RESET_DAILY,
    RESET_HOURLY,
    RESET_MONTHLY,
    RESET_NEVER,
    RESET_WEEKLY,
    Service,
)

logger = logging.getLogger(__name__)

WEEKLY_RESET_DAYS = 7


def _localize(value: datetime, tz: tzinfo) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(tz)


def should_reset(
    frequency: str,
    last_reset: datetime,
    now: datetime,
    tz: Optional[tzinfo] = None,
) -> bool:
    """Decide whether a counter last zeroed at ``last_reset`` is due at ``now``.

    Hourly, daily and monthly cadences reset when a calendar boundary has been
    crossed in ``tz`` (UTC when omitted). Weekly resets once seven whole days
    have elapsed since the last reset.
    """
    tz = tz or timezone.utc
    current = _localize(now, tz)
    previous = _localize(last_reset, tz)

    if frequency == RESET_HOURLY:
        return (current.year, current.month, current.day, current.hour) != (
            previous.year,
            previous.month,
            previous.day,
            previous.hour,
        )
    if frequency == RESET_DAILY:
        return current.date() != previous.date()
    if frequency == RESET_WEEKLY:
        # elapsed time in UTC; DST shifts in tz must not count
        elapsed = _localize(now, timezone.utc) - _localize(last_reset, timezone.utc)
        elapsed_days = elapsed // timedelta(days=1)
        return elapsed_days >= WEEKLY_RESET_DAYS
    if frequency == RESET_MONTHLY:
        return (current.year, current.month) != (previous.year, previous.month)
    return False


def reconcile(now: datetime, service: Service, tz: Optional[tzinfo] = None) -> bool:
    """Zero the counters of every key in ``service`` whose window has rolled over.

    Keys that have never been reset get ``now`` as their reset time without
    touching their counter. Returns True if any key changed.
    """
    if service.reset_frequency == RESET_NEVER:
        return False

    changed = False
    for api_key in service.keys:
        if api_key.last_reset_time is None:
            api_key.last_reset_time = now
            changed = True
            continue

        if should_reset(service.reset_frequency, api_key.last_reset_time, now, tz):
            logger.info(
                "Resetting usage for key %s (service=%s, reset=%s, usage=%d)",
                api_key.key_prefix(),
                service.name,
                service.reset_frequency,
                api_key.usage_count,
            )
            api_key.usage_count = 0
            api_key.last_reset_time = now
            changed = True

    return changed
