"""Schedule expressions for recurring jobs.

Two forms are accepted:

* intervals, ``every 30s`` / ``@every 5m`` / ``every 1h`` / ``every 1d``,
  whose ticks are aligned to the Unix epoch so every instance agrees on them;
* cron expressions (5 fields, or 6 with a trailing seconds field) and the
  ``@hourly``-style aliases understood by ``croniter``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Union

from croniter import croniter

from .errors import InvalidSchedule

_INTERVAL = re.compile(r"^@?every\s+(\d+)\s*([smhd]?)$", re.IGNORECASE)
_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def _utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


@dataclass(frozen=True)
class IntervalSchedule:
    expression: str
    seconds: int

    def latest_tick(self, now: datetime) -> datetime:
        """Most recent tick at or before ``now``."""
        timestamp = int(_utc(now).timestamp())
        return datetime.fromtimestamp(
            timestamp - timestamp % self.seconds, tz=timezone.utc
        )


@dataclass(frozen=True)
class CronSchedule:
    expression: str

    def latest_tick(self, now: datetime) -> datetime:
        """Most recent cron match at or before ``now``."""
        # croniter's get_prev is strict, so start just past the current second
        start = _utc(now).replace(microsecond=0) + timedelta(seconds=1)
        return _utc(croniter(self.expression, start).get_prev(datetime))


Schedule = Union[IntervalSchedule, CronSchedule]


def parse_schedule(expression: str) -> Schedule:
    """Parse ``expression`` into a schedule.

    Raises:
        InvalidSchedule: the expression is neither an interval nor valid cron.
    """
    text = (expression or "").strip()
    match = _INTERVAL.match(text)
    if match:
        seconds = int(match.group(1)) * _UNITS[match.group(2).lower()]
        if seconds <= 0:
            raise InvalidSchedule(f"Interval must be positive: {expression!r}")
        return IntervalSchedule(expression=text, seconds=seconds)
    if text and croniter.is_valid(text):
        return CronSchedule(expression=text)
    raise InvalidSchedule(f"Invalid schedule expression: {expression!r}")


__all__ = ["CronSchedule", "IntervalSchedule", "Schedule", "parse_schedule"]
