from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

_INTERVAL_RE = re.compile(r"^every\s+(\d+)\s+(second|minute|hour)s?$", re.IGNORECASE)
_UNIT_SECONDS = {"second": 1, "minute": 60, "hour": 3600}


class ScheduleParseError(ValueError):
    """Describes why a schedule expression was rejected."""

    def __init__(self, expression: str, reason: str) -> None:
        super().__init__(f"invalid schedule {expression!r}: {reason}")
        self.expression = expression
        self.reason = reason


@dataclass(frozen=True)
class IntervalSchedule:
    expression: str
    seconds: int

    def next_fire_after(self, moment: datetime) -> datetime:
        return moment + timedelta(seconds=self.seconds)

    def describe(self) -> str:
        return f"every {self.seconds} seconds"


@dataclass(frozen=True)
class CronSchedule:
    expression: str
    cron_expression: str
    timezone_name: str = "UTC"

    def next_fire_after(self, moment: datetime) -> datetime:
        tz = ZoneInfo(self.timezone_name)
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        fire_at = croniter(self.cron_expression, moment.astimezone(tz)).get_next(datetime)
        return fire_at.astimezone(timezone.utc)

    def describe(self) -> str:
        return f"cron {self.expression!r} ({self.timezone_name})"


Schedule = Union[IntervalSchedule, CronSchedule]


@dataclass(frozen=True)
class ScheduleParseResult:
    schedule: Schedule | None = None
    error: ScheduleParseError | None = None

    @property
    def ok(self) -> bool:
        return self.schedule is not None


def _to_croniter_fields(fields: list[str]) -> str:
    if len(fields) == 6:
        # Seconds come first in the configured form; croniter expects them last.
        fields = fields[1:] + fields[:1]
    return " ".join(fields)


def parse_schedule(expression: str | None, *, timezone_name: str = "UTC") -> ScheduleParseResult:
    """Parse ``every N seconds|minutes|hours``, 5-field cron, or 6-field cron with seconds first."""
    raw = (expression or "").strip()
    if not raw:
        return ScheduleParseResult(error=ScheduleParseError(raw, "expression is empty"))

    interval = _INTERVAL_RE.match(raw)
    if interval:
        amount = int(interval.group(1))
        if amount <= 0:
            return ScheduleParseResult(error=ScheduleParseError(raw, "interval must be positive"))
        return ScheduleParseResult(
            schedule=IntervalSchedule(expression=raw, seconds=amount * _UNIT_SECONDS[interval.group(2).lower()])
        )

    fields = raw.split()
    if len(fields) not in (5, 6):
        return ScheduleParseResult(error=ScheduleParseError(raw, "expected 5 or 6 cron fields"))

    try:
        ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError):
        return ScheduleParseResult(error=ScheduleParseError(raw, f"unknown timezone {timezone_name!r}"))

    cron_expression = _to_croniter_fields(fields)
    if not croniter.is_valid(cron_expression):
        return ScheduleParseResult(error=ScheduleParseError(raw, "not a valid cron expression"))
    return ScheduleParseResult(
        schedule=CronSchedule(expression=raw, cron_expression=cron_expression, timezone_name=timezone_name)
    )
