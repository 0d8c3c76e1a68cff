"""Run-time arithmetic for schedules and retries.

Everything here is a pure function of its arguments so the runtime stays
deterministic under an injected clock.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from croniter import croniter

from agent_hires.scheduler.errors import InvalidScheduleError
from agent_hires.scheduler.types import CronSchedule, IntervalSchedule, OnceSchedule, Schedule


BACKOFF_BASE_MS = 1_000
BACKOFF_MAX_MS = 300_000


def validate_cron(expr: str) -> None:
    if not expr or not expr.strip():
        raise InvalidScheduleError("cron schedule needs a non-empty expression")
    try:
        valid = bool(croniter.is_valid(expr))
    except Exception:  # noqa: BLE001
        valid = False
    if not valid:
        raise InvalidScheduleError(f"Invalid cron expression: {expr!r}")


def next_cron_run(expr: str, now: int) -> int:
    """First cron match strictly after ``now`` (UTC), in epoch ms."""
    base = datetime.fromtimestamp(now / 1000.0, tz=timezone.utc)
    next_dt = croniter(expr, base).get_next(datetime)
    next_ms = int(next_dt.timestamp() * 1000)
    if next_ms <= now:
        # Sub-second bases can land on the current match.
        next_dt = croniter(expr, next_dt).get_next(datetime)
        next_ms = int(next_dt.timestamp() * 1000)
    return next_ms


def initial_run_at(schedule: Schedule, now: int) -> int:
    if isinstance(schedule, IntervalSchedule):
        return now
    if isinstance(schedule, OnceSchedule):
        return schedule.at
    if isinstance(schedule, CronSchedule):
        return next_cron_run(schedule.expr, now)
    raise InvalidScheduleError(f"Unsupported schedule: {schedule!r}")


def next_run_after_success(schedule: Schedule, now: int) -> Optional[int]:
    """Next ``next_run_at`` after a successful run, or None when finished.

    Intervals restart from ``now`` rather than the previous due time, so a
    scheduler that was down for a while runs the job once, not once per
    missed interval.
    """
    if isinstance(schedule, OnceSchedule):
        return None
    if isinstance(schedule, IntervalSchedule):
        return now + schedule.every_ms
    if isinstance(schedule, CronSchedule):
        return next_cron_run(schedule.expr, now)
    raise InvalidScheduleError(f"Unsupported schedule: {schedule!r}")


def backoff_ms(attempts: int) -> int:
    """Retry delay after ``attempts`` failures: 1s, 2s, 4s, ... capped at 5 min."""
    if attempts <= 0:
        return 0
    exponent = min(attempts - 1, 32)
    return min(BACKOFF_BASE_MS * (2 ** exponent), BACKOFF_MAX_MS)
