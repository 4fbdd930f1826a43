"""Cron triggers for the recurring jobs, evaluated in the scheduler timezone."""

from datetime import datetime, tzinfo
from typing import Optional

from apscheduler.triggers.cron import CronTrigger


def daily_at(hour: int, minute: int, tz: tzinfo) -> CronTrigger:
    """Once a day at hour:minute."""
    if not 0 <= hour <= 23 or not 0 <= minute <= 59:
        raise ValueError(f"invalid daily time {hour}:{minute}")
    return CronTrigger(hour=hour, minute=minute, timezone=tz)


def every_minutes(minutes: int, tz: tzinfo) -> CronTrigger:
    """Every ``minutes`` minutes, aligned to the top of the hour."""
    if not 1 <= minutes <= 59:
        raise ValueError(f"interval must be between 1 and 59 minutes, got {minutes}")
    return CronTrigger(minute=f"*/{minutes}", timezone=tz)


def hourly_at(minute: int, tz: tzinfo) -> CronTrigger:
    """Once an hour at the given minute."""
    if not 0 <= minute <= 59:
        raise ValueError(f"invalid minute {minute}")
    return CronTrigger(minute=minute, timezone=tz)


def next_fire(trigger: CronTrigger, now: datetime) -> Optional[datetime]:
    """First fire time at or after ``now``."""
    return trigger.get_next_fire_time(None, now)
