"""Business-timezone clock shared by services and scheduled jobs."""

import logging
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)


def load_timezone(name: str) -> ZoneInfo:
    """Load a timezone, falling back to UTC when the name is unknown."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Failed to load timezone %s, using UTC", name)
        return ZoneInfo("UTC")


class Clock:
    """Source of "now" in the configured timezone.

    Stored timestamps are naive local times, so ``now()`` drops tzinfo;
    ``aware_now()`` keeps it for scheduling math.
    """

    def __init__(self, tz: ZoneInfo):
        self.tz = tz

    @classmethod
    def from_name(cls, name: str) -> "Clock":
        return cls(load_timezone(name))

    def aware_now(self) -> datetime:
        return datetime.now(self.tz)

    def now(self) -> datetime:
        return self.aware_now().replace(tzinfo=None)

    def localize(self, value: datetime) -> datetime:
        """Convert an aware datetime to a naive local one."""
        if value.tzinfo is None:
            return value
        return value.astimezone(self.tz).replace(tzinfo=None)


class FixedClock(Clock):
    """Clock frozen at a given instant. Used by manual runs and tests."""

    def __init__(self, moment: datetime, tz: ZoneInfo):
        super().__init__(tz)
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=tz)
        self.moment = moment

    def aware_now(self) -> datetime:
        return self.moment

    def advance(self, **delta) -> None:
        self.moment = self.moment + timedelta(**delta)
