from datetime import datetime, timedelta
from typing import Optional, Protocol
from zoneinfo import ZoneInfo

from config import get_settings


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock time in the configured timezone, as a naive local datetime."""

    def __init__(self, timezone: Optional[str] = None) -> None:
        self.tz = ZoneInfo(timezone or get_settings().timezone)

    def now(self) -> datetime:
        return datetime.now(self.tz).replace(tzinfo=None)


class FixedClock:
    def __init__(self, current: datetime) -> None:
        self.current = current

    def now(self) -> datetime:
        return self.current

    def advance(self, delta: timedelta) -> None:
        self.current = self.current + delta
