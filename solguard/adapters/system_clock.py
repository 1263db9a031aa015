"""System clock adapter — implements Clock."""

from __future__ import annotations

from datetime import datetime, tzinfo
from zoneinfo import ZoneInfo


class SystemClock:
    """Wall-clock time in the configured timezone."""

    def __init__(self, tz: tzinfo | str = "UTC") -> None:
        self._tz = ZoneInfo(tz) if isinstance(tz, str) else tz

    @property
    def tz(self) -> tzinfo:
        return self._tz

    def now(self) -> datetime:
        return datetime.now(self._tz)
