"""Clock port — source of the current time."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol


class Clock(Protocol):
    """Returns timezone-aware instants."""

    def now(self) -> datetime: ...
