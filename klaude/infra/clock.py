"""Time source for polling loops and lock retries.

Everything that waits or measures elapsed time takes a clock, so tests can
swap in a fake one and advance time without sleeping.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...

    def utcnow(self) -> datetime: ...


class SystemClock:
    """Real wall and monotonic time."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def utcnow(self) -> datetime:
        return datetime.now(timezone.utc)


def iso_now(clock: Clock) -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a ``Z`` suffix."""
    return clock.utcnow().isoformat(timespec="milliseconds").replace("+00:00", "Z")
