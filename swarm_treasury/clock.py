"""
Injectable clock so scheduler timing can be driven without wall-clock delay.

SystemClock is used in production. ManualClock only moves when advance() is
awaited, which lets tests step a heartbeat timer deterministically.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Real time, UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class ManualClock:
    """Virtual time that only advances when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._sleepers: list[tuple[datetime, asyncio.Future]] = []

    def now(self) -> datetime:
        return self._now

    async def sleep(self, seconds: float) -> None:
        future = asyncio.get_running_loop().create_future()
        self._sleepers.append((self._now + timedelta(seconds=seconds), future))
        await future

    def set(self, when: datetime) -> None:
        """Jump the clock without waking sleepers. For window tests."""
        self._now = when

    async def advance(self, seconds: float) -> None:
        """Move time forward and wake every sleeper whose deadline passed."""
        self._now += timedelta(seconds=seconds)
        due = [(d, f) for d, f in self._sleepers if d <= self._now]
        self._sleepers = [(d, f) for d, f in self._sleepers if d > self._now and not f.done()]
        for _, future in due:
            if not future.done():
                future.set_result(None)
        await settle()

    @property
    def pending_sleepers(self) -> int:
        return len([f for _, f in self._sleepers if not f.done()])


async def settle(rounds: int = 10) -> None:
    """Yield to the event loop until woken tasks have had a chance to run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
