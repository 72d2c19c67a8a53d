"""
Clock — the single source of "now" and of sleeping for pipeline workers.

Workers take a Clock instead of calling datetime.now()/asyncio.sleep()
directly so debounce windows, leases, cooldowns and delay steps can be
exercised deterministically.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone


class Clock:
    """Wall clock backed by asyncio."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class ManualClock(Clock):
    """
    Clock that only moves when told to. sleep() advances time instantly
    (and yields to the loop), so a delay step of N seconds is observable
    as a timestamp gap of N seconds without any real waiting.
    """

    def __init__(self, start: datetime = None):
        self._now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float = 0, **delta) -> datetime:
        self._now = self._now + timedelta(seconds=seconds, **delta)
        return self._now

    def set(self, moment: datetime) -> None:
        self._now = moment

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(max(0.0, seconds))
        await asyncio.sleep(0)


_default = Clock()


def system_clock() -> Clock:
    return _default
