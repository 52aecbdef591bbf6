"""Shared fixtures: a virtual-time timer facility and an in-memory pool."""

from __future__ import annotations

from typing import Callable, Iterator

import pytest

from appclient.pool import ConnectionPool
from appclient.registry import AppClientRegistry
from appclient.transports import InMemoryTransportFactory


class ManualTimer:
    def __init__(self, due: float, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> bool:
        if self.fired:
            return False
        self.cancelled = True
        return True


class ManualTimerService:
    """Timer facility whose clock only moves when a test calls advance()."""

    def __init__(self) -> None:
        self.now = 0.0
        self.timers: list[ManualTimer] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(self.now + delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> list[ManualTimer]:
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def advance(self, seconds: float) -> None:
        self.now += seconds
        for timer in sorted(self.pending, key=lambda t: t.due):
            if timer.due <= self.now and not timer.cancelled:
                timer.fired = True
                timer.callback()


@pytest.fixture
def timers() -> ManualTimerService:
    return ManualTimerService()


@pytest.fixture
def factory() -> InMemoryTransportFactory:
    return InMemoryTransportFactory()


@pytest.fixture
def pool(factory: InMemoryTransportFactory, timers: ManualTimerService) -> Iterator[ConnectionPool]:
    pool = ConnectionPool(factory, timers=timers)
    yield pool
    pool.close()


@pytest.fixture
def registry(pool: ConnectionPool) -> Iterator[AppClientRegistry]:
    registry = AppClientRegistry(pool)
    yield registry
    registry.close_all()
