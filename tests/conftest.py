from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from agenda_agents.agents.notification_agent import NotificationScheduler
from agenda_agents.agents.revenue_agent import RevenueAggregator
from agenda_agents.clock import clinic_tz
from agenda_agents.datastore import MemoryDataStore, StaticIdentity
from agenda_agents.kvstore import MemoryKV
from agenda_agents.notifications import MemoryNotificationCenter

SAO_PAULO = "America/Sao_Paulo"


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def tz():
    return clinic_tz(SAO_PAULO)


@pytest.fixture
def local(tz):
    """local(2025, 1, 7, 21) -> aware clinic-time datetime"""

    def _local(year, month, day, hour=0, minute=0, second=0):
        return datetime(year, month, day, hour, minute, second, tzinfo=tz)

    return _local


@pytest.fixture
def clock(local):
    # Tuesday
    return FrozenClock(local(2025, 1, 7, 11, 0))


@pytest.fixture
def store():
    return MemoryDataStore()


@pytest.fixture
def owner():
    return StaticIdentity("u1", owner=True)


@pytest.fixture
def kv():
    return MemoryKV()


@pytest.fixture
def center():
    return MemoryNotificationCenter()


@pytest.fixture
def make_scheduler(store, owner, center, kv, clock, tz):
    def _make(identity=None, **overrides):
        ident = identity or owner
        params = dict(
            store=store,
            identity=ident,
            center=center,
            kv=kv,
            clock=clock,
            tz=tz,
            aggregator=RevenueAggregator.default(store, ident, tz, max_workers=4),
        )
        params.update(overrides)
        return NotificationScheduler(**params)

    return _make
