"""Shared fixtures: a fixed clock, an in-memory store and two provisioned users."""

from datetime import datetime, timedelta, timezone
from typing import List, Tuple

import pytest
from pydantic import BaseModel

from meetd.calendar import StaticCalendar
from meetd.config import Settings
from meetd.keys import KeyCustody
from meetd.models import UserRecord
from meetd.proposals import ProposalEngine
from meetd.replay import ReplayGuard
from meetd.sealing import Sealer
from meetd.storage import MemoryStore

NOW = datetime(2026, 2, 3, 8, 0, tzinfo=timezone.utc)
SLOT = datetime(2026, 2, 3, 10, 0, tzinfo=timezone.utc)
EXPIRES = datetime(2026, 2, 10, 0, 0, tzinfo=timezone.utc)
SECRET = "test-server-secret-0123456789abcdef"


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self):
        self.sent: List[Tuple[str, BaseModel]] = []

    def notify(self, user: UserRecord, event: BaseModel) -> None:
        self.sent.append((user.email, event))

    def events(self, name: str) -> List[Tuple[str, BaseModel]]:
        return [(email, e) for email, e in self.sent if e.event == name]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        server_secret=SECRET,
        storage="memory",
        credential_hash_strength="min",
        sweep_interval_seconds=0,
        allow_open_registration=True,
        public_url="http://meetd.test",
        min_lead_minutes=0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def sealer() -> Sealer:
    return Sealer(SECRET)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def calendar() -> StaticCalendar:
    return StaticCalendar()


@pytest.fixture
def custody(store, sealer, clock) -> KeyCustody:
    return KeyCustody(store, sealer, hash_strength="min", clock=clock)


@pytest.fixture
def engine(store, custody, notifier, calendar, clock) -> ProposalEngine:
    return ProposalEngine(
        store,
        custody,
        ReplayGuard(store),
        notifier,
        calendar=calendar,
        public_url="http://meetd.test",
        clock=clock,
    )


@pytest.fixture
def alice(custody) -> UserRecord:
    user, _ = custody.provision("alice@example.com")
    return user


@pytest.fixture
def bob(custody) -> UserRecord:
    user, _ = custody.provision("bob@example.com")
    return user


@pytest.fixture
def carol(custody) -> UserRecord:
    user, _ = custody.provision("carol@example.com")
    return user
