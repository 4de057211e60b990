from __future__ import annotations
import os
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./ringside-test.db")
os.environ.setdefault("NOTIFY_URL", "")

from datetime import datetime, timedelta, timezone
import pytest
import pytest_asyncio
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from ringside.db import Base
import ringside.models.challenge  # ensure models are registered
from ringside.services.container import build_services
from ringside.services.notifier import ChallengeNotifier

T0 = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Ticks one millisecond per read so consecutive writes get distinct timestamps."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        self.now += timedelta(milliseconds=1)
        return self.now

    def advance(self, **kw) -> datetime:
        self.now += timedelta(**kw)
        return self.now


class RecordingNotifier(ChallengeNotifier):
    def __init__(self):
        super().__init__(url="")
        self.sent: list[tuple[str, str]] = []

    async def send(self, message: str, challenge_id: str) -> bool:
        self.sent.append((message, challenge_id))
        return True


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ringside.db'}", poolclass=pool.NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def services(session_factory, notifier, clock):
    return build_services(session_factory, notifier=notifier, clock=clock)
