# tests/conftest.py
import asyncio
import sqlite3
from datetime import datetime
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from factories import CARRIER_SECRET, INTERNAL_SECRET, STRIPE_SECRET
from reconciler.collaborators import EmailSender, LabelGenerator, LabelResult, SendResult
from reconciler.config import Settings
from reconciler.main import create_app
from reconciler.schema import create_schema

# aiosqlite stores aware datetimes as ISO text.
sqlite3.register_adapter(datetime, lambda v: v.isoformat())


# ==========================
# Collaborator doubles
# ==========================


class FakeRedis:
    """Enough of redis.asyncio.Redis for the correlation memo."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("redis unavailable")

    async def get(self, key):
        self._check()
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.store[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        self._check()
        return sum(1 for k in keys if self.store.pop(k, None) is not None)

    async def aclose(self):
        return None


class RecordingEmailSender(EmailSender):
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.fail_kinds: set[str] = set()

    async def send(self, kind, recipient, context):
        if kind in self.fail_kinds:
            return SendResult(success=False, error="provider rejected")
        self.sent.append({"kind": kind, "recipient": recipient, "context": context})
        return SendResult(success=True, id=f"email-{len(self.sent)}")

    def kinds(self) -> list[str]:
        return [m["kind"] for m in self.sent]


class StubLabelGenerator(LabelGenerator):
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.error: Exception | None = None
        self.delay = 0.0

    async def create_label(self, return_id, order, return_items):
        self.calls.append(return_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return LabelResult(
            label_url=f"https://labels.test/{return_id}.pdf",
            tracking_number=f"TRK-{return_id}",
            tracking_url=f"https://track.test/TRK-{return_id}",
            parcel_id=f"9{len(self.calls)}00",
        )


# ==========================
# Store / app fixtures
# ==========================


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'reconciler.db'}",
        poolclass=NullPool,
    )
    await create_schema(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine: AsyncEngine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def settings(engine: AsyncEngine) -> Settings:
    return Settings(
        database_url=str(engine.url),
        stripe_webhook_secret=STRIPE_SECRET,
        carrier_webhook_secret=CARRIER_SECRET,
        internal_api_secret=INTERNAL_SECRET,
        http_timeout_seconds=1.0,
        notify_timeout_seconds=1.0,
    )


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def label_generator() -> StubLabelGenerator:
    return StubLabelGenerator()


@pytest.fixture
def app(settings, engine, fake_redis, email_sender, label_generator):
    return create_app(
        settings,
        engine=engine,
        redis=fake_redis,
        email_sender=email_sender,
        label_generator=label_generator,
    )


@pytest.fixture
def services(app):
    return app.state.services


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


