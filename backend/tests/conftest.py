"""Shared fixtures: SQLite store, in-memory Redis and device channel doubles."""

import asyncio
import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from models import init_models
from services.engine import ValveEngine
from services.gateway import DeviceChannel


class FakeRedis:
    """The handful of Redis commands the engine uses, kept in memory."""

    def __init__(self):
        self.data: dict[str, object] = {}
        self.published: list[tuple[str, str]] = []

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value):
        self.data[key] = value
        return True

    async def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0

    async def incr(self, key):
        self.data[key] = int(self.data.get(key, 0)) + 1
        return self.data[key]

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 0

    def messages(self, channel: str) -> list[dict]:
        return [json.loads(m) for c, m in self.published if c == channel]


class FakeChannel(DeviceChannel):
    """Records outbound commands; optional responder plays the controller."""

    def __init__(self):
        self.sent: list[tuple[str, dict]] = []
        self.fail = False
        self.responder = None
        self.inbox: asyncio.Queue = asyncio.Queue()

    async def publish(self, topic, payload, qos=1):
        if self.fail:
            raise ConnectionError("broker unreachable")
        self.sent.append((topic, dict(payload)))
        if self.responder is not None:
            await self.responder(topic, payload)

    async def messages(self):
        while True:
            yield await self.inbox.get()

    def commands(self) -> list[dict]:
        return [payload for topic, payload in self.sent if topic.endswith("/command")]


class FakeController:
    """Acknowledges every command it receives, like a healthy manifold controller."""

    def __init__(self, engine: ValveEngine, channel: FakeChannel):
        self.engine = engine
        channel.responder = self.on_command

    async def on_command(self, topic, payload):
        code = topic.split("/")[1]
        await self.engine.gateway.handle_message(
            f"manifolds/{code}/ack", json.dumps({"commandId": payload["commandId"]}),
        )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'irrigation.db'}")
    await init_models(db_engine)
    yield async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    await db_engine.dispose()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def channel():
    return FakeChannel()


@pytest_asyncio.fixture
async def engine(session_factory, fake_redis, channel):
    eng = ValveEngine(
        session_factory,
        fake_redis,
        channel,
        pulse_duration=0.05,
        tick_interval=0.05,
        max_attempts=3,
        ack_timeout=0.05,
        retry_delay=0.01,
        heartbeat_timeout=0.5,
        presence_interval=0.05,
        store_retry_delay=0,
    )
    yield eng
    await eng.stop()


@pytest.fixture
def controller(engine, channel):
    return FakeController(engine, channel)


@pytest_asyncio.fixture
async def manifold(engine):
    return await engine.create_manifold("MANIFOLD-001", "North field", "Block A")


@pytest.fixture
def valve_ids(manifold):
    return [v.id for v in manifold.valves]


async def settle(engine: ValveEngine) -> None:
    """Let in-flight dispatches and snapshot publishes finish."""
    await engine.state_machine.drain()
    await engine.fanout.drain()
