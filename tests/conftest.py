"""Shared fixtures: in-memory database, scripted channel clients, runtime."""

import asyncio
import os
from datetime import datetime, timedelta, timezone

# Settings are read at import time; point them at SQLite before any import.
os.environ.setdefault("POSTGRES_DSN", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("API_KEY", "test-key")
os.environ.setdefault("OTEL_ENABLED", "false")
os.environ.setdefault("OUTBOX_PUBLISHER_ENABLED", "false")
os.environ.setdefault("BACKGROUND_WORKERS_ENABLED", "false")
os.environ.setdefault("RESUME_SESSIONS_ON_START", "false")

import pytest

from salonping.common.config import CommonSettings
from salonping.common.db import init_db, make_engine, make_session_factory
from salonping.common.state_machine import Authenticated, PairingCodeIssued, Ready
from salonping.services.messaging.channel import ChannelClient
from salonping.services.messaging.runtime import MessagingRuntime


API_KEY = "test-key"


def make_settings(**overrides) -> CommonSettings:
    values = {
        "postgres_dsn": "sqlite+pysqlite:///:memory:",
        "api_key": API_KEY,
        "otel_enabled": False,
        "outbox_publisher_enabled": False,
        "background_workers_enabled": False,
        "resume_sessions_on_start": False,
        "pacing_min_seconds": 0.0,
        "pacing_per_char_seconds": 0.0,
        "pacing_max_seconds": 0.0,
        "pacing_jitter_seconds": 0.0,
        "pacing_gap_seconds": 0.0,
    }
    values.update(overrides)
    return CommonSettings(**values)


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


class FakeMonotonic:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class FakeChannelClient(ChannelClient):
    """Scripted client: resumes straight to ready, or waits for `complete_pairing`."""

    def __init__(self, tenant_id, on_event, auto_ready: bool = True) -> None:
        super().__init__(tenant_id, on_event)
        self.auto_ready = auto_ready
        self.identity = "15550001111"
        self.started = False
        self.stop_calls = 0
        self.sent: list[tuple[str, str]] = []
        self.send_errors: list[Exception] = []
        self.send_gate: asyncio.Event | None = None
        self.send_started = asyncio.Event()

    async def start(self) -> None:
        self.started = True
        if self.auto_ready:
            await self.on_event(Authenticated(identity=self.identity))
            await self.on_event(Ready(identity=self.identity))
        else:
            await self.on_event(PairingCodeIssued(code=f"qr-{self.tenant_id}"))

    async def complete_pairing(self) -> None:
        await self.on_event(Authenticated(identity=self.identity))
        await self.on_event(Ready(identity=self.identity))

    async def send_text(self, chat_id: str, body: str) -> str:
        self.send_started.set()
        if self.send_gate is not None:
            await self.send_gate.wait()
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.sent.append((chat_id, body))
        return f"wamid-{self.tenant_id}-{len(self.sent)}"

    async def stop(self) -> None:
        self.stop_calls += 1


class FakeRedis:
    """The handful of redis commands the tenant lease uses."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}

    def set(self, key, value, nx=False, px=None):
        if nx and key in self.values:
            return None
        self.values[key] = value
        return True

    def get(self, key):
        return self.values.get(key)

    def register_script(self, script):
        deletes = "'del'" in script

        def run(keys, args):
            if self.values.get(keys[0]) != args[0]:
                return 0
            if deletes:
                self.values.pop(keys[0])
            return 1

        return run

    def steal(self, key, owner):
        self.values[key] = owner


class FakeChannelFactory:
    def __init__(self, auto_ready: bool = True) -> None:
        self.auto_ready = auto_ready
        self.clients: dict[str, list[FakeChannelClient]] = {}
        self.failing_start: set[str] = set()

    def __call__(self, tenant_id, on_event) -> FakeChannelClient:
        client = FakeChannelClient(tenant_id, on_event, auto_ready=self.auto_ready)
        if tenant_id in self.failing_start:

            async def refuse() -> None:
                raise ConnectionError("bridge unreachable")

            client.start = refuse
        self.clients.setdefault(tenant_id, []).append(client)
        return client

    def latest(self, tenant_id: str) -> FakeChannelClient:
        return self.clients[tenant_id][-1]


@pytest.fixture
def engine():
    engine = make_engine("sqlite+pysqlite:///:memory:")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def channel_factory():
    return FakeChannelFactory()


@pytest.fixture
def runtime(session_factory, channel_factory):
    return MessagingRuntime(make_settings(), session_factory, channel_factory)
