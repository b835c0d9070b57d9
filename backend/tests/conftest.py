"""Shared test fixtures.

Sets environment variables BEFORE any unibox imports so that
``unibox.config.settings`` resolves without a real .env file, Redis or
PostgreSQL.
"""

import os

# --- Environment setup (must happen before unibox imports) ----------------
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("ENABLED_PLATFORMS", "whatsapp,whatsapp-business,gmail")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("GMAIL_REFRESH_TOKEN", "test-refresh-token")
os.environ.setdefault("PUBSUB_TOPIC", "projects/test-project/topics/gmail-push")
os.environ.setdefault("PUBSUB_VERIFICATION_TOKEN", "test-verification-token")
os.environ.setdefault("INGEST_API_KEY", "test-ingest-api-key")
os.environ.setdefault("BRIDGE_TOKEN", "test-bridge-token")
os.environ.setdefault("USE_REDIS_LOCKS", "false")
os.environ.setdefault("USE_EVENT_RELAY", "false")

# --- Now it's safe to import unibox modules -------------------------------
import pytest
from sqlalchemy.orm import sessionmaker
from starlette.testclient import TestClient

from unibox.config import settings
from unibox.core import build_core
from unibox.database import init_db, make_engine
from unibox.main import create_app
from unibox.schemas.messages import Platform
from unibox.services.ingest_service import IngestionPipeline
from unibox.services.message_store import MessageStore
from unibox.services.notification_bus import NotificationBus
from unibox.services.platforms import FetchedBatch, PlatformRegistry, PlatformVariant


# ── Fake platform clients ─────────────────────────────────────────────────────


class FakeClient:
    """Records what the supervisor asks of it; tests drive its callbacks."""

    def __init__(self) -> None:
        self.callbacks = None
        self.started = 0
        self.stopped = 0
        self.sent: list[tuple] = []
        self.fetch_cursors: list = []
        self.batch = FetchedBatch(payloads=[], cursor=None)
        self.send_error: Exception | None = None
        self.fetch_error: Exception | None = None

    def start(self, callbacks) -> None:
        self.started += 1
        self.callbacks = callbacks

    def stop(self) -> None:
        self.stopped += 1

    def send_message(self, target, body, subject=None):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((target, body, subject))
        return {"id": f"sent-{len(self.sent)}"}

    def fetch_batch(self, since_cursor=None):
        self.fetch_cursors.append(since_cursor)
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.batch


class FakeVariant(PlatformVariant):
    def __init__(self, platform: Platform, client: FakeClient, sync_on_ready: bool = False) -> None:
        self.platform = platform
        self.sync_on_ready = sync_on_ready
        self.client = client

    def build_client(self):
        return self.client


# ── Database ──────────────────────────────────────────────────────────────────


@pytest.fixture()
def engine(tmp_path):
    """File-backed SQLite per test so platform threads share one database."""
    eng = make_engine(f"sqlite:///{tmp_path / 'unibox.db'}")
    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


# ── Core services ─────────────────────────────────────────────────────────────


@pytest.fixture()
def store(session_factory):
    return MessageStore(session_factory)


@pytest.fixture()
def bus():
    return NotificationBus(delivery_attempts=3)


@pytest.fixture()
def registry():
    return PlatformRegistry.from_settings(settings)


@pytest.fixture()
def pipeline(store, bus, registry):
    return IngestionPipeline(store, bus, registry)


@pytest.fixture()
def recorded(bus):
    """Every event published on the bus, in delivery order."""
    events = []
    for topic in ("message.new", "connection.qr", "connection.ready", "connection.status"):
        bus.subscribe(topic, events.append)
    return events


@pytest.fixture()
def fake_clients():
    return {
        Platform.WHATSAPP: FakeClient(),
        Platform.WHATSAPP_BUSINESS: FakeClient(),
        Platform.GMAIL: FakeClient(),
    }


@pytest.fixture()
def fake_registry(fake_clients):
    return PlatformRegistry([
        FakeVariant(Platform.WHATSAPP, fake_clients[Platform.WHATSAPP]),
        FakeVariant(Platform.WHATSAPP_BUSINESS, fake_clients[Platform.WHATSAPP_BUSINESS]),
        FakeVariant(Platform.GMAIL, fake_clients[Platform.GMAIL], sync_on_ready=True),
    ])


@pytest.fixture()
def core(session_factory, fake_registry):
    """A wired core whose platforms talk to ``FakeClient`` instances."""
    c = build_core(settings, session_factory, registry=fake_registry)
    c.start()
    yield c
    c.stop()


# ── API ───────────────────────────────────────────────────────────────────────


@pytest.fixture()
def client(core):
    """FastAPI TestClient bound to the test core."""
    with TestClient(create_app(core)) as c:
        yield c


@pytest.fixture()
def ingest_headers():
    return {"X-Ingest-Key": "test-ingest-api-key"}


@pytest.fixture()
def bridge_headers():
    return {"X-Bridge-Token": "test-bridge-token"}
