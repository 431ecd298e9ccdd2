"""
Pytest configuration and fixtures for kiosk core tests.
"""
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio

from kiosk_core.config import Settings
from kiosk_core.core.auth_session import AuthSession
from kiosk_core.core.events import EventChannel
from kiosk_core.core.idempotency import IdempotencyLedger
from kiosk_core.core.payment_orchestrator import PaymentOrchestrator
from kiosk_core.core.reader_authorization import ReaderAuthorizationCoordinator
from kiosk_core.database import Database
from kiosk_core.integrations.backend_client import BackendClient
from kiosk_core.storage import MemoryCredentialStore
from tests.fakes import BackendStub, EventRecorder, FakeClock, FakeReaderSDK, FakeSleeper


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast tests without I/O beyond fakes")
    config.addinivalue_line("markers", "integration: tests against a real SQLite database")


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a stubbed backend and a per-test database."""
    return Settings(
        backend_base_url="https://backend.test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'kiosk.db'}",
        log_json=False,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper(clock: FakeClock) -> FakeSleeper:
    return FakeSleeper(clock)


@pytest.fixture
def store() -> MemoryCredentialStore:
    return MemoryCredentialStore()


@pytest.fixture
def events() -> EventChannel:
    return EventChannel()


@pytest.fixture
def recorder(events: EventChannel) -> EventRecorder:
    return EventRecorder(events)


@pytest.fixture
def backend_stub() -> BackendStub:
    return BackendStub()


@pytest_asyncio.fixture
async def http_client(backend_stub: BackendStub) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client whose transport is the scripted backend."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(backend_stub.handler))
    yield client
    await client.aclose()


@pytest.fixture
def backend(
    settings: Settings, http_client: httpx.AsyncClient, store: MemoryCredentialStore
) -> BackendClient:
    return BackendClient(settings, http_client=http_client, credential_store=store)


@pytest_asyncio.fixture
async def session(
    settings: Settings,
    backend: BackendClient,
    store: MemoryCredentialStore,
    events: EventChannel,
    clock: FakeClock,
    sleeper: FakeSleeper,
) -> AsyncGenerator[AuthSession, None]:
    """Loaded auth session; background tasks are cancelled afterwards."""
    auth_session = AuthSession(settings, backend, store, events, clock=clock, sleep=sleeper)
    await auth_session.load()
    yield auth_session
    await auth_session.close()


@pytest_asyncio.fixture
async def database(settings: Settings) -> AsyncGenerator[Database, None]:
    """Fresh SQLite database with all tables created."""
    db = Database(settings.database_url)
    await db.init()
    yield db
    await db.close()


@pytest.fixture
def ledger(database: Database, clock: FakeClock) -> IdempotencyLedger:
    return IdempotencyLedger(database, clock=clock)


@pytest.fixture
def sdk() -> FakeReaderSDK:
    return FakeReaderSDK()


@pytest.fixture
def coordinator(
    settings: Settings,
    session: AuthSession,
    sdk: FakeReaderSDK,
    events: EventChannel,
    sleeper: FakeSleeper,
) -> ReaderAuthorizationCoordinator:
    return ReaderAuthorizationCoordinator(settings, session, sdk, events, sleep=sleeper)


@pytest.fixture
def orchestrator(
    settings: Settings,
    session: AuthSession,
    coordinator: ReaderAuthorizationCoordinator,
    ledger: IdempotencyLedger,
    backend: BackendClient,
    sdk: FakeReaderSDK,
    clock: FakeClock,
) -> PaymentOrchestrator:
    return PaymentOrchestrator(
        settings, session, coordinator, ledger, backend, sdk, clock=clock
    )
