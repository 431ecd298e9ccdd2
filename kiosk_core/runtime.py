"""
Composition root for the kiosk core.

Builds every component once and passes them to each other explicitly.
"""
import asyncio
from datetime import timedelta
from typing import Any, Optional

import httpx
import structlog

from kiosk_core.config import Settings
from kiosk_core.core.auth_session import AuthSession
from kiosk_core.core.events import EventChannel
from kiosk_core.core.idempotency import IdempotencyLedger
from kiosk_core.core.payment_orchestrator import PaymentOrchestrator
from kiosk_core.core.reader_authorization import ReaderAuthorizationCoordinator
from kiosk_core.database import Database
from kiosk_core.integrations.backend_client import BackendClient
from kiosk_core.integrations.reader_sdk import ReaderSDK
from kiosk_core.monitoring.health import HealthCheck
from kiosk_core.storage import SQLCredentialStore
from kiosk_core.workers import MaintenanceWorker

logger = structlog.get_logger(__name__)


class KioskRuntime:
    """
    Owns the kiosk core's components and their lifecycle.

    Without a reader SDK only the session side is built (enough for the
    CLI to log in, log out and inspect state).
    """

    def __init__(
        self,
        settings: Settings,
        reader_sdk: Optional[ReaderSDK] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize kiosk runtime.

        Args:
            settings: Kiosk settings
            reader_sdk: Reader SDK binding (payments disabled when absent)
            http_client: Optional shared HTTP client
        """
        self.settings = settings
        self.events = EventChannel()
        self.database = Database(settings.database_url, echo=settings.database_echo)
        self.store = SQLCredentialStore(self.database)
        self.ledger = IdempotencyLedger(
            self.database,
            retention=timedelta(hours=settings.idempotency_retention_hours),
            prune_margin=timedelta(hours=settings.idempotency_prune_margin_hours),
        )
        self.backend = BackendClient(settings, http_client=http_client, credential_store=self.store)
        self.session = AuthSession(settings, self.backend, self.store, self.events)
        self.health = HealthCheck(self.database, self.backend)

        self.coordinator: Optional[ReaderAuthorizationCoordinator] = None
        self.orchestrator: Optional[PaymentOrchestrator] = None
        if reader_sdk is not None:
            self.coordinator = ReaderAuthorizationCoordinator(
                settings, self.session, reader_sdk, self.events
            )
            self.orchestrator = PaymentOrchestrator(
                settings,
                self.session,
                self.coordinator,
                self.ledger,
                self.backend,
                reader_sdk,
            )

        self.worker = MaintenanceWorker(settings, self.session, self.ledger, self.orchestrator)
        self._started = False

    async def start(self, run_worker: bool = True) -> None:
        """
        Initialize storage, restore the session and verify it with the backend.

        Args:
            run_worker: Also start the periodic maintenance jobs
        """
        if self._started:
            return

        await self.database.init()
        await self.backend.load_remote_config()
        await self.session.load()
        state = await self.session.check_authentication()
        if run_worker:
            self.worker.start()

        self._started = True
        logger.info(
            "kiosk_runtime_started",
            session_state=state.value,
            payments_enabled=self.orchestrator is not None,
        )

    async def stop(self) -> None:
        """Stop background work and release connections."""
        await self.worker.stop()
        await self.session.close()
        await self.backend.aclose()
        await self.database.close()
        self._started = False
        logger.info("kiosk_runtime_stopped")

    async def __aenter__(self) -> "KioskRuntime":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def wait_for_authorization(self) -> bool:
        """
        Wait for the current polling task (if any) to end.

        Returns:
            bool: True if the session ended up authenticated
        """
        task = self.session.poll_task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self.session.is_authenticated
