"""
Periodic maintenance jobs for a running kiosk.

Jobs:
- Idempotency ledger prune (on start and daily)
- Payment path health check (every 30s)
- Proactive token refresh check
- Offline payment queue check
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional

import structlog

from kiosk_core.config import Settings
from kiosk_core.core.auth_session import AuthSession
from kiosk_core.core.idempotency import IdempotencyLedger
from kiosk_core.core.payment_orchestrator import PaymentOrchestrator

logger = structlog.get_logger(__name__)


@dataclass
class MaintenanceJob:
    """A job run every ``interval_seconds``."""

    name: str
    interval_seconds: float
    run: Callable[[], Awaitable[Any]]
    run_on_start: bool = False


class MaintenanceWorker:
    """
    Runs maintenance jobs as asyncio tasks.

    A failing job is logged and runs again at its next interval.
    """

    def __init__(
        self,
        settings: Settings,
        session: AuthSession,
        ledger: IdempotencyLedger,
        orchestrator: Optional[PaymentOrchestrator] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize maintenance worker.

        Args:
            settings: Kiosk settings
            session: Auth session (token refresh checks)
            ledger: Idempotency ledger (pruning)
            orchestrator: Payment orchestrator, when a reader SDK is present
            sleep: Awaitable sleep (injectable for tests)
        """
        self.settings = settings
        self._sleep = sleep
        self._tasks: List[asyncio.Task] = []

        self.jobs = [
            MaintenanceJob(
                "prune_ledger",
                settings.idempotency_prune_interval_seconds,
                ledger.prune,
                run_on_start=True,
            ),
            MaintenanceJob(
                "token_refresh_check",
                settings.token_refresh_check_interval_seconds,
                session.refresh_if_needed,
                run_on_start=True,
            ),
        ]
        if orchestrator is not None:
            self.jobs.extend(
                [
                    MaintenanceJob(
                        "payment_health_check",
                        settings.payment_health_check_interval_seconds,
                        orchestrator.perform_health_check,
                    ),
                    MaintenanceJob(
                        "offline_queue_check",
                        settings.offline_check_interval_seconds,
                        orchestrator.check_offline_payments,
                        run_on_start=True,
                    ),
                ]
            )

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        """Start one task per job."""
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._run_periodic(job), name=f"maintenance:{job.name}")
            for job in self.jobs
        ]
        logger.info("maintenance_worker_started", jobs=[job.name for job in self.jobs])

    async def run_job(self, job: MaintenanceJob) -> None:
        """Run a job once, logging (not raising) failures."""
        try:
            result = await job.run()
            logger.debug("maintenance_job_completed", job=job.name, result=result)
        except Exception as e:
            logger.error("maintenance_job_failed", job=job.name, error=str(e))

    async def _run_periodic(self, job: MaintenanceJob) -> None:
        if job.run_on_start:
            await self.run_job(job)
        while True:
            await self._sleep(job.interval_seconds)
            await self.run_job(job)

    async def stop(self) -> None:
        """Cancel all job tasks and wait for them to finish."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("maintenance_worker_stopped")
