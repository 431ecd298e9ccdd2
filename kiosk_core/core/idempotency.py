"""
Idempotency ledger for at-most-once payment submission.

Maps a transaction id to the idempotency key sent to the payment platform.
Every retry of the same logical transaction reuses the same key, including
retries after a process restart, so the platform deduplicates them.
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from kiosk_core.database import Database, IdempotencyRecord
from kiosk_core.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite stores datetimes without an offset; compare everything in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class IdempotencyLedger:
    """
    Persistent transaction id -> idempotency key map with age-based pruning.

    Records carry their own ``created_at``; transaction ids are opaque.
    """

    def __init__(
        self,
        database: Database,
        retention: timedelta = timedelta(hours=24),
        prune_margin: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize idempotency ledger.

        Args:
            database: Database holding ``idempotency_records``
            retention: How long a key must stay reusable
            prune_margin: Extra time kept beyond the retention window
            clock: Returns the current UTC time
        """
        self.database = database
        self.retention = retention
        self.prune_margin = prune_margin
        self._clock = clock

    async def get_key(self, transaction_id: str) -> Optional[str]:
        """Existing key for a transaction, if any."""
        async with self.database.session() as session:
            result = await session.execute(
                select(IdempotencyRecord.idempotency_key).where(
                    IdempotencyRecord.transaction_id == transaction_id
                )
            )
            return result.scalar_one_or_none()

    async def get_or_create_key(self, transaction_id: str) -> str:
        """
        Return the transaction's key, creating and persisting one on first use.

        Args:
            transaction_id: Logical transaction identifier

        Returns:
            str: Idempotency key (stable for the life of the record)
        """
        existing = await self.get_key(transaction_id)
        if existing is not None:
            metrics.record_idempotency_lookup("hit")
            logger.info("idempotency_key_reused", transaction_id=transaction_id)
            return existing

        key = str(uuid.uuid4())
        try:
            async with self.database.session() as session:
                session.add(
                    IdempotencyRecord(
                        transaction_id=transaction_id,
                        idempotency_key=key,
                        created_at=_as_utc(self._clock()),
                    )
                )
        except IntegrityError:
            # Lost a race with a concurrent insert for the same transaction
            winner = await self.get_key(transaction_id)
            if winner is None:
                raise
            metrics.record_idempotency_lookup("hit")
            logger.info("idempotency_key_race_resolved", transaction_id=transaction_id)
            return winner

        metrics.record_idempotency_lookup("miss")
        logger.info("idempotency_key_created", transaction_id=transaction_id)
        return key

    async def remove(self, transaction_id: str) -> bool:
        """
        Drop a record after final settlement.

        Returns:
            bool: True if a record was removed
        """
        async with self.database.session() as session:
            result = await session.execute(
                delete(IdempotencyRecord).where(
                    IdempotencyRecord.transaction_id == transaction_id
                )
            )
            removed = result.rowcount > 0

        if removed:
            logger.info("idempotency_key_removed", transaction_id=transaction_id)
        return removed

    async def prune(self, now: Optional[datetime] = None) -> int:
        """
        Delete records older than the retention window plus margin.

        Args:
            now: Reference time (defaults to the ledger clock)

        Returns:
            int: Number of records removed
        """
        reference = _as_utc(now or self._clock())
        cutoff = reference - self.retention - self.prune_margin

        async with self.database.session() as session:
            result = await session.execute(
                delete(IdempotencyRecord).where(IdempotencyRecord.created_at < cutoff)
            )
            removed = result.rowcount or 0

        metrics.record_idempotency_pruned(removed)
        logger.info("idempotency_ledger_pruned", removed=removed, cutoff=cutoff.isoformat())
        return removed

    async def count(self) -> int:
        async with self.database.session() as session:
            result = await session.execute(select(IdempotencyRecord.transaction_id))
            return len(result.all())
