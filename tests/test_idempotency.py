"""
Tests for the idempotency ledger against a real SQLite database.
"""
from datetime import timedelta

import pytest

from kiosk_core.core.idempotency import IdempotencyLedger
from kiosk_core.database import Database


class TestIdempotencyLedger:
    """Test suite for IdempotencyLedger."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_same_transaction_same_key(self, ledger) -> None:
        """Test that repeated lookups return the key created first."""
        first = await ledger.get_or_create_key("txn_12345678_1767268800")
        second = await ledger.get_or_create_key("txn_12345678_1767268800")
        other = await ledger.get_or_create_key("txn_87654321_1767268800")

        assert first == second
        assert other != first
        assert await ledger.count() == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_key_survives_restart(self, settings, ledger, clock) -> None:
        """Test that a new process sees keys persisted by the previous one."""
        key = await ledger.get_or_create_key("txn_restart")

        restarted = Database(settings.database_url)
        try:
            await restarted.init()
            ledger_after_restart = IdempotencyLedger(restarted, clock=clock)
            assert await ledger_after_restart.get_or_create_key("txn_restart") == key
        finally:
            await restarted.close()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_prune_honours_retention_and_margin(self, ledger, clock) -> None:
        """Test that only records older than retention plus margin are pruned."""
        old_key = await ledger.get_or_create_key("txn_old")
        clock.advance(timedelta(minutes=90).total_seconds())
        await ledger.get_or_create_key("txn_new")

        clock.advance(timedelta(hours=23).total_seconds())
        assert await ledger.prune() == 0

        clock.advance(timedelta(minutes=31).total_seconds())
        assert await ledger.prune() == 1

        assert await ledger.get_key("txn_old") is None
        assert await ledger.get_key("txn_new") is not None
        assert await ledger.get_or_create_key("txn_old") != old_key

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_remove(self, ledger) -> None:
        """Test that removal deletes exactly one record."""
        await ledger.get_or_create_key("txn_done")

        assert await ledger.remove("txn_done") is True
        assert await ledger.remove("txn_done") is False
        assert await ledger.get_key("txn_done") is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_concurrent_insert_returns_winner(self, ledger, mocker) -> None:
        """Test that losing an insert race returns the stored key."""
        winner = await ledger.get_or_create_key("txn_race")
        real_get_key = ledger.get_key
        lookups = []

        async def stale_first_lookup(transaction_id: str):
            lookups.append(transaction_id)
            if len(lookups) == 1:
                return None
            return await real_get_key(transaction_id)

        mocker.patch.object(ledger, "get_key", side_effect=stale_first_lookup)

        assert await ledger.get_or_create_key("txn_race") == winner
        assert len(lookups) == 2
