"""
Tests for the single-flight guard, the debouncer and the event channel.
"""
import asyncio

import pytest

from kiosk_core.core.concurrency import Debouncer, SingleFlight
from kiosk_core.core.events import EventChannel, EventType
from tests.fakes import FakeClock, FakeSleeper


class TestSingleFlight:
    """Test suite for SingleFlight."""

    @pytest.mark.unit
    def test_second_claim_is_refused(self) -> None:
        """Test that a nested claim is refused and the guard is released after."""
        flight = SingleFlight("test")

        with flight.claim() as outer:
            assert outer is True
            assert flight.active
            with flight.claim() as inner:
                assert inner is False
            assert flight.active

        assert not flight.active

    @pytest.mark.unit
    def test_released_on_error(self) -> None:
        """Test that the guard is released when the body raises."""
        flight = SingleFlight("test")

        with pytest.raises(RuntimeError):
            with flight.claim():
                raise RuntimeError("boom")

        assert not flight.active


class TestDebouncer:
    """Test suite for Debouncer."""

    @pytest.fixture
    def clock(self) -> FakeClock:
        return FakeClock()

    @pytest.fixture
    def debouncer(self, clock) -> Debouncer:
        return Debouncer(2.0, clock=lambda: clock().timestamp(), sleep=FakeSleeper(clock))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_calls_are_coalesced(self, debouncer, clock) -> None:
        """Test that calls inside the interval collapse into one deferred call."""
        calls = []

        async def record() -> None:
            calls.append(clock())

        assert await debouncer.call(record) is True
        assert await debouncer.call(record) is False
        deferred = debouncer.deferred
        assert await debouncer.call(record) is False
        assert debouncer.deferred is deferred

        await deferred

        assert len(calls) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_runs_immediately_after_interval(self, debouncer, clock) -> None:
        """Test that a call after the interval runs right away."""
        calls = []

        async def record() -> None:
            calls.append(clock())

        await debouncer.call(record)
        clock.advance(2.5)

        assert await debouncer.call(record) is True
        assert debouncer.deferred is None
        assert len(calls) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_call_during_run_is_deferred(self, debouncer, clock) -> None:
        """Test that a call made while another runs is coalesced, not lost."""
        gate = asyncio.Event()
        calls = []

        async def slow() -> None:
            calls.append(clock())
            await gate.wait()

        first = asyncio.create_task(debouncer.call(slow))
        await asyncio.sleep(0)

        assert await debouncer.call(slow) is False
        assert await debouncer.call(slow) is False
        deferred = debouncer.deferred
        assert deferred is not None

        clock.advance(5.0)
        gate.set()
        assert await first is True
        await deferred

        assert len(calls) == 2
        assert (calls[1] - calls[0]).total_seconds() == 7.0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_drops_deferred_call(self, debouncer) -> None:
        """Test that cancel() discards a scheduled call."""
        calls = []

        async def record() -> None:
            calls.append(1)

        await debouncer.call(record)
        await debouncer.call(record)
        deferred = debouncer.deferred

        debouncer.cancel()

        assert debouncer.deferred is None
        with pytest.raises(asyncio.CancelledError):
            await deferred
        assert calls == [1]


class TestEventChannel:
    """Test suite for EventChannel."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self) -> None:
        """Test that both handler kinds receive the payload in order."""
        channel = EventChannel()
        received = []

        def sync_handler(event) -> None:
            received.append(("sync", event.payload["reason"]))

        async def async_handler(event) -> None:
            received.append(("async", event.payload["reason"]))

        channel.subscribe(EventType.FORCED_LOGOUT, sync_handler)
        channel.subscribe(EventType.FORCED_LOGOUT, async_handler)

        await channel.emit(EventType.FORCED_LOGOUT, reason="missing_location")

        assert received == [("sync", "missing_location"), ("async", "missing_location")]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_delivery(self) -> None:
        """Test that one failing subscriber does not affect the others."""
        channel = EventChannel()
        received = []

        def broken(event) -> None:
            raise ValueError("broken subscriber")

        channel.subscribe(EventType.CLEAR_CACHED_STATE, broken)
        channel.subscribe(EventType.CLEAR_CACHED_STATE, received.append)

        await channel.emit(EventType.CLEAR_CACHED_STATE)

        assert len(received) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unsubscribe(self) -> None:
        """Test that an unsubscribed handler is no longer called."""
        channel = EventChannel()
        received = []
        unsubscribe = channel.subscribe(EventType.AUTHENTICATED, received.append)

        unsubscribe()
        await channel.emit(EventType.AUTHENTICATED, merchant_id="M1")

        assert received == []
