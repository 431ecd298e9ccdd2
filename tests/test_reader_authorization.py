"""
Tests for reader SDK authorization reconciliation.
"""
import asyncio
from datetime import timedelta

import pytest

from kiosk_core.core.errors import ReaderAuthorizationError
from kiosk_core.core.models import ReconcileAction
from kiosk_core.core.reader_authorization import (
    LOCATION_ERROR_MESSAGE,
    MISSING_LOCATION_MESSAGE,
    is_location_error,
)
from kiosk_core.integrations.reader_sdk import SDKAuthorizationState
from tests.fakes import authenticate


def give_credential(session, clock, **changes) -> None:
    session.credential = session.credential.with_updates(
        access_token="EAAAaccess1234",
        expires_at=clock.now + timedelta(days=20),
        merchant_id="M1",
        location_id="L1",
    ).with_updates(**changes)


class TestEnsureAuthorized:
    """Test suite for ReaderAuthorizationCoordinator.ensure_authorized."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_skips_without_token(self, coordinator, sdk) -> None:
        """Test that nothing happens without an access token."""
        action = await coordinator.ensure_authorized()

        assert action is ReconcileAction.SKIPPED
        assert sdk.authorization.calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_authorizes_unauthorized_sdk(self, coordinator, session, sdk, clock) -> None:
        """Test that an unauthorized SDK is authorized for the credential's location."""
        give_credential(session, clock)

        action = await coordinator.ensure_authorized()

        assert action is ReconcileAction.AUTHORIZED
        assert sdk.authorization.calls == [("authorize", "L1")]
        assert coordinator.is_sdk_authorized

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_location_change_reauthorizes_in_order(
        self, coordinator, session, sdk, clock
    ) -> None:
        """Test that a new location deauthorizes before authorizing again."""
        sdk.authorization.set_state(SDKAuthorizationState.AUTHORIZED, "L1")
        give_credential(session, clock, location_id="L2")

        action = await coordinator.ensure_authorized()

        assert action is ReconcileAction.REAUTHORIZED
        assert sdk.authorization.calls == [("deauthorize", None), ("authorize", "L2")]
        assert sdk.authorization.location_id == "L2"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_matching_location_is_noop(self, coordinator, session, sdk, clock) -> None:
        """Test that an SDK already on the right location is left alone."""
        sdk.authorization.set_state(SDKAuthorizationState.AUTHORIZED, "L1")
        give_credential(session, clock)

        assert await coordinator.ensure_authorized() is ReconcileAction.NOOP
        assert sdk.authorization.calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sdk_authorizing_reports_in_progress(
        self, coordinator, session, sdk, clock
    ) -> None:
        """Test that an SDK mid-authorization is not disturbed."""
        sdk.authorization.set_state(SDKAuthorizationState.AUTHORIZING)
        give_credential(session, clock)

        assert await coordinator.ensure_authorized() is ReconcileAction.IN_PROGRESS
        assert sdk.authorization.calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_concurrent_calls_are_single_flight(
        self, coordinator, session, sdk, clock
    ) -> None:
        """Test that a second call while one is running returns IN_PROGRESS."""
        give_credential(session, clock)
        sdk.authorization.gate = asyncio.Event()

        first = asyncio.create_task(coordinator.ensure_authorized())
        await asyncio.sleep(0)

        assert await coordinator.ensure_authorized() is ReconcileAction.IN_PROGRESS

        sdk.authorization.gate.set()
        assert await first is ReconcileAction.AUTHORIZED
        assert sdk.authorization.calls == [("authorize", "L1")]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_location_error_is_explained(self, coordinator, session, sdk, clock) -> None:
        """Test that a location-shaped SDK error gets the reconnect message."""
        give_credential(session, clock)
        sdk.authorization.authorize_error = "Location L1 is not valid for this merchant"

        with pytest.raises(ReaderAuthorizationError) as exc_info:
            await coordinator.ensure_authorized()

        assert exc_info.value.user_message == LOCATION_ERROR_MESSAGE
        assert coordinator.last_error is exc_info.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_other_errors_keep_generic_message(
        self, coordinator, session, sdk, clock
    ) -> None:
        """Test that unrelated SDK errors are not reported as location problems."""
        give_credential(session, clock)
        sdk.authorization.authorize_error = "Network unreachable"

        with pytest.raises(ReaderAuthorizationError) as exc_info:
            await coordinator.ensure_authorized()

        assert exc_info.value.user_message != LOCATION_ERROR_MESSAGE

    @pytest.mark.unit
    def test_is_location_error(self) -> None:
        """Test location error detection."""
        assert is_location_error("Invalid location id")
        assert is_location_error("INVALID_REQUEST")
        assert not is_location_error("Network unreachable")


class TestLocationRecheck:
    """Test suite for recovering a missing location."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_recheck_recovers_location(
        self, coordinator, session, sdk, clock, sleeper, mocker
    ) -> None:
        """Test that a re-check that finds the location authorizes once."""
        give_credential(session, clock, location_id=None)

        async def recover() -> None:
            give_credential(session, clock, location_id="L9")

        check = mocker.patch.object(session, "check_authentication", side_effect=recover)

        action = await coordinator.ensure_authorized()

        assert action is ReconcileAction.AUTHORIZED
        check.assert_awaited_once()
        assert sleeper.delays == [2.0]
        assert sdk.authorization.calls == [("authorize", "L9")]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_recheck_without_location_gives_up(
        self, coordinator, session, sdk, clock, mocker
    ) -> None:
        """Test that the re-check runs once and then asks for a reconnect."""
        give_credential(session, clock, location_id=None)
        check = mocker.patch.object(session, "check_authentication")

        action = await coordinator.ensure_authorized()

        assert action is ReconcileAction.LOCATION_RECHECK
        check.assert_awaited_once()
        assert coordinator.last_error.user_message == MISSING_LOCATION_MESSAGE
        assert sdk.authorization.calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_recheck_without_merchant(
        self, coordinator, session, clock, mocker
    ) -> None:
        """Test that a credential without a merchant is not re-checked."""
        give_credential(session, clock, location_id=None, merchant_id=None)
        check = mocker.patch.object(session, "check_authentication")

        assert await coordinator.ensure_authorized() is ReconcileAction.SKIPPED
        check.assert_not_called()


class TestSessionIntegration:
    """Test suite for the coordinator reacting to session events."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_authentication_authorizes_sdk(
        self, coordinator, session, store, backend_stub, clock, sdk
    ) -> None:
        """Test that the AUTHENTICATED event authorizes the reader."""
        await authenticate(session, store, backend_stub, clock)

        assert sdk.authorization.calls == [("authorize", "L1")]
        assert coordinator.connection_status == "Authorized"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_logout_deauthorizes_sdk(
        self, coordinator, session, store, backend_stub, clock, sdk
    ) -> None:
        """Test that logout drops the SDK authorization."""
        await authenticate(session, store, backend_stub, clock)

        await session.logout(disconnect=False)

        assert sdk.authorization.calls[-1] == ("deauthorize", None)
        assert not coordinator.is_sdk_authorized

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sdk_disruption_reauthorizes(self, coordinator, session, sdk, clock) -> None:
        """Test that a disruption cycles the SDK authorization."""
        assert await coordinator.handle_sdk_disruption() is False

        sdk.authorization.set_state(SDKAuthorizationState.AUTHORIZED, "L1")
        give_credential(session, clock)

        assert await coordinator.handle_sdk_disruption() is True
        assert sdk.authorization.calls == [("deauthorize", None), ("authorize", "L1")]
