"""
Keeps the reader SDK's authorization in step with the session credential.

The SDK holds its own access token and active location. Whenever the session
authenticates (or on demand) the coordinator compares the two and repairs a
mismatch by deauthorizing and authorizing again.
"""
import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from kiosk_core.config import Settings
from kiosk_core.core.auth_session import AuthSession
from kiosk_core.core.concurrency import SingleFlight
from kiosk_core.core.errors import ReaderAuthorizationError
from kiosk_core.core.events import Event, EventChannel, EventType
from kiosk_core.core.models import ReconcileAction
from kiosk_core.integrations.reader_sdk import ReaderSDK, ReaderSDKError, SDKAuthorizationState
from kiosk_core.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

LOCATION_ERROR_MESSAGE = "Invalid location - please reconnect to Square and select the correct location"
MISSING_LOCATION_MESSAGE = "Missing location info - please reconnect to Square"


def is_location_error(message: str) -> bool:
    """Location-shaped SDK errors, the most common authorization failure."""
    lowered = message.lower()
    return "location" in lowered or "invalid" in lowered


class ReaderAuthorizationCoordinator:
    """
    Reconciles SDK authorization against ``AuthSession.credential``.

    ``ensure_authorized`` is single-flight: a call while another is running
    returns ``ReconcileAction.IN_PROGRESS`` without touching the SDK.
    """

    def __init__(
        self,
        settings: Settings,
        session: AuthSession,
        sdk: ReaderSDK,
        events: EventChannel,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize reader authorization coordinator.

        Args:
            settings: Kiosk settings
            session: Auth session providing the credential
            sdk: Reader SDK binding
            events: Event channel (subscribes to AUTHENTICATED)
            sleep: Awaitable sleep (injectable for tests)
        """
        self.settings = settings
        self.session = session
        self.sdk = sdk
        self._sleep = sleep
        self._flight = SingleFlight("reader_authorization")
        self.last_error: Optional[ReaderAuthorizationError] = None
        self.connection_status = "Not authorized"

        events.subscribe(EventType.AUTHENTICATED, self._on_authenticated)
        session.register_dependent(self)

    @property
    def is_sdk_authorized(self) -> bool:
        """Authorized and bound to a location."""
        authorization = self.sdk.authorization
        return (
            authorization.state is SDKAuthorizationState.AUTHORIZED
            and authorization.location_id is not None
        )

    async def _on_authenticated(self, event: Event) -> None:
        try:
            await self.ensure_authorized()
        except ReaderAuthorizationError as e:
            logger.error("reader_authorization_after_login_failed", error=str(e))

    async def ensure_authorized(self) -> ReconcileAction:
        """
        Bring the SDK in line with the current credential.

        Returns:
            ReconcileAction: What was done

        Raises:
            ReaderAuthorizationError: The SDK refused authorization
        """
        with self._flight.claim() as claimed:
            if not claimed:
                return ReconcileAction.IN_PROGRESS
            action = await self._reconcile(allow_location_recheck=True)

        metrics.record_reader_authorization(action.value)
        return action

    async def _reconcile(self, allow_location_recheck: bool) -> ReconcileAction:
        credential = self.session.credential
        if not credential.access_token:
            self.connection_status = "Missing access token"
            logger.info("reader_authorization_skipped_no_token")
            return ReconcileAction.SKIPPED

        if not credential.location_id:
            if allow_location_recheck and credential.merchant_id:
                return await self._recheck_location()
            self.last_error = ReaderAuthorizationError(
                "No location id available for reader authorization",
                MISSING_LOCATION_MESSAGE,
            )
            self.connection_status = "Location required - please reconnect"
            logger.warning("reader_authorization_missing_location")
            return ReconcileAction.SKIPPED

        authorization = self.sdk.authorization
        if authorization.state is SDKAuthorizationState.AUTHORIZING:
            return ReconcileAction.IN_PROGRESS

        if authorization.state is SDKAuthorizationState.AUTHORIZED:
            if authorization.location_id == credential.location_id:
                self.connection_status = "Authorized"
                return ReconcileAction.NOOP

            logger.warning(
                "reader_location_mismatch",
                sdk_location_id=authorization.location_id,
                expected_location_id=credential.location_id,
            )
            await self._deauthorize()
            await self._authorize(credential.access_token, credential.location_id)
            return ReconcileAction.REAUTHORIZED

        await self._authorize(credential.access_token, credential.location_id)
        return ReconcileAction.AUTHORIZED

    async def _recheck_location(self) -> ReconcileAction:
        """Ask the backend once for the missing location, then retry once."""
        logger.warning("reader_authorization_rechecking_location")
        self.connection_status = "Re-checking location info..."

        await self.session.check_authentication()
        await self._sleep(self.settings.location_recheck_delay_seconds)

        if self.session.credential.location_id:
            logger.info("location_recovered_after_recheck")
            return await self._reconcile(allow_location_recheck=False)

        self.last_error = ReaderAuthorizationError(
            "Location still missing after re-check", MISSING_LOCATION_MESSAGE
        )
        self.connection_status = "Location required - please reconnect"
        return ReconcileAction.LOCATION_RECHECK

    async def _authorize(self, access_token: str, location_id: str) -> None:
        logger.info("reader_authorizing", location_id=location_id)
        self.connection_status = "Authorizing SDK with location..."
        try:
            await self.sdk.authorization.authorize(access_token, location_id)
        except ReaderSDKError as e:
            message = str(e)
            error = ReaderAuthorizationError(
                f"SDK authorization failed: {message}",
                LOCATION_ERROR_MESSAGE if is_location_error(message) else None,
            )
            self.last_error = error
            self.connection_status = "Authorization failed"
            metrics.record_reader_authorization("failed")
            logger.error(
                "reader_authorization_failed",
                location_id=location_id,
                error=message,
                location_error=is_location_error(message),
            )
            raise error from e

        self.last_error = None
        self.connection_status = "Authorized"
        logger.info("reader_authorized", location_id=location_id)

    async def _deauthorize(self) -> None:
        try:
            await self.sdk.authorization.deauthorize()
        except ReaderSDKError as e:
            logger.warning("reader_deauthorization_failed", error=str(e))
        self.connection_status = "Disconnected"

    async def handle_sdk_disruption(self) -> bool:
        """
        Deauthorize and authorize again after the SDK lost its state.

        Returns:
            bool: False when there is no credential to authorize with

        Raises:
            ReaderAuthorizationError: The SDK refused authorization
        """
        with self._flight.claim() as claimed:
            if not claimed:
                return False

            credential = self.session.credential
            if not credential.access_token or not credential.location_id:
                logger.warning("sdk_disruption_missing_credentials")
                return False

            logger.warning("handling_sdk_disruption")
            await self._deauthorize()
            await self._authorize(credential.access_token, credential.location_id)

        metrics.record_reader_authorization(ReconcileAction.REAUTHORIZED.value)
        return True

    async def on_logout(self) -> None:
        """Drop SDK authorization and cached errors."""
        if self.sdk.authorization.state is not SDKAuthorizationState.NOT_AUTHORIZED:
            await self._deauthorize()
        self.last_error = None
        self.connection_status = "Not authorized"
