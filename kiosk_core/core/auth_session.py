"""
Device-scoped authorization lifecycle.

AuthSession owns the OAuth/device-pairing state machine:
1. Initiate an authorization and poll the backend until it completes
2. Verify stored credentials with the backend on start
3. Tell a backend outage apart from bad credentials before logging out
4. Refresh tokens (proactively, and on 401/403)
5. Log out, notifying registered dependents

All state mutation happens on the event loop that owns the session.
"""
import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, NoReturn, Optional, Protocol

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from kiosk_core.config import Settings
from kiosk_core.core.concurrency import Debouncer, SingleFlight
from kiosk_core.core.errors import (
    AuthorizationFlowError,
    AuthorizationTimeoutError,
    BackendError,
    ErrorKind,
    KioskError,
    TokenRefreshError,
)
from kiosk_core.core.events import EventChannel, EventType
from kiosk_core.core.models import (
    Credential,
    PendingAuthorization,
    SessionState,
    TokenStatus,
)
from kiosk_core.integrations.backend_client import BackendClient
from kiosk_core.integrations.schemas import StatusResponse
from kiosk_core.monitoring.logging import redact
from kiosk_core.monitoring.metrics import metrics
from kiosk_core.storage import CredentialStore, Keys

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[None]]

POLL_CONTINUE_MESSAGES = ("location_selection_required", "authorization_in_progress", "token_not_found")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_device_id() -> str:
    """Short, human-readable device id (8 upper-case hex characters)."""
    return uuid.uuid4().hex[:8].upper()


class SessionDependent(Protocol):
    """Something holding state derived from the session's credentials."""

    async def on_logout(self) -> None:
        ...


class AuthSession:
    """
    Authorization state machine for one kiosk device.

    States: UNAUTHENTICATED -> AUTHENTICATING -> POLLING_FOR_COMPLETION ->
    AUTHENTICATED; AUTHENTICATED -> REFRESHING -> AUTHENTICATED or
    UNAUTHENTICATED; any state -> LOGGING_OUT -> UNAUTHENTICATED.

    While LOGGING_OUT, results from in-flight requests are discarded. Each
    logout also bumps an epoch so results that arrive after the logout
    finished are discarded too.
    """

    def __init__(
        self,
        settings: Settings,
        backend: BackendClient,
        store: CredentialStore,
        events: EventChannel,
        clock: Clock = _utcnow,
        sleep: Sleep = asyncio.sleep,
    ):
        """
        Initialize auth session.

        Args:
            settings: Kiosk settings
            backend: Backend client
            store: Credential store
            events: Event channel for outbound notifications
            clock: Returns the current UTC time
            sleep: Awaitable sleep (injectable for tests)
        """
        self.settings = settings
        self.backend = backend
        self.store = store
        self.events = events
        self._clock = clock
        self._sleep = sleep

        self._state = SessionState.UNAUTHENTICATED
        self.credential = Credential()
        self.pending: Optional[PendingAuthorization] = None
        self.token_status = TokenStatus.UNKNOWN
        self.last_token_check: Optional[datetime] = None
        self.last_error: Optional[KioskError] = None
        self._device_conflict = False
        self._epoch = 0

        self._initiate_flight = SingleFlight("initiate_authorization")
        self._check_flight = SingleFlight("auth_check")
        self._refresh_flight = SingleFlight("token_refresh")
        self._status_debouncer = Debouncer(
            settings.status_debounce_seconds,
            clock=lambda: self._clock().timestamp(),
            sleep=sleep,
        )
        self._poll_task: Optional[asyncio.Task] = None
        self._outage_task: Optional[asyncio.Task] = None
        self._dependents: List[SessionDependent] = []

    # ------------------------------------------------------------------ state

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return self._state is SessionState.AUTHENTICATED

    @property
    def is_logging_out(self) -> bool:
        return self._state is SessionState.LOGGING_OUT

    @property
    def poll_task(self) -> Optional[asyncio.Task]:
        return self._poll_task

    @property
    def outage_retry_task(self) -> Optional[asyncio.Task]:
        return self._outage_task

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        logger.info("auth_state_changed", previous=self._state.value, current=state.value)
        self._state = state
        metrics.set_auth_state(state.value)

    def _is_stale(self, epoch: int) -> bool:
        """True when a logout started or finished since ``epoch`` was captured."""
        return self.is_logging_out or epoch != self._epoch

    def register_dependent(self, dependent: SessionDependent) -> None:
        """Register a component to be told to discard cached state on logout."""
        self._dependents.append(dependent)

    # --------------------------------------------------------------- identity

    @property
    def device_id(self) -> str:
        if self.credential.device_id is None:
            raise KioskError("Session not loaded", ErrorKind.CONFIGURATION)
        return self.credential.device_id

    @property
    def base_organization_id(self) -> str:
        return self.credential.organization_id or self.settings.organization_id

    @property
    def uses_device_scoped_organization(self) -> bool:
        return self.settings.enable_multi_device_mode or self._device_conflict

    @property
    def organization_id(self) -> str:
        """Organization id sent to the backend, device-suffixed when scoped."""
        if self.uses_device_scoped_organization:
            return f"{self.base_organization_id}_{self.device_id}"
        return self.base_organization_id

    def strip_device_suffix(self, organization_id: str) -> str:
        suffix = f"_{self.credential.device_id}"
        if self.credential.device_id and organization_id.endswith(suffix):
            return organization_id[: -len(suffix)]
        return organization_id

    async def set_organization_id(self, organization_id: str) -> None:
        """Persist a new base organization id; a device suffix is never stored."""
        base = self.strip_device_suffix(organization_id)
        await self.store.set(Keys.ORGANIZATION_ID, base)
        self.credential = self.credential.with_updates(organization_id=base)
        logger.info("organization_id_set", organization_id=base)

    async def handle_device_conflict(self) -> None:
        """
        Switch to a device-scoped organization id after a conflict.

        Local auth is cleared so the next login registers this device on its own.
        """
        logger.warning("device_conflict_detected", device_id=self.credential.device_id)
        self._device_conflict = True
        await self.store.set_flag(Keys.DEVICE_CONFLICT, True)
        await self._clear_local_auth()
        self._set_state(SessionState.UNAUTHENTICATED)

    # ------------------------------------------------------------- lifecycle

    async def load(self) -> None:
        """
        Restore persisted state.

        Generates the device id on first run and resumes polling for a
        pending authorization that has not timed out yet.
        """
        credential = await self.store.load_credential()
        if credential.device_id is None:
            device_id = generate_device_id()
            await self.store.set(Keys.DEVICE_ID, device_id)
            credential = credential.with_updates(device_id=device_id)
            logger.info("device_id_generated", device_id=device_id)
        self.credential = credential
        self._device_conflict = await self.store.get_flag(Keys.DEVICE_CONFLICT)

        pending = await self.store.load_pending()
        if pending is None:
            return
        if self._pending_expired(pending):
            logger.info("stale_pending_authorization_cleared")
            await self.store.clear_pending()
            return

        self.pending = pending
        self._set_state(SessionState.POLLING_FOR_COMPLETION)
        self._start_polling(pending)

    async def close(self) -> None:
        """Cancel background tasks without touching persisted state."""
        self._cancel_background_tasks()

    def _cancel_background_tasks(self) -> None:
        current = asyncio.current_task()
        for task in (self._poll_task, self._outage_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._poll_task = None
        self._outage_task = None
        self._status_debouncer.cancel()

    # ------------------------------------------------------ authorization flow

    def _pending_expired(self, pending: PendingAuthorization) -> bool:
        elapsed = (self._clock() - pending.started_at).total_seconds()
        return elapsed >= self.settings.authorization_timeout_seconds

    async def initiate_authorization(self) -> Optional[str]:
        """
        Start an OAuth flow and begin polling for its completion.

        No-op (returns None) while another initiation is running or a
        pending authorization started less than the timeout ago.

        Returns:
            Optional[str]: URL the merchant must open

        Raises:
            BackendError: Backend unreachable or rejected the request
            AuthorizationFlowError: Response had no URL or correlation state
        """
        if self.is_logging_out:
            return None

        with self._initiate_flight.claim() as claimed:
            if not claimed:
                return None
            if self.pending is not None and not self._pending_expired(self.pending):
                logger.info("authorization_already_pending")
                return None

            epoch = self._epoch
            self._set_state(SessionState.AUTHENTICATING)
            try:
                response = await self.backend.request_authorization(
                    self.organization_id, self.device_id
                )
            except BackendError as e:
                self.last_error = e
                self._set_state(SessionState.UNAUTHENTICATED)
                raise

            if self._is_stale(epoch):
                return None

            if response.error or not response.auth_url or not response.state:
                error = AuthorizationFlowError(
                    f"Authorization could not be started: {response.error or 'missing url or state'}"
                )
                self.last_error = error
                self._set_state(SessionState.UNAUTHENTICATED)
                raise error

            pending = PendingAuthorization(
                correlation_state=response.state, started_at=self._clock()
            )
            await self.store.save_pending(pending)
            self.pending = pending
            self.last_error = None
            self._set_state(SessionState.POLLING_FOR_COMPLETION)
            self._start_polling(pending)

            logger.info("authorization_initiated", state=redact(pending.correlation_state))
            return response.auth_url

    def _start_polling(self, pending: PendingAuthorization) -> None:
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        self._poll_task = asyncio.create_task(self._poll_for_completion(pending))

    async def _poll_for_completion(self, pending: PendingAuthorization) -> None:
        """Poll every interval until completion, abort, timeout or a new flow."""
        epoch = self._epoch
        while True:
            if self._pending_expired(pending):
                await self._end_pending(pending, AuthorizationTimeoutError())
                return

            await self._sleep(self.settings.poll_interval_seconds)

            if self.pending != pending or self._is_stale(epoch):
                return
            if self._pending_expired(pending):
                await self._end_pending(pending, AuthorizationTimeoutError())
                return

            if await self._poll_once(pending, epoch):
                return

    async def check_pending_authorization(self) -> bool:
        """
        Poll once right now (e.g. when the kiosk returns to the foreground).

        Returns:
            bool: True if the session is authenticated afterwards
        """
        if self.pending is None:
            return self.is_authenticated
        await self._poll_once(self.pending, self._epoch)
        return self.is_authenticated

    async def _poll_once(self, pending: PendingAuthorization, epoch: int) -> bool:
        """
        Query the backend for the pending flow.

        Returns:
            bool: True when polling should stop
        """
        try:
            response = await self.backend.poll_authorization(
                pending.correlation_state, self.device_id
            )
        except BackendError as e:
            if e.detail == "invalid_state" and self.pending == pending:
                metrics.record_auth_poll("invalid_state")
                await self._end_pending(
                    pending, AuthorizationFlowError("Invalid authorization state")
                )
                return True
            metrics.record_auth_poll("error")
            logger.warning("authorization_poll_failed", error=str(e))
            return False

        if self.pending != pending or self._is_stale(epoch):
            return True

        if response.is_complete:
            metrics.record_auth_poll("complete")
            await self._store_token_bundle(response, epoch)
            return True

        discriminant = response.message or response.error
        if discriminant == "invalid_state":
            metrics.record_auth_poll("invalid_state")
            await self._end_pending(
                pending, AuthorizationFlowError("Invalid authorization state")
            )
            return True

        if discriminant in POLL_CONTINUE_MESSAGES:
            metrics.record_auth_poll(discriminant)
        else:
            metrics.record_auth_poll("unrecognized")
            logger.debug(
                "authorization_poll_unrecognized",
                fields=sorted(response.model_dump(exclude_none=True)),
            )
        return False

    async def _end_pending(self, pending: PendingAuthorization, error: KioskError) -> None:
        """Abandon a pending authorization and surface why."""
        if self.pending != pending:
            return
        logger.warning("authorization_aborted", error=str(error), error_type=error.kind.value)
        self.pending = None
        await self.store.clear_pending()
        self.last_error = error
        self._set_state(SessionState.UNAUTHENTICATED)
        await self.events.emit(EventType.AUTHORIZATION_FAILED, message=error.user_message)

    def _parse_expiry(self, expires_at: Optional[str]) -> datetime:
        """ISO-8601 expiry, or the default lifetime when missing or unreadable."""
        if expires_at:
            try:
                parsed = datetime.fromisoformat(expires_at.replace("Z", "+00:00"))
            except ValueError:
                logger.warning("token_expiry_unparseable", expires_at=expires_at)
            else:
                return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        return self._clock() + timedelta(days=self.settings.default_token_lifetime_days)

    async def _store_token_bundle(
        self, response: StatusResponse, epoch: int, allow_refresh: bool = True
    ) -> None:
        """Persist a full token bundle and become AUTHENTICATED."""
        if self._is_stale(epoch):
            logger.info("token_bundle_ignored_after_logout")
            return

        credential = self.credential.with_updates(
            access_token=response.access_token,
            refresh_token=response.refresh_token,
            merchant_id=response.merchant_id,
            location_id=response.location_id,
            organization_id=self.base_organization_id,
            expires_at=self._parse_expiry(response.expires_at),
        )
        await self.store.save_credential(credential)
        self.credential = credential

        if self.pending is not None:
            await self.store.clear_pending()
            self.pending = None

        self.token_status = TokenStatus.VALID_REMOTE
        self.last_token_check = self._clock()
        self.last_error = None
        self._set_state(SessionState.AUTHENTICATED)

        logger.info(
            "authenticated",
            merchant_id=credential.merchant_id,
            location_id=credential.location_id,
            expires_at=credential.expires_at.isoformat() if credential.expires_at else None,
        )
        await self.events.emit(
            EventType.AUTHENTICATED,
            merchant_id=credential.merchant_id,
            location_id=credential.location_id,
        )

        if response.needs_refresh and allow_refresh and not self._is_stale(epoch):
            logger.info("backend_requested_token_refresh")
            try:
                await self.refresh()
            except TokenRefreshError as e:
                logger.warning("requested_refresh_failed", error=str(e))

    # ----------------------------------------------------------- auth checks

    async def check_authentication(self) -> SessionState:
        """
        Validate stored credentials.

        Missing or expired tokens make the session UNAUTHENTICATED without any
        network call; otherwise the backend is asked.
        """
        if self.is_logging_out:
            return self._state

        if not self.credential.has_token:
            self.token_status = TokenStatus.UNKNOWN
            if self.pending is not None:
                return self._state
            self._set_state(SessionState.UNAUTHENTICATED)
            return self._state

        if self.credential.is_expired(self._clock()):
            logger.info("local_token_expired")
            self.token_status = TokenStatus.EXPIRED
            self._set_state(SessionState.UNAUTHENTICATED)
            return self._state

        self.token_status = TokenStatus.VALID_LOCAL
        self._set_state(SessionState.AUTHENTICATING)
        await self.backend.ensure_reachable_base_url()
        return await self.perform_auth_check()

    async def perform_auth_check(self) -> SessionState:
        """
        Verify the credential with the backend's status endpoint.

        - Network errors and 5xx are retried; when retries run out the
          health endpoint decides between "credentials are bad" and
          "backend is down" (keep AUTHENTICATING, retry later).
        - 401/403 triggers one refresh.
        - Other 4xx and "not connected" responses are final.
        """
        with self._check_flight.claim() as claimed:
            if not claimed:
                return self._state
            return await self._auth_check()

    def _retry_wait(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, BackendError) and error.kind is ErrorKind.SERVER:
            return self.settings.server_retry_delay_seconds
        return self.settings.network_retry_delay_seconds

    async def _status_with_retries(self) -> StatusResponse:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.auth_check_max_retries + 1),
            wait=self._retry_wait,
            retry=retry_if_exception(
                lambda e: isinstance(e, BackendError) and e.retryable
            ),
            sleep=self._sleep,
            reraise=True,
            before_sleep=lambda state: logger.warning(
                "auth_check_retrying",
                attempt=state.attempt_number,
                error=str(state.outcome.exception()) if state.outcome else None,
            ),
        )
        return await retrying(self.backend.check_status, self.organization_id, self.device_id)

    async def _auth_check(self, after_refresh: bool = False) -> SessionState:
        epoch = self._epoch
        try:
            response = await self._status_with_retries()
        except BackendError as e:
            if self._is_stale(epoch):
                return self._state
            if e.is_auth_rejection:
                return await self._handle_auth_rejection(e, after_refresh)
            if e.retryable:
                return await self._handle_retries_exhausted(e, epoch)
            metrics.record_auth_check("failed")
            self._fail_check(e, TokenStatus.INVALID)
            return self._state
        finally:
            self.last_token_check = self._clock()

        if self._is_stale(epoch):
            return self._state

        if response.is_complete:
            metrics.record_auth_check("authenticated")
            await self._store_token_bundle(response, epoch, allow_refresh=not after_refresh)
            return self._state

        metrics.record_auth_check("not_connected")
        logger.info("backend_reports_not_connected", message=response.message or response.error)
        self.token_status = TokenStatus.INVALID
        self._set_state(SessionState.UNAUTHENTICATED)
        return self._state

    def _fail_check(self, error: KioskError, token_status: TokenStatus) -> None:
        logger.warning("auth_check_failed", error=str(error), error_type=error.kind.value)
        self.last_error = error
        self.token_status = token_status
        self._set_state(SessionState.UNAUTHENTICATED)

    async def _handle_auth_rejection(self, error: BackendError, after_refresh: bool) -> SessionState:
        metrics.record_auth_check("refresh")
        if after_refresh:
            # The freshly refreshed token was rejected too
            self._fail_check(error, TokenStatus.INVALID)
            return self._state

        logger.info("auth_rejected_attempting_refresh", status_code=error.status_code)
        try:
            return await self.refresh()
        except TokenRefreshError:
            return self._state

    async def _handle_retries_exhausted(self, error: BackendError, epoch: int) -> SessionState:
        healthy = await self.backend.check_health()
        if self._is_stale(epoch):
            return self._state

        if healthy:
            metrics.record_auth_check("failed")
            self._fail_check(error, TokenStatus.NETWORK_ERROR)
            return self._state

        metrics.record_auth_check("outage")
        logger.warning(
            "backend_outage_suspected",
            error=str(error),
            retry_in_seconds=self.settings.outage_retry_delay_seconds,
        )
        self.token_status = TokenStatus.NETWORK_ERROR
        self._set_state(SessionState.AUTHENTICATING)
        self._schedule_outage_retry()
        return self._state

    def _schedule_outage_retry(self) -> None:
        if self._outage_task is not None and not self._outage_task.done():
            if self._outage_task is not asyncio.current_task():
                return
        self._outage_task = asyncio.create_task(self._retry_after_outage(self._epoch))

    async def _retry_after_outage(self, epoch: int) -> None:
        await self._sleep(self.settings.outage_retry_delay_seconds)
        if self._is_stale(epoch):
            return
        await self.perform_auth_check()

    async def request_status_refresh(self) -> bool:
        """
        Debounced re-check of authentication.

        Returns:
            bool: True if a check ran immediately
        """

        async def run() -> None:
            await self.check_authentication()

        return await self._status_debouncer.call(run)

    # ---------------------------------------------------------------- refresh

    async def refresh(self) -> SessionState:
        """
        Exchange the refresh token, then re-run the auth check.

        Never retried: a failed refresh means the OAuth flow must run again.

        Raises:
            TokenRefreshError: Refresh failed (session is UNAUTHENTICATED)
        """
        with self._refresh_flight.claim() as claimed:
            if not claimed:
                return self._state

            epoch = self._epoch
            refresh_token = self.credential.refresh_token
            if not refresh_token:
                self._fail_refresh("No refresh token available")

            self._set_state(SessionState.REFRESHING)
            try:
                response = await self.backend.refresh_token(
                    self.organization_id, self.device_id, refresh_token
                )
            except BackendError as e:
                if self._is_stale(epoch):
                    return self._state
                self._fail_refresh(f"Refresh request failed: {e}")

            if self._is_stale(epoch):
                return self._state
            if response.error:
                self._fail_refresh(f"Refresh error: {response.error}")
            if not response.access_token or not response.refresh_token:
                self._fail_refresh("Invalid refresh response format")

            if response.expires_at:
                expires_at = self._parse_expiry(response.expires_at)
            elif response.expires_in:
                expires_at = self._clock() + timedelta(seconds=response.expires_in)
            else:
                expires_at = self._parse_expiry(None)

            credential = self.credential.with_updates(
                access_token=response.access_token,
                refresh_token=response.refresh_token,
                expires_at=expires_at,
            )
            await self.store.save_credential(credential)
            self.credential = credential
            self.token_status = TokenStatus.VALID_LOCAL
            metrics.record_token_refresh("success")
            logger.info("token_refreshed", expires_at=expires_at.isoformat())

        return await self._auth_check(after_refresh=True)

    def _fail_refresh(self, message: str) -> NoReturn:
        metrics.record_token_refresh("failed")
        error = TokenRefreshError(message)
        self._fail_check(error, TokenStatus.INVALID)
        raise error

    def needs_refresh(self) -> bool:
        """True when the token's remaining lifetime is below the threshold."""
        if not self.credential.has_token or not self.credential.refresh_token:
            return False
        remaining = self.credential.expires_at - self._clock()
        return remaining < timedelta(days=self.settings.refresh_threshold_days)

    async def refresh_if_needed(self) -> bool:
        """
        Refresh proactively when the token is close to expiry.

        Returns:
            bool: True if a refresh ran
        """
        if self.is_logging_out or not self.needs_refresh():
            return False
        logger.info(
            "token_expiring_soon",
            expires_at=self.credential.expires_at.isoformat() if self.credential.expires_at else None,
        )
        await self.refresh()
        return True

    # ----------------------------------------------------------------- logout

    async def _clear_local_auth(self) -> None:
        self._cancel_background_tasks()
        await self.store.clear_credential()
        await self.store.clear_pending()
        self.credential = Credential(
            organization_id=self.credential.organization_id,
            device_id=self.credential.device_id,
        )
        self.pending = None
        self.token_status = TokenStatus.UNKNOWN

    async def logout(self, disconnect: bool = True) -> None:
        """
        Clear credentials and tell dependents to drop cached state.

        The session enters LOGGING_OUT before anything else is touched and
        leaves it only after all cleanup is done.

        Args:
            disconnect: Also ask the backend to revoke this device's tokens
        """
        if self.is_logging_out:
            return

        self._set_state(SessionState.LOGGING_OUT)
        self._epoch += 1
        try:
            self._cancel_background_tasks()

            if disconnect and self.credential.has_token:
                try:
                    await self.backend.disconnect(self.organization_id, self.device_id)
                except BackendError as e:
                    logger.warning("server_disconnect_failed", error=str(e))

            await self._clear_local_auth()
            self.last_error = None

            for dependent in list(self._dependents):
                try:
                    await dependent.on_logout()
                except Exception as e:
                    logger.error(
                        "logout_dependent_failed",
                        dependent=type(dependent).__name__,
                        error=str(e),
                    )

            await self.events.emit(EventType.CLEAR_CACHED_STATE)
            logger.info("logged_out")
        finally:
            self._set_state(SessionState.UNAUTHENTICATED)

    async def force_logout(self, reason: str) -> None:
        """Log out because the payment path is in an unrecoverable state."""
        logger.error("forced_logout", reason=reason)
        metrics.record_forced_logout(reason)
        await self.logout(disconnect=False)
        await self.events.emit(EventType.FORCED_LOGOUT, reason=reason)
