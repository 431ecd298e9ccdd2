"""
Card-present payment submission through the reader SDK.

Orchestrates one payment attempt:
1. Validate preconditions (no I/O before this passes)
2. Create a backend order when none is given
3. Resolve the idempotency key for the transaction
4. Choose the processing mode
5. Submit to the reader SDK
6. Resolve exactly one outcome from the SDK callbacks
"""
import asyncio
import functools
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from kiosk_core.config import Settings
from kiosk_core.core.auth_session import AuthSession
from kiosk_core.core.errors import (
    PaymentError,
    PaymentPreconditionError,
    PreconditionFailure,
)
from kiosk_core.core.idempotency import IdempotencyLedger
from kiosk_core.core.models import (
    OrderRequest,
    PaymentAttempt,
    PaymentOutcome,
    PaymentStatus,
    ProcessingMode,
)
from kiosk_core.core.reader_authorization import ReaderAuthorizationCoordinator
from kiosk_core.integrations.backend_client import BackendClient
from kiosk_core.integrations.reader_sdk import (
    PaymentDelegate,
    PaymentParameters,
    ReaderSDK,
    ReaderSDKError,
    SDKAuthorizationState,
    SDKPayment,
)
from kiosk_core.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CompletionHandler = Callable[[PaymentOutcome], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_transaction_id(order_id: str, now: datetime) -> str:
    """Transaction id derived from the order id and wall-clock time."""
    return f"txn_{order_id[-8:]}_{int(now.timestamp())}"


class _AttemptDelegate(PaymentDelegate):
    """Forwards SDK callbacks (from any thread) onto the orchestrator's loop."""

    def __init__(
        self,
        orchestrator: "PaymentOrchestrator",
        attempt: PaymentAttempt,
        loop: asyncio.AbstractEventLoop,
    ):
        self._orchestrator = orchestrator
        self._attempt = attempt
        self._loop = loop

    def _dispatch(self, callback: Callable[[], None]) -> None:
        self._loop.call_soon_threadsafe(callback)

    def did_start(self) -> None:
        self._dispatch(functools.partial(self._orchestrator._on_started, self._attempt))

    def did_finish(self, payment: SDKPayment) -> None:
        self._dispatch(
            functools.partial(
                self._orchestrator._on_terminal,
                self._attempt,
                PaymentStatus.SUCCEEDED,
                payment=payment,
            )
        )

    def did_cancel(self) -> None:
        self._dispatch(
            functools.partial(
                self._orchestrator._on_terminal, self._attempt, PaymentStatus.CANCELED
            )
        )

    def did_fail(self, message: str) -> None:
        self._dispatch(
            functools.partial(
                self._orchestrator._on_terminal,
                self._attempt,
                PaymentStatus.FAILED,
                message=message,
            )
        )


class PaymentOrchestrator:
    """
    Submits payments and resolves one outcome per attempt.

    Handles:
    - Precondition checks that fail before any network or hardware call
    - Order creation on demand
    - Idempotency keys that survive retries and restarts
    - Duplicate SDK callbacks (ignored after the first terminal one)
    - Periodic consistency checks that force a logout when the reader path
      is no longer authorized
    """

    def __init__(
        self,
        settings: Settings,
        session: AuthSession,
        coordinator: ReaderAuthorizationCoordinator,
        ledger: IdempotencyLedger,
        backend: BackendClient,
        sdk: ReaderSDK,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize payment orchestrator.

        Args:
            settings: Kiosk settings
            session: Auth session
            coordinator: Reader authorization coordinator
            ledger: Idempotency ledger
            backend: Backend client (order creation)
            sdk: Reader SDK binding
            clock: Returns the current UTC time
        """
        self.settings = settings
        self.session = session
        self.coordinator = coordinator
        self.ledger = ledger
        self.backend = backend
        self.sdk = sdk
        self._clock = clock

        self.supports_offline_payments = sdk.supports_offline_processing
        self.offline_pending_count = 0
        self.status_message = "Ready"

        self._in_progress = False
        self._current: Optional[PaymentAttempt] = None
        self._result: Optional["asyncio.Future[PaymentOutcome]"] = None
        self._on_complete: Optional[CompletionHandler] = None

        logger.info(
            "payment_orchestrator_initialized",
            supports_offline_payments=self.supports_offline_payments,
        )

    @property
    def is_processing(self) -> bool:
        return self._in_progress

    def _has_ready_reader(self) -> bool:
        readers = self.sdk.reader_manager.readers()
        ready = [reader for reader in readers if reader.is_ready]
        logger.debug("reader_check", total=len(readers), ready=len(ready))
        return bool(ready)

    def _validate_preconditions(self) -> None:
        """
        Raises:
            PaymentPreconditionError: First failed precondition
        """
        if not self.session.is_authenticated:
            raise PaymentPreconditionError(PreconditionFailure.NOT_AUTHENTICATED)
        if not self.coordinator.is_sdk_authorized:
            raise PaymentPreconditionError(PreconditionFailure.SDK_NOT_AUTHORIZED)
        if not self._has_ready_reader():
            raise PaymentPreconditionError(PreconditionFailure.NO_READER_READY)
        if self._in_progress:
            raise PaymentPreconditionError(PreconditionFailure.PAYMENT_IN_PROGRESS)

    async def submit_payment(
        self,
        amount_minor_units: int,
        order_id: Optional[str] = None,
        is_custom_amount: bool = False,
        allow_offline: bool = True,
        catalog_item_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        on_complete: Optional[CompletionHandler] = None,
    ) -> PaymentOutcome:
        """
        Charge a card through the reader SDK.

        Args:
            amount_minor_units: Amount in minor units (cents)
            order_id: Existing backend order (created when absent)
            is_custom_amount: Customer-entered amount rather than a preset
            allow_offline: Let the SDK queue the payment when offline
            catalog_item_id: Catalog item for a preset amount
            transaction_id: Reissue a previous transaction (reuses its key)
            on_complete: Called once with the terminal outcome

        Returns:
            PaymentOutcome: Terminal outcome of the attempt

        Raises:
            PaymentPreconditionError: Nothing was sent anywhere
            OrderCreationError: Order creation failed (not retried)
            PaymentError: Invalid amount, or the SDK refused to start
        """
        self._validate_preconditions()
        if amount_minor_units <= 0:
            raise PaymentError("Amount must be positive", "Please enter a valid amount.")

        self._in_progress = True
        try:
            if order_id is None:
                order_id = await self.backend.create_order(
                    self.session.organization_id,
                    OrderRequest(
                        amount_minor_units=amount_minor_units,
                        is_custom_amount=is_custom_amount,
                        reference_id=(
                            f"{self.settings.payment_reference_prefix}_"
                            f"{int(self._clock().timestamp())}"
                        ),
                        catalog_item_id=catalog_item_id,
                    ),
                )

            transaction_id = transaction_id or build_transaction_id(order_id, self._clock())
            idempotency_key = await self.ledger.get_or_create_key(transaction_id)

            processing_mode = (
                ProcessingMode.AUTO_DETECT
                if allow_offline and self.supports_offline_payments
                else ProcessingMode.ONLINE_ONLY
            )

            attempt = PaymentAttempt(
                order_id=order_id,
                transaction_id=transaction_id,
                amount_minor_units=amount_minor_units,
                idempotency_key=idempotency_key,
                processing_mode=processing_mode,
            )
            outcome = await self._run_attempt(attempt, on_complete)
        finally:
            self._in_progress = False
            self._current = None
            self._result = None
            self._on_complete = None

        if outcome.succeeded and not outcome.offline:
            try:
                await self.ledger.remove(outcome.transaction_id)
            except Exception as e:
                # Charge already settled; prune drops the record later
                logger.error(
                    "idempotency_key_remove_failed",
                    transaction_id=outcome.transaction_id,
                    error=str(e),
                )
        return outcome

    async def _run_attempt(
        self, attempt: PaymentAttempt, on_complete: Optional[CompletionHandler]
    ) -> PaymentOutcome:
        loop = asyncio.get_running_loop()
        self._current = attempt
        self._result = loop.create_future()
        self._on_complete = on_complete

        parameters = PaymentParameters(
            amount_minor_units=attempt.amount_minor_units,
            currency=self.settings.currency,
            idempotency_key=attempt.idempotency_key,
            order_id=attempt.order_id,
            reference_id=f"{self.settings.payment_reference_prefix}_{attempt.transaction_id}",
            processing_mode=attempt.processing_mode,
            note=self.settings.payment_note,
        )

        logger.info(
            "payment_submitting",
            order_id=attempt.order_id,
            transaction_id=attempt.transaction_id,
            amount_minor_units=attempt.amount_minor_units,
            processing_mode=attempt.processing_mode.value,
        )

        try:
            self.sdk.payments.start_payment(
                parameters, _AttemptDelegate(self, attempt, loop)
            )
        except ReaderSDKError as e:
            logger.error("payment_start_failed", error=str(e))
            raise PaymentError(
                f"Reader SDK could not start the payment: {e}",
                "Unable to start payment. Please try again.",
            ) from e

        return await self._result

    def _on_started(self, attempt: PaymentAttempt) -> None:
        if attempt is not self._current:
            return
        self.status_message = "Processing payment..."
        logger.info("payment_started", transaction_id=attempt.transaction_id)

    def _on_terminal(
        self,
        attempt: PaymentAttempt,
        status: PaymentStatus,
        payment: Optional[SDKPayment] = None,
        message: Optional[str] = None,
    ) -> None:
        """Resolve the attempt; later terminal callbacks for it are ignored."""
        if attempt is not self._current or self._result is None or self._result.done():
            logger.warning(
                "duplicate_payment_callback_ignored",
                transaction_id=attempt.transaction_id,
                status=status.value,
            )
            return

        attempt.status = status
        outcome = PaymentOutcome(
            status=status,
            order_id=attempt.order_id,
            transaction_id=attempt.transaction_id,
            idempotency_key=attempt.idempotency_key,
            processing_mode=attempt.processing_mode,
            payment_id=payment.payment_id if payment else None,
            offline=payment.offline if payment else False,
            error_message=f"Payment failed: {message}" if status is PaymentStatus.FAILED else None,
        )

        self.status_message = {
            PaymentStatus.SUCCEEDED: "Payment completed",
            PaymentStatus.CANCELED: "Payment cancelled",
            PaymentStatus.FAILED: "Payment failed",
        }[status]
        metrics.record_payment(
            status.value, attempt.processing_mode.value, attempt.amount_minor_units
        )
        logger.info(
            "payment_resolved",
            transaction_id=attempt.transaction_id,
            status=status.value,
            payment_id=outcome.payment_id,
            offline=outcome.offline,
            error=message,
        )

        handler, self._on_complete = self._on_complete, None
        self._result.set_result(outcome)
        if handler is not None:
            try:
                handler(outcome)
            except Exception as e:
                logger.error("payment_completion_handler_failed", error=str(e))

    async def perform_health_check(self) -> bool:
        """
        Verify that session, SDK authorization and location agree.

        An authenticated session with an unauthorized SDK (or no location)
        cannot settle payments, so it forces a full logout.

        Returns:
            bool: False if a forced logout was triggered
        """
        if not self.session.is_authenticated:
            return True
        if self.sdk.authorization.state is SDKAuthorizationState.AUTHORIZING:
            return True

        if not self.coordinator.is_sdk_authorized:
            logger.error("payment_health_check_failed", reason="sdk_not_authorized")
            await self.session.force_logout("sdk_not_authorized")
            return False

        if not self.session.credential.location_id:
            logger.error("payment_health_check_failed", reason="missing_location")
            await self.session.force_logout("missing_location")
            return False

        logger.debug("payment_health_check_passed")
        return True

    async def check_offline_payments(self) -> Optional[int]:
        """
        Read the SDK's offline queue.

        Success marks offline processing as supported; failure as unsupported.

        Returns:
            Optional[int]: Queued payment count, None if unavailable
        """
        if not self.coordinator.is_sdk_authorized:
            return None

        try:
            count = await self.sdk.payments.offline_payment_count()
        except ReaderSDKError as e:
            logger.info("offline_payments_unavailable", error=str(e))
            self.supports_offline_payments = False
            return None

        self.supports_offline_payments = True
        self.offline_pending_count = count
        metrics.set_offline_queue_depth(count)
        if count:
            logger.info("offline_payments_pending", count=count)
        return count

    def reader_status(self) -> str:
        """Short description of reader connectivity for status screens."""
        if not self.coordinator.is_sdk_authorized:
            return "Not authorized with Square"

        ready = [reader for reader in self.sdk.reader_manager.readers() if reader.is_ready]
        if not ready:
            return "No readers connected. Use 'Manage Readers' to pair a reader."

        reader_name = "Square Stand" if ready[0].model == "stand" else "Square Reader"
        return f"Connected to {reader_name}"
