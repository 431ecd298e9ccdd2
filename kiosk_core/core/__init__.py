"""
Session, reader authorization and payment orchestration.

Components live in their own modules (``auth_session``,
``reader_authorization``, ``payment_orchestrator``, ``idempotency``); the
package re-exports only the shared types.
"""
from .errors import (
    AuthorizationFlowError,
    AuthorizationTimeoutError,
    BackendError,
    ErrorKind,
    KioskError,
    OrderCreationError,
    PaymentError,
    PaymentPreconditionError,
    PreconditionFailure,
    ReaderAuthorizationError,
    TokenRefreshError,
)
from .events import Event, EventChannel, EventType
from .models import (
    Credential,
    PaymentOutcome,
    PaymentStatus,
    PendingAuthorization,
    ProcessingMode,
    ReconcileAction,
    SessionState,
    TokenStatus,
)

__all__ = [
    "AuthorizationFlowError",
    "AuthorizationTimeoutError",
    "BackendError",
    "Credential",
    "ErrorKind",
    "Event",
    "EventChannel",
    "EventType",
    "KioskError",
    "OrderCreationError",
    "PaymentError",
    "PaymentOutcome",
    "PaymentPreconditionError",
    "PaymentStatus",
    "PendingAuthorization",
    "PreconditionFailure",
    "ProcessingMode",
    "ReaderAuthorizationError",
    "ReconcileAction",
    "SessionState",
    "TokenStatus",
    "TokenRefreshError",
]
