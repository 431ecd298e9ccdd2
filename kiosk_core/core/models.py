"""Domain types shared by the session, reader and payment components."""
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional


class SessionState(Enum):
    """AuthSession lifecycle states."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    POLLING_FOR_COMPLETION = "polling_for_completion"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    LOGGING_OUT = "logging_out"


class TokenStatus(Enum):
    """Outcome of the most recent token validation."""

    UNKNOWN = "unknown"
    VALID_LOCAL = "valid_local"  # Present and unexpired, not yet confirmed remotely
    VALID_REMOTE = "valid_remote"
    EXPIRED = "expired"
    INVALID = "invalid"
    NETWORK_ERROR = "network_error"


@dataclass(frozen=True)
class Credential:
    """
    Merchant credential issued by the backend.

    ``access_token`` and ``expires_at`` are set together or both absent.
    ``organization_id`` is always the base tenant id, never device-suffixed.
    """

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    merchant_id: Optional[str] = None
    location_id: Optional[str] = None
    organization_id: Optional[str] = None
    device_id: Optional[str] = None
    expires_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if (self.access_token is None) != (self.expires_at is None):
            raise ValueError("access_token and expires_at must be set together")

    @property
    def has_token(self) -> bool:
        return self.access_token is not None

    def is_expired(self, now: datetime) -> bool:
        """True when there is no token or its expiry has passed."""
        return self.expires_at is None or self.expires_at <= now

    def with_updates(self, **changes: object) -> "Credential":
        return replace(self, **changes)


@dataclass(frozen=True)
class PendingAuthorization:
    """An OAuth flow awaiting completion; at most one per session."""

    correlation_state: str
    started_at: datetime


class PaymentStatus(Enum):
    """Terminal (or pending) outcome of a payment attempt."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"
    FAILED = "failed"


class ProcessingMode(Enum):
    """How the reader SDK may process a payment."""

    ONLINE_ONLY = "online_only"
    AUTO_DETECT = "auto_detect"  # May queue offline


@dataclass
class PaymentAttempt:
    """One submission to the reader SDK."""

    order_id: str
    transaction_id: str
    amount_minor_units: int
    idempotency_key: str
    processing_mode: ProcessingMode
    status: PaymentStatus = PaymentStatus.PENDING


@dataclass(frozen=True)
class PaymentOutcome:
    """
    What the caller learns about a finished attempt.

    Canceled attempts carry no error message.
    """

    status: PaymentStatus
    order_id: str
    transaction_id: str
    idempotency_key: str
    processing_mode: ProcessingMode
    payment_id: Optional[str] = None
    offline: bool = False
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status is PaymentStatus.SUCCEEDED


class ReconcileAction(Enum):
    """What ``ensure_authorized`` did."""

    NOOP = "noop"
    AUTHORIZED = "authorized"
    REAUTHORIZED = "reauthorized"
    IN_PROGRESS = "in_progress"  # Another reconciliation was running
    LOCATION_RECHECK = "location_recheck"
    SKIPPED = "skipped"  # Nothing to authorize with


@dataclass
class OrderRequest:
    """Parameters for backend order creation."""

    amount_minor_units: int
    is_custom_amount: bool
    reference_id: str
    catalog_item_id: Optional[str] = None
    item_name: Optional[str] = None
