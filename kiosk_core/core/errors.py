"""
Error taxonomy for the kiosk core.

Every failure that crosses a component boundary is a ``KioskError`` carrying
an ``ErrorKind`` (used for retry decisions) and a short user-facing message.
"""
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Classification of errors for retry and escalation logic."""

    TRANSIENT_NETWORK = "transient_network"  # Retry, then probe health
    SERVER = "server"  # 5xx, retried like network errors
    CLIENT = "client"  # 4xx other than 401/403, never retried
    AUTHORIZATION = "authorization"  # 401/403 or refresh failure
    HARDWARE_AUTHORIZATION = "hardware_authorization"
    PAYMENT = "payment"
    PRECONDITION = "precondition"
    TIMEOUT = "timeout"
    CONFIGURATION = "configuration"


USER_MESSAGES = {
    ErrorKind.TRANSIENT_NETWORK: "Unable to reach the server. Please check your connection.",
    ErrorKind.SERVER: "The server is temporarily unavailable. Please try again shortly.",
    ErrorKind.CLIENT: "The request could not be completed.",
    ErrorKind.AUTHORIZATION: "Please reconnect to Square.",
    ErrorKind.HARDWARE_AUTHORIZATION: "Card reader authorization failed. Please reconnect to Square.",
    ErrorKind.PAYMENT: "Payment failed.",
    ErrorKind.PRECONDITION: "Payment cannot be started right now.",
    ErrorKind.TIMEOUT: "The request timed out. Please try again.",
    ErrorKind.CONFIGURATION: "The kiosk is not configured correctly.",
}


class KioskError(Exception):
    """Base exception for kiosk core errors."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        user_message: Optional[str] = None,
    ):
        """
        Initialize kiosk error.

        Args:
            message: Error message (for logs)
            kind: Classification of error
            user_message: Short message safe to show on screen
        """
        super().__init__(message)
        self.kind = kind
        self.user_message = user_message or USER_MESSAGES[kind]


class BackendError(KioskError):
    """Backend request failed (network, HTTP status or malformed body)."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        status_code: Optional[int] = None,
        endpoint: Optional[str] = None,
        original_error: Optional[Exception] = None,
        detail: Optional[str] = None,
    ):
        super().__init__(message, kind)
        self.status_code = status_code
        self.endpoint = endpoint
        self.original_error = original_error
        self.detail = detail

    @property
    def retryable(self) -> bool:
        """Network errors and 5xx responses are retried; everything else is not."""
        return self.kind in (ErrorKind.TRANSIENT_NETWORK, ErrorKind.SERVER)

    @property
    def is_auth_rejection(self) -> bool:
        """401/403 from the backend."""
        return self.status_code in (401, 403)


class AuthorizationFlowError(KioskError):
    """The OAuth authorization flow failed (e.g. invalid correlation state)."""

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message, ErrorKind.AUTHORIZATION, user_message)


class AuthorizationTimeoutError(KioskError):
    """A pending authorization was not completed in time."""

    def __init__(self, message: str = "Authorization timed out"):
        super().__init__(
            message,
            ErrorKind.TIMEOUT,
            "Authorization timed out. Please try connecting again.",
        )


class TokenRefreshError(KioskError):
    """Token refresh failed; full re-authentication is required."""

    def __init__(self, message: str):
        super().__init__(message, ErrorKind.AUTHORIZATION)


class ReaderAuthorizationError(KioskError):
    """The reader SDK could not be authorized."""

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message, ErrorKind.HARDWARE_AUTHORIZATION, user_message)


class PreconditionFailure(Enum):
    """Why a payment could not be started."""

    NOT_AUTHENTICATED = "not_authenticated"
    SDK_NOT_AUTHORIZED = "sdk_not_authorized"
    NO_READER_READY = "no_reader_ready"
    PAYMENT_IN_PROGRESS = "payment_in_progress"


PRECONDITION_MESSAGES = {
    PreconditionFailure.NOT_AUTHENTICATED: "Not connected to Square. Please reconnect.",
    PreconditionFailure.SDK_NOT_AUTHORIZED: "Card reader is not authorized. Please reconnect to Square.",
    PreconditionFailure.NO_READER_READY: "No card reader ready. Please check reader connection in settings.",
    PreconditionFailure.PAYMENT_IN_PROGRESS: "A payment is already in progress.",
}


class PaymentPreconditionError(KioskError):
    """A payment precondition failed; nothing was sent anywhere."""

    def __init__(self, failure: PreconditionFailure):
        message = PRECONDITION_MESSAGES[failure]
        super().__init__(message, ErrorKind.PRECONDITION, message)
        self.failure = failure


class OrderCreationError(KioskError):
    """The backend could not create an order for the payment."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.CLIENT):
        super().__init__(message, kind, "Could not create the order. Please try again.")


class PaymentError(KioskError):
    """The reader SDK rejected or failed a payment."""

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message, ErrorKind.PAYMENT, user_message or message)
