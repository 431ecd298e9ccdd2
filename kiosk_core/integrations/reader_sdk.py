"""
Interfaces the hardware payment SDK must provide.

The kiosk core never talks to reader hardware directly; a platform binding
implements these classes around the vendor SDK. Delegate callbacks may be
invoked from any thread.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from kiosk_core.core.models import ProcessingMode


class ReaderSDKError(Exception):
    """Raised by SDK bindings when an SDK call fails."""

    pass


class SDKAuthorizationState(Enum):
    """Authorization state reported by the SDK."""

    NOT_AUTHORIZED = "not_authorized"
    AUTHORIZING = "authorizing"
    AUTHORIZED = "authorized"


class ReaderState(Enum):
    """Connection state of one card reader."""

    READY = "ready"
    CONNECTING = "connecting"
    UPDATING = "updating"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


@dataclass(frozen=True)
class ReaderInfo:
    """A card reader known to the SDK."""

    serial_number: str
    model: str
    state: ReaderState

    @property
    def is_ready(self) -> bool:
        return self.state is ReaderState.READY


@dataclass(frozen=True)
class PaymentParameters:
    """
    What the SDK is asked to charge.

    Only hardware entry (tap, dip, swipe) is allowed; there is no manual
    card entry path.
    """

    amount_minor_units: int
    currency: str
    idempotency_key: str
    order_id: str
    reference_id: str
    processing_mode: ProcessingMode
    note: Optional[str] = None
    allow_manual_entry: bool = False


@dataclass(frozen=True)
class SDKPayment:
    """A payment the SDK reports as finished."""

    payment_id: str
    offline: bool = False


class PaymentDelegate(ABC):
    """Lifecycle callbacks for one payment; exactly one terminal call is expected."""

    @abstractmethod
    def did_start(self) -> None:
        """The SDK payment UI is showing."""

    @abstractmethod
    def did_finish(self, payment: SDKPayment) -> None:
        """The payment completed (or was queued offline)."""

    @abstractmethod
    def did_cancel(self) -> None:
        """The customer abandoned the payment."""

    @abstractmethod
    def did_fail(self, message: str) -> None:
        """The payment failed or was declined."""


class AuthorizationManager(ABC):
    """SDK-side authorization (access token + active location)."""

    @property
    @abstractmethod
    def state(self) -> SDKAuthorizationState:
        """Current SDK authorization state."""

    @property
    @abstractmethod
    def location_id(self) -> Optional[str]:
        """Location the SDK is authorized for, if any."""

    @abstractmethod
    async def authorize(self, access_token: str, location_id: str) -> None:
        """Authorize the SDK; raises ``ReaderSDKError`` on failure."""

    @abstractmethod
    async def deauthorize(self) -> None:
        """Drop the SDK authorization."""


class PaymentManager(ABC):
    """SDK payment submission."""

    @abstractmethod
    def start_payment(self, parameters: PaymentParameters, delegate: PaymentDelegate) -> None:
        """Present the SDK payment UI; outcome arrives through ``delegate``."""

    @abstractmethod
    async def offline_payment_count(self) -> int:
        """Payments queued offline; raises ``ReaderSDKError`` if unsupported."""


class ReaderManager(ABC):
    """Card reader enumeration."""

    @abstractmethod
    def readers(self) -> List[ReaderInfo]:
        """All readers currently known to the SDK."""


class ReaderSDK(ABC):
    """Facade bundling the SDK managers."""

    @property
    @abstractmethod
    def authorization(self) -> AuthorizationManager:
        """Authorization manager."""

    @property
    @abstractmethod
    def payments(self) -> PaymentManager:
        """Payment manager."""

    @property
    @abstractmethod
    def reader_manager(self) -> ReaderManager:
        """Reader manager."""

    @property
    def supports_offline_processing(self) -> bool:
        """Whether the SDK build can queue payments offline."""
        return False
