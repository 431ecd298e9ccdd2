"""External integrations: kiosk backend and hardware payment SDK."""
from .backend_client import BackendClient
from .reader_sdk import (
    AuthorizationManager,
    PaymentDelegate,
    PaymentManager,
    PaymentParameters,
    ReaderInfo,
    ReaderManager,
    ReaderSDK,
    ReaderSDKError,
    ReaderState,
    SDKAuthorizationState,
    SDKPayment,
)

__all__ = [
    "AuthorizationManager",
    "BackendClient",
    "PaymentDelegate",
    "PaymentManager",
    "PaymentParameters",
    "ReaderInfo",
    "ReaderManager",
    "ReaderSDK",
    "ReaderSDKError",
    "ReaderState",
    "SDKAuthorizationState",
    "SDKPayment",
]
