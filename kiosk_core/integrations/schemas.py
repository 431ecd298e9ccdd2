"""
Pydantic schemas for kiosk backend responses.

Responses are parsed leniently: unknown fields are ignored and every field is
optional, because the backend signals progress through which fields are
present (``connected`` + tokens, ``message``, ``error``).
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class BackendResponse(BaseModel):
    """Fields shared by every backend response."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    error: Optional[str] = Field(default=None, description="Error discriminant")
    message: Optional[str] = Field(default=None, description="Progress or error message")


class AuthorizeResponse(BackendResponse):
    """Authorize-URL issuance response."""

    auth_url: Optional[str] = Field(default=None, alias="authUrl", description="OAuth URL to open")
    state: Optional[str] = Field(default=None, description="Correlation state for polling")


class StatusResponse(BackendResponse):
    """Status/poll response; a full bundle means the merchant is connected."""

    connected: bool = Field(default=False, description="Merchant connected")
    access_token: Optional[str] = Field(default=None, description="Access token")
    refresh_token: Optional[str] = Field(default=None, description="Refresh token")
    merchant_id: Optional[str] = Field(default=None, description="Merchant id")
    location_id: Optional[str] = Field(default=None, description="Selected location id")
    expires_at: Optional[str] = Field(default=None, description="Token expiry (ISO 8601)")
    needs_refresh: bool = Field(default=False, description="Backend asks for a token refresh")

    @property
    def is_complete(self) -> bool:
        """True when the response carries a full token bundle."""
        return bool(
            self.connected
            and self.access_token
            and self.refresh_token
            and self.merchant_id
            and self.location_id
            and self.expires_at
        )


class RefreshResponse(BackendResponse):
    """Token refresh response."""

    access_token: Optional[str] = Field(default=None, description="New access token")
    refresh_token: Optional[str] = Field(default=None, description="New refresh token")
    expires_at: Optional[str] = Field(default=None, description="New expiry (ISO 8601)")
    expires_in: Optional[int] = Field(default=None, description="New lifetime in seconds")


class OrderResponse(BackendResponse):
    """Order creation response."""

    order_id: Optional[str] = Field(default=None, description="Created order id")


class RemoteConfig(BackendResponse):
    """Remote configuration served by the config endpoint."""

    backend_base_url: Optional[str] = Field(
        default=None, alias="backendBaseURL", description="Preferred backend base URL"
    )
    redirect_uri: Optional[str] = Field(
        default=None, alias="redirectURI", description="OAuth redirect URI"
    )
