"""
Kiosk backend HTTP client with error classification and URL resilience.

Implements:
- Classification of every failure into an ``ErrorKind``
- Per-endpoint timeouts and request metrics
- Fallback base URLs when the primary backend does not answer
- Remote configuration with an offline cache
"""
import time
from typing import Any, Dict, List, Optional, Type, TypeVar

import httpx
import structlog
from pydantic import ValidationError

from kiosk_core.config import Settings
from kiosk_core.core.errors import BackendError, ErrorKind, OrderCreationError
from kiosk_core.core.models import OrderRequest
from kiosk_core.integrations.schemas import (
    AuthorizeResponse,
    BackendResponse,
    OrderResponse,
    RefreshResponse,
    RemoteConfig,
    StatusResponse,
)
from kiosk_core.monitoring.metrics import metrics
from kiosk_core.storage import CredentialStore, Keys

logger = structlog.get_logger(__name__)

ResponseT = TypeVar("ResponseT", bound=BackendResponse)


class BackendClient:
    """
    Client for the kiosk backend.

    Raw ``httpx`` exceptions never escape: transport failures and timeouts
    become ``TRANSIENT_NETWORK``, 5xx ``SERVER``, 401/403 ``AUTHORIZATION``,
    other 4xx and malformed bodies ``CLIENT``.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        credential_store: Optional[CredentialStore] = None,
    ):
        """
        Initialize backend client.

        Args:
            settings: Kiosk settings
            http_client: Optional shared client (one is created if not provided)
            credential_store: Optional store used to cache remote config
        """
        self.settings = settings
        self.base_url = settings.backend_base_url
        self.credential_store = credential_store
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            headers={"Accept": "application/json"},
        )

        logger.info("backend_client_initialized", base_url=self.base_url)

    @staticmethod
    def _classify_status(status_code: int) -> Optional[ErrorKind]:
        """
        Classify an HTTP status for retry logic.

        Returns:
            Optional[ErrorKind]: None for success codes
        """
        if status_code >= 500:
            return ErrorKind.SERVER
        elif status_code in (401, 403):
            return ErrorKind.AUTHORIZATION
        elif status_code >= 400:
            return ErrorKind.CLIENT
        return None

    async def _request(
        self,
        method: str,
        endpoint: str,
        path: str,
        timeout: float,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        base_url: Optional[str] = None,
    ) -> httpx.Response:
        """
        Send a request and classify failures.

        Args:
            method: HTTP method
            endpoint: Short endpoint name for logs and metrics
            path: URL path appended to the base URL
            timeout: Request timeout in seconds
            params: Query parameters
            json: JSON body
            base_url: Override of the current base URL

        Returns:
            httpx.Response: Response with a 2xx status

        Raises:
            BackendError: Classified failure
        """
        url = f"{base_url or self.base_url}{path}"
        start_time = time.monotonic()

        try:
            response = await self._http.request(
                method, url, params=params, json=json, timeout=timeout
            )
        except httpx.TimeoutException as e:
            metrics.record_backend_request(endpoint, "timeout", time.monotonic() - start_time)
            logger.warning("backend_request_timeout", endpoint=endpoint, timeout=timeout)
            raise BackendError(
                f"{endpoint} request timed out after {timeout}s",
                ErrorKind.TRANSIENT_NETWORK,
                endpoint=endpoint,
                original_error=e,
            )
        except httpx.HTTPError as e:
            metrics.record_backend_request(
                endpoint, "network_error", time.monotonic() - start_time
            )
            logger.warning("backend_network_error", endpoint=endpoint, error=str(e))
            raise BackendError(
                f"{endpoint} request failed: {e}",
                ErrorKind.TRANSIENT_NETWORK,
                endpoint=endpoint,
                original_error=e,
            )

        metrics.record_backend_request(
            endpoint, str(response.status_code), time.monotonic() - start_time
        )

        kind = self._classify_status(response.status_code)
        if kind is not None:
            detail = self._error_detail(response)
            logger.warning(
                "backend_http_error",
                endpoint=endpoint,
                status_code=response.status_code,
                error_type=kind.value,
                detail=detail,
            )
            raise BackendError(
                f"{endpoint} returned HTTP {response.status_code}: {detail}",
                kind,
                status_code=response.status_code,
                endpoint=endpoint,
                detail=detail,
            )

        return response

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(body, dict):
            return str(body.get("error") or body.get("message") or body)
        return str(body)

    @staticmethod
    def _parse(response: httpx.Response, schema: Type[ResponseT], endpoint: str) -> ResponseT:
        """
        Parse a JSON object body into ``schema``.

        Raises:
            BackendError: Empty, non-JSON or non-object body
        """
        try:
            return schema.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.warning("backend_malformed_response", endpoint=endpoint, error=str(e))
            raise BackendError(
                f"{endpoint} returned a malformed response",
                ErrorKind.CLIENT,
                status_code=response.status_code,
                endpoint=endpoint,
                original_error=e,
            )

    async def request_authorization(
        self, organization_id: str, device_id: str
    ) -> AuthorizeResponse:
        """Ask the backend for an OAuth URL and correlation state."""
        response = await self._request(
            "GET",
            "authorize",
            self.settings.authorize_path,
            self.settings.authorize_timeout,
            params={"organization_id": organization_id, "device_id": device_id},
        )
        return self._parse(response, AuthorizeResponse, "authorize")

    async def poll_authorization(self, state: str, device_id: str) -> StatusResponse:
        """Query status by correlation state during an OAuth flow."""
        response = await self._request(
            "GET",
            "poll",
            self.settings.status_path,
            self.settings.poll_timeout,
            params={"state": state, "device_id": device_id},
        )
        return self._parse(response, StatusResponse, "poll")

    async def check_status(self, organization_id: str, device_id: str) -> StatusResponse:
        """Query connection status for an organization/device pair."""
        response = await self._request(
            "GET",
            "status",
            self.settings.status_path,
            self.settings.status_timeout,
            params={"organization_id": organization_id, "device_id": device_id},
        )
        return self._parse(response, StatusResponse, "status")

    async def refresh_token(
        self, organization_id: str, device_id: str, refresh_token: str
    ) -> RefreshResponse:
        """Exchange a refresh token for a new access token."""
        response = await self._request(
            "POST",
            "refresh",
            self.settings.refresh_path,
            self.settings.refresh_timeout,
            json={
                "organization_id": organization_id,
                "device_id": device_id,
                "refresh_token": refresh_token,
            },
        )
        return self._parse(response, RefreshResponse, "refresh")

    async def disconnect(self, organization_id: str, device_id: str) -> None:
        """Ask the backend to revoke this device's tokens."""
        await self._request(
            "POST",
            "disconnect",
            self.settings.disconnect_path,
            self.settings.disconnect_timeout,
            json={"organization_id": organization_id, "device_id": device_id},
        )

    async def check_health(self, base_url: Optional[str] = None) -> bool:
        """
        Probe the health endpoint.

        Returns:
            bool: True only for HTTP 200; never raises
        """
        try:
            response = await self._request(
                "GET",
                "health",
                self.settings.health_path,
                self.settings.health_timeout,
                base_url=base_url,
            )
        except BackendError:
            return False
        return response.status_code == 200

    async def _answers_config(self, base_url: str) -> bool:
        try:
            response = await self._request(
                "GET",
                "config",
                self.settings.config_path,
                self.settings.config_timeout,
                base_url=base_url,
            )
        except BackendError:
            return False
        return response.status_code == 200

    def candidate_urls(self) -> List[str]:
        """Current base URL first, then configured fallbacks."""
        candidates = [self.base_url]
        for url in [self.settings.backend_base_url, *self.settings.get_fallback_urls_list()]:
            if url not in candidates:
                candidates.append(url)
        return candidates

    async def ensure_reachable_base_url(self) -> str:
        """
        Switch to the first candidate base URL that answers the config endpoint.

        Keeps the current URL when none answer.

        Returns:
            str: Base URL in use afterwards
        """
        for url in self.candidate_urls():
            if await self._answers_config(url):
                if url != self.base_url:
                    logger.warning(
                        "backend_url_switched", previous=self.base_url, current=url
                    )
                    self.base_url = url
                return self.base_url

        logger.warning("backend_unreachable_all_candidates", base_url=self.base_url)
        return self.base_url

    async def load_remote_config(self) -> Optional[RemoteConfig]:
        """
        Load remote configuration, falling back to the cached copy.

        A served ``backendBaseURL`` becomes the current base URL.

        Returns:
            Optional[RemoteConfig]: Served or cached config, None if neither
        """
        try:
            response = await self._request(
                "GET",
                "config",
                self.settings.config_path,
                self.settings.config_timeout,
            )
            config = self._parse(response, RemoteConfig, "config")
        except BackendError as e:
            logger.warning("remote_config_unavailable", error=str(e))
            return await self._cached_remote_config()

        if config.backend_base_url:
            self.base_url = config.backend_base_url.rstrip("/")
        if self.credential_store is not None:
            await self.credential_store.set(Keys.BACKEND_BASE_URL, config.backend_base_url)
            await self.credential_store.set(Keys.REDIRECT_URI, config.redirect_uri)

        logger.info(
            "remote_config_loaded",
            backend_base_url=self.base_url,
            redirect_uri=config.redirect_uri,
        )
        return config

    async def _cached_remote_config(self) -> Optional[RemoteConfig]:
        if self.credential_store is None:
            return None

        cached_url = await self.credential_store.get(Keys.BACKEND_BASE_URL)
        cached_redirect = await self.credential_store.get(Keys.REDIRECT_URI)
        if cached_url is None and cached_redirect is None:
            return None

        if cached_url:
            self.base_url = cached_url.rstrip("/")
        logger.info("remote_config_from_cache", backend_base_url=self.base_url)
        return RemoteConfig(backend_base_url=cached_url, redirect_uri=cached_redirect)

    def build_order_payload(self, organization_id: str, order: OrderRequest) -> Dict[str, Any]:
        """Order creation body for a custom or preset amount."""
        payload: Dict[str, Any] = {
            "organization_id": organization_id,
            "reference_id": order.reference_id,
            "state": "OPEN",
            "processing_fee_enabled": self.settings.processing_fee_enabled,
            "processing_fee_percentage": self.settings.processing_fee_percentage,
            "processing_fee_fixed_cents": self.settings.processing_fee_fixed_cents,
        }

        if order.is_custom_amount:
            payload["is_custom_amount"] = True
            payload["custom_amount"] = order.amount_minor_units / 100
        elif order.catalog_item_id:
            payload["line_items"] = [
                {"catalog_object_id": order.catalog_item_id, "quantity": "1"}
            ]
        else:
            payload["line_items"] = [
                {
                    "name": order.item_name or "Donation",
                    "quantity": "1",
                    "base_price_money": {
                        "amount": order.amount_minor_units,
                        "currency": self.settings.currency,
                    },
                }
            ]
        return payload

    async def create_order(self, organization_id: str, order: OrderRequest) -> str:
        """
        Create an OPEN order for a payment.

        Returns:
            str: Order id

        Raises:
            OrderCreationError: Request failed or no order id returned
        """
        try:
            response = await self._request(
                "POST",
                "order",
                self.settings.order_path,
                self.settings.order_timeout,
                json=self.build_order_payload(organization_id, order),
            )
            body = self._parse(response, OrderResponse, "order")
        except BackendError as e:
            raise OrderCreationError(str(e), e.kind) from e

        if body.error:
            raise OrderCreationError(f"Order creation failed: {body.error}")
        if not body.order_id:
            raise OrderCreationError("Order creation response did not include an order id")

        logger.info(
            "order_created",
            order_id=body.order_id,
            amount_minor_units=order.amount_minor_units,
            is_custom_amount=order.is_custom_amount,
        )
        return body.order_id

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._http.aclose()
