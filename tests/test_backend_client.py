"""
Tests for the backend client: error classification, URL fallback and orders.
"""
import httpx
import pytest

from kiosk_core.core.errors import BackendError, ErrorKind, OrderCreationError
from kiosk_core.core.models import OrderRequest
from kiosk_core.integrations.backend_client import BackendClient
from kiosk_core.storage import Keys
from tests.fakes import STATUS_PATH, token_bundle

CONFIG_PATH = "/api/config"
HEALTH_PATH = "/api/health"
ORDER_PATH = "/api/square/orders/create"


class TestErrorClassification:
    """Test suite for mapping failures to error kinds."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "reply,kind,retryable",
        [
            ((503, {"error": "unavailable"}), ErrorKind.SERVER, True),
            ((401, {"error": "unauthorized"}), ErrorKind.AUTHORIZATION, False),
            ((403, {"error": "forbidden"}), ErrorKind.AUTHORIZATION, False),
            ((404, {"error": "not_found"}), ErrorKind.CLIENT, False),
            ((200, "<html>oops</html>"), ErrorKind.CLIENT, False),
            ((200, []), ErrorKind.CLIENT, False),
        ],
    )
    async def test_http_failures(self, backend, backend_stub, reply, kind, retryable) -> None:
        """Test that status codes and bad bodies are classified."""
        backend_stub.respond("GET", STATUS_PATH, reply)

        with pytest.raises(BackendError) as exc_info:
            await backend.check_status("default", "A1B2C3D4")

        error = exc_info.value
        assert error.kind is kind
        assert error.retryable is retryable
        assert error.endpoint == "status"

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "exception",
        [httpx.ConnectError("refused"), httpx.ReadTimeout("slow")],
    )
    async def test_transport_failures(self, backend, backend_stub, exception) -> None:
        """Test that transport errors and timeouts are transient network errors."""
        backend_stub.respond("GET", STATUS_PATH, exception)

        with pytest.raises(BackendError) as exc_info:
            await backend.check_status("default", "A1B2C3D4")

        assert exc_info.value.kind is ErrorKind.TRANSIENT_NETWORK
        assert exc_info.value.retryable is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_auth_rejection_flag(self, backend, backend_stub) -> None:
        """Test that 401 is reported as an auth rejection with its status code."""
        backend_stub.respond("GET", STATUS_PATH, (401, {"error": "unauthorized"}))

        with pytest.raises(BackendError) as exc_info:
            await backend.check_status("default", "A1B2C3D4")

        assert exc_info.value.is_auth_rejection
        assert exc_info.value.status_code == 401

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_response_parsed(self, backend, backend_stub) -> None:
        """Test that unknown fields are ignored and a full bundle is complete."""
        backend_stub.respond("GET", STATUS_PATH, (200, token_bundle(extra_field="x")))

        response = await backend.check_status("default", "A1B2C3D4")

        assert response.is_complete
        assert response.location_id == "L1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bundle_without_location_is_incomplete(self, backend, backend_stub) -> None:
        """Test that a bundle missing the location does not count as connected."""
        backend_stub.respond("GET", STATUS_PATH, (200, token_bundle(location_id=None)))

        response = await backend.check_status("default", "A1B2C3D4")

        assert not response.is_complete


class TestHealthAndFallback:
    """Test suite for the health probe and base URL selection."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_health_never_raises(self, backend, backend_stub) -> None:
        """Test that the health probe reports failures as False."""
        assert await backend.check_health() is True

        backend_stub.respond("GET", HEALTH_PATH, (500, {"status": "down"}))
        assert await backend.check_health() is False

        backend_stub.respond("GET", HEALTH_PATH, httpx.ConnectError("refused"))
        assert await backend.check_health() is False

    @pytest.fixture
    def fallback_backend(self, settings, http_client, store) -> BackendClient:
        configured = settings.model_copy(
            update={"backend_fallback_urls": "https://fallback-a.test, https://fallback-b.test/"}
        )
        return BackendClient(configured, http_client=http_client, credential_store=store)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_switches_to_first_answering_fallback(
        self, fallback_backend, backend_stub
    ) -> None:
        """Test that an unreachable primary is replaced by a working fallback."""

        def config_by_host(request: httpx.Request):
            if request.url.host == "fallback-b.test":
                return 200, {}
            return 503, {"error": "down"}

        backend_stub.respond("GET", CONFIG_PATH, config_by_host)

        assert fallback_backend.candidate_urls() == [
            "https://backend.test",
            "https://fallback-a.test",
            "https://fallback-b.test",
        ]
        assert await fallback_backend.ensure_reachable_base_url() == "https://fallback-b.test"
        assert fallback_backend.base_url == "https://fallback-b.test"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_keeps_url_when_nothing_answers(self, fallback_backend, backend_stub) -> None:
        """Test that the current URL is kept when every candidate fails."""
        backend_stub.respond("GET", CONFIG_PATH, httpx.ConnectError("refused"))

        assert await fallback_backend.ensure_reachable_base_url() == "https://backend.test"
        assert len(backend_stub.calls(CONFIG_PATH)) == 3


class TestRemoteConfig:
    """Test suite for remote configuration loading."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_served_config_is_applied_and_cached(self, backend, backend_stub, store) -> None:
        """Test that a served base URL is used and cached."""
        backend_stub.respond(
            "GET",
            CONFIG_PATH,
            (200, {"backendBaseURL": "https://new.test/", "redirectURI": "kiosk://oauth"}),
        )

        config = await backend.load_remote_config()

        assert config.redirect_uri == "kiosk://oauth"
        assert backend.base_url == "https://new.test"
        assert await store.get(Keys.BACKEND_BASE_URL) == "https://new.test/"
        assert await store.get(Keys.REDIRECT_URI) == "kiosk://oauth"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_falls_back_to_cache(self, backend, backend_stub, store) -> None:
        """Test that an unreachable config endpoint uses the cached copy."""
        await store.set(Keys.BACKEND_BASE_URL, "https://cached.test")
        backend_stub.respond("GET", CONFIG_PATH, httpx.ConnectError("refused"))

        config = await backend.load_remote_config()

        assert config.backend_base_url == "https://cached.test"
        assert backend.base_url == "https://cached.test"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_config_anywhere(self, backend, backend_stub) -> None:
        """Test that missing config and cache leave the configured URL."""
        backend_stub.respond("GET", CONFIG_PATH, (500, {"error": "boom"}))

        assert await backend.load_remote_config() is None
        assert backend.base_url == "https://backend.test"


class TestOrders:
    """Test suite for order payloads and creation."""

    @pytest.mark.unit
    def test_custom_amount_payload(self, backend) -> None:
        """Test that custom amounts are sent in major units."""
        payload = backend.build_order_payload(
            "acme", OrderRequest(amount_minor_units=2550, is_custom_amount=True, reference_id="r1")
        )

        assert payload["is_custom_amount"] is True
        assert payload["custom_amount"] == 25.5
        assert "line_items" not in payload
        assert payload["reference_id"] == "r1"
        assert payload["processing_fee_enabled"] is False

    @pytest.mark.unit
    def test_catalog_item_payload(self, backend) -> None:
        """Test that preset amounts reference a catalog item."""
        payload = backend.build_order_payload(
            "acme",
            OrderRequest(
                amount_minor_units=1000,
                is_custom_amount=False,
                reference_id="r2",
                catalog_item_id="ITEM-10",
            ),
        )

        assert payload["line_items"] == [{"catalog_object_id": "ITEM-10", "quantity": "1"}]

    @pytest.mark.unit
    def test_ad_hoc_line_item_payload(self, backend) -> None:
        """Test that preset amounts without a catalog item carry a priced line item."""
        payload = backend.build_order_payload(
            "acme", OrderRequest(amount_minor_units=500, is_custom_amount=False, reference_id="r3")
        )

        assert payload["line_items"][0]["base_price_money"] == {"amount": 500, "currency": "USD"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_order(self, backend, backend_stub) -> None:
        """Test that the created order id is returned."""
        backend_stub.respond("POST", ORDER_PATH, (200, {"order_id": "ORDER-1"}))

        order_id = await backend.create_order(
            "acme", OrderRequest(amount_minor_units=500, is_custom_amount=False, reference_id="r4")
        )

        assert order_id == "ORDER-1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "reply",
        [(500, {"error": "boom"}), (200, {"error": "location_closed"}), (200, {})],
    )
    async def test_create_order_failures(self, backend, backend_stub, reply) -> None:
        """Test that every order failure surfaces as OrderCreationError."""
        backend_stub.respond("POST", ORDER_PATH, reply)

        with pytest.raises(OrderCreationError):
            await backend.create_order(
                "acme",
                OrderRequest(amount_minor_units=500, is_custom_amount=False, reference_id="r5"),
            )
