"""Unit tests for the Microsoft Graph client."""

from datetime import datetime, timezone

import httpx
import pytest

from mailhub.config import Settings
from mailhub.exceptions import ConfigurationError, DeltaExpiredError, ProviderError
from mailhub.services.graph_service import (
    ChangeType,
    GraphClient,
    parse_graph_datetime,
    parse_graph_message,
)

GRAPH = "https://graph.test/v1.0"

RAW_MESSAGE = {
    "id": "AAMk1",
    "subject": "Invoice",
    "internetMessageId": "<inv-1@example.com>",
    "conversationId": "conv-1",
    "body": {"contentType": "html", "content": "<p>Hi</p>"},
    "from": {"emailAddress": {"name": "Alice", "address": "alice@example.com"}},
    "toRecipients": [{"emailAddress": {"name": "", "address": "support@example.com"}}],
    "ccRecipients": [{"emailAddress": {"address": ""}}],
    "sentDateTime": "2024-05-01T08:59:00Z",
    "receivedDateTime": "2024-05-01T09:00:00Z",
}


@pytest.fixture
def graph_settings() -> Settings:
    return Settings(
        ms_tenant_id="tenant",
        ms_client_id="client",
        ms_client_secret="secret",
        graph_base_url=GRAPH,
    )


def _client(settings: Settings, handler) -> GraphClient:
    return GraphClient(settings, http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def _token_response(request: httpx.Request):
    if "login.microsoftonline.com" in request.url.host:
        return httpx.Response(200, json={"access_token": "token-1", "expires_in": 3600})
    return None


class TestParsing:

    def test_parse_graph_message(self) -> None:
        """Test that a Graph message maps onto a descriptor."""
        descriptor = parse_graph_message(RAW_MESSAGE)

        assert descriptor.change_type == ChangeType.CREATE
        assert descriptor.provider_id == "AAMk1"
        assert descriptor.internet_message_id == "<inv-1@example.com>"
        assert descriptor.body_content_type == "html"
        assert descriptor.sender == {
            "email_address": "alice@example.com",
            "display_name": "Alice",
            "type": "from",
        }
        # Empty addresses are dropped, empty names become None
        assert descriptor.participants[1] == {
            "email_address": "support@example.com",
            "display_name": None,
            "type": "to",
        }
        assert len(descriptor.participants) == 2
        assert descriptor.received_at == datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
        assert not descriptor.is_minimal

    def test_removed_entry(self) -> None:
        """Test that @removed delta entries become deletions."""
        descriptor = parse_graph_message({"id": "AAMk1", "@removed": {"reason": "deleted"}})

        assert descriptor.change_type == ChangeType.DELETE
        assert descriptor.is_minimal

    def test_parse_graph_datetime(self) -> None:
        assert parse_graph_datetime("2024-05-01T09:00:00Z").tzinfo is not None
        assert parse_graph_datetime(None) is None
        assert parse_graph_datetime("not a date") is None


class TestGraphClient:

    @pytest.mark.asyncio
    async def test_missing_credentials_raise(self) -> None:
        """Test that a token request without credentials fails fast."""
        client = GraphClient(Settings(ms_tenant_id=None, ms_client_id=None, ms_client_secret=None))

        with pytest.raises(ConfigurationError):
            await client.get_access_token()

        await client.aclose()

    @pytest.mark.asyncio
    async def test_delta_follows_next_links(self, graph_settings) -> None:
        """Test that all pages are read and the final deltaLink is returned."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            token = _token_response(request)
            if token:
                return token
            seen.append(str(request.url))
            assert request.headers["Authorization"] == "Bearer token-1"
            if "page=2" in str(request.url):
                return httpx.Response(200, json={
                    "value": [{"id": "AAMk2", "@removed": {"reason": "deleted"}}],
                    "@odata.deltaLink": f"{GRAPH}/delta?token=C1",
                })
            return httpx.Response(200, json={
                "value": [RAW_MESSAGE],
                "@odata.nextLink": f"{GRAPH}/delta?page=2",
            })

        client = _client(graph_settings, handler)
        page = await client.get_messages_delta("support@example.com")

        assert len(seen) == 2
        assert "/users/support%40example.com/mailFolders/inbox/messages/delta" in seen[0]
        assert [m.change_type for m in page.messages] == [ChangeType.CREATE, ChangeType.DELETE]
        assert page.delta_link == f"{GRAPH}/delta?token=C1"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_stored_delta_link_is_used_verbatim(self, graph_settings) -> None:
        """Test that an incremental fetch starts at the stored cursor."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            token = _token_response(request)
            if token:
                return token
            seen.append(str(request.url))
            return httpx.Response(200, json={"value": [], "@odata.deltaLink": f"{GRAPH}/delta?token=C2"})

        client = _client(graph_settings, handler)
        page = await client.get_messages_delta("support@example.com", f"{GRAPH}/delta?token=C1")

        assert seen == [f"{GRAPH}/delta?token=C1"]
        assert page.delta_link.endswith("token=C2")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_gone_means_expired_cursor(self, graph_settings) -> None:
        """Test that HTTP 410 is reported as DeltaExpiredError."""
        def handler(request: httpx.Request) -> httpx.Response:
            return _token_response(request) or httpx.Response(
                410, json={"error": {"code": "syncStateNotFound"}}
            )

        client = _client(graph_settings, handler)

        with pytest.raises(DeltaExpiredError):
            await client.get_messages_delta("support@example.com", f"{GRAPH}/delta?token=C0")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_server_error_is_provider_error(self, graph_settings) -> None:
        """Test that other failures keep the upstream status."""
        def handler(request: httpx.Request) -> httpx.Response:
            return _token_response(request) or httpx.Response(
                503, json={"error": {"code": "serviceNotAvailable"}}
            )

        client = _client(graph_settings, handler)

        with pytest.raises(ProviderError) as exc_info:
            await client.get_message("support@example.com", "AAMk1")

        assert not isinstance(exc_info.value, DeltaExpiredError)
        assert exc_info.value.upstream_status == 503
        await client.aclose()

    @pytest.mark.asyncio
    async def test_token_is_cached(self, graph_settings) -> None:
        """Test that the access token is requested once for several calls."""
        token_requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            if "login.microsoftonline.com" in request.url.host:
                token_requests.append(request)
                return httpx.Response(200, json={"access_token": "token-1", "expires_in": 3600})
            return httpx.Response(200, text="From: alice@example.com\r\n\r\nbody")

        client = _client(graph_settings, handler)
        await client.get_message_raw_content("support@example.com", "AAMk1")
        await client.get_message_raw_content("support@example.com", "AAMk2")

        assert len(token_requests) == 1
        await client.aclose()

    @pytest.mark.asyncio
    async def test_token_response_without_token_is_provider_error(self, graph_settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"token_type": "Bearer"})

        client = _client(graph_settings, handler)

        with pytest.raises(ProviderError):
            await client.get_access_token()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_non_json_body_is_provider_error(self, graph_settings) -> None:
        """Test that an HTML error page served with 200 maps to ProviderError, not ValueError."""
        def handler(request: httpx.Request) -> httpx.Response:
            return _token_response(request) or httpx.Response(200, text="<html>gateway</html>")

        client = _client(graph_settings, handler)

        with pytest.raises(ProviderError) as exc_info:
            await client.get_messages_delta("support@example.com", f"{GRAPH}/delta?token=C0")

        assert exc_info.value.upstream_status == 200
        await client.aclose()

    @pytest.mark.asyncio
    async def test_non_json_token_response_is_provider_error(self, graph_settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="not json")

        client = _client(graph_settings, handler)

        with pytest.raises(ProviderError):
            await client.get_message("support@example.com", "AAMk1")
        await client.aclose()
