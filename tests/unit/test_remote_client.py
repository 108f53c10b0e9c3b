"""
Tests for syncengine.remote module.

Requests are served by httpx.MockTransport, so the full request path
(rate limiter, retry, circuit breaker, decoding) is exercised.
"""
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from syncengine.config import RemoteConfig
from syncengine.exceptions import (
    RemoteAPIError,
    RemoteConnectionError,
    RemoteDataError,
    RemoteRateLimitedError,
)
from syncengine.observability import MetricsCollector, correlation_context
from syncengine.remote import RemoteClient
from syncengine.resilience import CircuitOpenError, CircuitState
from tests.fakes import T0, make_record


def _config(**overrides) -> RemoteConfig:
    values = dict(
        api_key="test-key",
        base_url="http://remote.test/api/",
        call_attempts=2,
        call_base_delay=0.001,
        circuit_failure_threshold=3,
    )
    values.update(overrides)
    return RemoteConfig(**values)


def _client(handler, **overrides) -> RemoteClient:
    return RemoteClient(_config(**overrides), transport=httpx.MockTransport(handler))


class TestRemoteClientSetup:
    """Tests for construction and lifecycle."""

    def test_requires_api_key(self):
        with pytest.raises(ValueError, match="SYNC_REMOTE_API_KEY is required"):
            RemoteClient(_config(api_key=""))

    def test_headers(self):
        """Bearer auth and JSON headers."""
        client = RemoteClient(_config(api_key="my-secret-key"))
        assert client.headers["Authorization"] == "Bearer my-secret-key"
        assert client.headers["Accept"] == "application/json"

    def test_base_url_trailing_slash(self):
        assert RemoteClient(_config()).base_url == "http://remote.test/api"

    @pytest.mark.asyncio
    async def test_context_manager(self):
        client = RemoteClient(_config())
        async with client:
            assert client._client is not None
        assert client._client is None


class TestGetById:
    """Tests for get_by_id."""

    @pytest.mark.asyncio
    async def test_success(self):
        """Record decodes into a RemoteSnapshot."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json=make_record("r 1", 3, name="Widget"))

        async with _client(handler) as client:
            snapshot = await client.get_by_id("r 1")

        assert seen["url"] == "http://remote.test/api/records/r%201"
        assert seen["auth"] == "Bearer test-key"
        assert snapshot.id == "r 1"
        assert snapshot.version == 3
        assert snapshot.fields == {"name": "Widget"}

    @pytest.mark.asyncio
    async def test_data_envelope(self):
        """A {"data": record} envelope is unwrapped."""
        def handler(request):
            return httpx.Response(200, json={"data": make_record("r-1", 2)})

        async with _client(handler) as client:
            snapshot = await client.get_by_id("r-1")
        assert snapshot.version == 2

    @pytest.mark.asyncio
    async def test_record_with_data_field_not_unwrapped(self):
        def handler(request):
            return httpx.Response(200, json=make_record("r-1", 2, data={"nested": True}))

        async with _client(handler) as client:
            snapshot = await client.get_by_id("r-1")
        assert snapshot.fields == {"data": {"nested": True}}

    @pytest.mark.asyncio
    async def test_not_found_returns_none(self):
        def handler(request):
            return httpx.Response(404, text="Not found")

        async with _client(handler) as client:
            assert await client.get_by_id("missing") is None

    @pytest.mark.asyncio
    async def test_correlation_id_forwarded(self):
        """Current correlation id goes out as X-Request-ID."""
        seen = {}

        def handler(request):
            seen["request_id"] = request.headers.get("X-Request-ID")
            return httpx.Response(200, json=make_record("r-1", 1))

        async with _client(handler) as client:
            with correlation_context("abc12345"):
                await client.get_by_id("r-1")
        assert seen["request_id"] == "abc12345"

    @pytest.mark.asyncio
    async def test_server_error(self):
        """5xx raises a transient RemoteAPIError."""
        def handler(request):
            return httpx.Response(503, text="unavailable")

        async with _client(handler) as client:
            with pytest.raises(RemoteAPIError) as exc_info:
                await client.get_by_id("r-1")
        assert exc_info.value.status_code == 503
        assert exc_info.value.is_transient is True

    @pytest.mark.asyncio
    async def test_client_error_does_not_trip_circuit(self):
        def handler(request):
            return httpx.Response(422, text="bad")

        async with _client(handler) as client:
            for _ in range(5):
                with pytest.raises(RemoteAPIError):
                    await client.get_by_id("r-1")
            assert client.circuit.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        def handler(request):
            return httpx.Response(200, text="<html>oops</html>")

        async with _client(handler) as client:
            with pytest.raises(RemoteDataError):
                await client.get_by_id("r-1")

    @pytest.mark.asyncio
    async def test_non_object_body(self):
        def handler(request):
            return httpx.Response(200, json=[1, 2, 3])

        async with _client(handler) as client:
            with pytest.raises(RemoteDataError) as exc_info:
                await client.get_by_id("r-1")
        assert exc_info.value.got == "list"


class TestRateLimits:
    """Tests for 429 handling and quota headers."""

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        """429 raises with Retry-After and marks quota exhausted."""
        def handler(request):
            return httpx.Response(429, headers={"Retry-After": "7"}, text="slow down")

        async with _client(handler) as client:
            with pytest.raises(RemoteRateLimitedError) as exc_info:
                await client.get_by_id("r-1")
            assert exc_info.value.retry_after == 7.0
            assert client.rate_limit.remaining == 0
            assert client.rate_limit.reset_at is not None

    @pytest.mark.asyncio
    async def test_quota_headers(self):
        reset = datetime(2026, 1, 10, 12, 5, tzinfo=timezone.utc)

        def handler(request):
            return httpx.Response(
                200,
                json=make_record("r-1", 1),
                headers={
                    "X-RateLimit-Limit": "100",
                    "X-RateLimit-Remaining": "42",
                    "X-RateLimit-Reset": str(reset.timestamp()),
                },
            )

        async with _client(handler) as client:
            await client.get_by_id("r-1")
            assert client.rate_limit.limit == 100
            assert client.rate_limit.remaining == 42
            assert client.rate_limit.reset_at == reset


class TestConnectionFailures:
    """Tests for retry and circuit breaker on network errors."""

    @pytest.mark.asyncio
    async def test_read_retried_in_call(self):
        """A GET is retried once after a connection error."""
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json=make_record("r-1", 1))

        async with _client(handler) as client:
            snapshot = await client.get_by_id("r-1")
        assert snapshot.id == "r-1"
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        async with _client(handler) as client:
            with pytest.raises(RemoteConnectionError) as exc_info:
                await client.get_by_id("r-1")
        assert exc_info.value.retry_after == 5

    @pytest.mark.asyncio
    async def test_create_not_retried(self):
        """POST is not idempotent and gets a single attempt."""
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(RemoteConnectionError):
                await client.create({"name": "Widget"})
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_circuit_opens(self):
        """Repeated failures open the circuit; later calls fail fast."""
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler, call_attempts=1) as client:
            for _ in range(3):
                with pytest.raises(RemoteConnectionError):
                    await client.get_by_id("r-1")
            with pytest.raises(CircuitOpenError) as exc_info:
                await client.get_by_id("r-1")
        assert len(calls) == 3
        assert exc_info.value.retry_after > 0

    @pytest.mark.asyncio
    async def test_metrics_recorded(self):
        metrics = MetricsCollector()

        def handler(request):
            return httpx.Response(500, text="boom")

        client = RemoteClient(_config(), metrics=metrics, transport=httpx.MockTransport(handler))
        async with client:
            with pytest.raises(RemoteAPIError):
                await client.get_by_id("r-1")

        stats = metrics.get_stats()
        assert stats["requests"]["get_by_id"] == 1
        assert stats["errors"]["http_500"] == 1


class TestBulkAndFeed:
    """Tests for bulk_get_by_ids, list_changed_since and create."""

    @pytest.mark.asyncio
    async def test_bulk_get(self):
        """Found and missing ids are split; duplicates are requested once."""
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"data": [
                make_record("a", 1), make_record("b", 2), make_record("zzz", 9),
            ]})

        async with _client(handler) as client:
            result = await client.bulk_get_by_ids(["a", "b", "c", "a"])

        assert seen["params"]["filter[id]"] == "a,b,c"
        assert seen["params"]["limit"] == "3"
        assert sorted(result.by_id()) == ["a", "b"]
        assert result.missing == ["c"]

    @pytest.mark.asyncio
    async def test_bulk_limit(self):
        client = RemoteClient(_config(bulk_limit=2))
        with pytest.raises(ValueError, match="at most 2"):
            await client.bulk_get_by_ids(["a", "b", "c"])

    @pytest.mark.asyncio
    async def test_bulk_empty(self):
        client = RemoteClient(_config())
        client._client = MagicMock()
        client._client.request = AsyncMock()
        result = await client.bulk_get_by_ids([])
        assert result.found == []
        client._client.request.assert_not_called()

    @pytest.mark.asyncio
    async def test_bulk_missing_data_list(self):
        def handler(request):
            return httpx.Response(200, json={"items": []})

        async with _client(handler) as client:
            with pytest.raises(RemoteDataError):
                await client.bulk_get_by_ids(["a"])

    @pytest.mark.asyncio
    async def test_changes_page(self):
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"data": [make_record("a", 3)], "next_cursor": 17})

        async with _client(handler) as client:
            page = await client.list_changed_since(T0, cursor="5")

        assert seen["params"]["since"] == T0.isoformat()
        assert seen["params"]["cursor"] == "5"
        assert [s.id for s in page.items] == ["a"]
        assert page.next_cursor == "17"

    @pytest.mark.asyncio
    async def test_create(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json=make_record("r-9", 1, name="Widget"))

        async with _client(handler) as client:
            snapshot = await client.create({"name": "Widget"})

        assert seen["method"] == "POST"
        assert seen["body"] == {"name": "Widget"}
        assert snapshot.id == "r-9"

    @pytest.mark.asyncio
    async def test_patched_request(self):
        """The underlying httpx client can be patched directly."""
        client = RemoteClient(_config())
        response = httpx.Response(200, json=make_record("r-1", 4))

        with patch.object(client, "_client") as mock_client:
            mock_client.request = AsyncMock(return_value=response)
            snapshot = await client.get_by_id("r-1")

        assert snapshot.version == 4
        mock_client.request.assert_awaited_once()
