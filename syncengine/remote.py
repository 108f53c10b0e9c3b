"""
Async HTTP client for the authoritative remote API.

Pure I/O boundary: decodes responses into RemoteSnapshot and raises the
RemoteError hierarchy; it makes no sync decisions.

Features:
- One pooled httpx.AsyncClient per RemoteClient
- In-call exponential backoff for network errors (reads only)
- Circuit breaker per client instance
- Client-side token bucket plus server rate-limit headers
- X-Request-ID carries the current correlation id

JSON contract:
    GET  records/{id}                      -> record | 404
    GET  records?filter[id]=a,b            -> {"data": [record, ...]}
    GET  records/changes?since=..&cursor=  -> {"data": [...], "next_cursor": ..}
    POST records                           -> record
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote

import httpx

from syncengine.config import RemoteConfig
from syncengine.exceptions import (
    RemoteAPIError,
    RemoteConnectionError,
    RemoteDataError,
    RemoteRateLimitedError,
)
from syncengine.models import BulkFetchResult, ChangePage, RateLimitInfo, RemoteSnapshot, utcnow
from syncengine.observability import MetricsCollector, Timer, get_correlation_id, get_logger
from syncengine.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    RateLimiter,
    RetryConfig,
    retry_with_backoff,
)

logger = get_logger(__name__)


def _int_header(headers: httpx.Headers, name: str) -> Optional[int]:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return int(float(value))
    except ValueError:
        return None


def _float_header(headers: httpx.Headers, name: str) -> Optional[float]:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class RemoteClient:
    """
    Async client for the remote record API.

    Usage:
        async with RemoteClient(config.remote) as remote:
            snapshot = await remote.get_by_id("ext-1")

        # Or with manual lifecycle:
        remote = RemoteClient(config.remote)
        await remote.connect()
        try:
            result = await remote.bulk_get_by_ids(["ext-1", "ext-2"])
        finally:
            await remote.close()
    """

    def __init__(
        self,
        config: Optional[RemoteConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the remote client.

        Args:
            config: Remote settings (defaults to the environment)
            metrics: Collector for request/error/timing samples
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        self.config = config or RemoteConfig()
        self.base_url = self.config.base_url.rstrip("/")
        self.metrics = metrics or MetricsCollector()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._rate_limit = RateLimitInfo()

        self.circuit = CircuitBreaker(config=CircuitBreakerConfig(
            failure_threshold=self.config.circuit_failure_threshold,
            recovery_timeout=self.config.circuit_recovery_timeout,
            half_open_requests=1,
        ))
        self.limiter = RateLimiter(rate=self.config.requests_per_second, burst=self.config.burst)
        self._retry = RetryConfig(
            max_attempts=self.config.call_attempts,
            base_delay=self.config.call_base_delay,
            max_delay=10.0,
            exponential_base=2.0,
        )

        if not self.config.api_key:
            raise ValueError("SYNC_REMOTE_API_KEY is required")

    @property
    def headers(self) -> Dict[str, str]:
        """Bearer auth plus JSON content negotiation."""
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    @property
    def rate_limit(self) -> RateLimitInfo:
        """Most recent quota signals reported by the remote."""
        return self._rate_limit

    @property
    def bulk_limit(self) -> int:
        return self.config.bulk_limit

    async def connect(self) -> None:
        """Open the pooled client; a no-op if already open."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self.headers,
                timeout=self.config.request_timeout,
                limits=httpx.Limits(
                    max_keepalive_connections=self.config.max_connections // 2,
                    max_connections=self.config.max_connections,
                ),
                transport=self._transport,
            )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "RemoteClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        endpoint: str,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        allow_not_found: bool = False,
        retry: bool = True,
    ) -> Optional[Dict[str, Any]]:
        """
        Make HTTP request with retry and circuit breaker.

        Args:
            method: HTTP method
            endpoint: Path under base_url, e.g. "records/r-1"
            operation: Label used for metrics
            params: Query parameters
            json: JSON body for POST
            allow_not_found: Return None on 404 instead of raising
            retry: Retry network errors in-call (off for non-idempotent calls)

        Returns:
            Decoded JSON object, or None for an allowed 404

        Raises:
            RemoteConnectionError: Network/timeout errors
            RemoteAPIError: API returned error response
            RemoteDataError: Body is not a JSON object
            CircuitOpenError: Circuit breaker is open
        """
        if not await self.circuit.can_execute():
            self.metrics.record_error("circuit_open")
            raise CircuitOpenError(
                f"Circuit breaker is open, request to {endpoint} rejected",
                retry_after=self.circuit.cooldown_remaining() or None,
            )

        config = self._retry if retry else RetryConfig(max_attempts=1)
        try:
            result = await retry_with_backoff(
                self._do_request,
                method, endpoint, operation, params, json, allow_not_found,
                config=config,
                retryable_exceptions=(RemoteConnectionError,),
            )
        except RemoteConnectionError:
            await self.circuit.record_failure()
            raise
        except RemoteAPIError as e:
            if e.is_transient:
                await self.circuit.record_failure()
            else:
                await self.circuit.record_success()
            raise

        await self.circuit.record_success()
        return result

    async def _do_request(
        self,
        method: str,
        endpoint: str,
        operation: str,
        params: Optional[Dict[str, Any]],
        json: Optional[Dict[str, Any]],
        allow_not_found: bool,
    ) -> Optional[Dict[str, Any]]:
        """One attempt: send, record quota headers, map failures to RemoteError."""
        if not self._client:
            await self.connect()

        if not await self.limiter.acquire(timeout=self.config.request_timeout):
            self.metrics.record_error("local_rate_limit")
            raise RemoteConnectionError("Client-side rate limit wait timed out", retry_after=1)

        url = f"{self.base_url}/{endpoint}"

        # lets the remote side correlate its logs with ours
        request_headers = {}
        correlation_id = get_correlation_id()
        if correlation_id:
            request_headers["X-Request-ID"] = correlation_id

        self.metrics.record_request(operation)
        try:
            with Timer(f"remote_{operation}", logger) as timer:
                response = await self._client.request(
                    method=method,
                    url=url,
                    params=params,
                    json=json,
                    headers=request_headers if request_headers else None,
                )
            self.metrics.record_timing(operation, timer.elapsed_ms)

        except httpx.TimeoutException as e:
            self.metrics.record_error("timeout")
            logger.error(
                f"Request timeout: {method} {endpoint}",
                extra={"endpoint": endpoint, "timeout": self.config.request_timeout}
            )
            raise RemoteConnectionError(
                f"Request timeout after {self.config.request_timeout}s",
                retry_after=5
            ) from e

        except httpx.RequestError as e:
            self.metrics.record_error("connection")
            logger.error(
                f"Request failed: {method} {endpoint} - {e}",
                extra={"endpoint": endpoint, "error": str(e)}
            )
            raise RemoteConnectionError(str(e)) from e

        self._update_rate_limit(response)

        if response.status_code == 404 and allow_not_found:
            return None

        if response.status_code == 429:
            retry_after = _float_header(response.headers, "Retry-After")
            self.metrics.record_error("http_429")
            logger.warning(
                "Remote rate limit exhausted",
                extra={"endpoint": endpoint, "retry_after": retry_after}
            )
            raise RemoteRateLimitedError(
                "API rate limit exceeded",
                details=response.text[:500],
                retry_after=retry_after,
            )

        if response.status_code >= 400:
            error_text = response.text[:500]
            self.metrics.record_error(f"http_{response.status_code}")
            logger.error(
                f"API error {response.status_code}: {error_text}",
                extra={"endpoint": endpoint, "status_code": response.status_code}
            )
            raise RemoteAPIError(
                f"API returned {response.status_code}",
                status_code=response.status_code,
                details=error_text
            )

        try:
            body = response.json()
        except ValueError as e:
            self.metrics.record_error("invalid_json")
            raise RemoteDataError(
                "Response is not valid JSON", details=response.text[:200],
                expected="object", got="text",
            ) from e

        if not isinstance(body, dict):
            self.metrics.record_error("invalid_body")
            raise RemoteDataError(
                "Unexpected response body", expected="object", got=type(body).__name__
            )
        return body

    def _update_rate_limit(self, response: httpx.Response) -> None:
        headers = response.headers
        limit = _int_header(headers, "X-RateLimit-Limit")
        remaining = _int_header(headers, "X-RateLimit-Remaining")
        reset_epoch = _float_header(headers, "X-RateLimit-Reset")
        retry_after = _float_header(headers, "Retry-After")

        if limit is None and remaining is None and reset_epoch is None and retry_after is None:
            return

        reset_at = self._rate_limit.reset_at
        if reset_epoch is not None:
            reset_at = datetime.fromtimestamp(reset_epoch, tz=timezone.utc)
        elif retry_after is not None:
            reset_at = utcnow() + timedelta(seconds=retry_after)
        if response.status_code == 429 and remaining is None:
            remaining = 0

        self._rate_limit = RateLimitInfo(
            limit=limit if limit is not None else self._rate_limit.limit,
            remaining=remaining if remaining is not None else self._rate_limit.remaining,
            reset_at=reset_at,
        )

    @staticmethod
    def _record(body: Dict[str, Any]) -> Dict[str, Any]:
        """Accept both a bare record and a {"data": record} envelope."""
        if "id" not in body and "data" in body:
            data = body["data"]
            if not isinstance(data, dict):
                raise RemoteDataError("Unexpected record shape", expected="object", got=type(data).__name__)
            return data
        return body

    @staticmethod
    def _records(body: Dict[str, Any]) -> List[Dict[str, Any]]:
        data = body.get("data")
        if not isinstance(data, list):
            raise RemoteDataError("Missing data list", expected="list", got=type(data).__name__)
        for item in data:
            if not isinstance(item, dict):
                raise RemoteDataError("Unexpected record shape", expected="object", got=type(item).__name__)
        return data

    # ═══════════════════════════════════════════════════════════════════════════
    # RECORD METHODS
    # ═══════════════════════════════════════════════════════════════════════════

    async def get_by_id(self, external_id: str) -> Optional[RemoteSnapshot]:
        """
        Fetch one record.

        Returns:
            RemoteSnapshot, or None if the remote has no such record
        """
        body = await self._request(
            "GET",
            f"records/{quote(str(external_id), safe='')}",
            operation="get_by_id",
            allow_not_found=True,
        )
        if body is None:
            return None
        return RemoteSnapshot.from_api(self._record(body))

    async def bulk_get_by_ids(self, ids: Iterable[str]) -> BulkFetchResult:
        """
        Fetch up to bulk_limit records in one call.

        Raises:
            ValueError: More ids than bulk_limit
        """
        requested = list(dict.fromkeys(str(i) for i in ids))
        if not requested:
            return BulkFetchResult()
        if len(requested) > self.config.bulk_limit:
            raise ValueError(
                f"bulk_get_by_ids accepts at most {self.config.bulk_limit} ids, got {len(requested)}"
            )

        body = await self._request(
            "GET",
            "records",
            operation="bulk_get",
            params={"filter[id]": ",".join(requested), "limit": len(requested)},
        )

        wanted = set(requested)
        found = []
        for item in self._records(body):
            snapshot = RemoteSnapshot.from_api(item)
            if snapshot.id in wanted:
                found.append(snapshot)
            else:
                logger.debug("Ignoring unrequested record", extra={"external_id": snapshot.id})

        returned = {s.id for s in found}
        return BulkFetchResult(found=found, missing=[i for i in requested if i not in returned])

    async def list_changed_since(
        self, since: datetime, cursor: Optional[str] = None
    ) -> ChangePage:
        """One page of the remote change feed, oldest change first."""
        params: Dict[str, Any] = {"since": since.isoformat(), "limit": self.config.page_size}
        if cursor:
            params["cursor"] = cursor

        body = await self._request("GET", "records/changes", operation="changes", params=params)
        items = [RemoteSnapshot.from_api(item) for item in self._records(body)]
        next_cursor = body.get("next_cursor")
        return ChangePage(items=items, next_cursor=str(next_cursor) if next_cursor else None)

    async def create(self, fields: Dict[str, Any]) -> RemoteSnapshot:
        """Register a new record remotely. Not retried in-call (not idempotent)."""
        body = await self._request(
            "POST", "records", operation="create", json=fields, retry=False
        )
        return RemoteSnapshot.from_api(self._record(body))
