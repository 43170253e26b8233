"""
Shared Microsoft Graph reader for every adapter in a run.

Every outbound call goes through GraphClient._send, which checks the call
with the SafetyGuardian, takes a concurrency slot and retries throttled or
timed-out requests. Backoff state belongs to the request being retried, so a
throttled sign-in slice never slows down a directory audit slice running
next to it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

import httpx

from ..config import (
    BACKOFF_MULTIPLIER,
    BATCH_SIZE,
    DEFAULT_PAGE_SIZE,
    GRAPH_API_VERSION,
    GRAPH_BASE_URL,
    GRAPH_BETA_VERSION,
    INITIAL_BACKOFF_SECONDS,
    MAX_BACKOFF_SECONDS,
    MAX_CONCURRENT_REQUESTS,
    MAX_PAGES_PER_ENDPOINT,
    MAX_RETRIES,
)
from ..safety.guardian import SafetyGuardian

logger = logging.getLogger("m365_audit.graph")

RETRYABLE_STATUS = frozenset({429, 503, 504})


class GraphAPIError(Exception):
    """A Graph call that failed for good (after retries, or not retryable)."""

    def __init__(self, status_code: int, message: str, url: str):
        self.status_code = status_code
        self.url = url
        super().__init__(f"Graph API Error {status_code} for {url}: {message}")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = MAX_RETRIES
    initial_delay: float = INITIAL_BACKOFF_SECONDS
    max_delay: float = MAX_BACKOFF_SECONDS
    multiplier: float = BACKOFF_MULTIPLIER

    def next_delay(self, current: float) -> float:
        return min(current * self.multiplier, self.max_delay)


@dataclass
class ClientStats:
    requests: int = 0
    pages: int = 0
    throttled: int = 0
    retries: int = 0
    denied: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total_requests": self.requests,
            "pages_read": self.pages,
            "throttle_events": self.throttled,
            "retries": self.retries,
            "permission_denied": list(self.denied),
        }


class GraphClient:
    """
    Async Graph client used as a context manager:

        async with GraphClient(token, guardian) as graph:
            users = await graph.get_all_pages("users")

    Supports v1.0 and beta, @odata.nextLink paging, $batch fan-out and
    read-only POSTs (audit log query creation, $batch).
    """

    def __init__(
        self,
        access_token: str,
        guardian: SafetyGuardian,
        max_concurrency: int = MAX_CONCURRENT_REQUESTS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry: Optional[RetryPolicy] = None,
    ):
        self.access_token = access_token
        self.guardian = guardian
        self.max_concurrency = max_concurrency
        self.retry = retry or RetryPolicy()
        self.stats = ClientStats()
        self._transport = transport
        self._slots = asyncio.Semaphore(max_concurrency)
        self._http: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(60.0, connect=30.0),
            limits=httpx.Limits(
                max_connections=self.max_concurrency * 2,
                max_keepalive_connections=self.max_concurrency,
            ),
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Accept": "application/json",
                # Required for $count and advanced $filter on directory objects
                "ConsistencyLevel": "eventual",
            },
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args):
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    # ─── Public reads ─────────────────────────────────────────────────

    async def get(self, endpoint: str, params: Optional[dict] = None, beta: bool = False) -> dict:
        return await self._send("GET", self.url_for(endpoint, beta), params=params)

    async def post(self, endpoint: str, json_body: dict, beta: bool = False) -> dict:
        """POST to an endpoint the guardian allow-lists as read-only."""
        return await self._send("POST", self.url_for(endpoint, beta), body=json_body)

    async def get_all_pages(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
        top: Optional[int] = None,
        skip_top: bool = False,
    ) -> list[dict]:
        """Collect the `value` items of every page. skip_top for endpoints that reject $top."""
        items: list[dict] = []
        async for page in self.iter_pages(endpoint, params, beta, top, skip_top):
            items.extend(page)
        return items

    async def iter_pages(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
        top: Optional[int] = None,
        skip_top: bool = False,
    ) -> AsyncIterator[list[dict]]:
        query = dict(params or {})
        if not skip_top:
            query.setdefault("$top", str(min(top or DEFAULT_PAGE_SIZE, DEFAULT_PAGE_SIZE)))

        url: Optional[str] = self.url_for(endpoint, beta)
        for _ in range(MAX_PAGES_PER_ENDPOINT):
            if not url:
                return
            data = await self._send("GET", url, params=query)
            self.stats.pages += 1
            yield data.get("value", [])
            # nextLink already carries the original query string
            url, query = data.get("@odata.nextLink"), None

        if url:
            logger.warning(
                f"[graph] Stopped paging {endpoint} after {MAX_PAGES_PER_ENDPOINT} pages"
            )

    async def batch_get(self, endpoints: list[str], beta: bool = False) -> list[dict]:
        """
        Fan GETs out through $batch, BATCH_SIZE per call.

        The result list lines up with `endpoints`. A failed sub-request is
        returned in place as {"_error": True, "status": ..., "_error_message": ...}
        so callers can record which subject it belonged to.
        """
        batch_url = self.url_for("$batch", beta)
        results: list[dict] = []
        for start in range(0, len(endpoints), BATCH_SIZE):
            chunk = endpoints[start:start + BATCH_SIZE]
            body = {"requests": [
                {"id": str(n), "method": "GET", "url": "/" + ep.lstrip("/")}
                for n, ep in enumerate(chunk)
            ]}
            data = await self._send("POST", batch_url, body=body)
            answered = {str(r.get("id")): r for r in data.get("responses", [])}
            results.extend(self._unpack(answered.get(str(n), {}), ep) for n, ep in enumerate(chunk))
        return results

    def url_for(self, endpoint: str, beta: bool = False) -> str:
        if endpoint.startswith("https://"):
            return endpoint
        version = GRAPH_BETA_VERSION if beta else GRAPH_API_VERSION
        return f"{GRAPH_BASE_URL}/{version}/{endpoint.lstrip('/')}"

    def get_stats(self) -> dict:
        return self.stats.to_dict()

    # ─── Transport ────────────────────────────────────────────────────

    def _unpack(self, sub: dict, endpoint: str) -> dict:
        status = sub.get("status")
        if status == 200:
            return sub.get("body") or {}
        message = _error_text(sub.get("body")) or "No response for sub-request"
        if status == 403:
            self.stats.denied.append(endpoint)
            logger.debug(f"[graph] Batch GET {endpoint} denied: {message}")
        else:
            logger.warning(f"[graph] Batch GET {endpoint} failed ({status}): {message}")
        return {"_error": True, "status": status, "_error_message": message}

    async def _send(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        body: Optional[dict] = None,
    ) -> dict:
        if self._http is None:
            raise RuntimeError("GraphClient used outside 'async with'")
        self.guardian.validate_request(method, url, body)

        delay = self.retry.initial_delay
        async with self._slots:
            for attempt in range(self.retry.max_retries + 1):
                last_try = attempt == self.retry.max_retries
                try:
                    response = await self._http.request(method, url, params=params, json=body)
                except (httpx.TimeoutException, httpx.ConnectError) as e:
                    if last_try:
                        raise
                    logger.warning(f"[graph] {type(e).__name__} on {url}, retrying in {delay:.1f}s")
                else:
                    self.stats.requests += 1
                    if response.status_code < 300:
                        return _json_or_empty(response)
                    if response.status_code not in RETRYABLE_STATUS or last_try:
                        if response.status_code == 403:
                            self.stats.denied.append(url)
                        raise GraphAPIError(response.status_code, _error_text(_safe_json(response))
                                            or response.text[:200], url)
                    self.stats.throttled += 1
                    delay = max(_retry_after(response, delay), delay)
                    logger.warning(
                        f"[graph] {response.status_code} on {url}, "
                        f"retry {attempt + 1}/{self.retry.max_retries} in {delay:.1f}s"
                    )
                self.stats.retries += 1
                await asyncio.sleep(delay)
                delay = self.retry.next_delay(delay)

        raise GraphAPIError(429, "Retries exhausted", url)


def _retry_after(response: httpx.Response, default: float) -> float:
    try:
        return float(response.headers.get("Retry-After", default))
    except ValueError:
        return default


def _safe_json(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None


def _json_or_empty(response: httpx.Response) -> dict:
    if response.status_code == 204 or not response.content.strip():
        return {}
    return response.json()


def _error_text(body: Any) -> str:
    if isinstance(body, dict):
        return (body.get("error") or {}).get("message", "")
    return ""
