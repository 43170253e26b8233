from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import dns.resolver
import pytest

from m365_audit.adapters.base import EventAdapter, FindingAdapter
from m365_audit.auth.credentials import ConnectionHandle, CredentialProvider
from m365_audit.config import CollectionConfig
from m365_audit.errors import AuthenticationFailed
from m365_audit.models import (
    AdapterId,
    Finding,
    FindingType,
    NormalizedEvent,
    SourceKind,
)

T0 = datetime(2026, 10, 1, tzinfo=timezone.utc)


class FakeGraph:
    """
    In-memory stand-in for GraphClient.

    routes maps an endpoint (as passed by the adapter) to a list (paged
    results), a dict (single GET body), an Exception (raised) or a callable
    taking params and returning one of those. Batch endpoints are looked up
    the same way; a route value that is an int becomes a failed sub-response
    with that status.
    """

    def __init__(self, routes: Optional[dict[str, Any]] = None):
        self.routes = dict(routes or {})
        self.calls: list[tuple[str, str, Any]] = []

    def _resolve(self, endpoint: str, params: Any = None) -> Any:
        if endpoint not in self.routes:
            raise KeyError(f"No fake route for {endpoint}")
        value = self.routes[endpoint]
        if callable(value) and not isinstance(value, (list, dict)):
            value = value(params)
        if isinstance(value, Exception):
            raise value
        return value

    async def get(self, endpoint: str, params: Optional[dict] = None, beta: bool = False) -> dict:
        self.calls.append(("GET", endpoint, params))
        return self._resolve(endpoint, params)

    async def post(self, endpoint: str, json_body: dict, beta: bool = False) -> dict:
        self.calls.append(("POST", endpoint, json_body))
        return self._resolve(endpoint, json_body)

    async def get_all_pages(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
        top: Optional[int] = None,
        skip_top: bool = False,
    ) -> list[dict]:
        self.calls.append(("GET_ALL", endpoint, params))
        return list(self._resolve(endpoint, params))

    async def batch_get(self, endpoints: list[str], beta: bool = False) -> list[dict]:
        self.calls.append(("BATCH", "$batch", list(endpoints)))
        out = []
        for ep in endpoints:
            value = self.routes.get(ep, 404)
            if isinstance(value, int):
                out.append({"_error": True, "status": value, "_error_message": "fake failure"})
            else:
                out.append(value)
        return out


class FakeTxt:
    def __init__(self, text: str):
        self.strings = [text.encode("utf-8")]


class FakeResolver:
    """dns.asyncresolver.Resolver stand-in: unknown names are NXDOMAIN."""

    def __init__(self, records: Optional[dict[str, list[str]]] = None, errors: Optional[dict] = None):
        self.records = records or {}
        self.errors = errors or {}
        self.queries: list[str] = []

    async def resolve(self, name: str, rdtype: str = "A"):
        self.queries.append(name)
        if name in self.errors:
            raise self.errors[name]
        if name not in self.records:
            raise dns.resolver.NXDOMAIN()
        return [FakeTxt(t) for t in self.records[name]]


class FakeProvider(CredentialProvider):
    def __init__(self, graph: Any = None, resolver: Any = None, fail_for: tuple = ()):
        self.graph = graph or FakeGraph()
        self.resolver = resolver
        self.fail_for = {AdapterId(a) for a in fail_for}
        self.requested: list[AdapterId] = []

    async def get_connection(self, adapter_id: AdapterId) -> ConnectionHandle:
        self.requested.append(AdapterId(adapter_id))
        if AdapterId(adapter_id) in self.fail_for:
            raise AuthenticationFailed(f"no credentials for {adapter_id}")
        return ConnectionHandle(adapter_id=AdapterId(adapter_id).value, graph=self.graph, resolver=self.resolver)


def make_event(
    ts: datetime,
    actor: str = "alice@contoso.com",
    operation: str = "FileAccessed",
    source: SourceKind = SourceKind.AUDIT_LOG,
    record_id: str = "",
    target: Optional[str] = None,
) -> NormalizedEvent:
    return NormalizedEvent(
        source=source,
        timestamp=ts,
        actor=actor,
        operation=operation,
        target=target,
        record_id=record_id,
        raw_payload={"id": record_id, "userPrincipalName": actor, "operation": operation},
    )


class StubEventAdapter(EventAdapter):
    """Event adapter whose slices are answered by a callable(slice) -> list | Exception."""

    def __init__(
        self,
        source: SourceKind,
        responder: Callable,
        config: Optional[CollectionConfig] = None,
    ):
        super().__init__(config or fast_config())
        self.source = source
        self.adapter_id = AdapterId(source.value)
        self.name = f"stub_{source.value}"
        self.responder = responder
        self.slice_calls: list = []

    async def fetch_slice(self, sl, filters, connection):
        self.slice_calls.append(sl)
        result = self.responder(sl)
        if asyncio.iscoroutine(result):
            result = await result
        if isinstance(result, Exception):
            raise result
        return list(result)


class StubFindingAdapter(FindingAdapter):
    def __init__(self, adapter_id: AdapterId, findings=None, error: Optional[Exception] = None,
                 delay: float = 0.0, config: Optional[CollectionConfig] = None):
        super().__init__(config or fast_config())
        self.adapter_id = adapter_id
        self.name = f"stub_{adapter_id.value}"
        self.findings = findings or []
        self.error = error
        self.delay = delay

    async def collect(self, window, connection, tracker):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return list(self.findings)


def fast_config(**overrides) -> CollectionConfig:
    cfg = CollectionConfig(
        slice_retry_backoff_seconds=0.0,
        audit_query_poll_seconds=0.0,
        cancel_grace_seconds=0.05,
    )
    for k, v in overrides.items():
        setattr(cfg, k, v)
    return cfg


def make_finding(ftype: FindingType, subject: str, **attributes) -> Finding:
    return Finding(type=ftype, subject_id=subject, attributes=attributes, raw_payload={"id": subject})


@pytest.fixture
def t0() -> datetime:
    return T0


@pytest.fixture
def day() -> timedelta:
    return timedelta(days=1)


@pytest.fixture
def config() -> CollectionConfig:
    return fast_config()
