from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import T0, FakeGraph, StubEventAdapter, fast_config, make_event
from m365_audit.adapters.audit_log import AuditLogAdapter, AuditQueryError, MailboxAuditAdapter
from m365_audit.adapters.directory_audit import DirectoryAuditAdapter
from m365_audit.adapters.sign_in import SignInAdapter
from m365_audit.auth.credentials import ConnectionHandle
from m365_audit.errors import PartialResult, SourceUnavailable
from m365_audit.models import QueryFilters, SourceKind, TimeWindow
from m365_audit.orchestrator.base import CancellationToken

DAY = timedelta(days=1)


def handle(graph=None) -> ConnectionHandle:
    return ConnectionHandle(adapter_id="test", graph=graph or FakeGraph())


# ─── Slicing base ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_sliced_fetch_equals_single_fetch():
    window = TimeWindow(T0, T0 + 3 * DAY)
    events = [make_event(T0 + timedelta(hours=h), record_id=f"e{h}") for h in range(0, 72, 5)]

    def responder(sl):
        return [e for e in events if sl.contains(e.timestamp)]

    sliced = StubEventAdapter(SourceKind.AUDIT_LOG, responder, fast_config(slice_spans={"AuditLog": DAY}))
    whole = StubEventAdapter(SourceKind.AUDIT_LOG, responder, fast_config(slice_spans={}))

    a = await sliced.fetch(window, QueryFilters(), handle())
    b = await whole.fetch(window, QueryFilters(), handle())

    assert len(sliced.slice_calls) == 3
    assert len(whole.slice_calls) == 1
    assert [e.record_id for e in a] == [e.record_id for e in b]


@pytest.mark.asyncio
async def test_records_are_clipped_sorted_and_deduplicated():
    window = TimeWindow(T0, T0 + 2 * DAY)
    boundary = make_event(T0 + DAY, record_id="dup")

    def responder(sl):
        # Sources return boundary records in both neighbouring slices, out of order
        return [
            make_event(sl.end - timedelta(minutes=1), record_id=f"late-{sl.label}"),
            boundary,
            make_event(sl.start, record_id=f"early-{sl.label}"),
            make_event(T0 + 5 * DAY, record_id="outside"),
        ]

    adapter = StubEventAdapter(SourceKind.AUDIT_LOG, responder, fast_config(slice_spans={"AuditLog": DAY}))
    records = await adapter.fetch(window, QueryFilters(), handle())

    ids = [r.record_id for r in records]
    assert "outside" not in ids
    assert ids.count("dup") == 1
    assert all(window.contains(r.timestamp) for r in records)
    assert [r.timestamp for r in records] == sorted(r.timestamp for r in records)


@pytest.mark.asyncio
async def test_slice_is_retried_once():
    attempts = []

    def responder(sl):
        attempts.append(sl.label)
        if len(attempts) == 1:
            return RuntimeError("transient")
        return [make_event(sl.start, record_id="ok")]

    adapter = StubEventAdapter(SourceKind.AUDIT_LOG, responder)
    records = await adapter.fetch(TimeWindow(T0, T0 + timedelta(hours=1)), QueryFilters(), handle())

    assert len(attempts) == 2
    assert [r.record_id for r in records] == ["ok"]


@pytest.mark.asyncio
async def test_some_failed_slices_raise_partial_result():
    window = TimeWindow(T0, T0 + 3 * DAY)
    bad = T0 + DAY

    def responder(sl):
        if sl.start == bad:
            return RuntimeError("throttled")
        return [make_event(sl.start, record_id=sl.label)]

    adapter = StubEventAdapter(SourceKind.AUDIT_LOG, responder, fast_config(slice_spans={"AuditLog": DAY}))
    with pytest.raises(PartialResult) as exc:
        await adapter.fetch(window, QueryFilters(), handle())

    p = exc.value
    assert len(p.completed_slices) == 2
    assert len(p.failed_slices) == 1
    assert len(p.records) == 2
    assert not p.cancelled


@pytest.mark.asyncio
async def test_all_failed_slices_raise_source_unavailable():
    adapter = StubEventAdapter(SourceKind.AUDIT_LOG, lambda sl: RuntimeError("down"))
    with pytest.raises(SourceUnavailable):
        await adapter.fetch(TimeWindow(T0, T0 + DAY), QueryFilters(), handle())


@pytest.mark.asyncio
async def test_cancel_token_stops_remaining_slices():
    cancel = CancellationToken()
    window = TimeWindow(T0, T0 + 3 * DAY)

    def responder(sl):
        cancel.cancel()
        return [make_event(sl.start, record_id="first")]

    adapter = StubEventAdapter(SourceKind.AUDIT_LOG, responder, fast_config(slice_spans={"AuditLog": DAY}))
    with pytest.raises(PartialResult) as exc:
        await adapter.fetch(window, QueryFilters(), handle(), cancel)

    assert exc.value.cancelled
    assert len(adapter.slice_calls) == 1
    assert len(exc.value.failed_slices) == 2
    assert [r.record_id for r in exc.value.records] == ["first"]


# ─── Concrete adapters ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_sign_in_adapter_pushes_down_exact_actors():
    graph = FakeGraph({
        "auditLogs/signIns": [
            {"id": "s1", "createdDateTime": "2026-10-01T01:00:00Z",
             "userPrincipalName": "alice@contoso.com", "appDisplayName": "Outlook"},
            {"id": "s2", "createdDateTime": None},
        ],
    })
    adapter = SignInAdapter(fast_config())
    filters = QueryFilters.build(actors=["alice@contoso.com"])
    records = await adapter.fetch(TimeWindow(T0, T0 + timedelta(hours=2)), filters, handle(graph))

    assert [(r.actor, r.operation, r.target) for r in records] == [
        ("alice@contoso.com", "SignIn", "Outlook"),
    ]
    params = graph.calls[0][2]
    assert "userPrincipalName eq 'alice@contoso.com'" in params["$filter"]
    assert "createdDateTime ge 2026-10-01T00:00:00Z" in params["$filter"]


@pytest.mark.asyncio
async def test_sign_in_adapter_skips_query_when_operations_exclude_sign_ins():
    graph = FakeGraph()
    adapter = SignInAdapter(fast_config())
    filters = QueryFilters.build(operations=["New-InboxRule"])
    assert await adapter.fetch(TimeWindow(T0, T0 + DAY), filters, handle(graph)) == []
    assert graph.calls == []


@pytest.mark.asyncio
async def test_wildcard_actor_is_not_pushed_down():
    graph = FakeGraph({"auditLogs/directoryAudits": []})
    adapter = DirectoryAuditAdapter(fast_config())
    await adapter.fetch(TimeWindow(T0, T0 + DAY), QueryFilters.build(actors=["admin*"]), handle(graph))
    assert "userPrincipalName" not in graph.calls[0][2]["$filter"]


@pytest.mark.asyncio
async def test_directory_audit_normalization():
    graph = FakeGraph({
        "auditLogs/directoryAudits": [{
            "id": "d1",
            "activityDateTime": "2026-10-01T03:00:00Z",
            "activityDisplayName": "Add member to role",
            "initiatedBy": {"user": {"userPrincipalName": "admin@contoso.com"}},
            "targetResources": [{"userPrincipalName": "bob@contoso.com"}],
        }],
    })
    records = await DirectoryAuditAdapter(fast_config()).fetch(
        TimeWindow(T0, T0 + DAY), QueryFilters(), handle(graph)
    )
    ev = records[0]
    assert ev.source == SourceKind.DIRECTORY_AUDIT
    assert ev.actor == "admin@contoso.com"
    assert ev.operation == "Add member to role"
    assert ev.target == "bob@contoso.com"
    assert ev.raw_payload["id"] == "d1"


def _audit_graph(status="succeeded", records=None):
    return FakeGraph({
        "security/auditLog/queries": {"id": "q1"},
        "security/auditLog/queries/q1": {"id": "q1", "status": status},
        "security/auditLog/queries/q1/records": records or [],
    })


@pytest.mark.asyncio
async def test_audit_log_query_flow():
    graph = _audit_graph(records=[{
        "id": "r1",
        "createdDateTime": "2026-10-01T05:00:00Z",
        "userPrincipalName": "alice@contoso.com",
        "operation": "New-InboxRule",
        "objectId": "rule-1",
    }])
    filters = QueryFilters.build(actors=["alice@contoso.com"], operations=["New-InboxRule"])
    records = await AuditLogAdapter(fast_config()).fetch(TimeWindow(T0, T0 + DAY), filters, handle(graph))

    body = graph.calls[0][2]
    assert graph.calls[0][0] == "POST"
    assert body["filterStartDateTime"] == "2026-10-01T00:00:00Z"
    assert body["operationFilters"] == ["New-InboxRule"]
    assert body["userPrincipalNameFilters"] == ["alice@contoso.com"]
    assert records[0].operation == "New-InboxRule"
    assert records[0].target == "rule-1"


@pytest.mark.asyncio
async def test_failed_audit_query_fails_the_source():
    adapter = AuditLogAdapter(fast_config())
    with pytest.raises(SourceUnavailable):
        await adapter.fetch(TimeWindow(T0, T0 + DAY), QueryFilters(), handle(_audit_graph("failed")))


def test_audit_query_error_is_an_exception():
    assert issubclass(AuditQueryError, Exception)


@pytest.mark.asyncio
async def test_mailbox_audit_uses_exchange_record_types_and_owner_target():
    graph = _audit_graph(records=[{
        "id": "m1",
        "createdDateTime": "2026-10-01T05:00:00Z",
        "userPrincipalName": "delegate@contoso.com",
        "operation": "MailItemsAccessed",
        "auditData": {"MailboxOwnerUPN": "ceo@contoso.com"},
    }])
    records = await MailboxAuditAdapter(fast_config()).fetch(
        TimeWindow(T0, T0 + DAY), QueryFilters(), handle(graph)
    )
    assert "exchangeItem" in graph.calls[0][2]["recordTypeFilters"]
    assert records[0].source == SourceKind.MAILBOX_AUDIT
    assert records[0].target == "ceo@contoso.com"
