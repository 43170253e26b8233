"""
Entra ID directory audit adapter (auditLogs/directoryAudits).
Role changes, app consent, credential additions, policy updates.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from .base import EventAdapter, get_safe
from .sign_in import odata_any_of
from ..models import (
    AdapterId,
    NormalizedEvent,
    QueryFilters,
    SourceKind,
    TimeWindow,
    format_datetime,
    parse_datetime,
)

logger = logging.getLogger("m365_audit.adapters.directory_audit")


class DirectoryAuditAdapter(EventAdapter):
    adapter_id = AdapterId.DIRECTORY_AUDIT
    source = SourceKind.DIRECTORY_AUDIT
    name = "directory_audit"
    description = "Directory changes: roles, apps, policies, users"

    async def fetch_slice(
        self,
        sl: TimeWindow,
        filters: QueryFilters,
        connection: Any,
    ) -> list[NormalizedEvent]:
        clauses = [
            f"activityDateTime ge {format_datetime(sl.start)}",
            f"activityDateTime lt {format_datetime(sl.end)}",
        ]
        # activityDisplayName eq is case-sensitive; operations are filtered post-fetch
        if filters.actors and not filters.has_wildcards:
            clauses.append(odata_any_of("initiatedBy/user/userPrincipalName", filters.exact_actors))

        raw = await connection.graph.get_all_pages(
            "auditLogs/directoryAudits",
            params={"$filter": " and ".join(clauses)},
            top=self.config.page_size,
        )
        return [e for e in (self.normalize(r) for r in raw) if e is not None]

    def normalize(self, record: dict) -> Optional[NormalizedEvent]:
        ts = parse_datetime(record.get("activityDateTime"))
        if ts is None:
            return None
        return NormalizedEvent(
            source=self.source,
            timestamp=ts,
            actor=_initiator(record),
            operation=record.get("activityDisplayName") or record.get("operationType") or "",
            target=_first_target(record),
            record_id=str(record.get("id") or ""),
            raw_payload=dict(record),
        )


def _initiator(record: dict) -> str:
    """User principal, else the acting app / service principal."""
    return (
        get_safe(record, "initiatedBy", "user", "userPrincipalName")
        or get_safe(record, "initiatedBy", "app", "displayName")
        or get_safe(record, "initiatedBy", "app", "servicePrincipalId")
        or ""
    )


def _first_target(record: dict) -> Optional[str]:
    for t in record.get("targetResources") or []:
        ident = t.get("userPrincipalName") or t.get("displayName") or t.get("id")
        if ident:
            return ident
    return None
