"""
Entra ID sign-in log adapter (auditLogs/signIns).
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from .base import EventAdapter
from ..models import (
    AdapterId,
    NormalizedEvent,
    QueryFilters,
    SourceKind,
    TimeWindow,
    format_datetime,
    parse_datetime,
)

logger = logging.getLogger("m365_audit.adapters.sign_in")

SIGN_IN_OPERATION = "SignIn"


def odata_quote(value: str) -> str:
    """Quote a string literal for an OData $filter."""
    return "'" + value.replace("'", "''") + "'"


def odata_any_of(field_path: str, values: list[str]) -> str:
    return "(" + " or ".join(f"{field_path} eq {odata_quote(v)}" for v in values) + ")"


class SignInAdapter(EventAdapter):
    adapter_id = AdapterId.SIGN_IN
    source = SourceKind.SIGN_IN
    name = "sign_in"
    description = "Interactive and non-interactive user sign-ins"

    async def fetch_slice(
        self,
        sl: TimeWindow,
        filters: QueryFilters,
        connection: Any,
    ) -> list[NormalizedEvent]:
        if not filters.operation_matches(SIGN_IN_OPERATION):
            return []

        clauses = [
            f"createdDateTime ge {format_datetime(sl.start)}",
            f"createdDateTime lt {format_datetime(sl.end)}",
        ]
        if filters.actors and not filters.has_wildcards:
            clauses.append(odata_any_of("userPrincipalName", filters.exact_actors))

        raw = await connection.graph.get_all_pages(
            "auditLogs/signIns",
            params={"$filter": " and ".join(clauses)},
            top=self.config.page_size,
        )
        return [e for e in (self.normalize(r) for r in raw) if e is not None]

    def normalize(self, record: dict) -> Optional[NormalizedEvent]:
        ts = parse_datetime(record.get("createdDateTime"))
        if ts is None:
            return None
        return NormalizedEvent(
            source=self.source,
            timestamp=ts,
            actor=record.get("userPrincipalName") or record.get("userId") or "",
            operation=SIGN_IN_OPERATION,
            target=record.get("appDisplayName") or record.get("resourceDisplayName") or None,
            record_id=str(record.get("id") or ""),
            raw_payload=dict(record),
        )
