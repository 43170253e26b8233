"""
Threat Protection adapter
Defender XDR alerts raised inside the audit window, rolled up per alert
policy (or per detection title when the alert carries no policy id).
"""

from __future__ import annotations

import logging
from typing import Any

from .base import FindingAdapter, SectionTracker
from ..models import (
    AdapterId,
    Finding,
    FindingType,
    TimeWindow,
    format_datetime,
    parse_datetime,
)

logger = logging.getLogger("m365_audit.adapters.threat")

HIGH_SEVERITIES = {"high"}
RESOLVED_STATUSES = {"resolved"}


class ThreatProtectionAdapter(FindingAdapter):
    adapter_id = AdapterId.THREAT_PROTECTION
    name = "threat_protection"
    description = "Security alerts grouped by alert policy"
    time_bound = True

    async def collect(
        self,
        window: TimeWindow,
        connection: Any,
        tracker: SectionTracker,
    ) -> list[Finding]:
        alerts = await connection.graph.get_all_pages(
            "security/alerts_v2",
            params={
                "$filter": (
                    f"createdDateTime ge {format_datetime(window.start)} "
                    f"and createdDateTime lt {format_datetime(window.end)}"
                ),
            },
        )

        groups: dict[str, list[dict]] = {}
        for a in alerts:
            created = parse_datetime(a.get("createdDateTime"))
            if created is None or not window.contains(created):
                continue
            key = a.get("alertPolicyId") or a.get("title") or "unknown"
            groups.setdefault(key, []).append(a)

        findings = [self._to_finding(key, items) for key, items in groups.items()]
        findings.sort(key=lambda f: f.subject_id)
        return findings

    def _to_finding(self, key: str, alerts: list[dict]) -> Finding:
        alerts = sorted(alerts, key=lambda a: a.get("createdDateTime") or "")
        severities: dict[str, int] = {}
        statuses: dict[str, int] = {}
        unresolved_high = 0
        for a in alerts:
            sev = (a.get("severity") or "unknown").lower()
            status = (a.get("status") or "unknown").lower()
            severities[sev] = severities.get(sev, 0) + 1
            statuses[status] = statuses.get(status, 0) + 1
            if sev in HIGH_SEVERITIES and status not in RESOLVED_STATUSES:
                unresolved_high += 1

        latest = alerts[-1]
        return Finding(
            type=FindingType.PROTECTION_POLICY,
            subject_id=key,
            attributes={
                "policyName": latest.get("title"),
                "alertPolicyId": latest.get("alertPolicyId"),
                "serviceSource": latest.get("serviceSource"),
                "category": latest.get("category"),
                "alertCount": len(alerts),
                "severityCounts": dict(sorted(severities.items())),
                "statusCounts": dict(sorted(statuses.items())),
                "unresolvedHighSeverityCount": unresolved_high,
                "firstSeen": alerts[0].get("createdDateTime"),
                "lastSeen": latest.get("createdDateTime"),
            },
            raw_payload={"alerts": [dict(a) for a in alerts]},
        )
