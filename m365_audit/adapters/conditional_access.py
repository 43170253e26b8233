"""
Conditional Access Policy adapter
One finding per policy with its user/app targeting and grant controls.
Not time-bound: the listing ignores the query window.
"""

from __future__ import annotations

import logging
from typing import Any

from .base import FindingAdapter, SectionTracker
from ..models import AdapterId, Finding, FindingType, TimeWindow

logger = logging.getLogger("m365_audit.adapters.conditional_access")


class ConditionalAccessAdapter(FindingAdapter):
    adapter_id = AdapterId.CONDITIONAL_ACCESS
    name = "conditional_access"
    description = "Conditional Access policies, targeting and grant controls"

    async def collect(
        self,
        window: TimeWindow,
        connection: Any,
        tracker: SectionTracker,
    ) -> list[Finding]:
        policies = await connection.graph.get_all_pages(
            "identity/conditionalAccess/policies",
            skip_top=True,
        )
        findings = [self._to_finding(p) for p in policies]
        findings.sort(key=lambda f: (f.attributes["displayName"] or "", f.subject_id))
        return findings

    def _to_finding(self, p: dict) -> Finding:
        # `or {}` handles JSON nulls (key present but None)
        conditions = p.get("conditions") or {}
        users = conditions.get("users") or {}
        apps = conditions.get("applications") or {}
        grant = p.get("grantControls") or {}
        session = p.get("sessionControls") or {}

        include_users = users.get("includeUsers") or []
        include_apps = apps.get("includeApplications") or []

        return Finding(
            type=FindingType.CA_POLICY,
            subject_id=p.get("id") or "",
            attributes={
                "displayName": p.get("displayName"),
                "state": p.get("state"),
                "allUsers": "All" in include_users,
                "allApps": "All" in include_apps,
                "includeUsers": include_users,
                "excludeUsers": users.get("excludeUsers") or [],
                "excludeGroups": users.get("excludeGroups") or [],
                "includeRoles": users.get("includeRoles") or [],
                "includeApplications": include_apps,
                "clientAppTypes": conditions.get("clientAppTypes") or [],
                "grantOperator": grant.get("operator"),
                "grantControls": _grant_controls(grant),
                "sessionControls": sorted(k for k, v in session.items() if v),
                "modifiedDateTime": p.get("modifiedDateTime"),
            },
            raw_payload=dict(p),
        )


def _grant_controls(grant: dict) -> list[str]:
    """Built-in controls plus auth strength / terms of use / custom factors."""
    controls = list(grant.get("builtInControls") or [])
    strength = grant.get("authenticationStrength") or {}
    if strength:
        controls.append(f"authenticationStrength:{strength.get('displayName') or strength.get('id')}")
    controls.extend(f"termsOfUse:{t}" for t in grant.get("termsOfUse") or [])
    controls.extend(f"custom:{c}" for c in grant.get("customAuthenticationFactors") or [])
    return controls
