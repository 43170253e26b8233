"""
Application & OAuth Consent adapter
Service principals with delegated grants, application permissions,
credential expiry dates and last sign-in activity.
"""

from __future__ import annotations

import logging
from typing import Any

from .base import FindingAdapter, SectionTracker, get_safe
from ..models import AdapterId, Finding, FindingType, TimeWindow, parse_datetime

logger = logging.getLogger("m365_audit.adapters.app_consent")

# First-party Microsoft apps are only reviewed when they hold consents or secrets
MICROSOFT_TENANT_IDS = {
    "f8cdef31-a31e-4b4a-93e4-5f571e91255a",
    "72f988bf-86f1-41af-91ab-2d7cd011db47",
}

SP_SELECT = (
    "id,appId,displayName,servicePrincipalType,appOwnerOrganizationId,"
    "accountEnabled,passwordCredentials,keyCredentials,appRoles"
)


class AppConsentAdapter(FindingAdapter):
    adapter_id = AdapterId.APP_CONSENTS
    name = "app_consents"
    description = "OAuth consents, app permissions, secrets and sign-in activity"

    async def collect(
        self,
        window: TimeWindow,
        connection: Any,
        tracker: SectionTracker,
    ) -> list[Finding]:
        graph = connection.graph

        sps = await graph.get_all_pages("servicePrincipals", params={"$select": SP_SELECT})
        grants = await graph.get_all_pages("oauth2PermissionGrants")

        app_role_names = {
            (sp.get("id"), role.get("id")): role.get("value")
            for sp in sps for role in sp.get("appRoles") or []
        }

        delegated: dict[str, set[str]] = {}
        consent_types: dict[str, set[str]] = {}
        for g in grants:
            client = g.get("clientId")
            delegated.setdefault(client, set()).update((g.get("scope") or "").split())
            consent_types.setdefault(client, set()).add(g.get("consentType") or "")

        candidates = [
            sp for sp in sps
            if sp.get("servicePrincipalType") == "Application"
            and (
                sp.get("id") in delegated
                or sp.get("passwordCredentials")
                or sp.get("keyCredentials")
                or sp.get("appOwnerOrganizationId") not in MICROSOFT_TENANT_IDS
            )
        ]

        app_perms = await tracker.run(
            "appRoleAssignments",
            self._application_permissions(graph, candidates, app_role_names, tracker),
            default={},
        )
        last_sign_in = await tracker.run(
            "servicePrincipalSignInActivities",
            self._sign_in_activity(graph),
            default=None,
        )

        findings = []
        for sp in candidates:
            sp_id = sp.get("id")
            creds = (sp.get("passwordCredentials") or []) + (sp.get("keyCredentials") or [])
            end_dates = sorted(
                d.isoformat() for d in (parse_datetime(c.get("endDateTime")) for c in creds) if d
            )
            d_scopes = sorted(s for s in delegated.get(sp_id, set()) if s)
            a_perms = sorted(app_perms.get(sp_id, []))
            findings.append(Finding(
                type=FindingType.APP_CONSENT,
                subject_id=sp.get("appId") or sp_id or "",
                attributes={
                    "displayName": sp.get("displayName"),
                    "servicePrincipalId": sp_id,
                    "publisherTenantId": sp.get("appOwnerOrganizationId"),
                    "accountEnabled": sp.get("accountEnabled"),
                    "delegatedScopes": d_scopes,
                    "applicationPermissions": a_perms,
                    "scopes": sorted(set(d_scopes) | set(a_perms)),
                    "consentTypes": sorted(t for t in consent_types.get(sp_id, set()) if t),
                    "credentialCount": len(creds),
                    "credentialEndDates": end_dates,
                    "signInActivityKnown": last_sign_in is not None,
                    "lastSignIn": (last_sign_in or {}).get(sp.get("appId")),
                },
                raw_payload={
                    "servicePrincipal": {k: v for k, v in sp.items() if k != "appRoles"},
                    "oauth2PermissionGrants": [g for g in grants if g.get("clientId") == sp_id],
                },
            ))

        findings.sort(key=lambda f: (f.attributes["displayName"] or "", f.subject_id))
        return findings

    async def _application_permissions(
        self,
        graph: Any,
        apps: list[dict],
        app_role_names: dict,
        tracker: SectionTracker,
    ) -> dict[str, list[str]]:
        """
        App-only permissions per service principal, resolved to their value.
        Apps whose assignments cannot be read are recorded on the tracker.
        """
        if not apps:
            return {}
        sp_ids = [sp.get("id") for sp in apps]
        responses = await graph.batch_get(
            [f"/servicePrincipals/{sid}/appRoleAssignments" for sid in sp_ids]
        )
        out: dict[str, list[str]] = {}
        denied = []
        for sp, resp in zip(apps, responses):
            sid = sp.get("id")
            if resp.get("_error"):
                denied.append((sp, resp))
                continue
            out[sid] = [
                app_role_names.get((a.get("resourceId"), a.get("appRoleId")))
                or f"{a.get('resourceDisplayName')}:{a.get('appRoleId')}"
                for a in resp.get("value", [])
            ]
        if len(denied) == len(apps):
            raise PermissionError(f"appRoleAssignments unreadable for all {len(denied)} apps")
        for sp, resp in denied:
            tracker.mark_failed(
                f"appRoleAssignments:{sp.get('displayName') or sp.get('id')}",
                f"HTTP {resp.get('status')}: {resp.get('_error_message')}",
            )
        logger.debug(f"[app_consent] App role assignments read for {len(out)}/{len(apps)} apps")
        return out

    async def _sign_in_activity(self, graph: Any) -> dict[str, str]:
        """appId -> last sign-in timestamp (beta report)."""
        rows = await graph.get_all_pages(
            "reports/servicePrincipalSignInActivities",
            beta=True,
            skip_top=True,
        )
        return {
            r.get("appId"): get_safe(r, "lastSignInActivity", "lastSignInDateTime")
            for r in rows if r.get("appId")
        }
