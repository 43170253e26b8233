"""
Directory Role Assignment adapter
Active and PIM-eligible assignments, with each user's registered
authentication methods for MFA coverage checks.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from .base import FindingAdapter, SectionTracker
from ..models import AdapterId, Finding, FindingType, TimeWindow

logger = logging.getLogger("m365_audit.adapters.roles")

# Password is always present and does not count towards MFA
NON_MFA_METHOD_TYPES = {"passwordAuthenticationMethod"}


class RoleAssignmentAdapter(FindingAdapter):
    adapter_id = AdapterId.ROLE_ASSIGNMENTS
    name = "role_assignments"
    description = "Directory role assignments (active + eligible) with MFA registration"

    async def collect(
        self,
        window: TimeWindow,
        connection: Any,
        tracker: SectionTracker,
    ) -> list[Finding]:
        graph = connection.graph

        definitions = await graph.get_all_pages(
            "roleManagement/directory/roleDefinitions",
            skip_top=True,  # This endpoint does not support $top
        )
        role_names = {d.get("id"): d.get("displayName") for d in definitions}

        active = await graph.get_all_pages(
            "roleManagement/directory/roleAssignments",
            params={"$expand": "principal"},
        )
        eligible = await tracker.run(
            "roleEligibilitySchedules",
            graph.get_all_pages(
                "roleManagement/directory/roleEligibilitySchedules",
                params={"$expand": "principal"},
            ),
            default=[],
        )

        entries = [(a, "Active") for a in active] + [(e, "Eligible") for e in eligible]
        users = {
            a["principalId"]: (a.get("principal") or {}).get("userPrincipalName") or a["principalId"]
            for a, _ in entries
            if _principal_type(a) == "user" and a.get("principalId")
        }
        methods = await tracker.run(
            "authenticationMethods",
            self._auth_methods(graph, users, tracker),
            default={},
        )

        findings = [
            self._to_finding(a, kind, role_names, methods) for a, kind in entries
        ]
        findings.sort(key=lambda f: (
            f.attributes["roleName"] or "",
            f.attributes["principalName"] or "",
            f.attributes["assignmentKind"],
        ))
        return findings

    async def _auth_methods(
        self,
        graph: Any,
        users: dict[str, str],
        tracker: SectionTracker,
    ) -> dict[str, list[str]]:
        """
        Map user id -> registered method types. A user whose methods cannot be
        read is left out and recorded on the tracker, so the outcome is partial.
        """
        if not users:
            return {}
        user_ids = sorted(users)
        responses = await graph.batch_get(
            [f"/users/{uid}/authentication/methods" for uid in user_ids]
        )
        out: dict[str, list[str]] = {}
        denied = []
        for uid, resp in zip(user_ids, responses):
            if resp.get("_error"):
                denied.append((uid, resp))
                continue
            out[uid] = sorted(
                (m.get("@odata.type") or "").split(".")[-1]
                for m in resp.get("value", [])
            )
        if len(denied) == len(user_ids):
            raise PermissionError(
                f"authentication methods unreadable for all {len(denied)} users"
            )
        for uid, resp in denied:
            tracker.mark_failed(
                f"authenticationMethods:{users[uid]}",
                f"HTTP {resp.get('status')}: {resp.get('_error_message')}",
            )
        logger.debug(f"[roles] Auth methods read for {len(out)}/{len(user_ids)} users")
        return out

    def _to_finding(
        self,
        assignment: dict,
        kind: str,
        role_names: dict,
        methods: dict[str, list[str]],
    ) -> Finding:
        principal = assignment.get("principal") or {}
        principal_id = assignment.get("principalId") or ""
        principal_name = (
            principal.get("userPrincipalName")
            or principal.get("displayName")
            or principal_id
        )
        ptype = _principal_type(assignment)

        method_types: Optional[list[str]] = methods.get(principal_id) if ptype == "user" else None
        mfa_count = (
            len([m for m in method_types if m not in NON_MFA_METHOD_TYPES])
            if method_types is not None else None
        )

        return Finding(
            type=FindingType.ROLE,
            subject_id=principal_name,
            attributes={
                "roleName": role_names.get(assignment.get("roleDefinitionId")),
                "roleDefinitionId": assignment.get("roleDefinitionId"),
                "assignmentKind": kind,
                "principalId": principal_id,
                "principalName": principal_name,
                "principalType": ptype,
                "directoryScopeId": assignment.get("directoryScopeId"),
                "authMethods": method_types,
                "authMethodCount": mfa_count,
            },
            raw_payload=dict(assignment),
        )


def _principal_type(assignment: dict) -> str:
    principal = assignment.get("principal") or {}
    return (principal.get("@odata.type") or "").split(".")[-1]
