"""
Sharing Policy adapter
External collaboration posture: who may invite guests (authorization
policy) and how far SharePoint / OneDrive content can be shared.
"""

from __future__ import annotations

import logging
from typing import Any

from .base import FindingAdapter, SectionTracker, get_safe
from ..models import AdapterId, Finding, FindingType, TimeWindow

logger = logging.getLogger("m365_audit.adapters.sharing")

# sharingCapability values that allow "Anyone" links
ANONYMOUS_CAPABILITIES = {"externalUserAndGuestSharing"}


class SharingAdapter(FindingAdapter):
    adapter_id = AdapterId.SHARING
    name = "sharing"
    description = "Guest invitation and SharePoint external sharing settings"

    async def collect(
        self,
        window: TimeWindow,
        connection: Any,
        tracker: SectionTracker,
    ) -> list[Finding]:
        graph = connection.graph

        policy = await graph.get("policies/authorizationPolicy")
        # v1.0 returns the singleton directly, some tenants wrap it in value[]
        if isinstance(policy.get("value"), list):
            policy = policy["value"][0] if policy["value"] else {}
        findings = [self._authorization_finding(policy)]

        spo = await tracker.run(
            "sharepointSettings",
            graph.get("admin/sharepoint/settings"),
            default=None,
        )
        if spo is not None:
            findings.append(self._sharepoint_finding(spo))
        return findings

    def _authorization_finding(self, policy: dict) -> Finding:
        allow_invites = policy.get("allowInvitesFrom")
        return Finding(
            type=FindingType.SHARING_POLICY,
            subject_id="authorizationPolicy",
            attributes={
                "scope": "Entra ID",
                "allowInvitesFrom": allow_invites,
                "guestUserRoleId": policy.get("guestUserRoleId"),
                "allowEmailVerifiedUsersToJoinOrganization":
                    policy.get("allowEmailVerifiedUsersToJoinOrganization"),
                "usersCanCreateApps": get_safe(
                    policy, "defaultUserRolePermissions", "allowedToCreateApps"
                ),
                "usersCanCreateTenants": get_safe(
                    policy, "defaultUserRolePermissions", "allowedToCreateTenants"
                ),
                "guestInvitesUnrestricted": allow_invites == "everyone",
            },
            raw_payload=dict(policy),
        )

    def _sharepoint_finding(self, settings: dict) -> Finding:
        capability = settings.get("sharingCapability")
        return Finding(
            type=FindingType.SHARING_POLICY,
            subject_id="sharepointSettings",
            attributes={
                "scope": "SharePoint",
                "sharingCapability": capability,
                "sharingDomainRestrictionMode": settings.get("sharingDomainRestrictionMode"),
                "sharingAllowedDomainList": settings.get("sharingAllowedDomainList") or [],
                "sharingBlockedDomainList": settings.get("sharingBlockedDomainList") or [],
                "isResharingByExternalUsersEnabled":
                    settings.get("isResharingByExternalUsersEnabled"),
                "anonymousSharing": capability in ANONYMOUS_CAPABILITIES,
            },
            raw_payload=dict(settings),
        )
