from __future__ import annotations

from datetime import timedelta

import dns.exception
import pytest

from conftest import T0, FakeGraph, FakeResolver, fast_config
from m365_audit.adapters import (
    ALL_ADAPTERS,
    AppConsentAdapter,
    ConditionalAccessAdapter,
    MailAuthAdapter,
    MailboxRuleAdapter,
    RoleAssignmentAdapter,
    SharingAdapter,
    ThreatProtectionAdapter,
)
from m365_audit.auth.credentials import ConnectionHandle
from m365_audit.errors import PartialResult, SourceUnavailable
from m365_audit.models import AdapterId, FindingType, QueryFilters, TimeWindow

WINDOW = TimeWindow(T0, T0 + timedelta(days=30))


def handle(graph=None, resolver=None) -> ConnectionHandle:
    return ConnectionHandle(adapter_id="test", graph=graph or FakeGraph(), resolver=resolver)


async def fetch(adapter, graph=None, resolver=None):
    return await adapter.fetch(WINDOW, QueryFilters(), handle(graph, resolver))


def test_every_adapter_is_registered():
    assert set(ALL_ADAPTERS) == set(AdapterId)
    for adapter_id, cls in ALL_ADAPTERS.items():
        assert cls.adapter_id == adapter_id


# ─── Roles ──────────────────────────────────────────────────────────────────

def _role_graph(methods_route=None):
    routes = {
        "roleManagement/directory/roleDefinitions": [{"id": "ga", "displayName": "Global Administrator"}],
        "roleManagement/directory/roleAssignments": [
            {"id": "a1", "roleDefinitionId": "ga", "principalId": "u1", "directoryScopeId": "/",
             "principal": {"@odata.type": "#microsoft.graph.user", "userPrincipalName": "admin@contoso.com"}},
            {"id": "a2", "roleDefinitionId": "ga", "principalId": "sp1",
             "principal": {"@odata.type": "#microsoft.graph.servicePrincipal", "displayName": "Automation"}},
        ],
        "roleManagement/directory/roleEligibilitySchedules": [
            {"id": "e1", "roleDefinitionId": "ga", "principalId": "u2",
             "principal": {"@odata.type": "#microsoft.graph.user", "userPrincipalName": "ops@contoso.com"}},
        ],
        "/users/u1/authentication/methods": {"value": [
            {"@odata.type": "#microsoft.graph.passwordAuthenticationMethod"},
        ]},
        "/users/u2/authentication/methods": {"value": [
            {"@odata.type": "#microsoft.graph.passwordAuthenticationMethod"},
            {"@odata.type": "#microsoft.graph.microsoftAuthenticatorAuthenticationMethod"},
        ]},
    }
    if methods_route is not None:
        routes.update(methods_route)
    return FakeGraph(routes)


@pytest.mark.asyncio
async def test_role_assignments_with_mfa_counts():
    findings = await fetch(RoleAssignmentAdapter(fast_config()), _role_graph())
    by_subject = {f.subject_id: f.attributes for f in findings}

    assert by_subject["admin@contoso.com"]["authMethodCount"] == 0
    assert by_subject["admin@contoso.com"]["assignmentKind"] == "Active"
    assert by_subject["ops@contoso.com"]["authMethodCount"] == 1
    assert by_subject["ops@contoso.com"]["assignmentKind"] == "Eligible"
    # Service principals have no MFA concept
    assert by_subject["Automation"]["authMethodCount"] is None
    assert all(f.type == FindingType.ROLE for f in findings)
    assert {a["roleName"] for a in by_subject.values()} == {"Global Administrator"}


@pytest.mark.asyncio
async def test_unreadable_auth_methods_is_partial():
    graph = _role_graph({
        "/users/u1/authentication/methods": 403,
        "/users/u2/authentication/methods": 403,
    })
    with pytest.raises(PartialResult) as exc:
        await fetch(RoleAssignmentAdapter(fast_config()), graph)

    assert exc.value.failed_slices == ["authenticationMethods"]
    assert len(exc.value.records) == 3
    assert all(f.attributes["authMethodCount"] is None
               for f in exc.value.records if f.attributes["principalType"] == "user")


@pytest.mark.asyncio
async def test_one_user_with_unreadable_auth_methods_is_partial():
    graph = _role_graph({"/users/u2/authentication/methods": 403})
    with pytest.raises(PartialResult) as exc:
        await fetch(RoleAssignmentAdapter(fast_config()), graph)

    assert exc.value.failed_slices == ["authenticationMethods:ops@contoso.com"]
    assert "authenticationMethods" in exc.value.completed_slices
    by_subject = {f.subject_id: f.attributes for f in exc.value.records}
    assert by_subject["admin@contoso.com"]["authMethodCount"] == 0
    assert by_subject["ops@contoso.com"]["authMethodCount"] is None


@pytest.mark.asyncio
async def test_primary_listing_failure_is_source_unavailable():
    graph = FakeGraph({"roleManagement/directory/roleDefinitions": RuntimeError("403 Forbidden")})
    with pytest.raises(SourceUnavailable):
        await fetch(RoleAssignmentAdapter(fast_config()), graph)


# ─── Conditional Access ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_conditional_access_policy_attributes():
    graph = FakeGraph({"identity/conditionalAccess/policies": [{
        "id": "p1",
        "displayName": "Require MFA",
        "state": "enabled",
        "conditions": {
            "users": {"includeUsers": ["All"], "excludeUsers": ["bg1"]},
            "applications": {"includeApplications": ["All"]},
            "clientAppTypes": ["all"],
        },
        "grantControls": {
            "operator": "OR",
            "builtInControls": ["mfa"],
            "authenticationStrength": {"displayName": "Phishing-resistant"},
        },
        "sessionControls": None,
    }]})
    [finding] = await fetch(ConditionalAccessAdapter(fast_config()), graph)

    attrs = finding.attributes
    assert finding.subject_id == "p1"
    assert attrs["allUsers"] and attrs["allApps"]
    assert attrs["excludeUsers"] == ["bg1"]
    assert attrs["grantControls"] == ["mfa", "authenticationStrength:Phishing-resistant"]
    assert attrs["sessionControls"] == []


# ─── App consents ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_app_consent_merges_grants_and_app_permissions():
    graph = FakeGraph({
        "servicePrincipals": [
            {"id": "sp1", "appId": "app-1", "displayName": "Mail Sync", "servicePrincipalType": "Application",
             "appOwnerOrganizationId": "third-party",
             "passwordCredentials": [{"endDateTime": "2026-10-20T00:00:00Z"}],
             "keyCredentials": []},
            {"id": "graph-sp", "appId": "00000003-0000-0000-c000-000000000000",
             "displayName": "Microsoft Graph", "servicePrincipalType": "Application",
             "appOwnerOrganizationId": "f8cdef31-a31e-4b4a-93e4-5f571e91255a",
             "appRoles": [{"id": "role-mrw", "value": "Mail.ReadWrite"}]},
        ],
        "oauth2PermissionGrants": [
            {"clientId": "sp1", "scope": "Mail.Read offline_access", "consentType": "AllPrincipals"},
        ],
        "/servicePrincipals/sp1/appRoleAssignments": {"value": [
            {"resourceId": "graph-sp", "appRoleId": "role-mrw", "resourceDisplayName": "Microsoft Graph"},
        ]},
        "reports/servicePrincipalSignInActivities": [
            {"appId": "app-1", "lastSignInActivity": {"lastSignInDateTime": "2026-09-30T00:00:00Z"}},
        ],
    })
    findings = await fetch(AppConsentAdapter(fast_config()), graph)

    # The first-party app has no grants or secrets and is not reviewed
    assert [f.subject_id for f in findings] == ["app-1"]
    attrs = findings[0].attributes
    assert attrs["delegatedScopes"] == ["Mail.Read", "offline_access"]
    assert attrs["applicationPermissions"] == ["Mail.ReadWrite"]
    assert attrs["consentTypes"] == ["AllPrincipals"]
    assert attrs["credentialEndDates"] == ["2026-10-20T00:00:00+00:00"]
    assert attrs["signInActivityKnown"] is True
    assert attrs["lastSignIn"] == "2026-09-30T00:00:00Z"


@pytest.mark.asyncio
async def test_one_unreadable_app_permission_listing_is_partial():
    graph = FakeGraph({
        "servicePrincipals": [
            {"id": "sp1", "appId": "app-1", "displayName": "Mail Sync", "servicePrincipalType": "Application",
             "appOwnerOrganizationId": "third-party"},
            {"id": "sp2", "appId": "app-2", "displayName": "Backup Agent", "servicePrincipalType": "Application",
             "appOwnerOrganizationId": "third-party"},
        ],
        "oauth2PermissionGrants": [],
        "/servicePrincipals/sp1/appRoleAssignments": {"value": []},
        "/servicePrincipals/sp2/appRoleAssignments": 403,
        "reports/servicePrincipalSignInActivities": [],
    })
    with pytest.raises(PartialResult) as exc:
        await fetch(AppConsentAdapter(fast_config()), graph)

    assert exc.value.failed_slices == ["appRoleAssignments:Backup Agent"]
    assert "appRoleAssignments" in exc.value.completed_slices
    assert sorted(f.subject_id for f in exc.value.records) == ["app-1", "app-2"]


# ─── Mailbox rules ──────────────────────────────────────────────────────────

def _mailbox_graph(bob_status=None):
    routes = {
        "users": [
            {"id": "u1", "userPrincipalName": "alice@contoso.com", "mail": "alice@contoso.com"},
            {"id": "u2", "userPrincipalName": "bob@contoso.com", "mail": "bob@contoso.com"},
            {"id": "u3", "userPrincipalName": "svc@contoso.com", "mail": None},
        ],
        "/users/u1/mailFolders/inbox/messageRules": {"value": [
            {"id": "r1", "displayName": ".", "isEnabled": True,
             "conditions": {"subjectContains": ["invoice"]},
             "actions": {"forwardTo": [{"emailAddress": {"address": "drop@evil.example"}}],
                         "moveToFolder": "f-rss"}},
            {"id": "r2", "displayName": "Newsletters", "isEnabled": True,
             "conditions": {}, "actions": {"delete": True}},
        ]},
        "/users/u2/mailFolders/inbox/messageRules": bob_status or {"value": []},
        "/users/u1/mailFolders?$top=250&includeHiddenFolders=true": {"value": [
            {"id": "f-rss", "displayName": "RSS Feeds"},
        ]},
    }
    return FakeGraph(routes)


@pytest.mark.asyncio
async def test_mailbox_rules_classify_forwarding():
    findings = await fetch(MailboxRuleAdapter(fast_config()), _mailbox_graph())
    by_rule = {f.attributes["ruleId"]: f for f in findings}

    fwd = by_rule["r1"]
    assert fwd.type == FindingType.FORWARDING_RULE
    assert fwd.subject_id == "alice@contoso.com"
    assert fwd.attributes["forwardTargets"] == ["drop@evil.example"]
    assert fwd.attributes["mailboxDomain"] == "contoso.com"
    assert fwd.attributes["moveToFolder"] == "RSS Feeds"
    assert fwd.attributes["keywords"] == ["invoice"]

    plain = by_rule["r2"]
    assert plain.type == FindingType.INBOX_RULE
    assert plain.attributes["deleteMessage"] is True
    assert plain.attributes["moveToFolder"] is None


@pytest.mark.asyncio
async def test_only_mail_enabled_users_are_queried():
    graph = _mailbox_graph()
    await fetch(MailboxRuleAdapter(fast_config()), graph)
    rule_batch = next(c for c in graph.calls if c[0] == "BATCH" and "messageRules" in c[2][0])
    assert not any("/u3/" in ep for ep in rule_batch[2])


@pytest.mark.asyncio
async def test_unreadable_mailbox_is_partial():
    with pytest.raises(PartialResult) as exc:
        await fetch(MailboxRuleAdapter(fast_config()), _mailbox_graph(bob_status=403))

    assert exc.value.failed_slices == ["bob@contoso.com"]
    assert "alice@contoso.com" in exc.value.completed_slices
    assert len(exc.value.records) == 2


@pytest.mark.asyncio
async def test_unreadable_folder_names_is_partial():
    graph = _mailbox_graph()
    graph.routes["/users/u1/mailFolders?$top=250&includeHiddenFolders=true"] = 403
    with pytest.raises(PartialResult) as exc:
        await fetch(MailboxRuleAdapter(fast_config()), graph)

    assert exc.value.failed_slices == ["mailFolders:alice@contoso.com"]
    by_rule = {f.attributes["ruleId"]: f for f in exc.value.records}
    assert by_rule["r1"].attributes["moveToFolder"] == "f-rss"


@pytest.mark.asyncio
async def test_mailbox_cap_is_applied():
    graph = _mailbox_graph()
    await fetch(MailboxRuleAdapter(fast_config(max_mailboxes=1)), graph)
    [batch] = [c for c in graph.calls if c[0] == "BATCH" and "messageRules" in c[2][0]]
    assert batch[2] == ["/users/u1/mailFolders/inbox/messageRules"]


# ─── Mail authentication ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_mail_auth_reads_spf_dmarc_dkim():
    resolver = FakeResolver(
        records={
            "contoso.com": ["google-site-verification=abc", "v=spf1 include:spf.protection.outlook.com ~all"],
            "_dmarc.contoso.com": ["v=DMARC1; p=none; rua=mailto:d@contoso.com"],
            "selector1._domainkey.contoso.com": ["v=DKIM1; k=rsa; p=MIGf"],
            "fabrikam.com": ["v=spf1 -all"],
        },
        errors={"_dmarc.fabrikam.com": dns.exception.Timeout()},
    )
    graph = FakeGraph({"domains": [
        {"id": "contoso.com", "isVerified": True},
        {"id": "Fabrikam.com", "isVerified": True},
        {"id": "contoso.onmicrosoft.com", "isVerified": True},
        {"id": "pending.com", "isVerified": False},
    ]})
    findings = await fetch(MailAuthAdapter(fast_config()), graph, resolver)

    assert [f.subject_id for f in findings] == ["contoso.com", "fabrikam.com"]
    contoso, fabrikam = (f.attributes for f in findings)

    assert contoso["spfPresent"] and contoso["spfAllQualifier"] == "~"
    assert contoso["dmarcPolicy"] == "none"
    assert contoso["dkimSelectorsFound"] == ["selector1"]
    assert contoso["dkimPresent"]

    assert fabrikam["spfAllQualifier"] == "-"
    assert not fabrikam["dmarcPresent"]
    assert fabrikam["dmarcPolicy"] is None
    assert not fabrikam["dkimPresent"]


@pytest.mark.asyncio
async def test_mail_auth_configured_domains_skip_graph():
    graph = FakeGraph()
    resolver = FakeResolver({"example.org": ["v=spf1 mx"]})
    adapter = MailAuthAdapter(fast_config(mail_auth_domains=[" Example.org "]))
    [finding] = await fetch(adapter, graph, resolver)

    assert graph.calls == []
    assert finding.attributes["spfPresent"]
    # No all mechanism at all
    assert finding.attributes["spfAllQualifier"] is None


@pytest.mark.asyncio
async def test_mail_auth_without_resolver_fails():
    adapter = MailAuthAdapter(fast_config(mail_auth_domains=["example.org"]))
    with pytest.raises(SourceUnavailable):
        await fetch(adapter)


# ─── Sharing ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_sharing_policy_findings():
    graph = FakeGraph({
        "policies/authorizationPolicy": {"value": [{
            "allowInvitesFrom": "everyone",
            "defaultUserRolePermissions": {"allowedToCreateApps": True},
        }]},
        "admin/sharepoint/settings": {"sharingCapability": "externalUserAndGuestSharing"},
    })
    findings = await fetch(SharingAdapter(fast_config()), graph)
    by_subject = {f.subject_id: f.attributes for f in findings}

    assert by_subject["authorizationPolicy"]["guestInvitesUnrestricted"] is True
    assert by_subject["authorizationPolicy"]["usersCanCreateApps"] is True
    assert by_subject["sharepointSettings"]["anonymousSharing"] is True


@pytest.mark.asyncio
async def test_sharepoint_settings_failure_is_partial():
    graph = FakeGraph({
        "policies/authorizationPolicy": {"allowInvitesFrom": "adminsAndGuestInviters"},
        "admin/sharepoint/settings": RuntimeError("403"),
    })
    with pytest.raises(PartialResult) as exc:
        await fetch(SharingAdapter(fast_config()), graph)

    assert exc.value.failed_slices == ["sharepointSettings"]
    [finding] = exc.value.records
    assert finding.attributes["guestInvitesUnrestricted"] is False


# ─── Threat protection ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_alerts_grouped_by_policy_within_window():
    graph = FakeGraph({"security/alerts_v2": [
        {"id": "1", "alertPolicyId": "pol-a", "title": "Suspicious forwarding",
         "severity": "high", "status": "new", "createdDateTime": "2026-10-02T00:00:00Z"},
        {"id": "2", "alertPolicyId": "pol-a", "title": "Suspicious forwarding",
         "severity": "high", "status": "resolved", "createdDateTime": "2026-10-03T00:00:00Z"},
        {"id": "3", "title": "Malware detected", "severity": "medium", "status": "new",
         "createdDateTime": "2026-10-04T00:00:00Z"},
        {"id": "4", "alertPolicyId": "pol-a", "severity": "high", "status": "new",
         "createdDateTime": "2025-01-01T00:00:00Z"},
    ]})
    findings = await fetch(ThreatProtectionAdapter(fast_config()), graph)
    by_subject = {f.subject_id: f.attributes for f in findings}

    assert set(by_subject) == {"pol-a", "Malware detected"}
    pol = by_subject["pol-a"]
    assert pol["alertCount"] == 2
    assert pol["unresolvedHighSeverityCount"] == 1
    assert pol["severityCounts"] == {"high": 2}
    assert pol["firstSeen"] == "2026-10-02T00:00:00Z"
    assert pol["lastSeen"] == "2026-10-03T00:00:00Z"
    assert "createdDateTime ge 2026-10-01T00:00:00Z" in graph.calls[0][2]["$filter"]
