"""
Built-in rule set
Identity, application, mail, collaboration and activity checks, each mapped
to HIPAA Security Rule, NIST 800-53 Rev 5 and CIS Microsoft 365 controls.
"""

from __future__ import annotations

import re
from typing import Any, Mapping, Optional

from .engine import EvaluationContext, Rule, RuleSet
from ..models import FindingType, SourceKind, parse_datetime

ROLE = frozenset({FindingType.ROLE.value})
CA_POLICY = frozenset({FindingType.CA_POLICY.value})
APP_CONSENT = frozenset({FindingType.APP_CONSENT.value})
MAIL_RULES = frozenset({FindingType.INBOX_RULE.value, FindingType.FORWARDING_RULE.value})
MAIL_AUTH = frozenset({FindingType.MAIL_AUTH_DOMAIN.value})
SHARING = frozenset({FindingType.SHARING_POLICY.value})
PROTECTION = frozenset({FindingType.PROTECTION_POLICY.value})
EVENTS = frozenset(s.value for s in SourceKind)

BREAK_GLASS_RE = re.compile(r"breakglass|emergency", re.IGNORECASE)
SUSPICIOUS_RULE_NAME_RE = re.compile(r"[./]")

HIGH_RISK_PERMISSIONS = {
    "Application.ReadWrite.All",
    "Directory.ReadWrite.All",
    "RoleManagement.ReadWrite.Directory",
    "Mail.ReadWrite",
    "Mail.Send",
    "Files.ReadWrite.All",
    "Sites.FullControl.All",
    "User.ReadWrite.All",
    "Group.ReadWrite.All",
    "Policy.ReadWrite.ConditionalAccess",
    "AppRoleAssignment.ReadWrite.All",
    "full_access_as_app",
}

# (upper bound in days, tier label, severity), checked in order
SECRET_EXPIRY_TIERS = (
    (30, "<30d", "high"),
    (60, "<60d", "medium"),
    (90, "<90d", "low"),
)

DELIVERY_FAILURE_KEYWORDS = (
    "undeliverable",
    "undelivered",
    "delivery failure",
    "delivery has failed",
    "delivery status notification",
    "failure notice",
    "could not be delivered",
    "not delivered",
    "returned mail",
    "mail delivery",
    "mailer-daemon",
    "postmaster",
    "bounce",
)

SUSPICIOUS_FOLDERS = {
    "junk",
    "junk email",
    "junk e-mail",
    "deleted items",
    "deleted",
    "rss feeds",
    "rss subscriptions",
    "rss",
}

SENSITIVE_OPERATIONS = {
    # Inbox rules
    "new-inboxrule",
    "set-inboxrule",
    "updateinboxrules",
    # Mailbox forwarding
    "set-mailbox",
    "new-transportrule",
    # Consent
    "consent to application",
    "add delegated permission grant",
    "add app role assignment to service principal",
    # Role membership
    "add member to role",
    "add eligible member to role",
    # Credentials
    "add service principal credentials",
    "update application – certificates and secrets management",
    "add-mailboxpermission",
}


# ─── Role ───────────────────────────────────────────────────────────────────

def no_mfa(a: Mapping[str, Any], ctx: EvaluationContext):
    # None means the method list was unreadable or the principal is not a user
    return a.get("authMethodCount") == 0


def break_glass(a: Mapping[str, Any], ctx: EvaluationContext):
    return bool(BREAK_GLASS_RE.search(a.get("principalName") or ""))


# ─── Conditional Access ─────────────────────────────────────────────────────

def risky_combination(a: Mapping[str, Any], ctx: EvaluationContext):
    return bool(a.get("allUsers") and a.get("allApps") and not a.get("grantControls"))


# ─── App consent ────────────────────────────────────────────────────────────

def high_risk_scope(a: Mapping[str, Any], ctx: EvaluationContext):
    risky = sorted(set(a.get("scopes") or []) & HIGH_RISK_PERMISSIONS)
    if not risky:
        return None
    app_only = set(a.get("applicationPermissions") or []) & HIGH_RISK_PERMISSIONS
    return {
        "risky_scopes": ", ".join(risky),
        # App-only permissions act without a signed-in user
        "severity": "critical" if app_only else "high",
    }


def _credential_days(a: Mapping[str, Any], ctx: EvaluationContext) -> list[int]:
    out = []
    for value in a.get("credentialEndDates") or []:
        end = parse_datetime(value)
        if end is not None:
            out.append((end - ctx.evaluated_at).days)
    return out


def secret_expiring_soon(a: Mapping[str, Any], ctx: EvaluationContext):
    remaining = [d for d in _credential_days(a, ctx) if d >= 0]
    if not remaining:
        return None
    soonest = min(remaining)
    for limit, tier, severity in SECRET_EXPIRY_TIERS:
        if soonest <= limit:
            return {"tier": tier, "days_remaining": soonest, "severity": severity}
    return None


def secret_expired(a: Mapping[str, Any], ctx: EvaluationContext):
    expired = [d for d in _credential_days(a, ctx) if d < 0]
    if not expired:
        return None
    return {"expired_count": len(expired), "days_since_expiry": -max(expired)}


def stale_app(a: Mapping[str, Any], ctx: EvaluationContext):
    if not a.get("signInActivityKnown"):
        return None
    last = parse_datetime(a.get("lastSignIn"))
    if last is None:
        return {"last_sign_in": "never", "stale_days": ctx.stale_days}
    idle = (ctx.evaluated_at - last).days
    if idle > ctx.stale_days:
        return {"last_sign_in": f"{idle} days ago", "stale_days": ctx.stale_days}
    return None


# ─── Inbox / forwarding rules ───────────────────────────────────────────────

def suspicious_rule_name(a: Mapping[str, Any], ctx: EvaluationContext):
    return bool(SUSPICIOUS_RULE_NAME_RE.fullmatch(a.get("ruleName") or ""))


def delete_on_delivery_failure(a: Mapping[str, Any], ctx: EvaluationContext):
    if not a.get("deleteMessage"):
        return None
    hits = []
    for kw in a.get("keywords") or []:
        k = (kw or "").strip().lower()
        if any(term in k for term in DELIVERY_FAILURE_KEYWORDS):
            hits.append(kw)
    if not hits:
        return None
    return {"matched_keywords": ", ".join(hits)}


def external_forward(a: Mapping[str, Any], ctx: EvaluationContext):
    own = (a.get("mailboxDomain") or "").lower()
    if not own:
        return None
    external = [
        t for t in a.get("forwardTargets") or []
        if _domain(t) and _domain(t) != own
    ]
    if not external:
        return None
    return {"external_targets": ", ".join(external)}


def moves_to_suspicious_folder(a: Mapping[str, Any], ctx: EvaluationContext):
    folder = (a.get("moveToFolder") or "").strip().lower()
    return folder in SUSPICIOUS_FOLDERS


def _domain(address: Optional[str]) -> str:
    if not address or "@" not in address:
        return ""
    return address.rsplit("@", 1)[1].strip().lower()


# ─── Mail authentication ────────────────────────────────────────────────────

def missing_spf(a: Mapping[str, Any], ctx: EvaluationContext):
    return not a.get("spfPresent")


def soft_spf(a: Mapping[str, Any], ctx: EvaluationContext):
    if not a.get("spfPresent"):
        return None
    qualifier = a.get("spfAllQualifier")
    if qualifier == "-":
        return None
    if qualifier is None:
        return {"mechanism": "no all mechanism"}
    # +all authorises every sender on the internet
    return {"mechanism": f"{qualifier}all", "severity": "high" if qualifier == "+" else "medium"}


def missing_dmarc(a: Mapping[str, Any], ctx: EvaluationContext):
    return not a.get("dmarcPresent")


def weak_dmarc_policy(a: Mapping[str, Any], ctx: EvaluationContext):
    return bool(a.get("dmarcPresent") and (a.get("dmarcPolicy") or "none") == "none")


def missing_dkim(a: Mapping[str, Any], ctx: EvaluationContext):
    return not a.get("dkimPresent")


# ─── Sharing / protection ───────────────────────────────────────────────────

def anonymous_sharing(a: Mapping[str, Any], ctx: EvaluationContext):
    return bool(a.get("anonymousSharing"))


def guest_invites_unrestricted(a: Mapping[str, Any], ctx: EvaluationContext):
    return bool(a.get("guestInvitesUnrestricted"))


def unresolved_high_alerts(a: Mapping[str, Any], ctx: EvaluationContext):
    count = a.get("unresolvedHighSeverityCount") or 0
    if count <= 0:
        return None
    return {"unresolved": count}


# ─── Events ─────────────────────────────────────────────────────────────────

def sensitive_operation(a: Mapping[str, Any], ctx: EvaluationContext):
    return (a.get("operation") or "").strip().lower() in SENSITIVE_OPERATIONS


BUILTIN_RULES = [
    Rule(
        name="NoMFA",
        applies_to=ROLE,
        predicate=no_mfa,
        reason="{principalName} holds {roleName} with no registered MFA method",
        controls=("NIST:IA-2(1)", "CIS:1.1.1", "HIPAA:164.312(d)"),
        severity="critical",
    ),
    Rule(
        name="BreakGlass",
        applies_to=ROLE,
        predicate=break_glass,
        reason="{principalName} looks like an emergency access account holding {roleName}",
        controls=("NIST:AC-2(3)", "CIS:1.1.2"),
        severity="informational",
    ),
    Rule(
        name="RiskyCombination",
        applies_to=CA_POLICY,
        predicate=risky_combination,
        reason="Policy '{displayName}' targets all users and all apps with no grant controls",
        controls=("NIST:AC-3", "CIS:5.2.2.1", "HIPAA:164.312(a)(1)"),
        severity="high",
    ),
    Rule(
        name="HighRiskScope",
        applies_to=APP_CONSENT,
        predicate=high_risk_scope,
        reason="{displayName} holds high-privilege permissions: {risky_scopes}",
        controls=("NIST:AC-6", "CIS:5.1.5.2", "HIPAA:164.308(a)(4)"),
        severity="high",
    ),
    Rule(
        name="SecretExpiringSoon",
        applies_to=APP_CONSENT,
        predicate=secret_expiring_soon,
        reason="{displayName} has a credential expiring in {days_remaining} days ({tier})",
        controls=("NIST:IA-5(1)", "CIS:5.1.5.3"),
        severity="medium",
    ),
    Rule(
        name="SecretExpired",
        applies_to=APP_CONSENT,
        predicate=secret_expired,
        reason="{displayName} still carries {expired_count} expired credential(s)",
        controls=("NIST:IA-5(1)", "CIS:5.1.5.3"),
        severity="low",
    ),
    Rule(
        name="Stale",
        applies_to=APP_CONSENT,
        predicate=stale_app,
        reason="{displayName} last signed in {last_sign_in} (threshold {stale_days} days)",
        controls=("NIST:AC-2(3)", "CIS:5.1.5.1", "HIPAA:164.308(a)(3)(ii)(C)"),
        severity="low",
    ),
    Rule(
        name="SuspiciousRuleName",
        applies_to=MAIL_RULES,
        predicate=suspicious_rule_name,
        reason="Inbox rule on {mailbox} has a single-character name '{ruleName}'",
        controls=("NIST:SI-4", "HIPAA:164.308(a)(1)(ii)(D)"),
        severity="high",
    ),
    Rule(
        name="DeleteOnDeliveryFailure",
        applies_to=MAIL_RULES,
        predicate=delete_on_delivery_failure,
        reason="Rule '{ruleName}' on {mailbox} deletes delivery-failure notices ({matched_keywords})",
        controls=("NIST:SI-4", "NIST:AU-6", "HIPAA:164.308(a)(6)(ii)"),
        severity="high",
    ),
    Rule(
        name="ExternalForward",
        applies_to=MAIL_RULES,
        predicate=external_forward,
        reason="Rule '{ruleName}' forwards mail from {mailbox} to {external_targets}",
        controls=("NIST:AC-4", "CIS:6.2.1", "HIPAA:164.312(e)(1)"),
        severity="high",
    ),
    Rule(
        name="MovesToSuspiciousFolder",
        applies_to=MAIL_RULES,
        predicate=moves_to_suspicious_folder,
        reason="Rule '{ruleName}' on {mailbox} moves mail to {moveToFolder}",
        controls=("NIST:SI-4", "HIPAA:164.308(a)(1)(ii)(D)"),
        severity="medium",
    ),
    Rule(
        name="MissingSPF",
        applies_to=MAIL_AUTH,
        predicate=missing_spf,
        reason="{domain} publishes no SPF record",
        controls=("NIST:SC-8", "CIS:2.1.8"),
        severity="high",
    ),
    Rule(
        name="SoftSPF",
        applies_to=MAIL_AUTH,
        predicate=soft_spf,
        reason="SPF for {domain} ends with {mechanism}",
        controls=("NIST:SC-8", "CIS:2.1.8"),
        severity="medium",
    ),
    Rule(
        name="MissingDMARC",
        applies_to=MAIL_AUTH,
        predicate=missing_dmarc,
        reason="{domain} publishes no DMARC record",
        controls=("NIST:SI-8", "CIS:2.1.10"),
        severity="high",
    ),
    Rule(
        name="WeakDMARCPolicy",
        applies_to=MAIL_AUTH,
        predicate=weak_dmarc_policy,
        reason="DMARC for {domain} is monitor-only (p=none)",
        controls=("NIST:SI-8", "CIS:2.1.10"),
        severity="medium",
    ),
    Rule(
        name="MissingDKIM",
        applies_to=MAIL_AUTH,
        predicate=missing_dkim,
        reason="No DKIM key found for {domain} at selectors {dkimSelectors}",
        controls=("NIST:SC-8", "CIS:2.1.9"),
        severity="medium",
    ),
    Rule(
        name="AnonymousSharingEnabled",
        applies_to=SHARING,
        predicate=anonymous_sharing,
        reason="SharePoint allows anonymous 'Anyone' links ({sharingCapability})",
        controls=("NIST:AC-21", "CIS:7.2.3", "HIPAA:164.312(a)(1)"),
        severity="high",
    ),
    Rule(
        name="GuestInvitesUnrestricted",
        applies_to=SHARING,
        predicate=guest_invites_unrestricted,
        reason="Anyone in the organization, including guests, can invite external users",
        controls=("NIST:AC-2", "CIS:5.1.6.2"),
        severity="medium",
    ),
    Rule(
        name="UnresolvedHighSeverityAlerts",
        applies_to=PROTECTION,
        predicate=unresolved_high_alerts,
        reason="{unresolved} high-severity '{policyName}' alert(s) are unresolved",
        controls=("NIST:IR-4", "NIST:SI-4", "HIPAA:164.308(a)(6)(ii)"),
        severity="high",
    ),
    Rule(
        name="SensitiveOperation",
        applies_to=EVENTS,
        predicate=sensitive_operation,
        reason="{actor} performed {operation} on {target}",
        controls=("NIST:AU-6", "HIPAA:164.312(b)"),
        severity="medium",
    ),
]


def default_rule_set() -> RuleSet:
    return RuleSet(BUILTIN_RULES)
