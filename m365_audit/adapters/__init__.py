from .base import BaseAdapter, EventAdapter, FindingAdapter, SectionTracker
from .audit_log import AuditLogAdapter, MailboxAuditAdapter
from .sign_in import SignInAdapter
from .directory_audit import DirectoryAuditAdapter
from .roles import RoleAssignmentAdapter
from .conditional_access import ConditionalAccessAdapter
from .app_consent import AppConsentAdapter
from .mailbox_rules import MailboxRuleAdapter
from .mail_auth import MailAuthAdapter
from .sharing import SharingAdapter
from .threat import ThreatProtectionAdapter
from ..models import AdapterId

ALL_ADAPTERS = {
    AdapterId.AUDIT_LOG: AuditLogAdapter,
    AdapterId.SIGN_IN: SignInAdapter,
    AdapterId.DIRECTORY_AUDIT: DirectoryAuditAdapter,
    AdapterId.MAILBOX_AUDIT: MailboxAuditAdapter,
    AdapterId.ROLE_ASSIGNMENTS: RoleAssignmentAdapter,
    AdapterId.CONDITIONAL_ACCESS: ConditionalAccessAdapter,
    AdapterId.APP_CONSENTS: AppConsentAdapter,
    AdapterId.MAILBOX_RULES: MailboxRuleAdapter,
    AdapterId.MAIL_AUTH: MailAuthAdapter,
    AdapterId.SHARING: SharingAdapter,
    AdapterId.THREAT_PROTECTION: ThreatProtectionAdapter,
}

__all__ = [
    "BaseAdapter",
    "EventAdapter",
    "FindingAdapter",
    "SectionTracker",
    "AuditLogAdapter",
    "MailboxAuditAdapter",
    "SignInAdapter",
    "DirectoryAuditAdapter",
    "RoleAssignmentAdapter",
    "ConditionalAccessAdapter",
    "AppConsentAdapter",
    "MailboxRuleAdapter",
    "MailAuthAdapter",
    "SharingAdapter",
    "ThreatProtectionAdapter",
    "ALL_ADAPTERS",
]
