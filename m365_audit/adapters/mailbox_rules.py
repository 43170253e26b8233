"""
Mailbox Rule adapter
Inbox rules for every mail-enabled user: forwarding / redirect targets,
delete actions, destination folders and subject keywords. Each mailbox is
its own section, so one unreadable mailbox yields a partial result.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from .base import FindingAdapter, SectionTracker
from ..models import AdapterId, Finding, FindingType, TimeWindow

logger = logging.getLogger("m365_audit.adapters.mailbox_rules")

FORWARD_ACTIONS = ("forwardTo", "forwardAsAttachmentTo", "redirectTo")
KEYWORD_CONDITIONS = ("subjectContains", "bodyOrSubjectContains", "bodyContains")


class MailboxRuleAdapter(FindingAdapter):
    adapter_id = AdapterId.MAILBOX_RULES
    name = "mailbox_rules"
    description = "Inbox rules: forwarding, deletion, folder moves"

    async def collect(
        self,
        window: TimeWindow,
        connection: Any,
        tracker: SectionTracker,
    ) -> list[Finding]:
        graph = connection.graph

        users = await graph.get_all_pages(
            "users",
            params={"$select": "id,userPrincipalName,mail,accountEnabled"},
        )
        mailboxes = [u for u in users if u.get("mail")]
        if len(mailboxes) > self.config.max_mailboxes:
            logger.warning(
                f"[{self.name}] {len(mailboxes)} mailboxes; reviewing the first "
                f"{self.config.max_mailboxes}"
            )
            mailboxes = mailboxes[: self.config.max_mailboxes]

        responses = await graph.batch_get(
            [f"/users/{u['id']}/mailFolders/inbox/messageRules" for u in mailboxes]
        )

        rules_by_mailbox: list[tuple[dict, list[dict]]] = []
        for user, resp in zip(mailboxes, responses):
            label = user.get("userPrincipalName") or user.get("id")
            if resp.get("_error"):
                tracker.mark_failed(label, f"HTTP {resp.get('status')}: {resp.get('_error_message')}")
                continue
            tracker.mark_completed(label)
            rules = resp.get("value", [])
            if rules:
                rules_by_mailbox.append((user, rules))

        folder_names = await tracker.run(
            "mailFolders",
            self._folder_names(graph, [
                u for u, rules in rules_by_mailbox
                if any((r.get("actions") or {}).get("moveToFolder") for r in rules)
            ], tracker),
            default={},
        )

        findings = []
        for user, rules in rules_by_mailbox:
            for rule in rules:
                findings.append(self._to_finding(user, rule, folder_names.get(user["id"], {})))
        return findings

    async def _folder_names(
        self,
        graph: Any,
        users: list[dict],
        tracker: SectionTracker,
    ) -> dict[str, dict[str, str]]:
        """
        user id -> {folder id: display name} for users whose rules move mail.
        A mailbox whose folders cannot be listed keeps raw folder ids and is
        recorded on the tracker.
        """
        if not users:
            return {}
        responses = await graph.batch_get([
            f"/users/{u['id']}/mailFolders?$top=250&includeHiddenFolders=true"
            for u in users
        ])
        out: dict[str, dict[str, str]] = {}
        for u, resp in zip(users, responses):
            if resp.get("_error"):
                tracker.mark_failed(
                    f"mailFolders:{u.get('userPrincipalName') or u['id']}",
                    f"HTTP {resp.get('status')}: {resp.get('_error_message')}",
                )
                continue
            out[u["id"]] = {f.get("id"): f.get("displayName") for f in resp.get("value", [])}
        return out

    def _to_finding(self, user: dict, rule: dict, folders: dict[str, str]) -> Finding:
        actions = rule.get("actions") or {}
        conditions = rule.get("conditions") or {}
        mailbox = user.get("mail") or user.get("userPrincipalName") or ""

        targets = []
        for action in FORWARD_ACTIONS:
            for recipient in actions.get(action) or []:
                address = (recipient.get("emailAddress") or {}).get("address")
                if address and address not in targets:
                    targets.append(address)

        keywords = []
        for cond in KEYWORD_CONDITIONS:
            keywords.extend(conditions.get(cond) or [])

        folder_id = actions.get("moveToFolder")
        return Finding(
            type=FindingType.FORWARDING_RULE if targets else FindingType.INBOX_RULE,
            subject_id=user.get("userPrincipalName") or mailbox,
            attributes={
                "mailbox": mailbox,
                "mailboxDomain": _domain_of(mailbox),
                "ruleId": rule.get("id"),
                "ruleName": rule.get("displayName") or "",
                "isEnabled": rule.get("isEnabled"),
                "sequence": rule.get("sequence"),
                "forwardTargets": targets,
                "deleteMessage": bool(actions.get("delete") or actions.get("permanentDelete")),
                "moveToFolder": folders.get(folder_id, folder_id) if folder_id else None,
                "keywords": keywords,
                "stopProcessingRules": actions.get("stopProcessingRules"),
            },
            raw_payload={"mailbox": mailbox, "rule": dict(rule)},
        )


def _domain_of(address: Optional[str]) -> str:
    if not address or "@" not in address:
        return ""
    return address.rsplit("@", 1)[1].lower()
