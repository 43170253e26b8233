"""
Anonymization — replaces identifying strings with keyed pseudonyms.

Tokens are HMAC-SHA256 of the lower-cased identifier under a per-run random
key, so the same identifier maps to the same token throughout one report
while tokens cannot be correlated across runs.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import replace
from typing import Any, Iterable, Optional

from cryptography.hazmat.primitives import hashes, hmac

from .models import AuditReport, NormalizedEvent, Record

logger = logging.getLogger("m365_audit.anonymize")

TOKEN_PREFIX = "anon-"

# Finding attributes that carry user / mailbox identities
IDENTITY_ATTRIBUTES = {
    "principalName",
    "userPrincipalName",
    "mailbox",
    "forwardTargets",
    "ownerUserPrincipalName",
}


# Shorter identifiers are only replaced where they are a whole value
MIN_SCRUB_LENGTH = 3


def _identifier_pattern(identifiers: list[str]) -> Optional[re.Pattern]:
    """
    Match known identifiers inside free text as whole tokens: not inside a
    longer word, address or domain. A trailing sentence period still matches.
    """
    scrubbable = [i for i in identifiers if len(i.strip()) >= MIN_SCRUB_LENGTH]
    if not scrubbable:
        return None
    alternatives = "|".join(re.escape(i) for i in scrubbable)
    return re.compile(rf"(?<![\w.@-])(?:{alternatives})(?![\w@-]|\.\w)", re.IGNORECASE)


class Pseudonymizer:
    """Keyed, per-run identifier → token mapping."""

    def __init__(self, key: Optional[bytes] = None):
        self._key = key or os.urandom(32)
        self._tokens: dict[str, str] = {}

    def token(self, value: str) -> str:
        if not value:
            return value
        norm = value.strip().lower()
        if norm.startswith(TOKEN_PREFIX):
            return value
        tok = self._tokens.get(norm)
        if tok is None:
            h = hmac.HMAC(self._key, hashes.SHA256())
            h.update(norm.encode("utf-8"))
            tok = TOKEN_PREFIX + h.finalize().hex()[:12]
            self._tokens[norm] = tok
        return tok

    # ─── Report ─────────────────────────────────────────────────────────────

    def anonymize_report(self, report: AuditReport) -> AuditReport:
        identifiers = sorted(self._collect_identifiers(report.records), key=len, reverse=True)
        for ident in identifiers:
            self.token(ident)
        pattern = _identifier_pattern(identifiers)
        records = tuple(self._anonymize_record(r, pattern) for r in report.records)
        logger.info(f"[anonymize] Replaced {len(identifiers)} identifiers in {len(records)} records")
        return replace(report, records=records, anonymized=True)

    def _collect_identifiers(self, records: Iterable[Record]) -> set[str]:
        found: set[str] = set()
        for r in records:
            if isinstance(r, NormalizedEvent):
                if r.actor:
                    found.add(r.actor)
                if r.target and "@" in r.target:
                    found.add(r.target)
            else:
                if r.subject_id and "@" in r.subject_id:
                    found.add(r.subject_id)
                for key in IDENTITY_ATTRIBUTES:
                    value = r.attributes.get(key)
                    if isinstance(value, str) and value:
                        found.add(value)
                    elif isinstance(value, (list, tuple)):
                        found.update(v for v in value if isinstance(v, str) and v)
        return {i for i in found if not i.lower().startswith(TOKEN_PREFIX)}

    def _anonymize_record(self, record: Record, pattern: Optional[re.Pattern]) -> Record:
        flags = {
            name: replace(
                flag,
                reason=self._scrub(flag.reason, pattern),
                details=self._scrub(dict(flag.details), pattern),
            )
            for name, flag in record.risk_flags.items()
        }
        if isinstance(record, NormalizedEvent):
            return replace(
                record,
                actor=self.token(record.actor) if record.actor else record.actor,
                target=self._scrub(record.target, pattern),
                raw_payload=self._scrub(dict(record.raw_payload), pattern),
                risk_flags=flags,
            )
        return replace(
            record,
            subject_id=self.token(record.subject_id),
            attributes=self._scrub(dict(record.attributes), pattern),
            raw_payload=self._scrub(dict(record.raw_payload), pattern),
            risk_flags=flags,
        )

    def _scrub(self, value: Any, pattern: Optional[re.Pattern]) -> Any:
        """Replace every known identifier inside nested strings."""
        if isinstance(value, str):
            if value.strip().lower() in self._tokens:
                return self.token(value)
            if pattern is None:
                return value
            return pattern.sub(lambda m: self.token(m.group(0)), value)
        if isinstance(value, dict):
            return {k: self._scrub(v, pattern) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return type(value)(self._scrub(v, pattern) for v in value)
        return value


def anonymize_report(report: AuditReport, key: Optional[bytes] = None) -> AuditReport:
    return Pseudonymizer(key).anonymize_report(report)

