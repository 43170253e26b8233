"""
Read-only guard for outbound Graph calls.

The pipeline only ever reads. GET is always allowed; POST is allowed only for
the handful of Graph endpoints that use POST to *read* (audit log query
creation, $batch of GETs, getByIds). Anything else is refused before it
reaches the network and kept on record for the run summary.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger("m365_audit.safety")

READ_METHODS = frozenset({"GET", "HEAD"})

READ_ONLY_POSTS = {
    "batch": re.compile(r"/\$batch$"),
    "audit_query": re.compile(r"/security/auditLog/queries$", re.IGNORECASE),
    "get_by_ids": re.compile(r"/directoryObjects/(microsoft\.graph\.)?getByIds$", re.IGNORECASE),
}


class SafetyViolation(Exception):
    """A request that would change tenant state."""


@dataclass(frozen=True)
class Violation:
    method: str
    url: str
    reason: str
    at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class SafetyGuardian:
    def __init__(self):
        self.violations: list[Violation] = []
        self.checks_performed = 0
        self.started_at = datetime.now(timezone.utc).isoformat()

    def validate_request(self, method: str, url: str, body: Optional[dict] = None) -> bool:
        """True for a read; raises SafetyViolation otherwise."""
        self.checks_performed += 1
        verb = method.upper()
        if verb in READ_METHODS:
            return True

        path = url.split("?", 1)[0]
        if verb == "POST":
            kind = next((k for k, rx in READ_ONLY_POSTS.items() if rx.search(path)), None)
            if kind == "batch":
                self._check_batch(url, body or {})
                return True
            if kind is not None:
                return True
            self._refuse(verb, url, "POST to an endpoint that is not a known read")

        self._refuse(verb, url, f"{verb} is a write method")

    def _check_batch(self, url: str, body: dict):
        # A $batch is only as read-only as its least read-only member
        for sub in body.get("requests", []):
            verb = str(sub.get("method", "GET")).upper()
            if verb not in READ_METHODS:
                self._refuse(verb, sub.get("url", url), "write inside $batch")

    def _refuse(self, method: str, url: str, reason: str):
        self.violations.append(Violation(method, url, reason))
        logger.critical(f"[safety] Blocked {method} {url}: {reason}")
        raise SafetyViolation(f"Blocked {method} {url}: {reason}")

    def get_audit_record(self) -> dict:
        return {
            "mode": "READ-ONLY",
            "started_at": self.started_at,
            "checks_performed": self.checks_performed,
            "violations_detected": len(self.violations),
            "violations": [asdict(v) for v in self.violations],
            "status": "VIOLATIONS_DETECTED" if self.violations else "CLEAN",
        }
