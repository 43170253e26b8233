"""
Record model — the common currency of the pipeline.

Event sources produce NormalizedEvent records, configuration sources produce
Finding records. Both keep every native field in raw_payload and carry the
risk flags computed by the rule engine.
"""

from __future__ import annotations

import fnmatch
import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterator, Mapping, Optional, Union


class SourceKind(str, Enum):
    """Event sources (log-style, timestamped)."""
    AUDIT_LOG = "AuditLog"
    SIGN_IN = "SignIn"
    DIRECTORY_AUDIT = "DirectoryAudit"
    MAILBOX_AUDIT = "MailboxAudit"


class FindingType(str, Enum):
    """Point-in-time configuration findings."""
    ROLE = "Role"
    CA_POLICY = "CAPolicy"
    APP_CONSENT = "AppConsent"
    FORWARDING_RULE = "ForwardingRule"
    INBOX_RULE = "InboxRule"
    MAIL_AUTH_DOMAIN = "MailAuthDomain"
    PROTECTION_POLICY = "ProtectionPolicy"
    SHARING_POLICY = "SharingPolicy"


class AdapterId(str, Enum):
    """Identifier of every adapter the orchestrators can schedule."""
    AUDIT_LOG = "AuditLog"
    SIGN_IN = "SignIn"
    DIRECTORY_AUDIT = "DirectoryAudit"
    MAILBOX_AUDIT = "MailboxAudit"
    ROLE_ASSIGNMENTS = "RoleAssignments"
    CONDITIONAL_ACCESS = "ConditionalAccess"
    APP_CONSENTS = "AppConsents"
    MAILBOX_RULES = "MailboxRules"
    MAIL_AUTH = "MailAuth"
    SHARING = "Sharing"
    THREAT_PROTECTION = "ThreatProtection"


EVENT_ADAPTERS = {AdapterId(s.value) for s in SourceKind}

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse Graph ISO timestamps ('2024-10-01T12:34:56.1234567Z').
    Returns None if missing or unparseable. Naive values are taken as UTC.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        s = value.strip().replace("Z", "+00:00")
        # Graph emits 7 fractional digits; fromisoformat wants at most 6
        s = _FRACTION_RE.sub(r"\1", s)
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_datetime(dt: datetime) -> str:
    """Graph filter / report format: second precision, trailing Z."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# ---------------------------------------------------------------------------
# Query window & filters
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TimeWindow:
    """Half-open UTC interval [start, end)."""
    start: datetime
    end: datetime

    def __post_init__(self):
        start = parse_datetime(self.start)
        end = parse_datetime(self.end)
        if start is None or end is None:
            raise ValueError("TimeWindow requires start and end instants")
        if start > end:
            raise ValueError(f"Window start {start} is after end {end}")
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    @classmethod
    def last_days(cls, days: int, now: Optional[datetime] = None) -> "TimeWindow":
        end = now or utcnow()
        return cls(end - timedelta(days=days), end)

    @property
    def label(self) -> str:
        return f"{format_datetime(self.start)}/{format_datetime(self.end)}"

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts < self.end

    def slices(self, span: Optional[timedelta]) -> list["TimeWindow"]:
        """
        Split into consecutive, non-overlapping sub-windows no longer than span.
        The union of the slices is exactly this window.
        """
        if span is None or span <= timedelta(0) or self.duration <= span:
            return [self]
        out = []
        cursor = self.start
        while cursor < self.end:
            nxt = min(cursor + span, self.end)
            out.append(TimeWindow(cursor, nxt))
            cursor = nxt
        return out

    def to_dict(self) -> dict:
        return {"start": format_datetime(self.start), "end": format_datetime(self.end)}


@dataclass(frozen=True)
class QueryFilters:
    """
    Actor / operation restrictions. Actor patterns are exact or shell-style
    wildcards (admin*, *@contoso.com), matched case-insensitively.
    """
    actors: frozenset[str] = frozenset()
    operations: frozenset[str] = frozenset()

    @classmethod
    def build(cls, actors=None, operations=None) -> "QueryFilters":
        return cls(
            actors=frozenset(a.strip() for a in (actors or []) if a and a.strip()),
            operations=frozenset(o.strip() for o in (operations or []) if o and o.strip()),
        )

    @property
    def exact_actors(self) -> list[str]:
        """Patterns without wildcards, safe to push down to a native query."""
        return sorted(a for a in self.actors if not any(c in a for c in "*?["))

    @property
    def has_wildcards(self) -> bool:
        return len(self.exact_actors) != len(self.actors)

    def actor_matches(self, actor: str) -> bool:
        if not self.actors:
            return True
        if not actor:
            return False
        actor_l = actor.lower()
        return any(fnmatch.fnmatchcase(actor_l, p.lower()) for p in self.actors)

    def operation_matches(self, operation: str) -> bool:
        if not self.operations:
            return True
        return (operation or "").lower() in {o.lower() for o in self.operations}

    def matches(self, event: "NormalizedEvent") -> bool:
        return self.actor_matches(event.actor) and self.operation_matches(event.operation)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RiskFlag:
    """A named annotation attached by the rule engine."""
    name: str
    reason: str
    severity: str = "medium"
    controls: tuple[str, ...] = ()
    details: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "reason": self.reason,
            "severity": self.severity,
            "controls": list(self.controls),
            "details": dict(self.details),
        }


@dataclass(frozen=True)
class NormalizedEvent:
    """A timestamped audit / activity record from a log-style source."""
    source: SourceKind
    timestamp: datetime
    actor: str
    operation: str
    target: Optional[str] = None
    record_id: str = ""
    raw_payload: Mapping[str, Any] = field(default_factory=dict)
    risk_flags: Mapping[str, RiskFlag] = field(default_factory=dict)

    record_class = "event"

    @property
    def record_kind(self) -> str:
        return self.source.value

    @property
    def attributes(self) -> dict[str, Any]:
        """Promoted fields visible to the rule engine."""
        return {
            "actor": self.actor,
            "operation": self.operation,
            "target": self.target,
            "timestamp": self.timestamp,
        }

    def with_flags(self, flags: Mapping[str, RiskFlag]) -> "NormalizedEvent":
        return replace(self, risk_flags=dict(flags))

    def to_dict(self) -> dict:
        return {
            "record_class": self.record_class,
            "record_kind": self.record_kind,
            "source": self.source.value,
            "timestamp": self.timestamp.isoformat(),
            "actor": self.actor,
            "operation": self.operation,
            "target": self.target,
            "record_id": self.record_id,
            "risk_flags": {k: v.to_dict() for k, v in self.risk_flags.items()},
            "raw_payload": dict(self.raw_payload),
        }


@dataclass(frozen=True)
class Finding:
    """A point-in-time configuration fact subject to risk evaluation."""
    type: FindingType
    subject_id: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
    raw_payload: Mapping[str, Any] = field(default_factory=dict)
    risk_flags: Mapping[str, RiskFlag] = field(default_factory=dict)

    record_class = "finding"

    @property
    def record_kind(self) -> str:
        return self.type.value

    def with_flags(self, flags: Mapping[str, RiskFlag]) -> "Finding":
        return replace(self, risk_flags=dict(flags))

    def to_dict(self) -> dict:
        return {
            "record_class": self.record_class,
            "record_kind": self.record_kind,
            "type": self.type.value,
            "subject_id": self.subject_id,
            "attributes": dict(self.attributes),
            "risk_flags": {k: v.to_dict() for k, v in self.risk_flags.items()},
            "raw_payload": dict(self.raw_payload),
        }


Record = Union[NormalizedEvent, Finding]


# ---------------------------------------------------------------------------
# Orchestrator input / output
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InvestigationRequest:
    """
    Input to the investigation orchestrator. Constructed by the caller and
    never mutated; `end` defaults to now at construction time.
    """
    start: datetime
    end: Optional[datetime] = None
    actor_filter: frozenset[str] = frozenset()
    operation_filter: frozenset[str] = frozenset()
    sources: tuple[SourceKind, ...] = ()
    investigation_id: str = ""

    def __post_init__(self):
        start = parse_datetime(self.start)
        end = parse_datetime(self.end) if self.end is not None else utcnow()
        if start is None:
            raise ValueError("InvestigationRequest requires a start instant")
        if start > end:
            raise ValueError(f"start ({start}) must not be after end ({end})")

        sources: list[SourceKind] = []
        for s in self.sources:
            kind = s if isinstance(s, SourceKind) else SourceKind(s)
            if kind not in sources:
                sources.append(kind)
        if not sources:
            raise ValueError("InvestigationRequest requires at least one source")

        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)
        object.__setattr__(self, "sources", tuple(sources))
        object.__setattr__(self, "actor_filter", frozenset(self.actor_filter))
        object.__setattr__(self, "operation_filter", frozenset(self.operation_filter))
        if not self.investigation_id:
            object.__setattr__(self, "investigation_id", uuid.uuid4().hex[:12])

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(self.start, self.end)

    @property
    def filters(self) -> QueryFilters:
        return QueryFilters.build(self.actor_filter, self.operation_filter)


class OutcomeStatus(str, Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class SourceOutcome:
    """Provenance of one adapter call within a run."""
    adapter_id: str
    status: OutcomeStatus
    record_count: int = 0
    completed_slices: tuple[str, ...] = ()
    failed_slices: tuple[str, ...] = ()
    error: str = ""
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        """Complete, or partial with at least one slice fetched."""
        if self.status == OutcomeStatus.COMPLETE:
            return True
        return self.status in (OutcomeStatus.PARTIAL, OutcomeStatus.CANCELLED) and bool(
            self.completed_slices
        )

    def to_dict(self) -> dict:
        return {
            "adapter": self.adapter_id,
            "status": self.status.value,
            "record_count": self.record_count,
            "completed_slices": list(self.completed_slices),
            "failed_slices": list(self.failed_slices),
            "error": self.error,
            "duration_seconds": self.duration_seconds,
        }


@dataclass(frozen=True)
class AuditReport:
    """
    The exportable artifact. Built once per orchestrator run and immutable;
    exported to any number of formats without re-querying sources.
    """
    generated_at: datetime
    records: tuple[Record, ...]
    report_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    profile: Optional[str] = None
    investigation_id: Optional[str] = None
    window: Optional[TimeWindow] = None
    outcomes: tuple[SourceOutcome, ...] = ()
    warnings: tuple[str, ...] = ()
    anonymized: bool = False

    @property
    def name(self) -> str:
        if self.investigation_id:
            return f"Investigation_{self.investigation_id}"
        return f"QuickAudit_{self.profile or 'Custom'}_{self.report_id}"

    @property
    def failed_sources(self) -> list[str]:
        return [o.adapter_id for o in self.outcomes if not o.succeeded]

    @property
    def partial_sources(self) -> list[str]:
        return [
            o.adapter_id for o in self.outcomes
            if o.succeeded and o.status != OutcomeStatus.COMPLETE
        ]

    def iter_kind_blocks(self) -> Iterator[tuple[str, list[Record]]]:
        """Records grouped by kind, blocks in first-appearance order."""
        blocks: dict[str, list[Record]] = {}
        for r in self.records:
            blocks.setdefault(r.record_kind, []).append(r)
        yield from blocks.items()

    def summary(self) -> dict:
        by_kind: dict[str, int] = {}
        flag_counts: dict[str, int] = {}
        severity_counts: dict[str, int] = {}
        flagged = 0
        for r in self.records:
            by_kind[r.record_kind] = by_kind.get(r.record_kind, 0) + 1
            if r.risk_flags:
                flagged += 1
            for name, flag in r.risk_flags.items():
                flag_counts[name] = flag_counts.get(name, 0) + 1
                severity_counts[flag.severity] = severity_counts.get(flag.severity, 0) + 1
        return {
            "total_records": len(self.records),
            "flagged_records": flagged,
            "records_by_kind": by_kind,
            "flag_counts": dict(sorted(flag_counts.items())),
            "severity_counts": dict(sorted(severity_counts.items())),
            "failed_sources": self.failed_sources,
            "partial_sources": self.partial_sources,
        }
