"""
Rule engine — declarative risk rules evaluated against normalized records.

A Rule is data: the record kinds it applies to, a predicate over the
record's attributes, a reason template, its severity and the compliance
controls it maps to. Evaluation is pure; the only clock is the
`evaluated_at` instant carried in the EvaluationContext.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Iterator, Mapping, Union

from ..errors import RuleDefinitionError, RuleEvaluationError
from ..models import FindingType, Record, RiskFlag, SourceKind

logger = logging.getLogger("m365_audit.rules")

SEVERITIES = ("critical", "high", "medium", "low", "informational")
KNOWN_FRAMEWORKS = ("HIPAA", "NIST", "CIS")
KNOWN_KINDS = frozenset(s.value for s in SourceKind) | frozenset(t.value for t in FindingType)

CONTROL_RE = re.compile(r"^(?P<framework>[A-Z]+):(?P<id>\S+)$")

PredicateResult = Union[bool, Mapping[str, Any], None]


@dataclass(frozen=True)
class EvaluationContext:
    """Everything a predicate may depend on besides the record itself."""
    evaluated_at: datetime
    stale_days: int = 90


@dataclass(frozen=True)
class Rule:
    """
    One named risk check.

    predicate(attributes, ctx) returns a falsy value for "no match", True for
    a plain match, or a mapping of template details for a match. A "severity"
    key in that mapping overrides the rule's default severity.
    """
    name: str
    applies_to: frozenset[str]
    predicate: Callable[[Mapping[str, Any], EvaluationContext], PredicateResult]
    reason: str
    controls: tuple[str, ...]
    severity: str = "medium"
    description: str = ""


class RuleSet:
    """An ordered, validated collection of rules."""

    def __init__(self, rules: Iterable[Rule]):
        self.rules: tuple[Rule, ...] = tuple(rules)
        self._validate()
        self._by_kind: dict[str, list[Rule]] = {}
        for rule in self.rules:
            for kind in rule.applies_to:
                self._by_kind.setdefault(kind, []).append(rule)

    def __iter__(self) -> Iterator[Rule]:
        return iter(self.rules)

    def __len__(self) -> int:
        return len(self.rules)

    def for_kind(self, kind: str) -> list[Rule]:
        return self._by_kind.get(kind, [])

    def _validate(self):
        seen: set[tuple[str, str]] = set()
        for rule in self.rules:
            if not isinstance(rule.name, str) or not rule.name.strip():
                raise RuleDefinitionError("Rule name must be a non-empty string")
            if not callable(rule.predicate):
                raise RuleDefinitionError(f"Rule {rule.name}: predicate is not callable")
            if not isinstance(rule.reason, str):
                raise RuleDefinitionError(f"Rule {rule.name}: reason template must be a string")
            if rule.severity not in SEVERITIES:
                raise RuleDefinitionError(f"Rule {rule.name}: unknown severity {rule.severity!r}")
            if not rule.controls:
                raise RuleDefinitionError(f"Rule {rule.name}: at least one control reference required")
            for ref in rule.controls:
                m = CONTROL_RE.match(ref or "")
                if not m or m.group("framework") not in KNOWN_FRAMEWORKS:
                    raise RuleDefinitionError(
                        f"Rule {rule.name}: malformed control reference {ref!r} "
                        f"(expected <{'|'.join(KNOWN_FRAMEWORKS)}>:<id>)"
                    )
            if not rule.applies_to:
                raise RuleDefinitionError(f"Rule {rule.name}: applies_to is empty")
            unknown = set(rule.applies_to) - KNOWN_KINDS
            if unknown:
                raise RuleDefinitionError(
                    f"Rule {rule.name}: unknown record kind(s) {sorted(unknown)}"
                )
            for kind in rule.applies_to:
                if (kind, rule.name) in seen:
                    raise RuleDefinitionError(
                        f"Duplicate rule name {rule.name!r} for record kind {kind}"
                    )
                seen.add((kind, rule.name))


class _TemplateValues(dict):
    """Leaves unknown placeholders visible instead of raising KeyError."""
    def __missing__(self, key):
        return "{" + key + "}"


def render_reason(template: str, attributes: Mapping[str, Any], details: Mapping[str, Any]) -> str:
    values = _TemplateValues(attributes)
    values.update(details)
    try:
        return template.format_map(values)
    except (ValueError, IndexError, AttributeError) as e:
        logger.warning(f"[rules] Could not render reason {template!r}: {e}")
        return template


def evaluate(
    record: Record,
    rule_set: RuleSet,
    evaluated_at: Union[datetime, EvaluationContext],
) -> dict[str, RiskFlag]:
    """
    Compute the full flag set for one record. Rules run in rule-set order;
    flags are additive. The record is not modified. A predicate that raises
    aborts the evaluation with RuleEvaluationError rather than leaving the
    record with a partial flag set.
    """
    ctx = (
        evaluated_at if isinstance(evaluated_at, EvaluationContext)
        else EvaluationContext(evaluated_at=evaluated_at)
    )
    attributes = record.attributes
    flags: dict[str, RiskFlag] = {}

    for rule in rule_set.for_kind(record.record_kind):
        try:
            result = rule.predicate(attributes, ctx)
        except Exception as e:
            raise RuleEvaluationError(rule.name, record_label(record), e) from e
        if not result:
            continue

        details = dict(result) if isinstance(result, Mapping) else {}
        severity = details.pop("severity", rule.severity)
        flags[rule.name] = RiskFlag(
            name=rule.name,
            reason=render_reason(rule.reason, attributes, details),
            severity=severity,
            controls=tuple(rule.controls),
            details=details,
        )
    return flags


def apply_rules(records: Iterable[Record], rule_set: RuleSet, ctx: EvaluationContext) -> list[Record]:
    """Evaluate every record and return replacements carrying their flags."""
    out = [r.with_flags(evaluate(r, rule_set, ctx)) for r in records]
    flagged = sum(1 for r in out if r.risk_flags)
    logger.info(f"[rules] Evaluated {len(out)} records against {len(rule_set)} rules; {flagged} flagged")
    return out


def record_label(record: Record) -> str:
    """Short human label used in control mappings and report tables."""
    subject = getattr(record, "subject_id", None)
    if subject is not None:
        return subject
    return f"{record.actor or '(unknown)'} {record.operation}".strip()

