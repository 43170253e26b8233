"""
Error taxonomy for the audit pipeline.

Adapter-level errors are captured by the orchestrators and attached to the
report as source outcomes; only NoSourcesSucceeded and WriteError reach the
caller.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional


class AuditPipelineError(Exception):
    """Base class for all pipeline errors."""
    pass


class AuthenticationFailed(AuditPipelineError):
    """The credential provider could not establish a connection."""
    pass


class SourceUnavailable(AuditPipelineError):
    """An adapter fetched nothing usable from its source."""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"{source} unavailable: {message}")


class PartialResult(AuditPipelineError):
    """
    An adapter fetched some but not all of its slices.

    Carries the records that were fetched so the orchestrator can keep them.
    For finding adapters the "slices" are named sections (e.g. a mailbox).
    """

    def __init__(
        self,
        source: str,
        records: list[Any],
        completed_slices: list[str],
        failed_slices: list[str],
        cancelled: bool = False,
        message: str = "",
    ):
        self.source = source
        self.records = records
        self.completed_slices = completed_slices
        self.failed_slices = failed_slices
        self.cancelled = cancelled
        self.message = message
        detail = message or f"{len(failed_slices)} slice(s) failed"
        if cancelled:
            detail = f"cancelled; {detail}"
        super().__init__(f"{source} partial: {detail}")


class NoSourcesSucceeded(AuditPipelineError):
    """Every requested source failed; nothing is reported or exported."""

    def __init__(self, failures: dict[str, str]):
        self.failures = failures
        summary = "; ".join(f"{k}: {v}" for k, v in failures.items())
        super().__init__(f"All {len(failures)} requested sources failed: {summary}")


class WriteError(AuditPipelineError):
    """One or more report formats could not be written."""

    def __init__(self, failures: dict[str, str], written: Optional[list[Path]] = None):
        self.failures = failures
        self.written = written or []
        summary = "; ".join(f"{fmt}: {msg}" for fmt, msg in failures.items())
        super().__init__(f"Failed to write {len(failures)} format(s): {summary}")


class RuleDefinitionError(AuditPipelineError):
    """A rule definition is malformed; raised at rule-set load time."""
    pass


class RuleEvaluationError(AuditPipelineError):
    """A rule predicate raised while evaluating a record; the flag set would be incomplete."""

    def __init__(self, rule: str, record: str, cause: Exception):
        self.rule = rule
        self.record = record
        super().__init__(f"Rule {rule} failed on {record}: {type(cause).__name__}: {cause}")
