"""
Pipeline entry points for CLI / GUI collaborators.

    result = await run_investigation(start=..., sources=["AuditLog", "SignIn"])
    result = await run_quick_audit(profile="Identity", days_back=30)

Both build the report, export it and return a PipelineResult. A failed
export does not discard the report: the WriteError is returned alongside
whatever was written.
"""

from __future__ import annotations

import logging
import time
from contextlib import AsyncExitStack
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from .auth.credentials import CredentialProvider, GraphCredentialProvider
from .config import PipelineConfig
from .errors import WriteError
from .models import AuditReport, InvestigationRequest
from .orchestrator import CancellationToken, InvestigationOrchestrator, QuickAuditOrchestrator
from .reporting import export
from .rules import RuleSet

logger = logging.getLogger("m365_audit.pipeline")


@dataclass
class PipelineResult:
    report: AuditReport
    written_paths: list[Path] = field(default_factory=list)
    export_error: Optional[WriteError] = None

    @property
    def ok(self) -> bool:
        return self.export_error is None


def _effective_config(
    config: Optional[PipelineConfig],
    output_dir: Optional[str | Path],
    degree_of_parallelism: Optional[int],
    anonymize: Optional[bool],
    formats: Optional[Iterable[str]],
) -> PipelineConfig:
    config = config or PipelineConfig()
    collection = config.collection
    if degree_of_parallelism is not None:
        if degree_of_parallelism < 1:
            raise ValueError("degree_of_parallelism must be at least 1")
        collection = replace(collection, degree_of_parallelism=degree_of_parallelism)
    output = config.output
    if output_dir is not None or formats is not None:
        output = replace(
            output,
            base_dir=str(output_dir) if output_dir is not None else output.base_dir,
            formats=list(formats) if formats is not None else output.formats,
        )
    return replace(
        config,
        collection=collection,
        output=output,
        anonymize=config.anonymize if anonymize is None else anonymize,
    )


async def _provider(stack: AsyncExitStack, config: PipelineConfig, provider: Optional[CredentialProvider]):
    if provider is not None:
        return provider
    return await stack.enter_async_context(
        GraphCredentialProvider(config.auth, max_concurrency=config.collection.degree_of_parallelism)
    )


def _export(report: AuditReport, config: PipelineConfig) -> PipelineResult:
    try:
        written = export(report, config.output.formats, config.output.output_dir)
    except WriteError as e:
        logger.error(f"[pipeline] {e}")
        return PipelineResult(report, list(e.written), e)
    return PipelineResult(report, written)


async def run_investigation(
    start: datetime,
    end: Optional[datetime] = None,
    actor_filter: Iterable[str] = (),
    operation_filter: Iterable[str] = (),
    sources: Iterable[str] = ("AuditLog",),
    output_dir: Optional[str | Path] = None,
    degree_of_parallelism: Optional[int] = None,
    anonymize: Optional[bool] = None,
    formats: Optional[Iterable[str]] = None,
    deadline_seconds: Optional[float] = None,
    config: Optional[PipelineConfig] = None,
    provider: Optional[CredentialProvider] = None,
    rule_set: Optional[RuleSet] = None,
) -> PipelineResult:
    """
    Run an investigation and export it.

    Raises:
        NoSourcesSucceeded: every source failed; nothing was exported.
        ValueError: the request is malformed.
    """
    cfg = _effective_config(config, output_dir, degree_of_parallelism, anonymize, formats)
    request = InvestigationRequest(
        start=start,
        end=end,
        actor_filter=frozenset(actor_filter),
        operation_filter=frozenset(operation_filter),
        sources=tuple(sources),
    )
    cancel = CancellationToken(deadline_seconds)
    t0 = time.monotonic()

    async with AsyncExitStack() as stack:
        prov = await _provider(stack, cfg, provider)
        orchestrator = InvestigationOrchestrator(
            prov, cfg.collection, rule_set=rule_set, anonymize=cfg.anonymize,
        )
        report = await orchestrator.run(request, cancel)

    result = _export(report, cfg)
    logger.info(
        f"[pipeline] {report.name}: {len(report.records)} records, "
        f"{len(result.written_paths)} file(s) in {time.monotonic() - t0:.1f}s"
    )
    return result


async def run_quick_audit(
    profile: Optional[str] = "Posture",
    days_back: int = 30,
    output_dir: Optional[str | Path] = None,
    degree_of_parallelism: Optional[int] = None,
    anonymize: Optional[bool] = None,
    formats: Optional[Iterable[str]] = None,
    deadline_seconds: Optional[float] = None,
    adapter_ids: Optional[Iterable[str]] = None,
    config: Optional[PipelineConfig] = None,
    provider: Optional[CredentialProvider] = None,
    rule_set: Optional[RuleSet] = None,
) -> PipelineResult:
    """Run a quick-audit profile and export it. Source failures become warnings."""
    cfg = _effective_config(config, output_dir, degree_of_parallelism, anonymize, formats)
    cancel = CancellationToken(deadline_seconds)
    t0 = time.monotonic()

    async with AsyncExitStack() as stack:
        prov = await _provider(stack, cfg, provider)
        orchestrator = QuickAuditOrchestrator(
            prov, cfg.collection, rule_set=rule_set, anonymize=cfg.anonymize,
        )
        report = await orchestrator.run(
            profile, days_back=days_back, adapter_ids=adapter_ids, cancel=cancel,
        )

    result = _export(report, cfg)
    logger.info(
        f"[pipeline] {report.name}: {len(report.records)} records, "
        f"{len(report.warnings)} warning(s), {len(result.written_paths)} file(s) "
        f"in {time.monotonic() - t0:.1f}s"
    )
    return result
