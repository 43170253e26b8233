"""
Investigation orchestrator
Runs one event adapter per requested source over the request window,
merges the results in request order, re-applies the actor / operation
filters, evaluates the rule set and (optionally) anonymizes the report.
"""

from __future__ import annotations

import logging
from typing import Callable, Mapping, Optional

from .base import CancellationToken, outcome_warnings, run_adapters
from ..adapters import ALL_ADAPTERS
from ..adapters.base import BaseAdapter
from ..anonymize import Pseudonymizer
from ..auth.credentials import CredentialProvider
from ..config import CollectionConfig
from ..errors import NoSourcesSucceeded
from ..models import (
    AdapterId,
    AuditReport,
    InvestigationRequest,
    NormalizedEvent,
    utcnow,
)
from ..rules import EvaluationContext, RuleSet, apply_rules, default_rule_set

logger = logging.getLogger("m365_audit.orchestrator.investigation")


class InvestigationOrchestrator:
    """
    Usage:
        orchestrator = InvestigationOrchestrator(provider)
        report = await orchestrator.run(InvestigationRequest(start=..., sources=[...]))
    """

    def __init__(
        self,
        provider: CredentialProvider,
        config: Optional[CollectionConfig] = None,
        rule_set: Optional[RuleSet] = None,
        adapters: Optional[Mapping[AdapterId, BaseAdapter]] = None,
        anonymize: bool = False,
        clock: Callable = utcnow,
    ):
        self.provider = provider
        self.config = config or CollectionConfig()
        self.rule_set = rule_set or default_rule_set()
        self.adapters = dict(adapters or {})
        self.anonymize = anonymize
        self.clock = clock

    def _adapter(self, adapter_id: AdapterId) -> BaseAdapter:
        if adapter_id not in self.adapters:
            self.adapters[adapter_id] = ALL_ADAPTERS[adapter_id](self.config)
        return self.adapters[adapter_id]

    async def run(
        self,
        request: InvestigationRequest,
        cancel: Optional[CancellationToken] = None,
    ) -> AuditReport:
        window = request.window
        filters = request.filters
        logger.info(
            f"[investigation] {request.investigation_id}: {window.label} over "
            f"{', '.join(s.value for s in request.sources)}"
        )

        adapters = [self._adapter(AdapterId(s.value)) for s in request.sources]
        runs = await run_adapters(adapters, window, filters, self.provider, self.config, cancel)
        outcomes = tuple(r.outcome for r in runs)

        if not any(o.succeeded for o in outcomes):
            raise NoSourcesSucceeded({
                o.adapter_id: o.error or o.status.value for o in outcomes
            })

        records: list[NormalizedEvent] = []
        for source, run in zip(request.sources, runs):
            kept = [
                ev for ev in run.records
                if isinstance(ev, NormalizedEvent)
                and ev.source == source
                and window.contains(ev.timestamp)
                and filters.matches(ev)
            ]
            dropped = len(run.records) - len(kept)
            if dropped:
                logger.debug(f"[investigation] {source.value}: {dropped} records filtered post-fetch")
            records.extend(kept)

        ctx = EvaluationContext(evaluated_at=request.end, stale_days=self.config.stale_days)
        evaluated = apply_rules(records, self.rule_set, ctx)

        report = AuditReport(
            generated_at=self.clock(),
            records=tuple(evaluated),
            investigation_id=request.investigation_id,
            window=window,
            outcomes=outcomes,
            warnings=outcome_warnings(outcomes),
        )
        if self.anonymize:
            report = Pseudonymizer().anonymize_report(report)

        logger.info(
            f"[investigation] {request.investigation_id}: {len(report.records)} records, "
            f"{len(report.failed_sources)} failed / {len(report.partial_sources)} partial sources"
        )
        return report
