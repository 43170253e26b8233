"""
Quick-audit orchestrator
Runs a fixed profile of posture adapters over the last N days. Source
failures never abort the run; they become report warnings.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable, Mapping, Optional

from .base import CancellationToken, outcome_warnings, run_adapters
from ..adapters import ALL_ADAPTERS
from ..adapters.base import BaseAdapter
from ..anonymize import Pseudonymizer
from ..auth.credentials import CredentialProvider
from ..config import CollectionConfig
from ..models import AdapterId, AuditReport, QueryFilters, TimeWindow, utcnow
from ..rules import EvaluationContext, RuleSet, apply_rules, default_rule_set

logger = logging.getLogger("m365_audit.orchestrator.quick_audit")

PROFILES: dict[str, tuple[AdapterId, ...]] = {
    "Identity": (
        AdapterId.ROLE_ASSIGNMENTS,
        AdapterId.CONDITIONAL_ACCESS,
        AdapterId.APP_CONSENTS,
    ),
    "Mail": (
        AdapterId.MAILBOX_RULES,
        AdapterId.MAIL_AUTH,
    ),
    "Collab": (
        AdapterId.SHARING,
    ),
    "Threat": (
        AdapterId.THREAT_PROTECTION,
    ),
}
PROFILES["Posture"] = tuple(dict.fromkeys(a for ids in list(PROFILES.values()) for a in ids))


def resolve_profile(profile: str) -> tuple[str, tuple[AdapterId, ...]]:
    """Case-insensitive profile lookup -> (canonical name, adapter ids)."""
    for name, ids in PROFILES.items():
        if name.lower() == (profile or "").strip().lower():
            return name, ids
    raise ValueError(f"Unknown profile {profile!r}; expected one of {', '.join(PROFILES)}")


class QuickAuditOrchestrator:
    """
    Usage:
        orchestrator = QuickAuditOrchestrator(provider)
        report = await orchestrator.run("Identity", days_back=30)
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
        profile: Optional[str],
        days_back: int = 30,
        adapter_ids: Optional[Iterable[AdapterId]] = None,
        cancel: Optional[CancellationToken] = None,
        now: Optional[datetime] = None,
    ) -> AuditReport:
        """
        Run a named profile, or an explicit adapter list when profile is None
        (reported as a "Custom" audit).
        """
        if days_back <= 0:
            raise ValueError(f"days_back must be positive, got {days_back}")
        if profile is not None:
            profile_name, ids = resolve_profile(profile)
        else:
            profile_name = None
            ids = tuple(dict.fromkeys(AdapterId(a) for a in adapter_ids or ()))
            if not ids:
                raise ValueError("A custom quick audit needs at least one adapter")

        now = now or self.clock()
        window = TimeWindow.last_days(days_back, now)
        logger.info(
            f"[quick_audit] {profile_name or 'Custom'}: {len(ids)} adapter(s) over {window.label}"
        )

        adapters = [self._adapter(a) for a in ids]
        runs = await run_adapters(
            adapters, window, QueryFilters(), self.provider, self.config, cancel,
        )
        outcomes = tuple(r.outcome for r in runs)
        warnings = outcome_warnings(outcomes)
        for w in warnings:
            logger.warning(f"[quick_audit] {w}")

        records = [rec for run in runs for rec in run.records]
        ctx = EvaluationContext(evaluated_at=now, stale_days=self.config.stale_days)
        evaluated = apply_rules(records, self.rule_set, ctx)

        report = AuditReport(
            generated_at=now,
            records=tuple(evaluated),
            profile=profile_name,
            window=window,
            outcomes=outcomes,
            warnings=warnings,
        )
        if self.anonymize:
            report = Pseudonymizer().anonymize_report(report)
        return report
