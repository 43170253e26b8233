from .base import AdapterRun, CancellationToken, run_adapters
from .investigation import InvestigationOrchestrator
from .quick_audit import PROFILES, QuickAuditOrchestrator, resolve_profile

__all__ = [
    "AdapterRun",
    "CancellationToken",
    "run_adapters",
    "InvestigationOrchestrator",
    "QuickAuditOrchestrator",
    "PROFILES",
    "resolve_profile",
]
