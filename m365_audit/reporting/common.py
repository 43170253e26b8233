"""
Shared helpers for the report writers: file naming, timestamps and cell
formatting.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .. import __mode__, __version__
from ..models import AuditReport, format_datetime

SEVERITY_ORDER = ["critical", "high", "medium", "low", "informational"]


def report_filename(report: AuditReport, ext: str) -> str:
    """<ReportName>_<YYYYmmddTHHMMSSZ>.<ext>, stable for a given report."""
    stamp = report.generated_at.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return f"{report.name}_{stamp}.{ext}"


def report_path(report: AuditReport, output_dir: Path, ext: str) -> Path:
    return Path(output_dir) / report_filename(report, ext)


def format_value(value: Any) -> str:
    """Flatten a value into a single table cell."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return format_datetime(value)
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value, key=str) if isinstance(value, (set, frozenset)) else value
        return "; ".join(format_value(v) for v in items)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True, default=str, ensure_ascii=False)
    return str(value)


def max_severity(record: Any) -> str:
    severities = {f.severity for f in record.risk_flags.values()}
    for sev in SEVERITY_ORDER:
        if sev in severities:
            return sev
    return ""


def report_metadata(report: AuditReport, exported_at: datetime) -> dict:
    return {
        "tool": "m365_audit",
        "version": __version__,
        "mode": __mode__,
        "report_name": report.name,
        "report_id": report.report_id,
        "profile": report.profile,
        "investigation_id": report.investigation_id,
        "generated_utc": format_datetime(report.generated_at),
        "exported_utc": format_datetime(exported_at),
        "window": report.window.to_dict() if report.window else None,
        "anonymized": report.anonymized,
    }
