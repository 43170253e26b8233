"""
JSON exporter — full-fidelity dump of the report, raw payloads included.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

from .common import report_metadata, report_path
from ..models import AuditReport
from ..rules.frameworks import build_control_mapping


def export_json(report: AuditReport, output_dir: Path, exported_at: datetime) -> Path:
    """
    Write the report to <name>_<stamp>.json.

    Returns:
        Path to the created JSON file.
    """
    payload = {
        "metadata": report_metadata(report, exported_at),
        "summary": report.summary(),
        "outcomes": [o.to_dict() for o in report.outcomes],
        "warnings": list(report.warnings),
        "control_mapping": build_control_mapping(report.records).to_dict(),
        "records": [r.to_dict() for r in report.records],
    }

    filepath = report_path(report, output_dir, "json")
    with open(filepath, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, default=str, ensure_ascii=False)

    return filepath
