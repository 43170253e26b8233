"""
HTML report — self-contained static page rendered from a Jinja2 template.

Inline CSS and a small inline script give click-to-sort columns, a text
filter and a "flagged only" toggle without any server.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from .common import SEVERITY_ORDER, format_value, max_severity, report_metadata, report_path
from ..models import AuditReport, NormalizedEvent
from ..rules.frameworks import build_control_mapping

TEMPLATE_DIR = Path(__file__).parent / "templates"
TEMPLATE_NAME = "report.html.j2"

# ---------------------------------------------------------------------------
# Colour palette
# ---------------------------------------------------------------------------
_SEVERITY_COLOURS = {
    "critical": "#dc2626",
    "high":     "#ea580c",
    "medium":   "#d97706",
    "low":      "#2563eb",
    "informational": "#6b7280",
}


def _environment() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=True,
        trim_blocks=True,
        lstrip_blocks=True,
        undefined=StrictUndefined,
    )


def _flag_view(record) -> list[dict]:
    return [
        {
            "name": name,
            "severity": f.severity,
            "colour": _SEVERITY_COLOURS.get(f.severity, "#6b7280"),
            "reason": f.reason,
            "controls": ", ".join(f.controls),
        }
        for name, f in record.risk_flags.items()
    ]


def _block_view(kind: str, records: list) -> dict:
    if isinstance(records[0], NormalizedEvent):
        columns = ["Timestamp", "Actor", "Operation", "Target"]
        rows = [
            {
                "cells": [format_value(r.timestamp), r.actor, r.operation, format_value(r.target)],
                "flags": _flag_view(r),
                "severity": max_severity(r),
            }
            for r in records
        ]
    else:
        keys = sorted({k for r in records for k in r.attributes})
        columns = ["Subject"] + keys
        rows = [
            {
                "cells": [r.subject_id] + [format_value(r.attributes.get(k)) for k in keys],
                "flags": _flag_view(r),
                "severity": max_severity(r),
            }
            for r in records
        ]
    return {
        "kind": kind,
        "columns": columns,
        "rows": rows,
        "flagged": sum(1 for r in records if r.risk_flags),
    }


def render_html(report: AuditReport, exported_at: datetime) -> str:
    summary = report.summary()
    template = _environment().get_template(TEMPLATE_NAME)
    return template.render(
        title=report.name,
        meta=report_metadata(report, exported_at),
        summary=summary,
        severities=[
            {"name": s, "count": summary["severity_counts"].get(s, 0), "colour": _SEVERITY_COLOURS[s]}
            for s in SEVERITY_ORDER
        ],
        outcomes=[o.to_dict() for o in report.outcomes],
        warnings=list(report.warnings),
        control_mapping=build_control_mapping(report.records).to_dict(),
        blocks=[_block_view(kind, records) for kind, records in report.iter_kind_blocks()],
    )


def export_html(report: AuditReport, output_dir: Path, exported_at: datetime) -> Path:
    """
    Write the report to <name>_<stamp>.html.

    Returns:
        Path to the created HTML file.
    """
    filepath = report_path(report, output_dir, "html")
    with open(filepath, "w", encoding="utf-8") as fh:
        fh.write(render_html(report, exported_at))
    return filepath
