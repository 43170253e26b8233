"""
Markdown report — summary, source outcomes, control mapping and one pipe
table per record kind, rendered via Jinja2.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from .common import format_value, max_severity, report_metadata, report_path
from ..models import AuditReport, Finding, NormalizedEvent
from ..rules.frameworks import build_control_mapping

TEMPLATE_DIR = Path(__file__).parent / "templates"
TEMPLATE_NAME = "report.md.j2"

_SEVERITY_ICONS = {
    "critical": "🔴",
    "high":     "🟠",
    "medium":   "🟡",
    "low":      "🟢",
    "informational": "⚪",
}

EVENT_COLUMNS = ["Timestamp", "Actor", "Operation", "Target", "Flags"]


def md_escape(value: str) -> str:
    """Make a value safe inside a pipe-table cell."""
    return (
        value.replace("\\", "\\\\")
        .replace("|", "\\|")
        .replace("\r\n", "<br>")
        .replace("\n", "<br>")
    )


def _environment() -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        undefined=StrictUndefined,
    )
    env.filters["md_escape"] = md_escape
    return env


def _flags_cell(record) -> str:
    return ", ".join(
        f"{_SEVERITY_ICONS.get(f.severity, '')} {name}".strip()
        for name, f in record.risk_flags.items()
    )


def _block_view(kind: str, records: list) -> dict:
    if isinstance(records[0], NormalizedEvent):
        columns = EVENT_COLUMNS
        rows = [
            [format_value(r.timestamp), r.actor, r.operation, format_value(r.target), _flags_cell(r)]
            for r in records
        ]
    else:
        keys = sorted({k for r in records if isinstance(r, Finding) for k in r.attributes})
        columns = ["Subject"] + keys + ["Max severity", "Flags"]
        rows = [
            [r.subject_id] + [format_value(r.attributes.get(k)) for k in keys]
            + [max_severity(r), _flags_cell(r)]
            for r in records
        ]
    return {
        "kind": kind,
        "count": len(records),
        "columns": columns,
        "rows": rows,
        "details": [
            {"name": name, "severity": f.severity, "reason": f.reason, "controls": ", ".join(f.controls)}
            for r in records for name, f in r.risk_flags.items()
        ],
    }


def render_markdown(report: AuditReport, exported_at: datetime) -> str:
    summary = report.summary()
    mapping = build_control_mapping(report.records).to_dict()
    template = _environment().get_template(TEMPLATE_NAME)
    content = template.render(
        title=report.name,
        meta=report_metadata(report, exported_at),
        summary=summary,
        severity_rows=[[s, str(n)] for s, n in summary["severity_counts"].items()],
        warnings=list(report.warnings),
        outcome_rows=[
            [o.adapter_id, o.status.value, str(o.record_count),
             "; ".join(o.failed_slices), str(o.duration_seconds), o.error or ""]
            for o in report.outcomes
        ],
        control_rows=[
            [ref, info["title"], str(info["count"])]
            for framework in mapping.values()
            for ref, info in framework["controls"].items()
        ],
        blocks=[_block_view(kind, records) for kind, records in report.iter_kind_blocks()],
    )
    return content.rstrip() + "\n"


def export_markdown(report: AuditReport, output_dir: Path, exported_at: datetime) -> Path:
    """
    Write the report to <name>_<stamp>.md.

    Returns:
        Path to the created Markdown file.
    """
    filepath = report_path(report, output_dir, "md")
    with open(filepath, "w", encoding="utf-8") as fh:
        fh.write(render_markdown(report, exported_at))
    return filepath
