"""
CSV exporter — one flat file for every record in the report.

Header = fixed leading columns, then the sorted union of all finding
attribute keys, then the raw payload as a JSON column.
"""

from __future__ import annotations

import csv
import json
from datetime import datetime
from pathlib import Path

from .common import format_value, max_severity, report_path
from ..models import AuditReport, Finding, NormalizedEvent

FIXED_FIELDS = [
    "record_class", "record_kind", "timestamp", "actor", "operation",
    "target", "subject_id", "record_id", "risk_flags", "max_severity",
    "risk_reasons", "controls",
]
RAW_FIELD = "raw_payload"


def attribute_columns(report: AuditReport) -> list[str]:
    keys: set[str] = set()
    for r in report.records:
        if isinstance(r, Finding):
            keys.update(r.attributes.keys())
    return sorted(k if k not in FIXED_FIELDS else f"attr_{k}" for k in keys)


def record_row(record) -> dict:
    flags = record.risk_flags
    row = {
        "record_class": record.record_class,
        "record_kind": record.record_kind,
        "risk_flags": "; ".join(flags),
        "max_severity": max_severity(record),
        "risk_reasons": "; ".join(f.reason for f in flags.values()),
        "controls": "; ".join(sorted({c for f in flags.values() for c in f.controls})),
        RAW_FIELD: json.dumps(record.raw_payload, sort_keys=True, default=str, ensure_ascii=False),
    }
    if isinstance(record, NormalizedEvent):
        row.update({
            "timestamp": format_value(record.timestamp),
            "actor": record.actor,
            "operation": record.operation,
            "target": format_value(record.target),
            "record_id": record.record_id,
        })
    else:
        row["subject_id"] = record.subject_id
        for key, value in record.attributes.items():
            col = key if key not in FIXED_FIELDS else f"attr_{key}"
            row[col] = format_value(value)
    return row


def export_csv(report: AuditReport, output_dir: Path, exported_at: datetime) -> Path:
    """
    Write all records to <name>_<stamp>.csv.

    Returns:
        Path to the created CSV file.
    """
    filepath = report_path(report, output_dir, "csv")
    fieldnames = FIXED_FIELDS + attribute_columns(report) + [RAW_FIELD]

    with open(filepath, "w", newline="", encoding="utf-8-sig") as fh:
        writer = csv.DictWriter(fh, fieldnames=fieldnames, restval="")
        writer.writeheader()
        for r in report.records:
            writer.writerow(record_row(r))

    return filepath
