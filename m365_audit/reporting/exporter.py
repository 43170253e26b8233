"""
Report exporter — writes one AuditReport to every requested format.

Every format is attempted; failures are collected and raised together as a
WriteError after the remaining formats were written. Re-exporting the same
report overwrites the same files.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from jinja2 import TemplateError

from .csv_export import export_csv
from .html_report import export_html
from .json_export import export_json
from .markdown_report import export_markdown
from ..config import ALL_FORMATS
from ..errors import WriteError
from ..models import AuditReport, utcnow

logger = logging.getLogger("m365_audit.reporting")

EXPORTERS = {
    "json": export_json,
    "csv": export_csv,
    "markdown": export_markdown,
    "html": export_html,
}

FORMAT_ALIASES = {"md": "markdown", "htm": "html"}


def normalize_formats(formats: Optional[Iterable[str]]) -> list[str]:
    """Lower-case, resolve aliases, de-duplicate; None means every format."""
    if formats is None:
        return list(ALL_FORMATS)
    out: list[str] = []
    for fmt in formats:
        name = FORMAT_ALIASES.get(fmt.strip().lower(), fmt.strip().lower())
        if name not in EXPORTERS:
            raise ValueError(f"Unknown report format {fmt!r}; expected one of {', '.join(EXPORTERS)}")
        if name not in out:
            out.append(name)
    return out


def export(
    report: AuditReport,
    formats: Optional[Iterable[str]],
    destination: Path,
    exported_at: Optional[datetime] = None,
) -> list[Path]:
    """
    Write `report` in each format into `destination`.

    Returns:
        Paths written, in format order.

    Raises:
        WriteError: one or more formats failed; carries the paths that were written.
    """
    formats = normalize_formats(formats)
    destination = Path(destination)
    exported_at = exported_at or utcnow()

    try:
        destination.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"[reporting] Cannot create {destination}: {e}")
        raise WriteError({fmt: str(e) for fmt in formats}, [])

    written: list[Path] = []
    failures: dict[str, str] = {}
    for fmt in formats:
        try:
            path = EXPORTERS[fmt](report, destination, exported_at)
        except (OSError, TemplateError) as e:
            logger.error(f"[reporting] {fmt} export failed: {e}")
            failures[fmt] = f"{type(e).__name__}: {e}"
            continue
        logger.info(f"[reporting] {fmt}: {path}")
        written.append(path)

    if failures:
        raise WriteError(failures, written)
    return written
