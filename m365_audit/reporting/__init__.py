"""Reporting package — multi-format output generation."""

from .json_export import export_json
from .csv_export import export_csv
from .markdown_report import export_markdown
from .html_report import export_html
from .exporter import EXPORTERS, export, normalize_formats

__all__ = [
    "export_json",
    "export_csv",
    "export_markdown",
    "export_html",
    "EXPORTERS",
    "export",
    "normalize_formats",
]
