"""Reporting package — progress output and run report exports."""

from .progress import ProgressReporter, ProgressSnapshot
from .json_export import export_json
from .csv_export import export_csv
from .markdown_report import export_markdown, render_markdown

__all__ = [
    "ProgressReporter",
    "ProgressSnapshot",
    "export_json",
    "export_csv",
    "export_markdown",
    "render_markdown",
]
