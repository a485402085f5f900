"""Report export modules."""

from dosscan.parsing.report_exporter import (
    ReportExporter,
    export_report,
    format_console_report,
)

__all__ = [
    "ReportExporter",
    "export_report",
    "format_console_report",
]
