"""Report export in multiple formats.

This module provides:
- JSON report export
- SARIF format export
- Console report formatting
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import structlog

from dosscan import __version__
from dosscan.analysis.rules import DEFAULT_RULES
from dosscan.models import ContractReport, Finding, Severity
from dosscan.pipeline.report_generator import format_report_text

logger = structlog.get_logger()

SARIF_LEVELS = {
    Severity.HIGH: "error",
    Severity.MEDIUM: "warning",
    Severity.LOW: "note",
}


class ReportExporter:
    """Export contract reports in various formats."""

    def __init__(self, reports: Sequence[ContractReport]) -> None:
        self.reports = list(reports)

    def to_json(self, indent: int = 2) -> str:
        """
        Export reports as JSON.

        Args:
            indent: JSON indentation level

        Returns:
            JSON string
        """
        payload = {"reports": [report.model_dump(mode="json") for report in self.reports]}
        return json.dumps(payload, indent=indent)

    def to_sarif(self) -> Dict[str, Any]:
        """
        Export reports in SARIF format (Static Analysis Results Interchange Format).

        Returns:
            SARIF dict
        """
        return {
            "version": "2.1.0",
            "$schema": "https://json.schemastore.org/sarif-2.1.0.json",
            "runs": [
                {
                    "tool": {
                        "driver": {
                            "name": "dosscan",
                            "version": __version__,
                            "rules": self._build_sarif_rules(),
                        }
                    },
                    "results": self._build_sarif_results(),
                }
            ],
        }

    def _build_sarif_rules(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": rule.rule_id.value,
                "shortDescription": {"text": rule.description},
                "defaultConfiguration": {"level": SARIF_LEVELS[rule.severity]},
                "properties": {"severity": rule.severity.value},
            }
            for rule in DEFAULT_RULES
        ]

    def _build_sarif_results(self) -> List[Dict[str, Any]]:
        """Build SARIF results from report findings."""
        results = []
        for report in self.reports:
            for finding in report.findings:
                results.append({
                    "ruleId": finding.rule_id.value,
                    "level": SARIF_LEVELS[finding.severity],
                    "message": {
                        "text": finding.message,
                    },
                    "locations": [self._sarif_location(report, finding)],
                    "properties": {
                        "mitigation": finding.mitigation.value,
                        "statements": [list(loc) for loc in finding.locations],
                    },
                })
        return results

    @staticmethod
    def _sarif_location(report: ContractReport, finding: Finding) -> Dict[str, Any]:
        known = [line for line in finding.lines if line > 0]
        physical: Dict[str, Any] = {
            "artifactLocation": {
                "uri": report.source_name or report.contract,
            },
        }
        if known:
            physical["region"] = {"startLine": known[0]}
        return {
            "physicalLocation": physical,
            "logicalLocations": [
                {
                    "name": finding.function,
                    "fullyQualifiedName": f"{report.contract}.{finding.function}",
                    "kind": "function",
                }
            ],
        }

    def to_console(self) -> str:
        """
        Format reports for console output.

        Returns:
            Formatted string for console
        """
        if not self.reports:
            return "No contracts analyzed."
        return "\n\n".join(format_report_text(report) for report in self.reports)


def export_report(
    reports: Sequence[ContractReport],
    format: str = "json",
    output_path: Optional[str] = None,
) -> str:
    """
    Export contract reports in specified format.

    Args:
        reports: Reports to export
        format: Output format (json, sarif, console)
        output_path: Optional path to save report

    Returns:
        Report content
    """
    exporter = ReportExporter(reports)

    if format == "json":
        content = exporter.to_json()
    elif format == "sarif":
        content = json.dumps(exporter.to_sarif(), indent=2)
    elif format == "console":
        content = exporter.to_console()
    else:
        raise ValueError(f"Unknown format: {format}")

    if output_path:
        Path(output_path).write_text(content)
        logger.info("report_written", path=output_path, format=format)

    return content


def format_console_report(reports: Sequence[ContractReport]) -> str:
    """
    Format contract reports for console output.

    Args:
        reports: Reports to format

    Returns:
        Formatted string
    """
    return ReportExporter(reports).to_console()
