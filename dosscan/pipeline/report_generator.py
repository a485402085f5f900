"""Report aggregation for DOS scanner results."""

import hashlib
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from dosscan.models import (
    SEVERITY_RANK,
    ContractReport,
    Diagnostic,
    Finding,
    ReviewNote,
    Severity,
    SeveritySummary,
)


def source_hash(source: str) -> str:
    """SHA256 of the analyzed input."""
    return hashlib.sha256(source.encode()).hexdigest()


def deduplicate_findings(findings: Iterable[Finding]) -> List[Finding]:
    """Drop findings with the same rule, function and statement set, keeping the first."""
    seen = set()
    unique = []
    for finding in findings:
        key = (finding.rule_id, finding.function, frozenset(finding.locations))
        if key in seen:
            continue
        seen.add(key)
        unique.append(finding)
    return unique


def order_findings(findings: Iterable[Finding], function_order: Dict[str, int]) -> List[Finding]:
    """
    Order findings for a report.

    Descending severity, then function declaration order, then rule id,
    then statement locations.
    """
    return sorted(
        findings,
        key=lambda f: (
            SEVERITY_RANK[f.severity],
            function_order.get(f.function, len(function_order)),
            f.rule_id.value,
            f.locations,
        ),
    )


def summarize(findings: Sequence[Finding]) -> SeveritySummary:
    return SeveritySummary(
        high=sum(1 for f in findings if f.severity == Severity.HIGH),
        medium=sum(1 for f in findings if f.severity == Severity.MEDIUM),
        low=sum(1 for f in findings if f.severity == Severity.LOW),
    )


def generate_report(
    contract: str,
    findings: Iterable[Finding],
    function_order: Dict[str, int],
    source_name: str = "",
    source: Optional[str] = None,
    diagnostics: Sequence[Tuple[str, str]] = (),
    review_notes: Sequence[ReviewNote] = (),
) -> ContractReport:
    """
    Aggregate findings into an immutable contract report.

    Args:
        contract: Contract name
        findings: Findings from every rule and function
        function_order: Function id to declaration order index
        source_name: File the contract came from
        source: Analyzed input, hashed into the report
        diagnostics: (function id, message) for skipped functions
        review_notes: Borderline patterns for human review

    Returns:
        Complete ContractReport
    """
    ordered = order_findings(deduplicate_findings(findings), function_order)
    notes = sorted(
        review_notes,
        key=lambda n: (function_order.get(n.function, len(function_order)), n.locations),
    )
    return ContractReport(
        contract=contract,
        source_name=source_name,
        source_hash=source_hash(source) if source is not None else "",
        functions_analyzed=tuple(sorted(function_order, key=function_order.get)),
        findings=tuple(ordered),
        summary=summarize(ordered),
        diagnostics=tuple(Diagnostic(function=fid, message=msg) for fid, msg in diagnostics),
        review_notes=tuple(notes),
    )


def format_report_text(report: ContractReport) -> str:
    """
    Format a contract report as human-readable text.

    Args:
        report: The report to format

    Returns:
        Formatted text report
    """
    lines = [
        "=" * 70,
        f"DOS Scan Report: {report.contract}",
        "=" * 70,
        "",
        f"Source: {report.source_name or '-'}",
        f"Source Hash: {report.source_hash[:16] or '-'}",
        f"Functions Analyzed: {len(report.functions_analyzed)}",
        "",
        "-" * 70,
        "Summary",
        "-" * 70,
        "",
        f"Total Findings: {report.summary.total}",
        f"  High: {report.summary.high}",
        f"  Medium: {report.summary.medium}",
        f"  Low: {report.summary.low}",
        "",
    ]

    if report.findings:
        lines.extend([
            "-" * 70,
            "Findings",
            "-" * 70,
            "",
        ])
        for finding in report.findings:
            where = ", ".join(f"({b}, {i})" for b, i in finding.locations)
            known_lines = sorted({n for n in finding.lines if n})
            lines.append(f"[{finding.severity.value}] {finding.rule_id.value} in {finding.function}")
            lines.append(f"    Locations: {where}")
            if known_lines:
                lines.append(f"    Lines: {', '.join(str(n) for n in known_lines)}")
            lines.append(f"    {finding.message}")
            lines.append(f"    Mitigation: {finding.mitigation.value}")
            lines.append("")
    else:
        lines.extend([
            "No findings.",
            "",
        ])

    if report.review_notes:
        lines.extend([
            "-" * 70,
            "Review Notes",
            "-" * 70,
            "",
        ])
        for note in report.review_notes:
            lines.append(f"  • {note.function}: {note.message}")
        lines.append("")

    if report.diagnostics:
        lines.extend([
            "-" * 70,
            "Skipped Functions",
            "-" * 70,
            "",
        ])
        for diagnostic in report.diagnostics:
            lines.append(f"  • {diagnostic.function}: {diagnostic.message}")
        lines.append("")

    lines.append("=" * 70)

    return "\n".join(lines)


def save_report_json(report: ContractReport, output_path: str) -> None:
    """
    Save a contract report as JSON.

    Args:
        report: The report to save
        output_path: Path to save the JSON file
    """
    Path(output_path).write_text(report.model_dump_json(indent=2))


def load_report_json(report_path: str) -> ContractReport:
    """
    Load a contract report from JSON.

    Args:
        report_path: Path to the JSON file

    Returns:
        ContractReport object
    """
    return ContractReport.model_validate_json(Path(report_path).read_text())
