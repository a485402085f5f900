"""Tests for report aggregation."""

import pytest
from pydantic import ValidationError

from dosscan.models import (
    ContractReport,
    Finding,
    Mitigation,
    ReviewNote,
    RuleId,
    Severity,
)
from dosscan.pipeline.report_generator import (
    deduplicate_findings,
    format_report_text,
    generate_report,
    load_report_json,
    order_findings,
    save_report_json,
    source_hash,
    summarize,
)

ORDER = {"deposit": 0, "withdraw": 1, "sweep": 2}


def finding(rule_id, function, locations, severity=None, mitigation=Mitigation.WITHDRAWAL_PATTERN):
    defaults = {
        RuleId.UNCHECKED_EXTERNAL_DEPENDENCY: Severity.HIGH,
        RuleId.GAS_GRIEFING_EXPOSURE: Severity.MEDIUM,
        RuleId.UNBOUNDED_GROWABLE_LOOP: Severity.HIGH,
    }
    return Finding(
        rule_id=rule_id,
        severity=severity or defaults[rule_id],
        function=function,
        locations=tuple(locations),
        message=f"{rule_id.value} in {function}",
        mitigation=mitigation,
        lines=tuple(0 for _ in locations),
    )


class TestAggregation:
    """Deduplication, ordering and summaries."""

    def test_deduplicate_ignores_location_order(self):
        """Same rule, function and statement set is one finding."""
        a = finding(RuleId.UNCHECKED_EXTERNAL_DEPENDENCY, "withdraw", [(0, 1), (0, 2)])
        b = finding(RuleId.UNCHECKED_EXTERNAL_DEPENDENCY, "withdraw", [(0, 2), (0, 1)])
        c = finding(RuleId.UNCHECKED_EXTERNAL_DEPENDENCY, "withdraw", [(0, 1), (0, 3)])

        assert deduplicate_findings([a, b, c]) == [a, c]

    def test_order_by_severity_then_function_then_rule(self):
        medium_first_fn = finding(RuleId.GAS_GRIEFING_EXPOSURE, "deposit", [(0, 0)])
        high_late_fn = finding(RuleId.UNBOUNDED_GROWABLE_LOOP, "sweep", [(1, 1)])
        high_early_fn_c = finding(RuleId.UNBOUNDED_GROWABLE_LOOP, "withdraw", [(1, 1)])
        high_early_fn_a = finding(RuleId.UNCHECKED_EXTERNAL_DEPENDENCY, "withdraw", [(0, 0)])

        ordered = order_findings([medium_first_fn, high_late_fn, high_early_fn_c, high_early_fn_a], ORDER)

        # rule ids break ties alphabetically
        assert ordered == [high_early_fn_c, high_early_fn_a, high_late_fn, medium_first_fn]

    def test_summary_counts(self):
        summary = summarize([
            finding(RuleId.UNCHECKED_EXTERNAL_DEPENDENCY, "withdraw", [(0, 0)]),
            finding(RuleId.GAS_GRIEFING_EXPOSURE, "withdraw", [(0, 0)]),
            finding(RuleId.GAS_GRIEFING_EXPOSURE, "deposit", [(0, 0)]),
        ])

        assert (summary.high, summary.medium, summary.low) == (1, 2, 0)
        assert summary.total == 3


class TestGenerateReport:
    """Building a ContractReport."""

    def test_report_fields(self):
        findings = [
            finding(RuleId.GAS_GRIEFING_EXPOSURE, "withdraw", [(0, 2)], mitigation=Mitigation.GAS_CAP),
            finding(RuleId.GAS_GRIEFING_EXPOSURE, "withdraw", [(0, 2)], mitigation=Mitigation.GAS_CAP),
        ]
        notes = [ReviewNote(function="withdraw", locations=((0, 1),), message="transfer then write")]

        report = generate_report(
            contract="Vault",
            findings=findings,
            function_order=ORDER,
            source_name="Vault.sol",
            source="contract Vault {}",
            diagnostics=[("broken", "unsupported statement")],
            review_notes=notes,
        )

        assert report.contract == "Vault"
        assert len(report.findings) == 1
        assert report.summary.medium == 1
        assert report.functions_analyzed == ("deposit", "withdraw", "sweep")
        assert report.source_hash == source_hash("contract Vault {}")
        assert report.diagnostics[0].function == "broken"
        assert report.review_notes == tuple(notes)

    def test_report_is_immutable(self):
        report = generate_report("Vault", [], ORDER)

        with pytest.raises(ValidationError):
            report.contract = "Other"
        assert report.contract == "Vault"
        assert report.source_hash == ""

    def test_empty_report_text(self):
        text = format_report_text(generate_report("Vault", [], ORDER, source_name="Vault.sol"))

        assert "DOS Scan Report: Vault" in text
        assert "No findings." in text
        assert "Total Findings: 0" in text

    def test_report_text_lists_findings(self):
        report = generate_report(
            "Vault",
            [finding(RuleId.UNCHECKED_EXTERNAL_DEPENDENCY, "withdraw", [(0, 1), (0, 3)])],
            ORDER,
        )

        text = format_report_text(report)

        assert "[High] unchecked-external-dependency in withdraw" in text
        assert "Locations: (0, 1), (0, 3)" in text
        assert "Mitigation: withdrawal_pattern" in text

    def test_save_and_load(self, tmp_path):
        report = generate_report(
            "Vault",
            [finding(RuleId.UNBOUNDED_GROWABLE_LOOP, "sweep", [(1, 1)], mitigation=Mitigation.BOUNDED_LOOP)],
            ORDER,
            source="x",
        )
        path = tmp_path / "report.json"

        save_report_json(report, str(path))
        loaded = load_report_json(str(path))

        assert isinstance(loaded, ContractReport)
        assert loaded == report
