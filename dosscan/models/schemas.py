"""Pydantic schemas for DOS scanner reports."""

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Severity(str, Enum):
    """Severity of a finding."""

    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


SEVERITY_RANK = {Severity.HIGH: 0, Severity.MEDIUM: 1, Severity.LOW: 2}


class RuleId(str, Enum):
    """Detector rules."""

    UNCHECKED_EXTERNAL_DEPENDENCY = "unchecked-external-dependency"
    GAS_GRIEFING_EXPOSURE = "gas-griefing-exposure"
    UNBOUNDED_GROWABLE_LOOP = "unbounded-growable-loop"


class Mitigation(str, Enum):
    """Suggested remediation pattern."""

    WITHDRAWAL_PATTERN = "withdrawal_pattern"
    GAS_CAP = "gas_cap"
    BOUNDED_LOOP = "bounded_loop"


Location = Tuple[int, int]


class Finding(BaseModel):
    """A single DOS finding. Immutable once emitted."""

    model_config = ConfigDict(frozen=True)

    rule_id: RuleId
    severity: Severity
    function: str = Field(..., description="Function id within the contract")
    locations: Tuple[Location, ...] = Field(
        ..., description="(block_id, statement_index) pairs implicated"
    )
    message: str
    mitigation: Mitigation
    lines: Tuple[int, ...] = Field(default=(), description="Source lines, 0 when unknown")


class Diagnostic(BaseModel):
    """A function that was skipped during analysis."""

    model_config = ConfigDict(frozen=True)

    function: str
    message: str


class ReviewNote(BaseModel):
    """Borderline pattern that needs a human look but is not a finding."""

    model_config = ConfigDict(frozen=True)

    function: str
    locations: Tuple[Location, ...] = ()
    message: str
    lines: Tuple[int, ...] = ()


class SeveritySummary(BaseModel):
    """Finding counts per severity."""

    model_config = ConfigDict(frozen=True)

    high: int = 0
    medium: int = 0
    low: int = 0

    @property
    def total(self) -> int:
        return self.high + self.medium + self.low


class ContractReport(BaseModel):
    """Complete analysis report for one contract."""

    model_config = ConfigDict(frozen=True)

    contract: str
    source_name: str = ""
    source_hash: str = Field(default="", description="SHA256 of analyzed input")
    functions_analyzed: Tuple[str, ...] = ()
    findings: Tuple[Finding, ...] = ()
    summary: SeveritySummary = Field(default_factory=SeveritySummary)
    diagnostics: Tuple[Diagnostic, ...] = ()
    review_notes: Tuple[ReviewNote, ...] = ()


class AnalysisRequest(BaseModel):
    """Request to analyze a contract source or a pre-built AST."""

    source: Optional[str] = Field(default=None, description="Solidity source code")
    ast: Optional[Dict[str, Any]] = Field(
        default=None, description="solc AST (standard-JSON output or SourceUnit)"
    )
    source_name: str = Field(default="Contract.sol", description="File name used in reports")
    solc_version: Optional[str] = Field(
        default=None, description="Compiler version (defaults to settings)"
    )

    @model_validator(mode="after")
    def _exactly_one_input(self) -> "AnalysisRequest":
        if (self.source is None) == (self.ast is None):
            raise ValueError("provide exactly one of 'source' or 'ast'")
        return self


class AnalysisResponse(BaseModel):
    """Reports for every contract in a request."""

    reports: List[ContractReport] = Field(default_factory=list)


class ParseFailure(BaseModel):
    """A source that could not be parsed."""

    model_config = ConfigDict(frozen=True)

    message: str
    source: str = ""
    line: Optional[int] = None
    column: Optional[int] = None


class FileResult(BaseModel):
    """Outcome of analyzing one file in a batch."""

    path: str
    reports: List[ContractReport] = Field(default_factory=list)
    error: Optional[ParseFailure] = None


class BatchResult(BaseModel):
    """Outcome of analyzing several files."""

    results: List[FileResult] = Field(default_factory=list)

    @property
    def reports(self) -> List[ContractReport]:
        return [report for result in self.results for report in result.reports]

    @property
    def failed(self) -> List[FileResult]:
        return [result for result in self.results if result.error is not None]
