"""Report data models for the DOS scanner."""

from .schemas import (
    SEVERITY_RANK,
    AnalysisRequest,
    AnalysisResponse,
    BatchResult,
    ContractReport,
    Diagnostic,
    FileResult,
    Finding,
    Mitigation,
    ParseFailure,
    ReviewNote,
    RuleId,
    Severity,
    SeveritySummary,
)

__all__ = [
    "SEVERITY_RANK",
    "AnalysisRequest",
    "AnalysisResponse",
    "BatchResult",
    "ContractReport",
    "Diagnostic",
    "FileResult",
    "Finding",
    "Mitigation",
    "ParseFailure",
    "ReviewNote",
    "RuleId",
    "Severity",
    "SeveritySummary",
]
