"""Pipeline modules for the DOS scanner."""

from .analyzer import (
    ContractAnalyzer,
    analyze_ast,
    analyze_batch,
    analyze_batch_sync,
    analyze_file,
    analyze_source,
    analyze_source_sync,
    function_cfg,
)
from .report_generator import (
    format_report_text,
    generate_report,
    load_report_json,
    save_report_json,
)

__all__ = [
    "ContractAnalyzer",
    "analyze_ast",
    "analyze_batch",
    "analyze_batch_sync",
    "analyze_file",
    "analyze_source",
    "analyze_source_sync",
    "function_cfg",
    "format_report_text",
    "generate_report",
    "save_report_json",
    "load_report_json",
]
