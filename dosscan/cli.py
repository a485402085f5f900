"""Command-line interface for the DOS scanner."""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import structlog

from dosscan import __version__
from dosscan.analysis.ast_parser import ParseError
from dosscan.analysis.cfg import visualize_cfg_dot
from dosscan.analysis.ir import MalformedAST
from dosscan.logging_setup import configure_logging
from dosscan.models import SEVERITY_RANK, BatchResult, Severity
from dosscan.parsing import export_report
from dosscan.pipeline.analyzer import analyze_batch_sync, function_cfg

logger = structlog.get_logger()

FAIL_ON = {
    "high": Severity.HIGH,
    "medium": Severity.MEDIUM,
    "low": Severity.LOW,
}

EXIT_OK = 0
EXIT_FINDINGS = 1
EXIT_ERROR = 2


def main(argv: Optional[List[str]] = None) -> None:
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.version:
        print_version()
        return

    if args.command == "analyze":
        sys.exit(analyze_command(args))
    elif args.command == "cfg":
        sys.exit(cfg_command(args))
    else:
        parser.print_help()
        sys.exit(EXIT_ERROR)


def create_parser() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="dosscan",
        description="dosscan - static denial-of-service scanner for Solidity contracts",
    )
    parser.add_argument("--version", action="store_true", help="Show version and exit")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Analyze command
    analyze_parser = subparsers.add_parser("analyze", help="Scan contracts for DOS patterns")
    analyze_parser.add_argument(
        "paths",
        nargs="+",
        type=str,
        help=".sol source files or .json solc AST files",
    )
    analyze_parser.add_argument(
        "-f", "--format",
        type=str,
        choices=["json", "sarif", "console"],
        default="console",
        help="Output format (default: console)",
    )
    analyze_parser.add_argument(
        "-o", "--output",
        type=str,
        help="Output file path",
    )
    analyze_parser.add_argument(
        "--solc-version",
        type=str,
        help="Compiler version for .sol files (default from settings)",
    )
    analyze_parser.add_argument(
        "--fail-on",
        type=str,
        choices=sorted(FAIL_ON),
        help="Exit with status 1 when a finding at or above this severity is reported",
    )
    analyze_parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Suppress log output",
    )

    # CFG command
    cfg_parser = subparsers.add_parser("cfg", help="Emit the CFG of one function as Graphviz DOT")
    cfg_parser.add_argument(
        "file",
        type=str,
        help=".sol source file or .json solc AST file",
    )
    cfg_parser.add_argument(
        "--function",
        type=str,
        required=True,
        help="Function name or id",
    )
    cfg_parser.add_argument(
        "--contract",
        type=str,
        help="Contract containing the function",
    )
    cfg_parser.add_argument(
        "-o", "--output",
        type=str,
        help="Write DOT to this file instead of stdout",
    )
    cfg_parser.add_argument(
        "--solc-version",
        type=str,
        help="Compiler version for .sol files (default from settings)",
    )
    cfg_parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Suppress log output",
    )

    return parser


def print_version() -> None:
    """Print version information."""
    print(f"dosscan v{__version__}")
    print("Static denial-of-service scanner for Solidity contracts")
    print()
    print("Rules:")
    print("  - unchecked-external-dependency (High)")
    print("  - gas-griefing-exposure (Medium)")
    print("  - unbounded-growable-loop (High)")
    print()
    print("Export formats:")
    print("  - JSON, SARIF, Console")


def exceeds_threshold(batch: BatchResult, fail_on: Optional[str]) -> bool:
    """Whether any finding is at or above the --fail-on severity."""
    if not fail_on:
        return False
    limit = SEVERITY_RANK[FAIL_ON[fail_on]]
    return any(
        SEVERITY_RANK[finding.severity] <= limit
        for report in batch.reports
        for finding in report.findings
    )


def analyze_command(args: argparse.Namespace) -> int:
    """Execute analyze command."""
    configure_logging(level="CRITICAL" if args.quiet else None)

    batch = analyze_batch_sync(args.paths, solc_version=args.solc_version)

    for failed in batch.failed:
        location = failed.error.source or failed.path
        if failed.error.line is not None:
            location = f"{location}:{failed.error.line}"
        print(f"Error: {location}: {failed.error.message}", file=sys.stderr)

    output = export_report(batch.reports, format=args.format, output_path=args.output)
    if args.output:
        print(f"Report saved to: {args.output}")
    else:
        print(output)

    if batch.failed:
        return EXIT_ERROR
    if exceeds_threshold(batch, args.fail_on):
        return EXIT_FINDINGS
    return EXIT_OK


def cfg_command(args: argparse.Namespace) -> int:
    """Execute cfg command."""
    configure_logging(level="CRITICAL" if args.quiet else None)

    file_path = Path(args.file)
    if not file_path.exists():
        print(f"Error: File not found: {args.file}", file=sys.stderr)
        return EXIT_ERROR

    try:
        function = asyncio.run(
            function_cfg(
                file_path.read_text(),
                str(file_path),
                args.function,
                contract_name=args.contract,
                solc_version=args.solc_version,
            )
        )
    except (ParseError, MalformedAST) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except ValueError as e:
        logger.error("cfg_function_not_found", file_path=args.file, function=args.function)
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    dot = visualize_cfg_dot(function)
    if args.output:
        Path(args.output).write_text(dot)
        print(f"CFG for '{function.id}': {args.output}")
    else:
        print(dot)
    return EXIT_OK


if __name__ == "__main__":
    main()
