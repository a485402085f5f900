"""Main pipeline orchestrator for DOS scanning."""

import asyncio
import json
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import structlog

from dosscan.analysis.ast_parser import (
    ASTJSONParser,
    ContractDecl,
    ParseError,
    SolcParser,
    SourceParser,
    SourceUnit,
    extract_contracts,
    load_ast_json,
)
from dosscan.analysis.cfg import CFGBuilder
from dosscan.analysis.dataflow import value_transferring
from dosscan.analysis.ir import Function
from dosscan.analysis.rules import Rule, evaluate_function
from dosscan.analysis.storage import build_contract_ir
from dosscan.config import settings
from dosscan.models import BatchResult, ContractReport, FileResult, ParseFailure
from dosscan.pipeline.report_generator import generate_report

logger = structlog.get_logger()


def select_contracts(contracts: List[ContractDecl]) -> List[ContractDecl]:
    """Most-derived contracts only; libraries and inherited bases are covered through them."""
    inherited = set()
    for contract in contracts:
        own_id = contract.node.get("id")
        for base_id in contract.node.get("linearizedBaseContracts", []):
            if base_id != own_id:
                inherited.add(base_id)
    return [
        c for c in contracts
        if c.kind != "library" and c.node.get("id") not in inherited
    ]


class ContractAnalyzer:
    """
    Two-phase analysis of one contract.

    Phase 1 builds every function and the storage table. Phase 2 runs
    dataflow and rules per function on a thread pool; results are
    collected in declaration order.
    """

    def __init__(
        self,
        max_workers: Optional[int] = None,
        stipend: Optional[int] = None,
        trusted_addresses: Optional[Iterable[str]] = None,
        rules: Optional[Sequence[Rule]] = None,
    ):
        self.max_workers = max_workers or settings.max_workers
        self.stipend = stipend
        self.trusted_addresses = trusted_addresses
        self.rules = rules

    def analyze_contract(
        self,
        contract: ContractDecl,
        source: Optional[str] = None,
        source_name: str = "",
    ) -> ContractReport:
        """
        Analyze one contract.

        Args:
            contract: Contract declaration from the parser
            source: Analyzed input, hashed into the report
            source_name: File the contract came from

        Returns:
            ContractReport
        """
        logger.info("contract_analysis_started", contract=contract.name, source_name=source_name)

        ir, skipped = build_contract_ir(
            contract,
            stipend=self.stipend,
            trusted_addresses=self.trusted_addresses,
        )
        transferring = value_transferring(ir.functions)
        live = ir.live_functions

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            outcomes = list(
                executor.map(
                    lambda func: evaluate_function(func, ir, transferring, self.rules),
                    live,
                )
            )

        findings = [f for outcome in outcomes for f in outcome.findings]
        notes = [n for outcome in outcomes for n in outcome.notes]
        report = generate_report(
            contract=contract.name,
            findings=findings,
            function_order={func.id: func.order for func in live},
            source_name=source_name or contract.source_name,
            source=source,
            diagnostics=skipped,
            review_notes=notes,
        )

        logger.info(
            "analysis_complete",
            contract=contract.name,
            functions=len(live),
            high=report.summary.high,
            medium=report.summary.medium,
            low=report.summary.low,
            review_notes=len(report.review_notes),
            skipped=len(report.diagnostics),
        )
        return report

    def analyze_units(
        self,
        units: List[SourceUnit],
        source: Optional[str] = None,
        source_name: str = "",
    ) -> List[ContractReport]:
        """Analyze every most-derived contract found in parsed source units."""
        contracts = select_contracts(extract_contracts(units))
        return [self.analyze_contract(c, source=source, source_name=source_name) for c in contracts]


def default_parser(source_name: str, solc_version: Optional[str] = None) -> SourceParser:
    """AST loader for .json inputs, solc for everything else."""
    if source_name.endswith(".json"):
        return ASTJSONParser()
    return SolcParser(solc_version=solc_version)


async def analyze_source(
    source: str,
    source_name: str = "Contract.sol",
    parser: Optional[SourceParser] = None,
    analyzer: Optional[ContractAnalyzer] = None,
    solc_version: Optional[str] = None,
) -> List[ContractReport]:
    """
    Run the full pipeline on source text.

    The parse is the only awaited step; analysis itself is synchronous.

    Args:
        source: Solidity source or AST JSON text
        source_name: File name (selects the parser when none is given)
        parser: Parser collaborator
        analyzer: Contract analyzer (defaults from settings)
        solc_version: Compiler version for the default solc parser

    Returns:
        One ContractReport per analyzed contract

    Raises:
        ParseError: If the source cannot be parsed
    """
    parser = parser or default_parser(source_name, solc_version)
    analyzer = analyzer or ContractAnalyzer()

    logger.info("analysis_started", source_name=source_name, parser=parser.__class__.__name__)
    units = await parser.parse(source, source_name)
    return analyzer.analyze_units(units, source=source, source_name=source_name)


def analyze_ast(
    data: Dict[str, Any],
    source_name: str = "Contract.json",
    analyzer: Optional[ContractAnalyzer] = None,
) -> List[ContractReport]:
    """
    Analyze an already decoded solc AST document.

    Raises:
        ParseError: If the document holds no SourceUnit
    """
    analyzer = analyzer or ContractAnalyzer()
    units = load_ast_json(data, source_name)
    canonical = json.dumps(data, sort_keys=True)
    return analyzer.analyze_units(units, source=canonical, source_name=source_name)


async def analyze_file(
    file_path: str,
    parser: Optional[SourceParser] = None,
    analyzer: Optional[ContractAnalyzer] = None,
    solc_version: Optional[str] = None,
) -> List[ContractReport]:
    """Read a .sol or .json file and analyze it.

    Raises:
        ParseError: If the file is not valid UTF-8 or cannot be parsed
        OSError: If the file cannot be read
    """
    try:
        source = Path(file_path).read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ParseError(f"source is not valid UTF-8: {e.reason}", source_name=str(file_path)) from e
    return await analyze_source(
        source, str(file_path), parser=parser, analyzer=analyzer, solc_version=solc_version
    )


async def analyze_batch(
    file_paths: Iterable[str],
    parser: Optional[SourceParser] = None,
    analyzer: Optional[ContractAnalyzer] = None,
    solc_version: Optional[str] = None,
) -> BatchResult:
    """
    Analyze several files independently.

    A file that cannot be read or parsed is recorded in the result and the
    remaining files continue.

    Args:
        file_paths: Files to analyze
        parser: Parser collaborator (chosen per file when omitted)
        analyzer: Contract analyzer shared by all files
        solc_version: Compiler version for .sol files

    Returns:
        BatchResult with one FileResult per path, in input order
    """
    analyzer = analyzer or ContractAnalyzer()
    results = []
    for path in file_paths:
        path = str(path)
        try:
            reports = await analyze_file(path, parser=parser, analyzer=analyzer, solc_version=solc_version)
            results.append(FileResult(path=path, reports=reports))
        except ParseError as e:
            logger.error("source_parse_failed", path=path, error=e.message, line=e.line)
            results.append(
                FileResult(
                    path=path,
                    error=ParseFailure(
                        message=e.message,
                        source=e.source_name or path,
                        line=e.line,
                        column=e.column,
                    ),
                )
            )
        except OSError as e:
            logger.error("source_read_failed", path=path, error=str(e))
            results.append(FileResult(path=path, error=ParseFailure(message=str(e), source=path)))

    logger.info(
        "batch_complete",
        files=len(results),
        failed=sum(1 for r in results if r.error is not None),
    )
    return BatchResult(results=results)


def analyze_source_sync(
    source: str,
    source_name: str = "Contract.sol",
    parser: Optional[SourceParser] = None,
    analyzer: Optional[ContractAnalyzer] = None,
) -> List[ContractReport]:
    """Synchronous wrapper for analyze_source."""
    return asyncio.run(analyze_source(source, source_name, parser=parser, analyzer=analyzer))


def analyze_batch_sync(
    file_paths: Iterable[str],
    parser: Optional[SourceParser] = None,
    analyzer: Optional[ContractAnalyzer] = None,
    solc_version: Optional[str] = None,
) -> BatchResult:
    """Synchronous wrapper for analyze_batch."""
    return asyncio.run(
        analyze_batch(file_paths, parser=parser, analyzer=analyzer, solc_version=solc_version)
    )


async def function_cfg(
    source: str,
    source_name: str,
    function_name: str,
    contract_name: Optional[str] = None,
    parser: Optional[SourceParser] = None,
    solc_version: Optional[str] = None,
) -> Function:
    """
    Build the CFG of a single function.

    Args:
        source: Solidity source or AST JSON text
        source_name: File name
        function_name: Function name or id
        contract_name: Contract to look in (first match when omitted)
        parser: Parser collaborator
        solc_version: Compiler version for the default solc parser

    Returns:
        Function with its blocks

    Raises:
        ParseError: If the source cannot be parsed
        ValueError: If the function is not found
    """
    parser = parser or default_parser(source_name, solc_version)
    units = await parser.parse(source, source_name)
    contracts = extract_contracts(units)
    if contract_name:
        contracts = [c for c in contracts if c.name == contract_name]
        if not contracts:
            raise ValueError(f"Contract {contract_name} not found")

    for contract in contracts:
        builder = CFGBuilder(contract)
        nodes = contract.functions + [func for _, func in contract.overridden]
        for order, node in enumerate(nodes):
            fid = builder.function_ids.get(id(node))
            if function_name in (fid, node.get("name")) and node.get("body") is not None:
                return builder.build_function(node, order)
    raise ValueError(f"Function {function_name} not found")
