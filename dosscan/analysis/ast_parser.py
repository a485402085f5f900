"""Source parsing through the Solidity compiler.

The scanner does not parse Solidity itself. It consumes the compact JSON AST
that solc emits, obtained either by compiling through py-solc-x or by loading
an AST file produced elsewhere. Both parsers implement SourceParser.
"""

from __future__ import annotations

import asyncio
import bisect
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple, Union

import solcx
import structlog
from solcx.exceptions import DownloadError, SolcError, SolcNotInstalled
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from dosscan.config import settings

logger = structlog.get_logger()


class ParseError(Exception):
    """Source could not be turned into an AST."""

    def __init__(
        self,
        message: str,
        source_name: str = "",
        line: Optional[int] = None,
        column: Optional[int] = None,
    ):
        self.message = message
        self.source_name = source_name
        self.line = line
        self.column = column
        super().__init__(f"{self.location}: {message}" if self.location else message)

    @property
    def location(self) -> str:
        if not self.source_name:
            return ""
        if self.line is None:
            return self.source_name
        if self.column is None:
            return f"{self.source_name}:{self.line}"
        return f"{self.source_name}:{self.line}:{self.column}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "source": self.source_name,
            "line": self.line,
            "column": self.column,
        }


class LineIndex:
    """Map byte offsets of a source text to 1-based line/column pairs."""

    def __init__(self, source_text: str) -> None:
        data = source_text.encode("utf-8")
        self._starts = [0]
        for offset, byte in enumerate(data):
            if byte == 0x0A:
                self._starts.append(offset + 1)

    def position(self, offset: int) -> Tuple[int, int]:
        line = bisect.bisect_right(self._starts, offset)
        column = offset - self._starts[line - 1] + 1
        return line, column


@dataclass
class SourceUnit:
    """One parsed source file."""

    name: str
    ast: Dict[str, Any]
    source_text: Optional[str] = None
    file_index: Optional[int] = None

    def __post_init__(self) -> None:
        if self.file_index is None:
            self.file_index = _src_file_index(self.ast.get("src", ""))


def _src_file_index(src: str) -> Optional[int]:
    parts = str(src or "").split(":")
    if len(parts) == 3:
        try:
            return int(parts[2])
        except ValueError:
            return None
    return None


class LineMapper:
    """Resolve solc `src` strings ("start:length:file") to source lines."""

    def __init__(self, units: List[SourceUnit]) -> None:
        self._indexes: Dict[int, LineIndex] = {}
        for unit in units:
            if unit.source_text is not None and unit.file_index is not None:
                self._indexes[unit.file_index] = LineIndex(unit.source_text)

    def line_of(self, src: Optional[str]) -> int:
        parts = str(src or "").split(":")
        if len(parts) != 3:
            return 0
        try:
            start, file_index = int(parts[0]), int(parts[2])
        except ValueError:
            return 0
        index = self._indexes.get(file_index)
        if index is None or start < 0:
            return 0
        return index.position(start)[0]


@dataclass
class ContractDecl:
    """A contract definition with inherited members resolved."""

    name: str
    kind: str
    node: Dict[str, Any]
    state_vars: List[Dict[str, Any]] = field(default_factory=list)
    functions: List[Dict[str, Any]] = field(default_factory=list)
    overridden: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)
    modifiers: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    libraries: Set[str] = field(default_factory=set)
    source_name: str = ""
    lines: Optional[LineMapper] = None


class SourceParser(ABC):
    """
    Abstract parser collaborator.

    Implementations turn source text into solc-shaped SourceUnits and raise
    ParseError when they cannot.
    """

    @abstractmethod
    async def parse(self, source_text: str, source_name: str = "Contract.sol") -> List[SourceUnit]:
        """
        Parse source text.

        Args:
            source_text: Contract source (or AST JSON for AST parsers)
            source_name: File name used in diagnostics

        Returns:
            Parsed source units

        Raises:
            ParseError: If the source cannot be parsed
        """

    def _check_size(self, source_text: str, source_name: str) -> None:
        size = len(source_text.encode("utf-8"))
        if size > settings.max_source_bytes:
            raise ParseError(
                f"source is {size} bytes, limit is {settings.max_source_bytes}",
                source_name=source_name,
            )


class SolcParser(SourceParser):
    """Compile Solidity with solc (via py-solc-x) and return its AST."""

    def __init__(
        self,
        solc_version: Optional[str] = None,
        auto_install: Optional[bool] = None,
    ) -> None:
        self.solc_version = solc_version or settings.solc_version
        self.auto_install = settings.solc_auto_install if auto_install is None else auto_install

    async def parse(self, source_text: str, source_name: str = "Contract.sol") -> List[SourceUnit]:
        self._check_size(source_text, source_name)
        return await asyncio.to_thread(self.parse_sync, source_text, source_name)

    def parse_sync(self, source_text: str, source_name: str = "Contract.sol") -> List[SourceUnit]:
        """Blocking variant of parse()."""
        self._check_size(source_text, source_name)
        self._ensure_compiler(source_name)

        input_json = {
            "language": "Solidity",
            "sources": {source_name: {"content": source_text}},
            "settings": {"outputSelection": {"*": {"": ["ast"]}}},
        }

        try:
            output = solcx.compile_standard(
                input_json,
                solc_version=self.solc_version,
                allow_empty=True,
            )
        except SolcError as e:
            raise _parse_error_from_solc(e, source_name, {source_name: source_text}) from e

        logger.info(
            "source_compiled",
            source_name=source_name,
            solc_version=self.solc_version,
            warnings=len(output.get("errors", [])),
        )
        return units_from_standard_output(output, {source_name: source_text})

    def _ensure_compiler(self, source_name: str) -> None:
        installed = {str(v) for v in solcx.get_installed_solc_versions()}
        if self.solc_version in installed:
            return
        if not self.auto_install:
            raise ParseError(f"solc {self.solc_version} is not installed", source_name=source_name)

        logger.info("solc_installing", version=self.solc_version)
        try:
            for attempt in Retrying(
                stop=stop_after_attempt(max(1, settings.solc_install_retries)),
                wait=wait_exponential(multiplier=1, min=1, max=10),
                retry=retry_if_exception_type((OSError, DownloadError)),
                reraise=True,
            ):
                with attempt:
                    solcx.install_solc(self.solc_version)
        except (OSError, DownloadError, SolcNotInstalled) as e:
            logger.error("solc_install_failed", version=self.solc_version, error=str(e))
            raise ParseError(
                f"could not install solc {self.solc_version}: {e}", source_name=source_name
            ) from e


class ASTJSONParser(SourceParser):
    """Load a solc AST produced ahead of time.

    Accepts standard-JSON compiler output, `--combined-json ast` output, or
    a bare SourceUnit node.
    """

    async def parse(self, source_text: str, source_name: str = "Contract.json") -> List[SourceUnit]:
        return self.parse_sync(source_text, source_name)

    def parse_sync(self, source_text: str, source_name: str = "Contract.json") -> List[SourceUnit]:
        self._check_size(source_text, source_name)
        try:
            data = json.loads(source_text)
        except json.JSONDecodeError as e:
            raise ParseError(f"invalid AST JSON: {e.msg}", source_name, e.lineno, e.colno) from e
        return load_ast_json(data, source_name)


def load_ast_json(data: Union[Dict[str, Any], List[Any]], source_name: str = "Contract.json") -> List[SourceUnit]:
    """
    Build SourceUnits from an already decoded AST document.

    Args:
        data: Decoded JSON document
        source_name: Name used when the document carries none

    Returns:
        List of SourceUnit

    Raises:
        ParseError: If no SourceUnit can be found
    """
    if isinstance(data, dict):
        if data.get("nodeType") == "SourceUnit":
            name = data.get("absolutePath") or source_name
            return [SourceUnit(name=name, ast=data)]

        errors = [e for e in data.get("errors", []) if e.get("severity") == "error"]
        if errors:
            first = errors[0]
            raise ParseError(first.get("formattedMessage") or first.get("message", "compilation failed"), source_name)

        if isinstance(data.get("sources"), dict):
            units = units_from_standard_output(data, {})
            if units:
                return units

    raise ParseError("document contains no SourceUnit AST", source_name=source_name)


def units_from_standard_output(output: Dict[str, Any], sources: Dict[str, str]) -> List[SourceUnit]:
    """Collect SourceUnits from standard-JSON or combined-JSON output."""
    units = []
    for name, entry in output.get("sources", {}).items():
        if not isinstance(entry, dict):
            continue
        ast = entry.get("ast") or entry.get("AST")
        if not isinstance(ast, dict):
            continue
        file_index = entry.get("id")
        units.append(
            SourceUnit(
                name=name,
                ast=ast,
                source_text=sources.get(name),
                file_index=file_index if isinstance(file_index, int) else None,
            )
        )
    return units


def _parse_error_from_solc(error: SolcError, source_name: str, sources: Dict[str, str]) -> ParseError:
    details = getattr(error, "error_dict", None) or []
    for entry in details:
        if entry.get("severity") != "error":
            continue
        location = entry.get("sourceLocation") or {}
        file_name = location.get("file") or source_name
        message = entry.get("message") or entry.get("formattedMessage") or str(error)
        text = sources.get(file_name)
        start = location.get("start")
        if text is not None and isinstance(start, int) and start >= 0:
            line, column = LineIndex(text).position(start)
            return ParseError(message, file_name, line, column)
        return ParseError(message, file_name)
    return ParseError(getattr(error, "message", None) or str(error), source_name)


def _signature(func: Dict[str, Any]) -> str:
    kind = func.get("kind", "function")
    if kind in ("constructor", "fallback", "receive"):
        return kind
    params = (func.get("parameters") or {}).get("parameters") or []
    types = ",".join(
        (p.get("typeDescriptions") or {}).get("typeString") or _type_name_text(p.get("typeName"))
        for p in params
    )
    return f"{func.get('name', '')}({types})"


def _type_name_text(type_name: Any) -> str:
    if not isinstance(type_name, dict):
        return ""
    return (type_name.get("typeDescriptions") or {}).get("typeString") or type_name.get("name") or ""


def extract_contracts(units: List[SourceUnit]) -> List[ContractDecl]:
    """
    Collect analyzable contracts with inherited members resolved.

    Interfaces are skipped. Base contracts are resolved through
    linearizedBaseContracts when the bases are part of the same parse.

    Args:
        units: Parsed source units

    Returns:
        ContractDecl per concrete contract, abstract contract and library
    """
    by_id: Dict[int, Dict[str, Any]] = {}
    source_of: Dict[int, str] = {}
    ordered: List[Tuple[Dict[str, Any], str]] = []
    libraries: Set[str] = set()

    for unit in units:
        for node in unit.ast.get("nodes", []):
            if not isinstance(node, dict) or node.get("nodeType") != "ContractDefinition":
                continue
            if isinstance(node.get("id"), int):
                by_id[node["id"]] = node
                source_of[node["id"]] = unit.name
            if node.get("contractKind") == "library":
                libraries.add(node.get("name", ""))
            ordered.append((node, unit.name))

    lines = LineMapper(units)
    contracts = []
    for node, source_name in ordered:
        kind = node.get("contractKind", "contract")
        if kind == "interface":
            continue
        if node.get("abstract") and kind == "contract":
            kind = "abstract"

        chain = [by_id[i] for i in node.get("linearizedBaseContracts", []) if i in by_id]
        if not chain or chain[0] is not node:
            chain = [node]

        state_vars: List[Dict[str, Any]] = []
        functions: Dict[str, Tuple[str, Dict[str, Any]]] = {}
        overridden: List[Tuple[str, Dict[str, Any]]] = []
        modifiers: Dict[str, Dict[str, Any]] = {}
        for contract in reversed(chain):
            owner = contract.get("name", "")
            for sub in contract.get("nodes", []):
                nt = sub.get("nodeType") if isinstance(sub, dict) else None
                if nt == "VariableDeclaration" and sub.get("stateVariable", True):
                    state_vars.append(sub)
                elif nt == "FunctionDefinition":
                    signature = _signature(sub)
                    if signature in functions and functions[signature][1].get("body") is not None:
                        overridden.append(functions[signature])
                    functions[signature] = (owner, sub)
                elif nt == "ModifierDefinition":
                    modifiers[sub.get("name", "")] = sub

        contracts.append(
            ContractDecl(
                name=node.get("name", ""),
                kind=kind,
                node=node,
                state_vars=state_vars,
                functions=[func for _, func in functions.values()],
                overridden=overridden,
                modifiers=modifiers,
                libraries=set(libraries),
                source_name=source_name,
                lines=lines,
            )
        )

    logger.debug("contracts_extracted", count=len(contracts))
    return contracts
