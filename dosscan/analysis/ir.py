"""Intermediate representation for per-function control flow graphs.

A Function owns its BasicBlocks; a BasicBlock owns its Statements. Statements
are frozen once appended to a block, and the whole Function is treated as
read-only after the builder hands it over.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterator, List, Optional, Tuple


class MalformedAST(Exception):
    """The parsed AST does not have the shape the builder expects."""

    def __init__(self, message: str, node_type: Optional[str] = None, src: Optional[str] = None):
        self.message = message
        self.node_type = node_type
        self.src = src
        where = f" ({node_type} at {src})" if node_type or src else ""
        super().__init__(f"{message}{where}")


class InternalAnalyzerError(Exception):
    """An IR invariant was violated. This is a bug in the analyzer itself."""


class CallKind(str, Enum):
    """How a call site transfers control."""

    RAW_CALL = "raw_call"
    TRANSFER = "transfer"
    SEND = "send"
    INTERNAL_CALL = "internal_call"


class TargetOrigin(str, Enum):
    """Where a call target address comes from."""

    SELF = "self"
    TRUSTED = "trusted"
    CONSTANT = "constant"
    PARAMETER = "parameter"
    STORAGE = "storage"
    CALLER = "caller"
    FUNCTION = "function"
    UNKNOWN = "unknown"


class VarType(str, Enum):
    """Storage variable shape."""

    SCALAR = "scalar"
    MAPPING = "mapping"
    DYNAMIC_ARRAY = "dynamic_array"


@dataclass(frozen=True)
class GasMode:
    """Gas forwarded by a call: forward_all, capped(amount) or none.

    A capped mode with amount None is an explicit but non-literal cap.
    """

    mode: str
    amount: Optional[int] = None

    @classmethod
    def forward_all(cls) -> "GasMode":
        return cls("forward_all")

    @classmethod
    def capped(cls, amount: Optional[int]) -> "GasMode":
        return cls("capped", amount)

    @classmethod
    def none(cls) -> "GasMode":
        return cls("none")

    def __str__(self) -> str:
        if self.mode == "capped":
            return f"capped({self.amount if self.amount is not None else '?'})"
        return self.mode


@dataclass(frozen=True)
class ExprInfo:
    """Summary of an expression as seen by the analyses.

    truthy holds names that must be true when the expression is true, falsy
    holds names that must be false when it is true.
    """

    text: str
    names: FrozenSet[str] = frozenset()
    storage_reads: FrozenSet[str] = frozenset()
    truthy: FrozenSet[str] = frozenset()
    falsy: FrozenSet[str] = frozenset()

    def negated(self) -> "ExprInfo":
        return dataclasses.replace(
            self, text=f"!({self.text})", truthy=self.falsy, falsy=self.truthy
        )


@dataclass(frozen=True)
class Statement:
    """Base class of all IR statements."""

    block_id: int = -1
    index: int = -1
    line: int = 0

    @property
    def location(self) -> Tuple[int, int]:
        return (self.block_id, self.index)


@dataclass(frozen=True)
class StorageWrite(Statement):
    var: str = ""
    expr: Optional[ExprInfo] = None
    is_append: bool = False


@dataclass(frozen=True)
class StorageRead(Statement):
    var: str = ""


@dataclass(frozen=True)
class ExternalCall(Statement):
    target_expr: Optional[ExprInfo] = None
    value_expr: Optional[ExprInfo] = None
    gas_mode: GasMode = GasMode("none")
    kind: CallKind = CallKind.INTERNAL_CALL
    external: bool = False
    origin: TargetOrigin = TargetOrigin.UNKNOWN
    primitive: str = ""
    token: str = ""
    result_names: FrozenSet[str] = frozenset()
    callee: Optional[str] = None

    @property
    def transfers_value(self) -> bool:
        return self.kind in (CallKind.TRANSFER, CallKind.SEND) or self.value_expr is not None


@dataclass(frozen=True)
class Require(Statement):
    cond: Optional[ExprInfo] = None
    restricts_caller: bool = False
    guard_callees: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class Assert(Statement):
    cond: Optional[ExprInfo] = None


@dataclass(frozen=True)
class LoopHeader(Statement):
    bound_expr: Optional[ExprInfo] = None
    iteration_var: Optional[str] = None


@dataclass(frozen=True)
class Return(Statement):
    pass


@dataclass(frozen=True)
class Revert(Statement):
    pass


GUARD_TYPES = (Require, Assert)
TERMINATOR_TYPES = (Return, Revert)


@dataclass(frozen=True)
class Edge:
    """Successor edge. condition is set for true/false edges."""

    target: int
    kind: str = "unconditional"
    condition: Optional[ExprInfo] = None

    @property
    def is_conditional(self) -> bool:
        return self.kind in ("true", "false")


@dataclass
class BasicBlock:
    """Straight-line statements with successor edges."""

    id: int
    statements: List[Statement] = field(default_factory=list)
    successors: List[Edge] = field(default_factory=list)
    label: str = ""

    def append(self, stmt: Statement) -> Statement:
        """Attach a statement to this block and return the placed copy."""
        placed = dataclasses.replace(stmt, block_id=self.id, index=len(self.statements))
        self.statements.append(placed)
        return placed

    @property
    def terminated(self) -> bool:
        return bool(self.statements) and isinstance(self.statements[-1], TERMINATOR_TYPES)

    def add_edge(self, target: int, kind: str = "unconditional", condition: Optional[ExprInfo] = None) -> None:
        if self.terminated:
            return
        for edge in self.successors:
            if edge.target == target and edge.kind == kind:
                return
        self.successors.append(Edge(target=target, kind=kind, condition=condition))


@dataclass
class Function:
    """One declared contract function with its CFG."""

    id: str
    name: str
    visibility: str
    mutability: str
    kind: str = "function"
    order: int = 0
    entry_block: int = 0
    blocks: Dict[int, BasicBlock] = field(default_factory=dict)
    parameters: Tuple[str, ...] = ()
    callees: FrozenSet[str] = frozenset()
    contract: str = ""
    loops: Dict[int, FrozenSet[int]] = field(default_factory=dict)
    overridden: bool = False

    @property
    def externally_callable(self) -> bool:
        if self.overridden:
            return False
        if self.kind in ("fallback", "receive"):
            return True
        return self.kind == "function" and self.visibility in ("public", "external")

    def statements(self) -> Iterator[Statement]:
        for block_id in sorted(self.blocks):
            yield from self.blocks[block_id].statements

    def statement_at(self, location: Tuple[int, int]) -> Statement:
        block_id, index = location
        block = self.blocks.get(block_id)
        if block is None or not 0 <= index < len(block.statements):
            raise InternalAnalyzerError(f"{self.id}: no statement at {location}")
        return block.statements[index]

    def check_consistency(self) -> None:
        """Verify ownership invariants.

        Raises:
            InternalAnalyzerError: If any statement or edge is dangling
        """
        if self.entry_block not in self.blocks:
            raise InternalAnalyzerError(f"{self.id}: entry block {self.entry_block} missing")
        for block_id, block in self.blocks.items():
            if block.id != block_id:
                raise InternalAnalyzerError(f"{self.id}: block keyed {block_id} has id {block.id}")
            for index, stmt in enumerate(block.statements):
                if stmt.block_id != block_id or stmt.index != index:
                    raise InternalAnalyzerError(
                        f"{self.id}: statement {type(stmt).__name__} at ({block_id}, {index}) "
                        f"claims ({stmt.block_id}, {stmt.index})"
                    )
            for edge in block.successors:
                if edge.target not in self.blocks:
                    raise InternalAnalyzerError(
                        f"{self.id}: block {block_id} has edge to missing block {edge.target}"
                    )
        for header, body in self.loops.items():
            missing = [b for b in body if b not in self.blocks]
            if header not in self.blocks or missing:
                raise InternalAnalyzerError(f"{self.id}: loop at block {header} references missing blocks")


@dataclass(frozen=True)
class StorageVariable:
    """Contract storage slot and the functions that touch it."""

    name: str
    type: VarType
    type_string: str = ""
    mutators: FrozenSet[str] = frozenset()
    appenders: FrozenSet[str] = frozenset()
    growable_by: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class StorageTable:
    """Immutable arena of storage variables, referenced by index or name."""

    variables: Tuple[StorageVariable, ...] = ()
    _index: Dict[str, int] = field(default_factory=dict, init=False, compare=False, repr=False)

    def __post_init__(self) -> None:
        if not self._index:
            self._index.update({var.name: i for i, var in enumerate(self.variables)})

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def __getitem__(self, name: str) -> StorageVariable:
        return self.variables[self._index[name]]

    def __len__(self) -> int:
        return len(self.variables)

    def index_of(self, name: str) -> int:
        return self._index[name]

    def get(self, name: str) -> Optional[StorageVariable]:
        idx = self._index.get(name)
        return self.variables[idx] if idx is not None else None


@dataclass
class ContractIR:
    """Phase-1 output: all functions of one contract plus storage facts."""

    name: str
    functions: List[Function] = field(default_factory=list)
    storage: StorageTable = field(default_factory=StorageTable)
    restricted: FrozenSet[str] = frozenset()
    reachable: FrozenSet[str] = frozenset()

    def function(self, function_id: str) -> Optional[Function]:
        for func in self.functions:
            if func.id == function_id:
                return func
        return None

    @property
    def live_functions(self) -> List[Function]:
        """Functions to report on: overridden base definitions only when reached through super."""
        called = set()
        for func in self.functions:
            called.update(func.callees)
        return [func for func in self.functions if not func.overridden or func.id in called]
