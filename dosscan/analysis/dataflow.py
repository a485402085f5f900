"""Dataflow analyses over a built ContractIR.

Both analyses are pure functions of the IR: they read Functions and the
StorageTable and return frozen fact records.
"""

from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Set, Tuple

from dosscan.analysis.ir import (
    GUARD_TYPES,
    TERMINATOR_TYPES,
    CallKind,
    ContractIR,
    Edge,
    ExternalCall,
    Function,
    LoopHeader,
    Statement,
    StorageTable,
    StorageWrite,
    VarType,
)

DOS_CALL_KINDS = (CallKind.RAW_CALL, CallKind.TRANSFER, CallKind.SEND)


@dataclass(frozen=True)
class CallDependency:
    """State writes that may run after an external call without its success being checked."""

    call: ExternalCall
    writes: Tuple[StorageWrite, ...]
    implicitly_checked: bool = False

    @property
    def unchecked_writes(self) -> Tuple[StorageWrite, ...]:
        return () if self.implicitly_checked else self.writes


@dataclass(frozen=True)
class LoopFact:
    """Loop bound facts for one LoopHeader."""

    header: LoopHeader
    growable_vars: Tuple[str, ...]
    body_blocks: FrozenSet[int]
    transfers_value: bool

    @property
    def unbounded_by_attacker(self) -> bool:
        return bool(self.growable_vars)


def success_flags(call: ExternalCall) -> FrozenSet[str]:
    """Names that stand for the call's success value."""
    flags = set(call.result_names)
    if call.token:
        flags.add(call.token)
    return frozenset(flags)


def _checks(stmt: Statement, flags: FrozenSet[str]) -> bool:
    cond = getattr(stmt, "cond", None)
    return isinstance(stmt, GUARD_TYPES) and cond is not None and bool(cond.truthy & flags)


def _edge_asserts(edge: Edge, flags: FrozenSet[str]) -> bool:
    if edge.condition is None:
        return False
    if edge.kind == "true":
        return bool(edge.condition.truthy & flags)
    if edge.kind == "false":
        return bool(edge.condition.falsy & flags)
    return False


def writes_after_call(function: Function, call: ExternalCall) -> Tuple[StorageWrite, ...]:
    """
    StorageWrites reachable from a call without a check of its success flag.

    Traversal stops at a Require/Assert on the flag, at branch edges whose
    condition asserts the flag, and at Return/Revert.

    Args:
        function: Function containing the call
        call: The ExternalCall statement

    Returns:
        Writes in (block_id, index) order
    """
    flags = success_flags(call)
    found: Dict[Tuple[int, int], StorageWrite] = {}
    visited: Set[int] = set()
    worklist: List[Tuple[int, int]] = [(call.block_id, call.index + 1)]

    while worklist:
        block_id, start = worklist.pop()
        block = function.blocks[block_id]
        stopped = False
        for stmt in block.statements[start:]:
            if _checks(stmt, flags) or isinstance(stmt, TERMINATOR_TYPES):
                stopped = True
                break
            if isinstance(stmt, StorageWrite):
                found[stmt.location] = stmt
        if stopped:
            continue
        for edge in block.successors:
            if edge.target in visited or _edge_asserts(edge, flags):
                continue
            visited.add(edge.target)
            worklist.append((edge.target, 0))

    return tuple(found[loc] for loc in sorted(found))


def call_dependencies(function: Function) -> List[CallDependency]:
    """Post-call state-write facts for every DOS-relevant call of a function."""
    dependencies = []
    for stmt in function.statements():
        if not isinstance(stmt, ExternalCall) or stmt.kind not in DOS_CALL_KINDS:
            continue
        dependencies.append(
            CallDependency(
                call=stmt,
                writes=writes_after_call(function, stmt),
                implicitly_checked=stmt.kind == CallKind.TRANSFER,
            )
        )
    return dependencies


def value_transferring(functions: Iterable[Function]) -> FrozenSet[str]:
    """Functions that send value to an external target, directly or through callees."""
    functions = list(functions)
    direct = {
        func.id
        for func in functions
        if any(
            isinstance(stmt, ExternalCall) and stmt.external and stmt.transfers_value
            for stmt in func.statements()
        )
    }
    result = set(direct)
    changed = True
    while changed:
        changed = False
        for func in functions:
            if func.id not in result and func.callees & result:
                result.add(func.id)
                changed = True
    return frozenset(result)


def growable_bound_vars(header: LoopHeader, storage: StorageTable) -> Tuple[str, ...]:
    """Attacker-growable dynamic arrays read by a loop bound."""
    if header.bound_expr is None:
        return ()
    growable = []
    for name in sorted(header.bound_expr.storage_reads):
        var = storage.get(name)
        if var is not None and var.type == VarType.DYNAMIC_ARRAY and var.growable_by:
            growable.append(name)
    return tuple(growable)


def loop_facts(function: Function, contract: ContractIR, transferring: FrozenSet[str] = frozenset()) -> List[LoopFact]:
    """
    Growable-bound facts for every loop of a function.

    Args:
        function: Function to inspect
        contract: Phase-1 facts (storage table)
        transferring: Functions known to transfer value, for loop bodies
            that pay out through an internal helper

    Returns:
        LoopFact per LoopHeader in statement order
    """
    facts = []
    for stmt in function.statements():
        if not isinstance(stmt, LoopHeader):
            continue
        body = function.loops.get(stmt.block_id, frozenset())
        pays = False
        for block_id in sorted(body):
            for inner in function.blocks[block_id].statements:
                if not isinstance(inner, ExternalCall):
                    continue
                if inner.external and inner.transfers_value:
                    pays = True
                elif inner.callee and inner.callee in transferring:
                    pays = True
        facts.append(
            LoopFact(
                header=stmt,
                growable_vars=growable_bound_vars(stmt, contract.storage),
                body_blocks=body,
                transfers_value=pays,
            )
        )
    return facts
