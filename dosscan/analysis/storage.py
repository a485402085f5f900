"""Contract-wide facts gathered after all functions are built.

Caller restriction, call-graph reachability and the storage variable table
are computed once per contract and then shared read-only by the per-function
analyses.
"""

from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

import structlog

from dosscan.analysis.ast_parser import ContractDecl
from dosscan.analysis.cfg import CFGBuilder
from dosscan.analysis.ir import (
    CallKind,
    ContractIR,
    ExternalCall,
    Function,
    Require,
    StorageRead,
    StorageTable,
    StorageVariable,
    StorageWrite,
    VarType,
)

logger = structlog.get_logger()


def classify_var_type(var: Dict[str, Any]) -> VarType:
    """Shape of a state variable declaration."""
    type_name = var.get("typeName") or {}
    nt = type_name.get("nodeType")
    if nt == "Mapping":
        return VarType.MAPPING
    if nt == "ArrayTypeName":
        return VarType.DYNAMIC_ARRAY if type_name.get("length") is None else VarType.SCALAR

    type_string = (var.get("typeDescriptions") or {}).get("typeString") or ""
    if type_string.startswith("mapping("):
        return VarType.MAPPING
    if type_string.endswith("[]") or type_string.endswith("[] storage ref"):
        return VarType.DYNAMIC_ARRAY
    return VarType.SCALAR


def call_graph(functions: Iterable[Function]) -> Dict[str, FrozenSet[str]]:
    """Map each function id to the internal functions it calls."""
    return {func.id: func.callees for func in functions}


def _entry_guards(func: Function) -> Tuple[List[Require], Set[str]]:
    """Caller-restricting requires in the entry block, and the helpers it calls."""
    guards: List[Require] = []
    helpers: Set[str] = set()
    for stmt in func.blocks[func.entry_block].statements:
        if isinstance(stmt, Require) and stmt.restricts_caller:
            guards.append(stmt)
        elif isinstance(stmt, ExternalCall) and stmt.kind == CallKind.INTERNAL_CALL and stmt.callee:
            helpers.add(stmt.callee)
    return guards, helpers


def _storage_reads(functions: List[Function]) -> Dict[str, FrozenSet[str]]:
    """Storage each function reads, including through the internal functions it calls."""
    direct = {
        func.id: {stmt.var for stmt in func.statements() if isinstance(stmt, StorageRead)}
        for func in functions
    }
    graph = call_graph(functions)
    reads: Dict[str, FrozenSet[str]] = {}
    for fid in direct:
        seen: Set[str] = set()
        worklist = [fid]
        collected: Set[str] = set()
        while worklist:
            current = worklist.pop()
            if current in seen or current not in direct:
                continue
            seen.add(current)
            collected |= direct[current]
            worklist.extend(graph.get(current, frozenset()))
        reads[fid] = frozenset(collected)
    return reads


def _mutators(functions: List[Function]) -> Dict[str, Set[str]]:
    written: Dict[str, Set[str]] = {}
    for func in functions:
        for stmt in func.statements():
            if isinstance(stmt, StorageWrite):
                written.setdefault(stmt.var, set()).add(func.id)
    return written


def compute_restricted(functions: List[Function]) -> FrozenSet[str]:
    """
    Functions whose entry is guarded by a caller restriction.

    A call in the entry block to a restricted helper (e.g. `_checkOwner()`)
    restricts the caller too. A guard holds only while no unrestricted caller
    can write the storage it consults, directly or through a guard helper
    such as `isMember(msg.sender)`. Starts from every guarded function and
    drops those whose guards fail until nothing changes.
    """
    entry = {func.id: _entry_guards(func) for func in functions}
    reads = _storage_reads(functions)
    mutators = _mutators(functions)

    restricted = {fid for fid, (guards, _) in entry.items() if guards}
    changed = True
    while changed:
        changed = False
        for fid, (_, helpers) in entry.items():
            if fid not in restricted and helpers & restricted:
                restricted.add(fid)
                changed = True

    def consulted(guard: Require) -> FrozenSet[str]:
        names = guard.cond.storage_reads if guard.cond is not None else frozenset()
        for helper in guard.guard_callees:
            names = names | reads.get(helper, frozenset())
        return names

    changed = True
    while changed:
        changed = False
        reachable = compute_reachable(functions, frozenset(restricted))
        for fid in sorted(restricted):
            guards, helpers = entry[fid]
            holds = any(
                not any(mutators.get(var, set()) & reachable for var in consulted(guard))
                for guard in guards
            )
            if not holds and not helpers & restricted:
                restricted.discard(fid)
                changed = True
    return frozenset(restricted)


def compute_reachable(functions: List[Function], restricted: FrozenSet[str]) -> FrozenSet[str]:
    """
    Functions an unrestricted external caller can execute.

    Starts from externally callable, unrestricted functions and follows the
    call graph into unrestricted callees.
    """
    graph = call_graph(functions)
    worklist = [
        func.id for func in functions if func.externally_callable and func.id not in restricted
    ]
    reachable: Set[str] = set()
    while worklist:
        fid = worklist.pop()
        if fid in reachable:
            continue
        reachable.add(fid)
        for callee in graph.get(fid, frozenset()):
            if callee in graph and callee not in restricted and callee not in reachable:
                worklist.append(callee)
    return frozenset(reachable)


def build_storage_table(
    contract: ContractDecl,
    functions: List[Function],
    reachable: FrozenSet[str],
) -> StorageTable:
    """
    Build the storage variable arena for a contract.

    Args:
        contract: Contract declaration with resolved state variables
        functions: Built functions of the contract
        reachable: Functions reachable by an unrestricted caller

    Returns:
        StorageTable in declaration order
    """
    mutators: Dict[str, Set[str]] = {}
    appenders: Dict[str, Set[str]] = {}
    for func in functions:
        for stmt in func.statements():
            if not isinstance(stmt, StorageWrite):
                continue
            mutators.setdefault(stmt.var, set()).add(func.id)
            if stmt.is_append:
                appenders.setdefault(stmt.var, set()).add(func.id)

    variables = []
    seen = set()
    for var in contract.state_vars:
        name = var.get("name", "")
        if not name or name in seen:
            continue
        if var.get("constant") or var.get("mutability") in ("constant", "immutable"):
            continue
        seen.add(name)
        var_type = classify_var_type(var)
        appended = frozenset(appenders.get(name, set()))
        growable = appended & reachable if var_type == VarType.DYNAMIC_ARRAY else frozenset()
        variables.append(
            StorageVariable(
                name=name,
                type=var_type,
                type_string=(var.get("typeDescriptions") or {}).get("typeString") or "",
                mutators=frozenset(mutators.get(name, set())),
                appenders=appended,
                growable_by=growable,
            )
        )
    return StorageTable(variables=tuple(variables))


def build_contract_ir(
    contract: ContractDecl,
    stipend: Optional[int] = None,
    trusted_addresses: Optional[Iterable[str]] = None,
) -> Tuple[ContractIR, List[Tuple[str, str]]]:
    """
    Phase 1: build every function and the shared storage facts.

    Args:
        contract: Contract declaration
        stipend: Gas stipend for transfer/send
        trusted_addresses: Address literals treated as internal targets

    Returns:
        Tuple of (ContractIR, skipped functions as (function id, message))
    """
    builder = CFGBuilder(contract, stipend=stipend, trusted_addresses=trusted_addresses)
    functions, skipped = builder.build_all()

    restricted = compute_restricted(functions)
    reachable = compute_reachable(functions, restricted)
    storage = build_storage_table(contract, functions, reachable)

    logger.info(
        "contract_ir_built",
        contract=contract.name,
        functions=len(functions),
        skipped=len(skipped),
        storage_vars=len(storage),
        restricted=sorted(restricted),
    )
    return (
        ContractIR(
            name=contract.name,
            functions=functions,
            storage=storage,
            restricted=restricted,
            reachable=reachable,
        ),
        skipped,
    )
