"""External-call classification.

The CFG builder records a CallSite for every call it lowers; classify_call
turns it into a (kind, gas_mode, external) triple. Classification is pure
and total: anything it cannot resolve is treated as an external call that
forwards all gas.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple

from dosscan.analysis.expressions import (
    Scope,
    is_caller,
    storage_base,
    strip_conversions,
)
from dosscan.analysis.ir import CallKind, GasMode, TargetOrigin
from dosscan.config import settings

RAW_PRIMITIVES = {"call", "delegatecall", "staticcall", "callcode"}
TRANSFER_PRIMITIVES = {"transfer", "send"}
INTERNAL_PRIMITIVES = {"function", "library", "self"}


@dataclass(frozen=True)
class CallSite:
    """Syntactic facts about one call expression."""

    primitive: str
    origin: TargetOrigin = TargetOrigin.UNKNOWN
    target_literal: Optional[str] = None
    gas_explicit: bool = False
    gas_amount: Optional[int] = None
    gas_from_gasleft: bool = False
    has_value: bool = False
    has_selector: bool = False


@dataclass(frozen=True)
class CallClassification:
    kind: CallKind
    gas_mode: GasMode
    external: bool
    origin: TargetOrigin


def _normalize_address(value: str) -> str:
    return value.strip().lower()


def classify_call(
    site: CallSite,
    stipend: Optional[int] = None,
    trusted_addresses: Optional[Iterable[str]] = None,
) -> CallClassification:
    """
    Classify a call site.

    Args:
        site: Facts recorded by the CFG builder
        stipend: Gas stipend for transfer/send (defaults to settings)
        trusted_addresses: Address literals treated as internal targets

    Returns:
        CallClassification for the site
    """
    if stipend is None:
        stipend = settings.transfer_stipend
    if trusted_addresses is None:
        trusted_addresses = settings.trusted_addresses
    trusted = {_normalize_address(a) for a in trusted_addresses}

    origin = site.origin
    if (
        origin == TargetOrigin.CONSTANT
        and site.target_literal
        and _normalize_address(site.target_literal) in trusted
    ):
        origin = TargetOrigin.TRUSTED

    if site.primitive in INTERNAL_PRIMITIVES or origin in (TargetOrigin.SELF, TargetOrigin.TRUSTED):
        return CallClassification(CallKind.INTERNAL_CALL, GasMode.none(), False, origin)

    if site.primitive == "transfer":
        return CallClassification(CallKind.TRANSFER, GasMode.capped(stipend), True, origin)
    if site.primitive == "send":
        return CallClassification(CallKind.SEND, GasMode.capped(stipend), True, origin)

    if site.gas_explicit and not site.gas_from_gasleft:
        gas_mode = GasMode.capped(site.gas_amount)
    else:
        gas_mode = GasMode.forward_all()
    return CallClassification(CallKind.RAW_CALL, gas_mode, True, origin)


def resolve_target_origin(
    node: Optional[Dict[str, Any]],
    scope: Scope,
) -> Tuple[TargetOrigin, Optional[str]]:
    """
    Decide where a call target address comes from.

    Args:
        node: Target expression (the base of `x.call`, `x.transfer`, ...)
        scope: Name resolution context of the calling function

    Returns:
        Tuple of (origin, address literal if the target is a constant)
    """
    if not isinstance(node, dict):
        return TargetOrigin.UNKNOWN, None
    node = strip_conversions(node)
    nt = node.get("nodeType")

    if is_caller(node):
        return TargetOrigin.CALLER, None

    if nt == "Literal":
        value = node.get("value")
        return TargetOrigin.CONSTANT, str(value) if value is not None else None

    if nt == "Identifier":
        name = node.get("name", "")
        if name == "this":
            return TargetOrigin.SELF, None
        if scope.is_parameter(name):
            return TargetOrigin.PARAMETER, None
        if name in scope.locals:
            if scope.reads_of(name):
                return TargetOrigin.STORAGE, None
            return TargetOrigin.UNKNOWN, None
        if name in scope.constants:
            literal = scope.constants[name]
            if literal and literal.get("nodeType") == "Literal":
                return TargetOrigin.CONSTANT, str(literal.get("value"))
            return TargetOrigin.CONSTANT, None
        if name in scope.libraries:
            return TargetOrigin.TRUSTED, None
        if scope.is_storage(name):
            return TargetOrigin.STORAGE, None
        return TargetOrigin.UNKNOWN, None

    if nt in ("IndexAccess", "MemberAccess"):
        if storage_base(node, scope):
            return TargetOrigin.STORAGE, None
        return TargetOrigin.UNKNOWN, None

    if nt == "FunctionCall":
        return TargetOrigin.FUNCTION, None

    return TargetOrigin.UNKNOWN, None
