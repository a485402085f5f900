"""Expression helpers over the solc compact JSON AST.

Rendering, storage read collection, boolean truthiness facts and the
structural caller-restriction predicate all live here so that the CFG
builder only deals with statements.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Set

from dosscan.analysis.ir import ExprInfo, MalformedAST

SOLIDITY_BUILTINS = {
    "require", "assert", "revert", "keccak256", "sha256", "sha3", "ripemd160",
    "ecrecover", "addmod", "mulmod", "gasleft", "blockhash", "selfdestruct",
    "suicide", "type", "abi", "block", "msg", "tx", "this", "super", "now",
}

CALLER_EXPRESSIONS = {"msg.sender", "tx.origin"}
CALLER_HELPERS = {"_msgSender"}


def node_type(node: Any) -> str:
    """Return the nodeType of an AST node or raise MalformedAST."""
    if not isinstance(node, dict):
        raise MalformedAST(f"expected AST node, got {type(node).__name__}")
    nt = node.get("nodeType")
    if not nt:
        raise MalformedAST("AST node without nodeType", src=node.get("src"))
    return nt


def strip_conversions(node: Dict[str, Any]) -> Dict[str, Any]:
    """Unwrap payable(x), address(x) and parenthesized single expressions."""
    while isinstance(node, dict):
        nt = node.get("nodeType")
        if nt == "FunctionCall" and _is_type_conversion(node) and len(node.get("arguments") or []) == 1:
            node = node["arguments"][0]
        elif nt == "TupleExpression" and len(node.get("components") or []) == 1 and node["components"][0]:
            node = node["components"][0]
        else:
            break
    return node


def _is_type_conversion(node: Dict[str, Any]) -> bool:
    if node.get("kind") == "typeConversion":
        return True
    expr = node.get("expression") or {}
    return expr.get("nodeType") == "ElementaryTypeNameExpression"


def is_type_conversion(node: Dict[str, Any]) -> bool:
    return node.get("nodeType") == "FunctionCall" and _is_type_conversion(node)


def literal_int(node: Optional[Dict[str, Any]]) -> Optional[int]:
    """Integer value of a number literal, or None."""
    if not node or node.get("nodeType") != "Literal" or node.get("kind") != "number":
        return None
    value = str(node.get("value", "")).replace("_", "")
    subdenomination = node.get("subdenomination")
    try:
        number = int(value, 0)
    except ValueError:
        return None
    if subdenomination == "gwei":
        number *= 10**9
    elif subdenomination in ("ether", "eth"):
        number *= 10**18
    return number


def is_gasleft(node: Optional[Dict[str, Any]]) -> bool:
    """True if the expression is, or is derived from, gasleft()."""
    if not isinstance(node, dict):
        return False
    if node.get("nodeType") == "FunctionCall":
        callee = node.get("expression") or {}
        if callee.get("nodeType") == "Identifier" and callee.get("name") == "gasleft":
            return True
    for child in child_nodes(node):
        if is_gasleft(child):
            return True
    return False


def dotted_name(node: Optional[Dict[str, Any]]) -> Optional[str]:
    """Return "a.b.c" for identifier/member chains, else None."""
    if not isinstance(node, dict):
        return None
    nt = node.get("nodeType")
    if nt == "Identifier":
        return node.get("name")
    if nt == "MemberAccess":
        base = dotted_name(node.get("expression"))
        if base is None:
            return None
        return f"{base}.{node.get('memberName', '')}"
    return None


def type_string(node: Optional[Dict[str, Any]]) -> str:
    if not isinstance(node, dict):
        return ""
    return (node.get("typeDescriptions") or {}).get("typeString") or ""


def render(node: Any) -> str:
    """Render an expression node back to Solidity-like text."""
    if node is None:
        return ""
    if not isinstance(node, dict):
        return str(node)
    nt = node.get("nodeType", "")

    if nt == "Identifier":
        return node.get("name", "")
    if nt == "Literal":
        kind = node.get("kind")
        value = node.get("value")
        if value is None:
            value = node.get("hexValue", "")
        if kind == "string":
            return f'"{value}"'
        unit = node.get("subdenomination")
        return f"{value} {unit}" if unit else str(value)
    if nt == "MemberAccess":
        return f"{render(node.get('expression'))}.{node.get('memberName', '')}"
    if nt == "IndexAccess":
        return f"{render(node.get('baseExpression'))}[{render(node.get('indexExpression'))}]"
    if nt == "FunctionCall":
        args = ", ".join(render(a) for a in node.get("arguments") or [])
        return f"{render(node.get('expression'))}({args})"
    if nt == "FunctionCallOptions":
        opts = ", ".join(
            f"{name}: {render(opt)}"
            for name, opt in zip(node.get("names") or [], node.get("options") or [])
        )
        return f"{render(node.get('expression'))}{{{opts}}}"
    if nt == "BinaryOperation":
        return f"{render(node.get('leftExpression'))} {node.get('operator', '?')} {render(node.get('rightExpression'))}"
    if nt == "UnaryOperation":
        op = node.get("operator", "")
        sub = render(node.get("subExpression"))
        if op == "delete":
            return f"delete {sub}"
        return f"{op}{sub}" if node.get("prefix", True) else f"{sub}{op}"
    if nt == "Assignment":
        return f"{render(node.get('leftHandSide'))} {node.get('operator', '=')} {render(node.get('rightHandSide'))}"
    if nt == "TupleExpression":
        return "(" + ", ".join(render(c) if c else "" for c in node.get("components") or []) + ")"
    if nt == "Conditional":
        return (
            f"{render(node.get('condition'))} ? {render(node.get('trueExpression'))} "
            f": {render(node.get('falseExpression'))}"
        )
    if nt == "ElementaryTypeNameExpression":
        type_name = node.get("typeName")
        if isinstance(type_name, dict):
            name = type_name.get("name", "")
            if type_name.get("stateMutability") == "payable" and name == "address":
                return "payable"
            return name
        return str(type_name or "")
    if nt == "NewExpression":
        return f"new {_render_type(node.get('typeName'))}"
    if nt == "IndexRangeAccess":
        return (
            f"{render(node.get('baseExpression'))}[{render(node.get('startExpression'))}:"
            f"{render(node.get('endExpression'))}]"
        )
    return nt


def _render_type(type_name: Any) -> str:
    if not isinstance(type_name, dict):
        return str(type_name or "")
    nt = type_name.get("nodeType")
    if nt == "ArrayTypeName":
        length = type_name.get("length")
        return f"{_render_type(type_name.get('baseType'))}[{render(length) if length else ''}]"
    if nt == "Mapping":
        return f"mapping({_render_type(type_name.get('keyType'))} => {_render_type(type_name.get('valueType'))})"
    if nt == "UserDefinedTypeName":
        path = type_name.get("pathNode") or {}
        return type_name.get("name") or path.get("name") or ""
    return type_name.get("name", "")


def child_nodes(node: Dict[str, Any]) -> Iterable[Dict[str, Any]]:
    for key, value in node.items():
        if key in ("typeDescriptions", "src", "id", "nodeType", "typeName"):
            continue
        if isinstance(value, dict) and "nodeType" in value:
            yield value
        elif isinstance(value, list):
            for item in value:
                if isinstance(item, dict) and "nodeType" in item:
                    yield item


@dataclass
class Scope:
    """Name resolution context for one function body."""

    state_vars: Set[str] = field(default_factory=set)
    constants: Dict[str, Optional[Dict[str, Any]]] = field(default_factory=dict)
    parameters: Set[str] = field(default_factory=set)
    locals: Set[str] = field(default_factory=set)
    aliases: Dict[str, FrozenSet[str]] = field(default_factory=dict)
    derived: Dict[str, FrozenSet[str]] = field(default_factory=dict)
    libraries: Set[str] = field(default_factory=set)
    functions: Set[str] = field(default_factory=set)
    contract_name: str = ""

    def is_storage(self, name: Optional[str]) -> bool:
        return (
            bool(name)
            and name in self.state_vars
            and name not in self.parameters
            and name not in self.locals
        )

    def is_parameter(self, name: Optional[str]) -> bool:
        return bool(name) and name in self.parameters and name not in self.locals

    def storage_of(self, name: Optional[str]) -> FrozenSet[str]:
        """Storage variables a bare identifier stands for."""
        if not name:
            return frozenset()
        if name in self.aliases:
            return self.aliases[name]
        if self.is_storage(name):
            return frozenset({name})
        return frozenset()

    def reads_of(self, name: Optional[str]) -> FrozenSet[str]:
        """Storage a name reads from, including value copies such as `n = arr.length`."""
        if name and name in self.derived:
            return self.derived[name] | self.storage_of(name)
        return self.storage_of(name)


def storage_base(node: Optional[Dict[str, Any]], scope: Scope) -> FrozenSet[str]:
    """Storage variables an lvalue ultimately lives in.

    Walks index and member chains down to the root identifier.
    """
    while isinstance(node, dict):
        nt = node.get("nodeType")
        if nt == "Identifier":
            return scope.storage_of(node.get("name"))
        if nt == "IndexAccess":
            node = node.get("baseExpression")
        elif nt == "MemberAccess":
            node = node.get("expression")
        elif nt == "TupleExpression" and len(node.get("components") or []) == 1:
            node = node["components"][0]
        else:
            return frozenset()
    return frozenset()


class ExprSummarizer:
    """Summarize expressions into ExprInfo.

    call_tokens maps id(call_node) to the synthetic result name of an
    ExternalCall already emitted for that node.
    """

    def __init__(self, scope: Scope, call_tokens: Optional[Mapping[int, str]] = None) -> None:
        self.scope = scope
        self.call_tokens = call_tokens if call_tokens is not None else {}

    def summarize(self, node: Optional[Dict[str, Any]]) -> ExprInfo:
        if node is None:
            return ExprInfo(text="")
        names: Set[str] = set()
        reads: Set[str] = set()
        self._collect(node, names, reads)
        truthy, falsy = self._truth(node)
        return ExprInfo(
            text=render(node),
            names=frozenset(names),
            storage_reads=frozenset(reads),
            truthy=truthy,
            falsy=falsy,
        )

    def _collect(self, node: Dict[str, Any], names: Set[str], reads: Set[str]) -> None:
        token = self.call_tokens.get(id(node))
        if token:
            names.add(token)
            return
        nt = node.get("nodeType")
        if nt == "Identifier":
            name = node.get("name", "")
            names.add(name)
            reads.update(self.scope.reads_of(name))
            return
        for child in child_nodes(node):
            self._collect(child, names, reads)

    def _truth(self, node: Optional[Dict[str, Any]]):
        empty: FrozenSet[str] = frozenset()
        if not isinstance(node, dict):
            return empty, empty
        token = self.call_tokens.get(id(node))
        if token:
            return frozenset({token}), empty

        nt = node.get("nodeType")
        if nt == "Identifier":
            return frozenset({node.get("name", "")}), empty
        if nt == "TupleExpression" and len(node.get("components") or []) == 1:
            return self._truth(node["components"][0])
        if nt == "UnaryOperation" and node.get("operator") == "!":
            truthy, falsy = self._truth(node.get("subExpression"))
            return falsy, truthy
        if nt == "BinaryOperation":
            op = node.get("operator")
            left, right = node.get("leftExpression"), node.get("rightExpression")
            if op == "&&":
                lt, lf = self._truth(left)
                rt, rf = self._truth(right)
                return lt | rt, lf | rf
            if op == "||":
                lt, lf = self._truth(left)
                rt, rf = self._truth(right)
                return lt & rt, lf & rf
            if op in ("==", "!="):
                for side, other in ((left, right), (right, left)):
                    flag = _bool_literal(other)
                    if flag is None:
                        continue
                    truthy, falsy = self._truth(side)
                    if (op == "==") == flag:
                        return truthy, falsy
                    return falsy, truthy
        return empty, empty


def _bool_literal(node: Optional[Dict[str, Any]]) -> Optional[bool]:
    if isinstance(node, dict) and node.get("nodeType") == "Literal" and node.get("kind") == "bool":
        return str(node.get("value")) == "true"
    return None


def is_caller(node: Optional[Dict[str, Any]]) -> bool:
    """msg.sender, tx.origin or a _msgSender() helper call."""
    node = strip_conversions(node) if isinstance(node, dict) else node
    if not isinstance(node, dict):
        return False
    if dotted_name(node) in CALLER_EXPRESSIONS:
        return True
    if node.get("nodeType") == "FunctionCall":
        callee = node.get("expression") or {}
        return callee.get("nodeType") == "Identifier" and callee.get("name") in CALLER_HELPERS
    return False


def _is_zero_literal(node: Dict[str, Any]) -> bool:
    value = literal_int(node)
    return value == 0


def _privileged_operand(node: Optional[Dict[str, Any]], scope: Scope) -> bool:
    """The other side of a caller comparison names a fixed principal."""
    if not isinstance(node, dict):
        return False
    node = strip_conversions(node)
    if is_caller(node) or _is_zero_literal(node):
        return False
    nt = node.get("nodeType")
    if nt == "Identifier":
        name = node.get("name")
        if scope.is_parameter(name) or name in scope.locals:
            return False
        return True
    if nt == "Literal":
        return True
    if nt in ("FunctionCall", "MemberAccess", "IndexAccess"):
        return not _mentions_parameter(node, scope)
    return False


def _mentions_parameter(node: Dict[str, Any], scope: Scope) -> bool:
    if node.get("nodeType") == "Identifier":
        return scope.is_parameter(node.get("name"))
    return any(_mentions_parameter(child, scope) for child in child_nodes(node))


def _mentions_caller(node: Optional[Dict[str, Any]]) -> bool:
    if not isinstance(node, dict):
        return False
    if is_caller(node):
        return True
    return any(_mentions_caller(child) for child in child_nodes(node))


def restricts_caller(node: Optional[Dict[str, Any]], scope: Scope, negated: bool = False) -> bool:
    """Whether requiring `node` to hold pins the caller to a privileged principal.

    Structural only: equality of msg.sender/tx.origin with a non-parameter
    operand, a storage lookup keyed by the caller, or a boolean call that
    receives the caller as an argument.
    """
    if not isinstance(node, dict):
        return False
    nt = node.get("nodeType")

    if nt == "TupleExpression" and len(node.get("components") or []) == 1:
        return restricts_caller(node["components"][0], scope, negated)
    if nt == "UnaryOperation" and node.get("operator") == "!":
        return restricts_caller(node.get("subExpression"), scope, not negated)
    if nt == "BinaryOperation":
        op = node.get("operator")
        left, right = node.get("leftExpression"), node.get("rightExpression")
        if op in ("&&", "||"):
            parts: List[bool] = [
                restricts_caller(left, scope, negated),
                restricts_caller(right, scope, negated),
            ]
            conjunctive = (op == "&&") != negated
            return any(parts) if conjunctive else all(parts)
        if (op == "==" and not negated) or (op == "!=" and negated):
            return (is_caller(left) and _privileged_operand(right, scope)) or (
                is_caller(right) and _privileged_operand(left, scope)
            )
        return False
    if negated:
        return False
    if nt == "IndexAccess":
        return _mentions_caller(node.get("indexExpression")) and bool(storage_base(node, scope))
    if nt == "FunctionCall" and not is_type_conversion(node):
        return any(is_caller(arg) for arg in node.get("arguments") or [])
    return False
