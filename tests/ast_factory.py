"""Builders for solc compact JSON AST nodes used across the tests."""

import itertools
from typing import Any, Dict, List, Optional

from dosscan.analysis.ast_parser import ContractDecl, SourceUnit, extract_contracts

Node = Dict[str, Any]

_ids = itertools.count(1)


def _node(node_type: str, **fields: Any) -> Node:
    node = {"id": next(_ids), "nodeType": node_type, "src": fields.pop("src", "0:0:0")}
    node.update(fields)
    return node


def typed(type_string: str) -> Dict[str, str]:
    return {"typeIdentifier": "", "typeString": type_string}


# expressions

def ident(name: str, type_string: str = "", ref: Optional[int] = None) -> Node:
    return _node(
        "Identifier",
        name=name,
        referencedDeclaration=ref,
        typeDescriptions=typed(type_string),
    )


def number(value: Any, unit: Optional[str] = None) -> Node:
    return _node(
        "Literal",
        kind="number",
        value=str(value),
        subdenomination=unit,
        typeDescriptions=typed("int_const"),
    )


def boolean(value: bool) -> Node:
    return _node("Literal", kind="bool", value="true" if value else "false", typeDescriptions=typed("bool"))


def string(value: str = "") -> Node:
    return _node("Literal", kind="string", value=value, typeDescriptions=typed("literal_string"))


def member(expr: Node, name: str, type_string: str = "") -> Node:
    return _node("MemberAccess", expression=expr, memberName=name, typeDescriptions=typed(type_string))


def index(base: Node, idx: Node, type_string: str = "") -> Node:
    return _node("IndexAccess", baseExpression=base, indexExpression=idx, typeDescriptions=typed(type_string))


def call(expr: Node, *args: Node, kind: str = "functionCall", type_string: str = "") -> Node:
    return _node(
        "FunctionCall",
        expression=expr,
        arguments=list(args),
        kind=kind,
        typeDescriptions=typed(type_string),
    )


def convert(type_name: str, arg: Node) -> Node:
    """`payable(x)` / `address(x)` style conversion."""
    payable = type_name == "payable"
    elementary = _node(
        "ElementaryTypeNameExpression",
        typeName={
            "nodeType": "ElementaryTypeName",
            "name": "address" if payable else type_name,
            "stateMutability": "payable" if payable else "nonpayable",
        },
    )
    result_type = "address payable" if payable else type_name
    return call(elementary, arg, kind="typeConversion", type_string=result_type)


def with_options(expr: Node, **opts: Node) -> Node:
    return _node(
        "FunctionCallOptions",
        expression=expr,
        names=list(opts),
        options=list(opts.values()),
    )


def binary(left: Node, op: str, right: Node) -> Node:
    return _node(
        "BinaryOperation",
        leftExpression=left,
        operator=op,
        rightExpression=right,
        typeDescriptions=typed("bool" if op in ("==", "!=", "<", ">", "<=", ">=", "&&", "||") else "uint256"),
    )


def unary(op: str, sub: Node, prefix: bool = True) -> Node:
    return _node("UnaryOperation", operator=op, prefix=prefix, subExpression=sub)


def assign(lhs: Node, rhs: Node, op: str = "=") -> Node:
    return _node("Assignment", leftHandSide=lhs, operator=op, rightHandSide=rhs)


def tuple_of(*components: Optional[Node]) -> Node:
    return _node("TupleExpression", components=list(components))


def msg_sender() -> Node:
    return member(ident("msg"), "sender", "address")


def msg_value() -> Node:
    return member(ident("msg"), "value", "uint256")


def gasleft() -> Node:
    return call(ident("gasleft"), type_string="uint256")


def address_call(
    target: Node,
    value: Optional[Node] = None,
    gas: Optional[Node] = None,
    primitive: str = "call",
) -> Node:
    """`target.call{value: v, gas: g}("")`."""
    expr = member(target, primitive, "function (bytes memory) payable returns (bool,bytes memory)")
    opts = {}
    if value is not None:
        opts["value"] = value
    if gas is not None:
        opts["gas"] = gas
    if opts:
        expr = with_options(expr, **opts)
    return call(expr, string(""), type_string="tuple(bool,bytes memory)")


def transfer(target: Node, amount: Node, primitive: str = "transfer") -> Node:
    return call(member(target, primitive, "function (uint256)"), amount)


def push(array: Node, value: Node) -> Node:
    return call(member(array, "push", "function (address[] storage pointer,address)"), value)


def internal_call(name: str, *args: Node, ref: Optional[int] = None) -> Node:
    return call(ident(name, "function ()", ref=ref), *args)


# statements

def expr_stmt(expr: Node) -> Node:
    return _node("ExpressionStatement", expression=expr)


def require(cond: Node) -> Node:
    return expr_stmt(call(ident("require"), cond))


def assert_(cond: Node) -> Node:
    return expr_stmt(call(ident("assert"), cond))


def revert() -> Node:
    return expr_stmt(call(ident("revert")))


def var_decl(
    name: str,
    type_string: str = "uint256",
    storage_location: str = "default",
    type_name: Optional[Node] = None,
    state: bool = False,
    constant: bool = False,
    value: Optional[Node] = None,
    mutability: str = "mutable",
) -> Node:
    return _node(
        "VariableDeclaration",
        name=name,
        typeName=type_name or elementary_type(type_string.split(" ")[0]),
        storageLocation=storage_location,
        stateVariable=state,
        constant=constant,
        mutability="constant" if constant else mutability,
        value=value,
        typeDescriptions=typed(type_string),
    )


def declare(declarations: List[Optional[Node]], init: Optional[Node] = None) -> Node:
    return _node("VariableDeclarationStatement", declarations=declarations, initialValue=init)


def block(*statements: Node) -> Node:
    return _node("Block", statements=list(statements))


def if_(cond: Node, true_body: Node, false_body: Optional[Node] = None) -> Node:
    return _node("IfStatement", condition=cond, trueBody=true_body, falseBody=false_body)


def for_(init: Optional[Node], cond: Optional[Node], step: Optional[Node], body: Node) -> Node:
    return _node(
        "ForStatement",
        initializationExpression=init,
        condition=cond,
        loopExpression=step,
        body=body,
    )


def while_(cond: Node, body: Node) -> Node:
    return _node("WhileStatement", condition=cond, body=body)


def return_(expr: Optional[Node] = None) -> Node:
    return _node("Return", expression=expr)


def placeholder() -> Node:
    return _node("PlaceholderStatement")


def counting_loop(bound: Node, *body: Node, var: str = "i") -> Node:
    """`for (uint i = 0; i < bound; i++) { body }`."""
    return for_(
        declare([var_decl(var)], number(0)),
        binary(ident(var, "uint256"), "<", bound),
        expr_stmt(unary("++", ident(var, "uint256"), prefix=False)),
        block(*body),
    )


# types and declarations

def elementary_type(name: str) -> Node:
    return {"nodeType": "ElementaryTypeName", "name": name}


def array_type(base: str = "address", length: Optional[Node] = None) -> Node:
    return {"nodeType": "ArrayTypeName", "baseType": elementary_type(base), "length": length}


def mapping_type(key: str = "address", value: str = "uint256") -> Node:
    return {"nodeType": "Mapping", "keyType": elementary_type(key), "valueType": elementary_type(value)}


def state_var(name: str, type_string: str = "uint256", type_name: Optional[Node] = None, **kwargs: Any) -> Node:
    return var_decl(name, type_string, type_name=type_name, state=True, **kwargs)


def address_array(name: str) -> Node:
    return state_var(name, "address[]", type_name=array_type("address"))


def mapping_var(name: str, key: str = "address", value: str = "uint256") -> Node:
    return state_var(name, f"mapping({key} => {value})", type_name=mapping_type(key, value))


def param(name: str, type_string: str = "uint256") -> Node:
    return var_decl(name, type_string)


def parameters(*params: Node) -> Node:
    return _node("ParameterList", parameters=list(params))


def invoke(modifier_name: str, *args: Node) -> Node:
    return _node(
        "ModifierInvocation",
        modifierName=ident(modifier_name),
        arguments=list(args),
        kind="modifierInvocation",
    )


def function(
    name: str,
    *statements: Node,
    params: tuple = (),
    returns: tuple = (),
    visibility: str = "public",
    mutability: str = "nonpayable",
    kind: str = "function",
    modifiers: tuple = (),
    implemented: bool = True,
) -> Node:
    return _node(
        "FunctionDefinition",
        name=name,
        kind=kind,
        visibility=visibility,
        stateMutability=mutability,
        parameters=parameters(*params),
        returnParameters=parameters(*returns),
        modifiers=list(modifiers),
        body=block(*statements) if implemented else None,
        implemented=implemented,
    )


def modifier(name: str, *statements: Node, params: tuple = ()) -> Node:
    return _node("ModifierDefinition", name=name, parameters=parameters(*params), body=block(*statements))


def contract(
    name: str,
    *nodes: Node,
    kind: str = "contract",
    bases: tuple = (),
    abstract: bool = False,
) -> Node:
    node = _node("ContractDefinition", name=name, contractKind=kind, abstract=abstract, nodes=list(nodes))
    node["linearizedBaseContracts"] = [node["id"], *(base["id"] for base in bases)]
    return node


def source_unit(*contracts: Node, path: str = "Test.sol") -> Node:
    return _node("SourceUnit", absolutePath=path, nodes=list(contracts), src="0:0:0")


def contract_decl(*nodes: Node, name: str = "Test") -> ContractDecl:
    """Wrap member nodes in a contract and run it through extract_contracts."""
    unit = SourceUnit(name="Test.sol", ast=source_unit(contract(name, *nodes)))
    return extract_contracts([unit])[0]
