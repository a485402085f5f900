"""Control Flow Graph (CFG) builder for Solidity functions.

Lowers the solc compact JSON AST of each function into BasicBlocks of typed
IR statements (see dosscan.analysis.ir).
"""

import dataclasses
from collections import Counter
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

import structlog

from dosscan.analysis.ast_parser import ContractDecl
from dosscan.analysis.call_classifier import (
    RAW_PRIMITIVES,
    TRANSFER_PRIMITIVES,
    CallSite,
    classify_call,
    resolve_target_origin,
)
from dosscan.analysis.expressions import (
    SOLIDITY_BUILTINS,
    ExprSummarizer,
    Scope,
    child_nodes,
    is_gasleft,
    is_type_conversion,
    literal_int,
    node_type,
    render,
    restricts_caller,
    storage_base,
    strip_conversions,
    type_string,
)
from dosscan.analysis.ir import (
    Assert,
    BasicBlock,
    ExprInfo,
    ExternalCall,
    Function,
    LoopHeader,
    MalformedAST,
    Require,
    Return,
    Revert,
    Statement,
    StorageRead,
    StorageWrite,
    TargetOrigin,
)

logger = structlog.get_logger()

COMPARISON_OPERATORS = {"<", "<=", ">", ">=", "!="}
SPECIAL_KINDS = ("constructor", "fallback", "receive")


def _conjuncts(node: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not isinstance(node, dict):
        return []
    node = strip_conversions(node)
    if node.get("nodeType") == "BinaryOperation" and node.get("operator") == "&&":
        return _conjuncts(node.get("leftExpression")) + _conjuncts(node.get("rightExpression"))
    return [node]


def _is_identifier(node: Optional[Dict[str, Any]], name: Optional[str]) -> bool:
    if not isinstance(node, dict) or not name:
        return False
    node = strip_conversions(node)
    return node.get("nodeType") == "Identifier" and node.get("name") == name


def _is_revert_only(body: Optional[Dict[str, Any]]) -> bool:
    """`revert(...)`, `revert E()` or a block holding only one of those."""
    if not isinstance(body, dict):
        return False
    if body.get("nodeType") == "Block":
        statements = body.get("statements") or []
        if len(statements) != 1:
            return False
        body = statements[0]
    if body.get("nodeType") == "RevertStatement":
        return True
    if body.get("nodeType") == "ExpressionStatement":
        expr = body.get("expression") or {}
        callee = expr.get("expression") or {}
        return (
            expr.get("nodeType") == "FunctionCall"
            and callee.get("nodeType") == "Identifier"
            and callee.get("name") == "revert"
        )
    return False


def _is_raw_member(node: Any) -> bool:
    """`x.call`, possibly already wrapped in legacy `.value()`/`.gas()` calls."""
    while isinstance(node, dict):
        if node.get("nodeType") == "MemberAccess" and node.get("memberName") in RAW_PRIMITIVES:
            return True
        if node.get("nodeType") != "FunctionCall":
            return False
        inner = node.get("expression") or {}
        if inner.get("nodeType") != "MemberAccess" or inner.get("memberName") not in ("value", "gas"):
            return False
        node = inner.get("expression")
    return False


def _contains_placeholder(node: Any) -> bool:
    if not isinstance(node, dict):
        return False
    if node.get("nodeType") == "PlaceholderStatement":
        return True
    for key in ("statements", "trueBody", "falseBody", "body", "block", "clauses"):
        value = node.get(key)
        items = value if isinstance(value, list) else [value]
        if any(_contains_placeholder(item) for item in items):
            return True
    return False


def _param_types(node: Dict[str, Any]) -> str:
    params = (node.get("parameters") or {}).get("parameters") or []
    return ",".join(type_string(p) or type_string(p.get("typeName")) for p in params)


def _param_names(node: Dict[str, Any]) -> List[str]:
    params = (node.get("parameters") or {}).get("parameters") or []
    return [p.get("name") for p in params if p.get("name")]


class _FunctionLowering:
    """Mutable state while lowering one function body."""

    def __init__(self, builder: "CFGBuilder", node: Dict[str, Any], function_id: str) -> None:
        self.builder = builder
        self.node = node
        self.function_id = function_id
        self.blocks: Dict[int, BasicBlock] = {}
        self.loops: List[Tuple[int, int]] = []
        self.loop_frames: List[Tuple[int, Set[int]]] = []
        self.loop_bodies: Dict[int, FrozenSet[int]] = {}
        self.callees: Set[str] = set()
        self.call_tokens: Dict[int, str] = {}
        self.token_callees: Dict[str, str] = {}
        self.line = 0

        self.scope = Scope(
            state_vars=set(builder.state_vars),
            constants=dict(builder.constants),
            parameters=set(_param_names(node)),
            libraries=set(builder.contract.libraries),
            functions=set(builder.function_names),
            contract_name=builder.contract.name,
        )
        for param in (node.get("returnParameters") or {}).get("parameters") or []:
            if param.get("name"):
                self.scope.locals.add(param["name"])
        self.summarizer = ExprSummarizer(self.scope, self.call_tokens)
        self.current = self._new_block("entry")

        self.handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {
            "Block": self._lower_block,
            "UncheckedBlock": self._lower_block,
            "ExpressionStatement": self._lower_expression_statement,
            "VariableDeclarationStatement": self._lower_declaration,
            "IfStatement": self._lower_if,
            "ForStatement": self._lower_for,
            "WhileStatement": self._lower_while,
            "DoWhileStatement": self._lower_do_while,
            "Break": self._lower_break,
            "Continue": self._lower_continue,
            "Return": self._lower_return,
            "RevertStatement": self._lower_revert,
            "EmitStatement": self._lower_emit,
            "TryStatement": self._lower_try,
            "InlineAssembly": lambda node: None,
            "PlaceholderStatement": lambda node: None,
        }

    # blocks

    def _new_block(self, label: str) -> int:
        block_id = len(self.blocks)
        self.blocks[block_id] = BasicBlock(id=block_id, label=label)
        for _, body in self.loop_frames:
            body.add(block_id)
        return block_id

    def _emit(self, stmt: Statement) -> Statement:
        return self.blocks[self.current].append(dataclasses.replace(stmt, line=self.line))

    def _jump(self, target: int, kind: str = "unconditional", condition: Optional[ExprInfo] = None) -> None:
        self.blocks[self.current].add_edge(target, kind, condition)

    def _dead_end(self) -> None:
        self.current = self._new_block("unreachable")

    def _summarize(self, node: Optional[Dict[str, Any]]) -> ExprInfo:
        return self.summarizer.summarize(node)

    def _emit_reads(self, info: ExprInfo) -> None:
        for var in sorted(info.storage_reads):
            self._emit(StorageRead(var=var))

    def _require(self, info: ExprInfo, restricting: bool) -> None:
        helpers = frozenset(self.token_callees[name] for name in info.names if name in self.token_callees)
        self._emit(Require(cond=info, restricts_caller=restricting, guard_callees=helpers))

    # statements

    def lower_modifiers(self) -> None:
        for invocation in self.node.get("modifiers") or []:
            if invocation.get("kind") == "baseConstructorSpecifier":
                continue
            name = (invocation.get("modifierName") or {}).get("name", "")
            modifier = self.builder.contract.modifiers.get(name)
            if modifier is None:
                continue
            for arg in invocation.get("arguments") or []:
                self._lower_expr(arg)
            self.scope.locals.update(_param_names(modifier))

            body = modifier.get("body")
            if not isinstance(body, dict):
                raise MalformedAST(f"modifier {name} without body", "ModifierDefinition", modifier.get("src"))
            for stmt in body.get("statements") or []:
                if _contains_placeholder(stmt):
                    break
                self.lower_statement(stmt)

    def lower_statement(self, node: Dict[str, Any]) -> None:
        nt = node_type(node)
        handler = self.handlers.get(nt)
        if handler is None:
            raise MalformedAST(f"unsupported statement {nt}", nt, node.get("src"))
        self.line = self.builder.line_of(node)
        handler(node)

    def _lower_block(self, node: Dict[str, Any]) -> None:
        for stmt in node.get("statements") or []:
            self.lower_statement(stmt)

    def _lower_expression_statement(self, node: Dict[str, Any]) -> None:
        expr = node.get("expression")
        if expr is None:
            raise MalformedAST("expression statement without expression", "ExpressionStatement", node.get("src"))
        self._lower_expr(expr)

    def _lower_declaration(self, node: Dict[str, Any]) -> None:
        declarations = node.get("declarations") or []
        init = node.get("initialValue")
        first = declarations[0] if declarations else None
        bind = frozenset({first["name"]}) if first and first.get("name") else frozenset()

        if init is not None:
            self._lower_expr(init, bind)
            self._emit_reads(self._summarize(init))

        for decl in declarations:
            if not decl or not decl.get("name"):
                continue
            name = decl["name"]
            self.scope.locals.add(name)
            if init is None:
                continue
            if decl.get("storageLocation") == "storage":
                base = storage_base(init, self.scope)
                if base:
                    self.scope.aliases[name] = base
            elif len(declarations) == 1:
                reads = self._summarize(init).storage_reads
                if reads:
                    self.scope.derived[name] = reads

    def _lower_if(self, node: Dict[str, Any]) -> None:
        cond = node.get("condition")
        if cond is None:
            raise MalformedAST("if without condition", "IfStatement", node.get("src"))
        self._lower_expr(cond)
        info = self._summarize(cond)
        self._emit_reads(info)

        if node.get("falseBody") is None and _is_revert_only(node.get("trueBody")):
            self._require(info.negated(), restricts_caller(cond, self.scope, negated=True))
            return

        branch = self.current
        then_block = self._new_block("if_true")
        else_block = self._new_block("if_false") if node.get("falseBody") else None
        merge = self._new_block("if_merge")

        self.blocks[branch].add_edge(then_block, "true", info)
        self.blocks[branch].add_edge(else_block if else_block is not None else merge, "false", info)

        self.current = then_block
        if node.get("trueBody") is not None:
            self.lower_statement(node["trueBody"])
        self._jump(merge)

        if else_block is not None:
            self.current = else_block
            self.lower_statement(node["falseBody"])
            self._jump(merge)

        self.current = merge

    def _loop_header(self, cond: Optional[Dict[str, Any]], iteration_var: Optional[str]) -> Optional[ExprInfo]:
        info = None
        if cond is not None:
            self._lower_expr(cond)
            info = self._summarize(cond)
            self._emit_reads(info)
        if iteration_var is None:
            iteration_var = self._guess_iteration_var(cond)
        bound = self._loop_bound(cond, iteration_var)
        self._emit(LoopHeader(bound_expr=bound, iteration_var=iteration_var))
        return info

    def _guess_iteration_var(self, cond: Optional[Dict[str, Any]]) -> Optional[str]:
        for part in _conjuncts(cond):
            if part.get("nodeType") != "BinaryOperation" or part.get("operator") not in COMPARISON_OPERATORS:
                continue
            for side in (part.get("leftExpression"), part.get("rightExpression")):
                side = strip_conversions(side) if isinstance(side, dict) else side
                if not isinstance(side, dict) or side.get("nodeType") != "Identifier":
                    continue
                name = side.get("name")
                if name in self.scope.locals or self.scope.is_parameter(name):
                    return name
        return None

    def _loop_bound(self, cond: Optional[Dict[str, Any]], iteration_var: Optional[str]) -> Optional[ExprInfo]:
        """The expression the loop counter is compared against.

        A conjunct with a storage-independent bound wins, since it alone
        limits the iteration count.
        """
        if cond is None:
            return None
        candidates = []
        for part in _conjuncts(cond):
            if part.get("nodeType") != "BinaryOperation" or part.get("operator") not in COMPARISON_OPERATORS:
                continue
            left, right = part.get("leftExpression"), part.get("rightExpression")
            if _is_identifier(left, iteration_var):
                candidates.append(self._summarize(right))
            elif _is_identifier(right, iteration_var):
                candidates.append(self._summarize(left))
        if not candidates:
            return self._summarize(cond)
        for info in candidates:
            if not info.storage_reads:
                return info
        return candidates[0]

    def _for_iteration_var(self, init: Optional[Dict[str, Any]]) -> Optional[str]:
        if not isinstance(init, dict):
            return None
        if init.get("nodeType") == "VariableDeclarationStatement":
            declarations = init.get("declarations") or []
            if declarations and declarations[0]:
                return declarations[0].get("name")
        if init.get("nodeType") == "ExpressionStatement":
            expr = init.get("expression") or {}
            if expr.get("nodeType") == "Assignment":
                lhs = strip_conversions(expr.get("leftHandSide") or {})
                if lhs.get("nodeType") == "Identifier":
                    return lhs.get("name")
        return None

    def _open_loop(self, header: int) -> None:
        self.loop_frames.append((header, set()))

    def _close_loop(self) -> None:
        header, body = self.loop_frames.pop()
        self.loop_bodies[header] = frozenset(body)

    def _lower_for(self, node: Dict[str, Any]) -> None:
        body = node.get("body")
        if body is None:
            raise MalformedAST("for without body", "ForStatement", node.get("src"))
        init = node.get("initializationExpression")
        if init is not None:
            self.lower_statement(init)
            self.line = self.builder.line_of(node)

        header = self._new_block("loop_header")
        self._jump(header)
        self.current = header
        cond_info = self._loop_header(node.get("condition"), self._for_iteration_var(init))
        exit_block = self._new_block("loop_exit")

        self._open_loop(header)
        body_block = self._new_block("loop_body")
        latch = self._new_block("loop_latch")
        self._branch_loop(body_block, exit_block, cond_info)

        self.loops.append((latch, exit_block))
        self.current = body_block
        self.lower_statement(body)
        self._jump(latch)
        self.loops.pop()

        self.current = latch
        if node.get("loopExpression") is not None:
            self.lower_statement(node["loopExpression"])
        self._jump(header, "back")
        self._close_loop()
        self.current = exit_block

    def _lower_while(self, node: Dict[str, Any]) -> None:
        body = node.get("body")
        if body is None:
            raise MalformedAST("while without body", "WhileStatement", node.get("src"))
        header = self._new_block("loop_header")
        self._jump(header)
        self.current = header
        cond_info = self._loop_header(node.get("condition"), None)
        exit_block = self._new_block("loop_exit")

        self._open_loop(header)
        body_block = self._new_block("loop_body")
        self._branch_loop(body_block, exit_block, cond_info)

        self.loops.append((header, exit_block))
        self.current = body_block
        self.lower_statement(body)
        self._jump(header, "back")
        self.loops.pop()
        self._close_loop()
        self.current = exit_block

    def _lower_do_while(self, node: Dict[str, Any]) -> None:
        body = node.get("body")
        if body is None:
            raise MalformedAST("do-while without body", "DoWhileStatement", node.get("src"))
        exit_block = self._new_block("loop_exit")
        header = self._new_block("loop_header")

        self._open_loop(header)
        body_block = self._new_block("loop_body")
        self._jump(body_block)
        self.loops.append((header, exit_block))
        self.current = body_block
        self.lower_statement(body)
        self._jump(header)
        self.loops.pop()
        self._close_loop()

        self.current = header
        self.line = self.builder.line_of(node)
        cond_info = self._loop_header(node.get("condition"), None)
        self._jump(body_block, "back", cond_info)
        self._jump(exit_block, "false", cond_info)
        self.current = exit_block

    def _branch_loop(self, body_block: int, exit_block: int, cond_info: Optional[ExprInfo]) -> None:
        if cond_info is None:
            self._jump(body_block)
            return
        self._jump(body_block, "true", cond_info)
        self._jump(exit_block, "false", cond_info)

    def _lower_break(self, node: Dict[str, Any]) -> None:
        if not self.loops:
            raise MalformedAST("break outside loop", "Break", node.get("src"))
        self._jump(self.loops[-1][1])
        self._dead_end()

    def _lower_continue(self, node: Dict[str, Any]) -> None:
        if not self.loops:
            raise MalformedAST("continue outside loop", "Continue", node.get("src"))
        self._jump(self.loops[-1][0])
        self._dead_end()

    def _lower_return(self, node: Dict[str, Any]) -> None:
        if node.get("expression") is not None:
            self._lower_expr(node["expression"])
            self._emit_reads(self._summarize(node["expression"]))
        self._emit(Return())
        self._dead_end()

    def _lower_revert(self, node: Dict[str, Any]) -> None:
        error_call = node.get("errorCall") or {}
        for arg in error_call.get("arguments") or []:
            self._lower_expr(arg)
        self._emit(Revert())
        self._dead_end()

    def _lower_emit(self, node: Dict[str, Any]) -> None:
        event_call = node.get("eventCall") or {}
        for arg in event_call.get("arguments") or []:
            self._lower_expr(arg)

    def _lower_try(self, node: Dict[str, Any]) -> None:
        external_call = node.get("externalCall")
        if not isinstance(external_call, dict):
            raise MalformedAST("try without external call", "TryStatement", node.get("src"))
        for arg in external_call.get("arguments") or []:
            self._lower_expr(arg)

        branch = self.current
        clause_ends = []
        for position, clause in enumerate(node.get("clauses") or []):
            clause_block = self._new_block("try_success" if position == 0 else "catch")
            self.blocks[branch].add_edge(clause_block, "unconditional" if position == 0 else "exception")
            self.current = clause_block
            for name in _param_names(clause):
                self.scope.locals.add(name)
            if clause.get("block") is not None:
                self.lower_statement(clause["block"])
            clause_ends.append(self.current)

        merge = self._new_block("try_merge")
        for block_id in clause_ends:
            self.blocks[block_id].add_edge(merge)
        if not clause_ends:
            self.blocks[branch].add_edge(merge)
        self.current = merge

    # expressions

    def _lower_expr(self, node: Any, bind: FrozenSet[str] = frozenset()) -> None:
        if not isinstance(node, dict):
            return
        nt = node_type(node)
        if nt == "FunctionCall":
            self._lower_call(node, bind)
        elif nt == "Assignment":
            self._lower_assignment(node)
        elif nt == "UnaryOperation" and node.get("operator") in ("++", "--", "delete"):
            sub = node.get("subExpression")
            self._lower_expr(sub)
            info = self._summarize(node)
            for var in sorted(storage_base(sub, self.scope)):
                self._emit(StorageWrite(var=var, expr=info))
        else:
            for child in child_nodes(node):
                self._lower_expr(child)

    def _assigned_names(self, lhs: Dict[str, Any]) -> FrozenSet[str]:
        lhs = strip_conversions(lhs)
        if lhs.get("nodeType") == "TupleExpression":
            components = lhs.get("components") or []
            lhs = components[0] if components and components[0] else {}
        if lhs.get("nodeType") == "Identifier":
            return frozenset({lhs.get("name", "")})
        return frozenset()

    def _lower_assignment(self, node: Dict[str, Any]) -> None:
        lhs, rhs = node.get("leftHandSide"), node.get("rightHandSide")
        if not isinstance(lhs, dict) or not isinstance(rhs, dict):
            raise MalformedAST("assignment without operands", "Assignment", node.get("src"))
        self._lower_expr(rhs, self._assigned_names(lhs))
        self._lower_expr(lhs)

        info = self._summarize(rhs if node.get("operator", "=") == "=" else node)
        self._emit_reads(info)
        targets = lhs.get("components") if lhs.get("nodeType") == "TupleExpression" else [lhs]
        for target in targets or []:
            if not isinstance(target, dict):
                continue
            written = storage_base(target, self.scope)
            for var in sorted(written):
                self._emit(StorageWrite(var=var, expr=info))
            if not written and target.get("nodeType") == "Identifier" and len(targets) == 1:
                name = target.get("name", "")
                if info.storage_reads:
                    self.scope.derived[name] = info.storage_reads
                elif node.get("operator", "=") == "=":
                    self.scope.derived.pop(name, None)

    def _call_options(self, callee: Dict[str, Any]) -> Tuple[Dict[str, Dict[str, Any]], Dict[str, Any]]:
        """Peel `{value: v, gas: g}` and legacy `.value(v).gas(g)` off a callee."""
        options: Dict[str, Dict[str, Any]] = {}
        node = callee
        while isinstance(node, dict):
            nt = node.get("nodeType")
            if nt == "FunctionCallOptions":
                for name, option in zip(node.get("names") or [], node.get("options") or []):
                    options.setdefault(name, option)
                node = node.get("expression")
                continue
            inner = node.get("expression") or {}
            if (
                nt == "FunctionCall"
                and inner.get("nodeType") == "MemberAccess"
                and inner.get("memberName") in ("value", "gas")
                and len(node.get("arguments") or []) == 1
                and _is_raw_member(inner.get("expression"))
            ):
                options.setdefault(inner["memberName"], node["arguments"][0])
                node = inner.get("expression")
                continue
            break
        if not isinstance(node, dict):
            raise MalformedAST("call options without target expression", "FunctionCallOptions", callee.get("src"))
        return options, node

    def _lower_call(self, node: Dict[str, Any], bind: FrozenSet[str]) -> None:
        callee = node.get("expression")
        if not isinstance(callee, dict):
            raise MalformedAST("call without target expression", "FunctionCall", node.get("src"))
        args = node.get("arguments") or []

        if is_type_conversion(node) or node.get("kind") == "structConstructorCall":
            for arg in args:
                self._lower_expr(arg)
            return

        options, base = self._call_options(callee)
        for option in options.values():
            self._lower_expr(option)
        for arg in args:
            self._lower_expr(arg)

        nt = base.get("nodeType")
        if nt == "Identifier":
            self._lower_named_call(node, base, args, bind)
        elif nt == "MemberAccess":
            self._lower_member_call(node, base, args, options, bind)
        else:
            self._lower_expr(base)

    def _lower_named_call(
        self,
        node: Dict[str, Any],
        callee: Dict[str, Any],
        args: List[Dict[str, Any]],
        bind: FrozenSet[str],
    ) -> None:
        name = callee.get("name", "")
        if name in ("require", "assert"):
            if not args:
                raise MalformedAST(f"{name} without condition", "FunctionCall", node.get("src"))
            info = self._summarize(args[0])
            self._emit_reads(info)
            if name == "require":
                self._require(info, restricts_caller(args[0], self.scope))
            else:
                self._emit(Assert(cond=info))
            return
        if name == "revert":
            self._emit(Revert())
            self._dead_end()
            return

        if name in SOLIDITY_BUILTINS:
            return
        target = self.builder.resolve_function(callee.get("referencedDeclaration"), name, len(args))
        if target is None:
            return
        self._emit_call(node, callee, CallSite(primitive="function", origin=TargetOrigin.SELF), None, bind, target)

    def _lower_member_call(
        self,
        node: Dict[str, Any],
        callee: Dict[str, Any],
        args: List[Dict[str, Any]],
        options: Dict[str, Dict[str, Any]],
        bind: FrozenSet[str],
    ) -> None:
        member = callee.get("memberName", "")
        target = callee.get("expression")
        if not isinstance(target, dict):
            raise MalformedAST("member call without target expression", "MemberAccess", callee.get("src"))

        if member in ("push", "pop"):
            written = storage_base(target, self.scope)
            if written:
                self._lower_expr(target)
                info = self._summarize(args[0] if args else node)
                for var in sorted(written):
                    self._emit(StorageWrite(var=var, expr=info, is_append=member == "push"))
                return

        if member in RAW_PRIMITIVES | TRANSFER_PRIMITIVES and self._is_address_member(target, member, args):
            self._lower_expr(target)
            origin, literal = resolve_target_origin(target, self.scope)
            gas = options.get("gas")
            value = options.get("value")
            if member in TRANSFER_PRIMITIVES:
                value = args[0] if args else None
            site = CallSite(
                primitive=member,
                origin=origin,
                target_literal=literal,
                gas_explicit=gas is not None,
                gas_amount=literal_int(strip_conversions(gas)) if gas is not None else None,
                gas_from_gasleft=is_gasleft(gas),
                has_value=value is not None,
                has_selector=bool(args),
            )
            self._emit_call(node, target, site, value, bind, None)
            return

        base = strip_conversions(target)
        base_name = base.get("name") if base.get("nodeType") == "Identifier" else None
        function_type = (callee.get("typeDescriptions") or {}).get("typeIdentifier") or ""

        if base_name == "this":
            resolved = self.builder.resolve_function(callee.get("referencedDeclaration"), member, len(args))
            self._emit_call(node, target, CallSite(primitive="self", origin=TargetOrigin.SELF), None, bind, resolved)
        elif base_name == "super":
            resolved = self.builder.resolve_super(callee.get("referencedDeclaration"), member, len(args))
            self._emit_call(node, target, CallSite(primitive="function", origin=TargetOrigin.SELF), None, bind, resolved)
        elif base_name in self.scope.libraries or function_type.startswith(
            ("t_function_internal", "t_function_delegatecall")
        ):
            self._lower_expr(target)
            self._emit_call(node, target, CallSite(primitive="library", origin=TargetOrigin.TRUSTED), None, bind, None)
        else:
            self._lower_expr(target)

    def _is_address_member(self, target: Dict[str, Any], member: str, args: List[Dict[str, Any]]) -> bool:
        target_type = type_string(target)
        if target_type:
            return target_type.startswith("address")
        return member in RAW_PRIMITIVES or len(args) == 1

    def _emit_call(
        self,
        node: Dict[str, Any],
        target: Dict[str, Any],
        site: CallSite,
        value: Optional[Dict[str, Any]],
        bind: FrozenSet[str],
        callee: Optional[str],
    ) -> None:
        classification = classify_call(
            site,
            stipend=self.builder.stipend,
            trusted_addresses=self.builder.trusted_addresses,
        )
        token = f"call#{len(self.call_tokens)}"
        self._emit(
            ExternalCall(
                target_expr=ExprInfo(text=render(target)) if callee else self._summarize(target),
                value_expr=self._summarize(value) if value is not None else None,
                gas_mode=classification.gas_mode,
                kind=classification.kind,
                external=classification.external,
                origin=classification.origin,
                primitive=site.primitive,
                token=token,
                result_names=bind,
                callee=callee,
            )
        )
        self.call_tokens[id(node)] = token
        if callee:
            self.callees.add(callee)
            self.token_callees[token] = callee


class CFGBuilder:
    """Build per-function CFGs for one contract."""

    def __init__(
        self,
        contract: ContractDecl,
        stipend: Optional[int] = None,
        trusted_addresses: Optional[Iterable[str]] = None,
    ):
        self.contract = contract
        self.stipend = stipend
        self.trusted_addresses = list(trusted_addresses) if trusted_addresses is not None else None

        self.state_vars = set()
        self.constants: Dict[str, Optional[Dict[str, Any]]] = {}
        for var in contract.state_vars:
            name = var.get("name", "")
            if var.get("constant") or var.get("mutability") in ("constant", "immutable"):
                self.constants[name] = var.get("value")
            else:
                self.state_vars.add(name)

        names = Counter(self._base_name(f) for f in contract.functions)
        self.function_ids: Dict[int, str] = {}
        self._by_ast_id: Dict[Any, str] = {}
        self._by_name: Dict[str, List[Tuple[str, int]]] = {}
        for func in contract.functions:
            base = self._base_name(func)
            fid = base if names[base] == 1 else f"{base}({_param_types(func)})"
            self.function_ids[id(func)] = fid
            if func.get("id") is not None:
                self._by_ast_id[func["id"]] = fid
            if func.get("kind", "function") == "function":
                self._by_name.setdefault(base, []).append((fid, len(_param_names(func))))
        self.function_names = set(self._by_name)

        # overridden base definitions stay callable through super as Base.name
        qualified = Counter(f"{owner}.{self._base_name(f)}" for owner, f in contract.overridden)
        self._super: List[Tuple[str, str, int]] = []
        for owner, func in contract.overridden:
            fid = f"{owner}.{self._base_name(func)}"
            if qualified[fid] > 1:
                fid = f"{fid}({_param_types(func)})"
            self.function_ids[id(func)] = fid
            if func.get("id") is not None:
                self._by_ast_id[func["id"]] = fid
            self._super.append((fid, self._base_name(func), len(_param_names(func))))

    @staticmethod
    def _base_name(func: Dict[str, Any]) -> str:
        kind = func.get("kind", "function")
        if kind in SPECIAL_KINDS:
            return kind
        return func.get("name") or kind

    def line_of(self, node: Dict[str, Any]) -> int:
        if self.contract.lines is None:
            return 0
        return self.contract.lines.line_of(node.get("src"))

    def resolve_function(self, ast_id: Any, name: Optional[str], arg_count: int) -> Optional[str]:
        """Function id for an internal call target, by declaration id then name."""
        if ast_id is not None and ast_id in self._by_ast_id:
            return self._by_ast_id[ast_id]
        candidates = self._by_name.get(name or "", [])
        for fid, count in candidates:
            if count == arg_count:
                return fid
        return candidates[0][0] if candidates else None

    def resolve_super(self, ast_id: Any, name: str, arg_count: int) -> Optional[str]:
        """Target of `super.name(...)`: the nearest overridden definition, else the inherited one."""
        if ast_id is not None and ast_id in self._by_ast_id:
            return self._by_ast_id[ast_id]
        matches = [fid for fid, base, count in self._super if base == name and count == arg_count]
        if matches:
            return matches[-1]
        return self.resolve_function(None, name, arg_count)

    def build_function(self, node: Dict[str, Any], order: int = 0) -> Function:
        """
        Build the CFG of one function.

        Args:
            node: FunctionDefinition AST node
            order: Declaration order index

        Returns:
            Function with its blocks

        Raises:
            MalformedAST: If the function body has an unexpected shape
        """
        if node_type(node) != "FunctionDefinition":
            raise MalformedAST("expected FunctionDefinition", node.get("nodeType"), node.get("src"))
        body = node.get("body")
        if not isinstance(body, dict):
            raise MalformedAST("function without body", "FunctionDefinition", node.get("src"))

        fid = self.function_ids.get(id(node)) or self._base_name(node)
        lowering = _FunctionLowering(self, node, fid)
        lowering.lower_modifiers()
        lowering.lower_statement(body)

        function = Function(
            id=fid,
            name=node.get("name", ""),
            visibility=node.get("visibility", "public"),
            mutability=node.get("stateMutability", "nonpayable"),
            kind=node.get("kind", "function"),
            order=order,
            entry_block=0,
            blocks=lowering.blocks,
            parameters=tuple(_param_names(node)),
            callees=frozenset(lowering.callees),
            contract=self.contract.name,
            loops=lowering.loop_bodies,
            overridden=any(func is node for _, func in self.contract.overridden),
        )
        function.check_consistency()

        logger.debug(
            "cfg_built",
            contract=self.contract.name,
            function=fid,
            block_count=len(function.blocks),
            statement_count=sum(len(b.statements) for b in function.blocks.values()),
        )
        return function

    def build_all(self) -> Tuple[List[Function], List[Tuple[str, str]]]:
        """
        Build every implemented function of the contract.

        Returns:
            Tuple of (functions in declaration order, [(function id, message)]
            for functions skipped because of MalformedAST)
        """
        functions: List[Function] = []
        skipped: List[Tuple[str, str]] = []
        nodes = self.contract.functions + [func for _, func in self.contract.overridden]
        for order, node in enumerate(nodes):
            if node.get("implemented") is False or node.get("body") is None:
                continue
            fid = self.function_ids.get(id(node)) or self._base_name(node)
            try:
                functions.append(self.build_function(node, order))
            except MalformedAST as e:
                logger.warning("function_skipped", contract=self.contract.name, function=fid, error=str(e))
                skipped.append((fid, str(e)))
        return functions, skipped


def statement_label(stmt: Statement) -> str:
    """One-line description of an IR statement."""
    if isinstance(stmt, ExternalCall):
        target = stmt.callee or (stmt.target_expr.text if stmt.target_expr else "?")
        text = f"{stmt.kind.value} {target} gas={stmt.gas_mode}"
        if stmt.value_expr is not None:
            text += f" value={stmt.value_expr.text}"
        return text
    if isinstance(stmt, StorageWrite):
        return f"{'append' if stmt.is_append else 'write'} {stmt.var}"
    if isinstance(stmt, StorageRead):
        return f"read {stmt.var}"
    if isinstance(stmt, Require):
        return f"require({stmt.cond.text if stmt.cond else ''})"
    if isinstance(stmt, Assert):
        return f"assert({stmt.cond.text if stmt.cond else ''})"
    if isinstance(stmt, LoopHeader):
        bound = stmt.bound_expr.text if stmt.bound_expr else "?"
        return f"loop {stmt.iteration_var or '_'} < {bound}"
    return type(stmt).__name__.lower()


def _dot_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


def visualize_cfg_dot(function: Function) -> str:
    """
    Generate DOT format representation of a function CFG.

    Args:
        function: Function with its blocks

    Returns:
        DOT format string for Graphviz
    """
    dot_lines = [
        f'digraph "{_dot_escape(function.id)}" {{',
        "  rankdir=TD;",
        "  node [shape=box, style=rounded, fontname=monospace];",
        "",
    ]

    for block_id in sorted(function.blocks):
        block = function.blocks[block_id]
        rows = [f"B{block_id} {block.label}"]
        rows.extend(f"{i}: {statement_label(stmt)}" for i, stmt in enumerate(block.statements))
        label = "\\l".join(_dot_escape(row) for row in rows) + "\\l"
        dot_lines.append(f'  "B{block_id}" [label="{label}"];')

    dot_lines.append("")

    for block_id in sorted(function.blocks):
        for edge in function.blocks[block_id].successors:
            attrs = []
            if edge.kind != "unconditional":
                attrs.append(f'label="{edge.kind}"')
            if edge.kind in ("back", "exception"):
                attrs.append("style=dashed")
            suffix = f" [{', '.join(attrs)}]" if attrs else ""
            dot_lines.append(f'  "B{block_id}" -> "B{edge.target}"{suffix};')

    dot_lines.append("}")
    return "\n".join(dot_lines)
