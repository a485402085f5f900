"""Tests for the dataflow analyses."""

import ast_factory as f
from dosscan.analysis.cfg import CFGBuilder
from dosscan.analysis.dataflow import (
    call_dependencies,
    loop_facts,
    success_flags,
    value_transferring,
    writes_after_call,
)
from dosscan.analysis.ir import ExternalCall
from dosscan.analysis.storage import build_contract_ir

TARGET = "address payable"


def lower(*statements, params=()):
    """Build a single function `run` over a contract with target/balance/done state."""
    decl = f.contract_decl(
        f.state_var("target", TARGET),
        f.state_var("balance"),
        f.state_var("done", "bool"),
        f.function("run", *statements, params=params),
    )
    functions, _ = CFGBuilder(decl).build_all()
    return functions[0]


def bound_call(name="ok"):
    return f.declare([f.var_decl(name, "bool"), None], f.address_call(f.ident("target", TARGET)))


def write(var, value=None):
    return f.expr_stmt(f.assign(f.ident(var), value or f.number(1)))


def first_call(func):
    return next(s for s in func.statements() if isinstance(s, ExternalCall))


class TestWritesAfterCall:
    """Post-call state writes not protected by a success check."""

    def test_unchecked_write(self):
        func = lower(bound_call(), write("balance"))
        call = first_call(func)

        writes = writes_after_call(func, call)

        assert [w.var for w in writes] == ["balance"]
        assert success_flags(call) == frozenset({"ok", "call#0"})

    def test_require_on_flag_stops_traversal(self):
        func = lower(bound_call(), f.require(f.ident("ok", "bool")), write("balance"))

        assert writes_after_call(func, first_call(func)) == ()

    def test_write_before_check_is_unchecked(self):
        """Checking after the write is too late."""
        func = lower(bound_call(), write("balance"), f.require(f.ident("ok", "bool")), write("done"))

        assert [w.var for w in writes_after_call(func, first_call(func))] == ["balance"]

    def test_require_on_other_flag_does_not_count(self):
        func = lower(bound_call(), f.require(f.ident("done", "bool")), write("balance"))

        assert [w.var for w in writes_after_call(func, first_call(func))] == ["balance"]

    def test_inline_require_on_call_result(self):
        """require(target.call(...)) checks the call directly."""
        call_expr = f.address_call(f.ident("target", TARGET))
        func = lower(f.require(call_expr), write("balance"))

        assert writes_after_call(func, first_call(func)) == ()

    def test_branch_on_flag_guards_true_side(self):
        """Writes only on the success branch are checked; the failure branch is not."""
        func = lower(
            bound_call(),
            f.if_(f.ident("ok", "bool"), f.block(write("balance")), f.block(write("done"))),
        )

        assert [w.var for w in writes_after_call(func, first_call(func))] == ["done"]

    def test_negated_branch(self):
        """if (!ok) { ... } else { write } keeps the else side checked."""
        func = lower(
            bound_call(),
            f.if_(f.unary("!", f.ident("ok", "bool")), f.block(write("done")), f.block(write("balance"))),
        )

        assert [w.var for w in writes_after_call(func, first_call(func))] == ["done"]

    def test_return_stops_traversal(self):
        func = lower(bound_call(), f.return_(), write("balance"))

        assert writes_after_call(func, first_call(func)) == ()

    def test_loop_back_edges_terminate(self):
        """A call inside a loop sees writes on the next iteration without looping forever."""
        func = lower(
            f.counting_loop(
                f.ident("n", "uint256"),
                f.expr_stmt(f.address_call(f.ident("target", TARGET))),
                write("balance"),
            ),
            params=(f.param("n"),),
        )

        assert [w.var for w in writes_after_call(func, first_call(func))] == ["balance"]


class TestCallDependencies:
    """Per-call dependency records."""

    def test_transfer_is_implicitly_checked(self):
        func = lower(f.expr_stmt(f.transfer(f.ident("target", TARGET), f.number(1))), write("balance"))

        [dep] = call_dependencies(func)

        assert dep.implicitly_checked
        assert [w.var for w in dep.writes] == ["balance"]
        assert dep.unchecked_writes == ()

    def test_send_is_not(self):
        func = lower(
            f.expr_stmt(f.transfer(f.ident("target", TARGET), f.number(1), primitive="send")),
            write("balance"),
        )

        [dep] = call_dependencies(func)

        assert not dep.implicitly_checked
        assert [w.var for w in dep.unchecked_writes] == ["balance"]

    def test_internal_calls_are_ignored(self):
        func = lower(f.expr_stmt(f.call(f.member(f.ident("this", "contract Test"), "run"))), write("balance"))

        assert call_dependencies(func) == []


class TestLoopFacts:
    """Growable loop bounds and value transfer in loop bodies."""

    def contract(self, restricted_push=False, pay_in_loop=True, via_helper=False):
        push = [f.expr_stmt(f.push(f.ident("users"), f.msg_sender()))]
        if restricted_push:
            push.insert(0, f.require(f.binary(f.msg_sender(), "==", f.ident("owner", "address"))))
        payout = f.expr_stmt(
            f.transfer(f.convert("payable", f.index(f.ident("users"), f.ident("i"), "address")), f.number(1))
        )
        body = []
        if pay_in_loop:
            body.append(f.expr_stmt(f.internal_call("_pay")) if via_helper else payout)
        decl = f.contract_decl(
            f.state_var("owner", "address"),
            f.state_var("total"),
            f.address_array("users"),
            f.function("join", *push),
            f.function("_pay", payout, visibility="internal"),
            f.function(
                "distribute",
                f.counting_loop(f.member(f.ident("users"), "length", "uint256"), *body),
            ),
        )
        ir, _ = build_contract_ir(decl)
        return ir

    def facts(self, ir):
        distribute = ir.function("distribute")
        return loop_facts(distribute, ir, value_transferring(ir.functions))

    def test_growable_bound(self):
        [fact] = self.facts(self.contract())

        assert fact.growable_vars == ("users",)
        assert fact.unbounded_by_attacker
        assert fact.transfers_value

    def test_restricted_growth(self):
        [fact] = self.facts(self.contract(restricted_push=True))

        assert fact.growable_vars == ()
        assert not fact.unbounded_by_attacker

    def test_no_payment(self):
        [fact] = self.facts(self.contract(pay_in_loop=False))

        assert fact.unbounded_by_attacker
        assert not fact.transfers_value

    def test_payment_through_helper(self):
        """A loop that calls a paying helper transfers value."""
        ir = self.contract(via_helper=True)

        assert value_transferring(ir.functions) == frozenset({"_pay", "distribute"})
        [fact] = self.facts(ir)
        assert fact.transfers_value
