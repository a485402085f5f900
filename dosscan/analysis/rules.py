"""DOS detector rules.

Each rule is evaluated once per function and moves from NOT_EVALUATED to
MATCH or NO_MATCH. Rules are independent of each other and only read the
dataflow facts for the function.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple

import structlog

from dosscan.analysis.dataflow import (
    DOS_CALL_KINDS,
    CallDependency,
    LoopFact,
    call_dependencies,
    loop_facts,
)
from dosscan.analysis.ir import (
    CallKind,
    ContractIR,
    ExternalCall,
    Function,
    InternalAnalyzerError,
    Statement,
)
from dosscan.models import Finding, Mitigation, ReviewNote, RuleId, Severity

logger = structlog.get_logger()


class RuleState(str, Enum):
    NOT_EVALUATED = "not_evaluated"
    MATCH = "match"
    NO_MATCH = "no_match"


@dataclass(frozen=True)
class FunctionContext:
    """Everything a rule may look at for one function."""

    function: Function
    contract: ContractIR
    dependencies: Tuple[CallDependency, ...] = ()
    loops: Tuple[LoopFact, ...] = ()


@dataclass
class RuleResult:
    """Evaluation record for one (rule, function) pair."""

    rule_id: RuleId
    function: str
    state: RuleState = RuleState.NOT_EVALUATED
    findings: List[Finding] = field(default_factory=list)

    def record(self, findings: Sequence[Finding]) -> None:
        if self.state != RuleState.NOT_EVALUATED:
            raise InternalAnalyzerError(f"{self.rule_id.value} already evaluated for {self.function}")
        self.findings = list(findings)
        self.state = RuleState.MATCH if self.findings else RuleState.NO_MATCH


def _target(call: ExternalCall) -> str:
    return call.target_expr.text if call.target_expr and call.target_expr.text else "unknown target"


def _finding(
    rule_id: RuleId,
    severity: Severity,
    function: Function,
    statements: Sequence[Statement],
    message: str,
    mitigation: Mitigation,
) -> Finding:
    return Finding(
        rule_id=rule_id,
        severity=severity,
        function=function.id,
        locations=tuple(stmt.location for stmt in statements),
        message=message,
        mitigation=mitigation,
        lines=tuple(stmt.line for stmt in statements),
    )


class Rule(ABC):
    """Base class for detector rules."""

    rule_id: RuleId
    severity: Severity
    description: str = ""

    def run(self, ctx: FunctionContext) -> RuleResult:
        result = RuleResult(rule_id=self.rule_id, function=ctx.function.id)
        result.record(self.evaluate(ctx))
        return result

    @abstractmethod
    def evaluate(self, ctx: FunctionContext) -> List[Finding]:
        """Return the findings of this rule for one function."""


class UncheckedExternalDependencyRule(Rule):
    """State progress depends on an external call whose success is never checked."""

    rule_id = RuleId.UNCHECKED_EXTERNAL_DEPENDENCY
    severity = Severity.HIGH
    description = "State is updated after an external call without checking that the call succeeded."

    def evaluate(self, ctx: FunctionContext) -> List[Finding]:
        findings = []
        for dep in ctx.dependencies:
            writes = dep.unchecked_writes
            if not writes:
                continue
            variables = ", ".join(sorted({w.var for w in writes}))
            findings.append(
                _finding(
                    self.rule_id,
                    self.severity,
                    ctx.function,
                    (dep.call, *writes),
                    f"{dep.call.primitive} to {_target(dep.call)} is not checked for success "
                    f"before state ({variables}) is updated; a failing or reverting callee "
                    f"leaves the contract in a state that depends on it",
                    Mitigation.WITHDRAWAL_PATTERN,
                )
            )
        return findings


class GasGriefingRule(Rule):
    """Calls that hand all remaining gas, or control over a revert, to an external target."""

    rule_id = RuleId.GAS_GRIEFING_EXPOSURE
    severity = Severity.MEDIUM
    description = "External call forwards all remaining gas or reverts when the recipient rejects it."

    def evaluate(self, ctx: FunctionContext) -> List[Finding]:
        findings = []
        for stmt in ctx.function.statements():
            if not isinstance(stmt, ExternalCall) or not stmt.external:
                continue
            if stmt.kind not in DOS_CALL_KINDS:
                continue
            if stmt.kind == CallKind.TRANSFER:
                findings.append(
                    _finding(
                        self.rule_id,
                        self.severity,
                        ctx.function,
                        (stmt,),
                        f"transfer to {_target(stmt)} reverts the whole call when the recipient "
                        f"rejects ether or needs more than {stmt.gas_mode.amount} gas",
                        Mitigation.WITHDRAWAL_PATTERN,
                    )
                )
            elif stmt.gas_mode.mode == "forward_all":
                findings.append(
                    _finding(
                        self.rule_id,
                        self.severity,
                        ctx.function,
                        (stmt,),
                        f"{stmt.primitive} to {_target(stmt)} forwards all remaining gas; "
                        f"the callee can consume it and starve the rest of the transaction",
                        Mitigation.GAS_CAP,
                    )
                )
        return findings


class UnboundedGrowableLoopRule(Rule):
    """Loops whose bound an unrestricted caller can grow without limit."""

    rule_id = RuleId.UNBOUNDED_GROWABLE_LOOP
    severity = Severity.HIGH
    description = "Loop iterates over a collection that any caller can append to."

    def evaluate(self, ctx: FunctionContext) -> List[Finding]:
        findings = []
        for fact in ctx.loops:
            if not fact.unbounded_by_attacker:
                continue
            growers = sorted(
                {fid for name in fact.growable_vars for fid in ctx.contract.storage[name].growable_by}
            )
            findings.append(
                _finding(
                    self.rule_id,
                    self.severity,
                    ctx.function,
                    (fact.header,),
                    f"loop bound depends on {', '.join(fact.growable_vars)}, which any caller can "
                    f"grow through {', '.join(growers)}; enough entries push this loop past the "
                    f"block gas limit",
                    Mitigation.WITHDRAWAL_PATTERN if fact.transfers_value else Mitigation.BOUNDED_LOOP,
                )
            )
        return findings


DEFAULT_RULES: Tuple[Rule, ...] = (
    UncheckedExternalDependencyRule(),
    GasGriefingRule(),
    UnboundedGrowableLoopRule(),
)


def review_notes(ctx: FunctionContext) -> List[ReviewNote]:
    """Borderline patterns: native transfer followed by state writes."""
    notes = []
    for dep in ctx.dependencies:
        if not dep.implicitly_checked or not dep.writes:
            continue
        statements = (dep.call, *dep.writes)
        variables = ", ".join(sorted({w.var for w in dep.writes}))
        notes.append(
            ReviewNote(
                function=ctx.function.id,
                locations=tuple(s.location for s in statements),
                message=(
                    f"transfer to {_target(dep.call)} reverts on failure, so later writes "
                    f"({variables}) only happen if the recipient accepts ether"
                ),
                lines=tuple(s.line for s in statements),
            )
        )
    return notes


@dataclass
class FunctionOutcome:
    """Rule results and review notes for one function."""

    function: str
    results: List[RuleResult] = field(default_factory=list)
    notes: List[ReviewNote] = field(default_factory=list)

    @property
    def findings(self) -> List[Finding]:
        return [f for result in self.results for f in result.findings]


def evaluate_function(
    function: Function,
    contract: ContractIR,
    transferring: Iterable[str] = (),
    rules: Optional[Sequence[Rule]] = None,
) -> FunctionOutcome:
    """
    Run dataflow and every rule on one function.

    Args:
        function: Function to evaluate
        contract: Phase-1 facts shared by all functions
        transferring: Functions that transfer value (for Rule C mitigation)
        rules: Rules to run (defaults to DEFAULT_RULES)

    Returns:
        FunctionOutcome with one RuleResult per rule
    """
    ctx = FunctionContext(
        function=function,
        contract=contract,
        dependencies=tuple(call_dependencies(function)),
        loops=tuple(loop_facts(function, contract, frozenset(transferring))),
    )
    outcome = FunctionOutcome(function=function.id)
    for rule in rules if rules is not None else DEFAULT_RULES:
        outcome.results.append(rule.run(ctx))
    outcome.notes = review_notes(ctx)

    logger.debug(
        "function_evaluated",
        contract=contract.name,
        function=function.id,
        findings=len(outcome.findings),
        notes=len(outcome.notes),
    )
    return outcome
