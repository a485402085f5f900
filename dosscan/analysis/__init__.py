"""Solidity analysis modules for the DOS scanner."""

from .ast_parser import (
    ASTJSONParser,
    ContractDecl,
    ParseError,
    SolcParser,
    SourceParser,
    SourceUnit,
    extract_contracts,
    load_ast_json,
)
from .call_classifier import CallClassification, CallSite, classify_call
from .cfg import CFGBuilder, visualize_cfg_dot
from .dataflow import call_dependencies, loop_facts, writes_after_call
from .ir import (
    CallKind,
    ContractIR,
    Function,
    GasMode,
    InternalAnalyzerError,
    MalformedAST,
    VarType,
)
from .rules import DEFAULT_RULES, RuleState, evaluate_function
from .storage import build_contract_ir

__all__ = [
    # Parsing
    "ASTJSONParser",
    "ContractDecl",
    "ParseError",
    "SolcParser",
    "SourceParser",
    "SourceUnit",
    "extract_contracts",
    "load_ast_json",
    # IR
    "CallKind",
    "ContractIR",
    "Function",
    "GasMode",
    "InternalAnalyzerError",
    "MalformedAST",
    "VarType",
    # Control flow
    "CFGBuilder",
    "visualize_cfg_dot",
    # Call classification
    "CallClassification",
    "CallSite",
    "classify_call",
    # Dataflow
    "call_dependencies",
    "loop_facts",
    "writes_after_call",
    # Rules
    "DEFAULT_RULES",
    "RuleState",
    "evaluate_function",
    # Contract facts
    "build_contract_ir",
]
