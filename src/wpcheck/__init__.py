"""wpcheck: static verification of annotated functions via WP calculus and Z3.

Write a function with a precondition, a postcondition and loop invariants,
get a per-function verdict backed by a proof or a counterexample.

    from wpcheck import verify_source

    reports = verify_source('''
    def inc(x: "i32") -> "i32":
        pre("x > 0")
        post("result > 0")
        y = x + 1
        return y
    ''')
    assert reports["inc"].verified   # Z3-proven for ALL inputs

The pipeline stages are importable on their own:
:func:`~wpcheck.builder.build_cfg`, :func:`~wpcheck.wp.generate_vcs`,
:func:`~wpcheck.simplifier.simplify`, :func:`~wpcheck.solver.discharge` and
:func:`~wpcheck.diagnostics.aggregate`.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .builder import ExternalContract, StructuralError, build_cfg
from .cfg import ControlFlowGraph
from .conditions import ConditionKind, Outcome, VCResult, VerificationCondition
from .diagnostics import Diagnostic, DiagnosticKind, FunctionReport, ReportError, Severity, Verdict, aggregate
from .engine import (
    VerificationError,
    clear_cache,
    configure,
    verify_function,
    verify_functions,
    verify_source,
)
from .frontend import (
    ParseError,
    function_from_callable,
    function_from_source,
    functions_from_source,
    load_external_contracts,
    parse_external_contracts,
    parse_predicate,
)
from .simplifier import simplify
from .solver import SolverAnswer, SolverBackend, Z3Backend, discharge
from .translator import TranslationError
from .wp import generate_vcs

__all__ = [
    # Engine
    "verify_function",
    "verify_functions",
    "verify_source",
    "clear_cache",
    "configure",
    # Pipeline stages
    "build_cfg",
    "generate_vcs",
    "simplify",
    "discharge",
    "aggregate",
    # Front end
    "function_from_source",
    "functions_from_source",
    "function_from_callable",
    "parse_predicate",
    "parse_external_contracts",
    "load_external_contracts",
    # Data
    "ControlFlowGraph",
    "ExternalContract",
    "VerificationCondition",
    "ConditionKind",
    "VCResult",
    "Outcome",
    "FunctionReport",
    "Verdict",
    "Diagnostic",
    "DiagnosticKind",
    "Severity",
    # Solvers
    "SolverBackend",
    "SolverAnswer",
    "Z3Backend",
    # Errors
    "VerificationError",
    "StructuralError",
    "TranslationError",
    "ParseError",
    "ReportError",
    # Metadata
    "__version__",
]
