"""Verification engine: the per-function pipeline and batch runs.

Orchestrates the full pipeline for each function:
  1. Build the control-flow graph (:mod:`~wpcheck.builder`)
  2. Generate verification conditions by WP calculus (:mod:`~wpcheck.wp`)
  3. Simplify and discharge them (:mod:`~wpcheck.simplifier`,
     :mod:`~wpcheck.solver`)
  4. Aggregate the results into a :class:`~wpcheck.diagnostics.FunctionReport`

Errors are scoped to the smallest unit: a structural error makes one
function inconclusive, a translation error or timeout makes one condition
unknown.  Neither stops a batch.

Global configuration
--------------------
Use :func:`configure` to set defaults that apply to every subsequent call::

    from wpcheck import configure
    configure(timeout_ms=10_000, workers=4)

These defaults can be overridden per call via keyword arguments to
:func:`verify_function` and :func:`verify_functions`.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from .builder import ExternalContract, StructuralError, build_cfg
from .diagnostics import Diagnostic, DiagnosticKind, FunctionReport, Severity, Verdict, aggregate
from .solver import SolverBackend, discharge
from .syntax import Function
from .wp import generate_vcs

logger = logging.getLogger("wpcheck")


# ---------------------------------------------------------------------------
# Global configuration
# ---------------------------------------------------------------------------

_config: dict[str, Any] = {
    "timeout_ms": 5000,
    "workers": 1,
    "panic_is_failure": True,
    "simplify": True,
    "raise_on_failure": False,
    "log_level": "WARNING",
}


def configure(**kwargs: Any) -> None:
    """Set global verification defaults.

    Supported keys:

    - ``timeout_ms`` (int): Solver deadline per query in milliseconds
      (default 5000).
    - ``workers`` (int): Number of solver queries run concurrently
      (default 1, sequential).
    - ``panic_is_failure`` (bool): Treat every reachable ``panic!`` as a
      failure (default ``True``).
    - ``simplify`` (bool): Simplify conditions before solving (default
      ``True``).
    - ``raise_on_failure`` (bool): Raise :class:`VerificationError` when a
      function fails (default ``False``).
    - ``log_level`` (str): Python logging level for the ``wpcheck`` logger
      (default ``"WARNING"``).

    Example::

        from wpcheck import configure
        configure(timeout_ms=10_000, raise_on_failure=True)

    Args:
        **kwargs: Key-value pairs to update in the global config.

    Raises:
        ValueError: If an unknown configuration key is provided.
    """
    unknown = set(kwargs) - set(_config)
    if unknown:
        raise ValueError(f"Unknown configure() keys: {sorted(unknown)}")
    _config.update(kwargs)

    if "log_level" in kwargs:
        logging.getLogger("wpcheck").setLevel(getattr(logging, kwargs["log_level"], logging.WARNING))


def _settings(overrides: Mapping[str, Any]) -> dict[str, Any]:
    unknown = set(overrides) - set(_config)
    if unknown:
        raise ValueError(f"Unknown verification options: {sorted(unknown)}")
    settings = dict(_config)
    settings.update({k: v for k, v in overrides.items() if v is not None})
    return settings


class VerificationError(Exception):
    """Raised when ``raise_on_failure=True`` and a function fails.

    The failing :class:`~wpcheck.diagnostics.FunctionReport` is available as
    ``exc.report``.
    """

    def __init__(self, report: FunctionReport) -> None:
        self.report = report
        super().__init__(report.explain())


# ---------------------------------------------------------------------------
# Report cache
# ---------------------------------------------------------------------------

# Keyed on the function, its contracts and the settings that affect results;
# only runs on the default backend are cached.
_report_cache: dict[Any, FunctionReport] = {}


def clear_cache() -> None:
    """Clear the report cache."""
    _report_cache.clear()


def _cache_key(function: Function, contracts: Mapping[str, ExternalContract], settings: Mapping[str, Any]) -> Any:
    return (
        function,
        tuple(sorted(contracts.items())),
        settings["timeout_ms"],
        settings["panic_is_failure"],
        settings["simplify"],
    )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def verify_function(
    function: Function,
    contracts: Mapping[str, ExternalContract] | None = None,
    backend: SolverBackend | None = None,
    **options: Any,
) -> FunctionReport:
    """Verify one function.

    Reports for the default backend are cached; a function whose AST is not
    hashable is verified without the cache.

    Args:
        function: The typed function AST.
        contracts: External contracts of called functions, by name.
        backend: Solver backend (default: Z3).
        **options: Per-call overrides of the :func:`configure` keys.

    Returns:
        The function's :class:`~wpcheck.diagnostics.FunctionReport`.

    Raises:
        VerificationError: If ``raise_on_failure`` is set and the function
            fails.
        ValueError: If an unknown option is passed.
    """
    settings = _settings(options)
    contracts = dict(contracts or {})

    key = None
    if backend is None:
        key = _cache_key(function, contracts, settings)
        try:
            cached = _report_cache.get(key)
        except TypeError:
            key = cached = None
        if cached is not None:
            logger.debug("cache hit for %s", function.name)
            return _finish(cached, settings)

    try:
        cfg = build_cfg(function, contracts)
    except StructuralError as e:
        logger.warning("%s: %s", function.name, e)
        report = FunctionReport(
            function_name=function.name,
            verdict=Verdict.INCONCLUSIVE,
            diagnostics=(Diagnostic(DiagnosticKind.STRUCTURAL_ERROR, Severity.ERROR, str(e), function.span),),
        )
    else:
        conditions = generate_vcs(cfg, panic_is_failure=bool(settings["panic_is_failure"]))
        results = discharge(
            conditions,
            backend,
            timeout_ms=int(settings["timeout_ms"]),
            workers=int(settings["workers"]),
            simplify=bool(settings["simplify"]),
        )
        report = aggregate(function.name, conditions, results, cfg.diagnostics)

    if report.verdict is Verdict.VERIFIED:
        logger.info("Q.E.D. %s (%.1fms)", function.name, report.solver_time_ms)
    elif report.verdict is Verdict.FAILED:
        logger.warning("%s", report)
    else:
        logger.info("INCONCLUSIVE %s", function.name)

    if key is not None:
        _report_cache[key] = report
    return _finish(report, settings)


def _finish(report: FunctionReport, settings: Mapping[str, Any]) -> FunctionReport:
    if settings["raise_on_failure"] and report.verdict is Verdict.FAILED:
        raise VerificationError(report)
    return report


def verify_functions(
    functions: Iterable[Function],
    contracts: Mapping[str, ExternalContract] | None = None,
    backend: SolverBackend | None = None,
    **options: Any,
) -> dict[str, FunctionReport]:
    """Verify a set of functions independently.

    A function that fails, or cannot be analysed, never affects the others.

    Returns:
        A dict mapping function name to its report, in input order.  When
        several functions share a name, the first keeps it and the later ones
        are keyed ``name#2``, ``name#3``, ...
    """
    reports: dict[str, FunctionReport] = {}
    seen: dict[str, int] = {}
    for function in functions:
        key = function.name
        if key in seen:
            seen[key] += 1
            key = f"{function.name}#{seen[function.name]}"
            logger.warning("duplicate function name %s; reporting it as %s", function.name, key)
        else:
            seen[key] = 1
        reports[key] = verify_function(function, contracts, backend, **options)
    return reports


def verify_source(
    source: str,
    contracts: Mapping[str, ExternalContract] | None = None,
    backend: SolverBackend | None = None,
    **options: Any,
) -> dict[str, FunctionReport]:
    """Parse every function in Python-syntax *source* and verify it.

    See :mod:`wpcheck.frontend` for the accepted syntax.

    Raises:
        ParseError: If *source* is not valid Python.
    """
    from .frontend import functions_from_source

    return verify_functions(functions_from_source(source), contracts, backend, **options)
