"""Basic wpcheck usage: your first verified function.

Demonstrates:
  - pre()/post() contracts and a Verified verdict
  - What a counterexample looks like
  - Reading the per-condition results of a FunctionReport
  - The raise_on_failure=True mode that raises on failure
"""

from __future__ import annotations

from wpcheck import VerificationError, verify_source


# ---------------------------------------------------------------------------
# 1. A function with a correct postcondition: proof succeeds
# ---------------------------------------------------------------------------

reports = verify_source('''
def safe_abs(x: i32) -> i32:
    post("result >= 0")
    if x >= 0:
        return x
    return -x
''')

print("=== 1. Correct proof ===")
report = reports["safe_abs"]
print(f"Verdict:     {report.verdict.value}")
print(f"Verified:    {report.verified}")
print(f"Solver time: {report.solver_time_ms:.2f}ms")
print(f"Report:      {report}")
print()


# ---------------------------------------------------------------------------
# 2. A wrong postcondition: counterexample returned
# ---------------------------------------------------------------------------

reports = verify_source('''
def dec(x: i32):
    post("y > x")
    y = x - 1
''')

print("=== 2. Counterexample detected ===")
report = reports["dec"]
print(f"Verdict: {report.verdict.value}")
for failure in report.failures:
    print(f"  {failure.condition.kind.value}: {failure.condition.description}")
    print(f"  counterexample: {failure.counterexample}")
print()


# ---------------------------------------------------------------------------
# 3. Every condition, with the formula that reached the solver
# ---------------------------------------------------------------------------

reports = verify_source('''
def clamp(v: i32, lo: i32, hi: i32) -> i32:
    pre("lo <= hi")
    post("result >= lo && result <= hi")
    if v < lo:
        return lo
    elif v > hi:
        return hi
    return v
''')

print("=== 3. Conditions ===")
for result in reports["clamp"].results:
    print(f"  {result}")
    print(f"    simplified: {result.simplified}")
print()


# ---------------------------------------------------------------------------
# 4. raise_on_failure=True raises VerificationError on failure
# ---------------------------------------------------------------------------

print("=== 4. raise_on_failure=True mode ===")
try:
    verify_source('''
def inc_wrong(x: i32) -> i32:
    post("result == x + 2")
    return x + 1
''', raise_on_failure=True)
    print("ERROR: should have raised!")
except VerificationError as e:
    print("VerificationError raised as expected")
    print(e.report.explain())
