"""Loops, invariants and what happens without them.

Demonstrates:
  - while and for loops with invariant() annotations
  - The three loop conditions: initiation, preservation and use
  - A missing invariant: Inconclusive, never a false failure
  - Exporting the control-flow graph (text lines and Graphviz dot)
"""

from __future__ import annotations

from wpcheck import build_cfg, function_from_source, verify_function

SUM = '''
def sum_to(n: i32):
    pre("n >= 0")
    post("sum == n * (n - 1) / 2")
    i = 0
    sum = 0
    while i < n:
        invariant("sum == i * (i - 1) / 2 && i <= n")
        sum = sum + i
        i = i + 1
'''

# ---------------------------------------------------------------------------
# 1. An annotated loop
# ---------------------------------------------------------------------------

print("=== 1. Annotated loop ===")
report = verify_function(function_from_source(SUM))
print(report)
for result in report.results:
    print(f"  {result}")
print()


# ---------------------------------------------------------------------------
# 2. The same loop without an invariant
# ---------------------------------------------------------------------------

print("=== 2. Missing invariant ===")
unannotated = "\n".join(line for line in SUM.splitlines() if "invariant(" not in line)
report = verify_function(function_from_source(unannotated))
print(report.explain())
print()


# ---------------------------------------------------------------------------
# 3. for v in range(a, b)
# ---------------------------------------------------------------------------

print("=== 3. Range loop ===")
report = verify_function(function_from_source('''
def count(n: u32) -> u32:
    post("result == n")
    c = 0
    for k in range(n):
        invariant("c == k && k <= n")
        c = c + 1
    return c
'''))
print(report)
print()


# ---------------------------------------------------------------------------
# 4. The control-flow graph
# ---------------------------------------------------------------------------

print("=== 4. CFG ===")
cfg = build_cfg(function_from_source(SUM))
print(cfg.to_lines())
print()
print(cfg.to_dot())
