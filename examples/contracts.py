"""External contracts: verifying callers against callee specifications.

When function A calls B, A is verified using only B's contract: its
preconditions are checked at the call site and its postconditions are
assumed afterwards.  Contracts for functions without analysed bodies are
read from a JSON document (``externalMethods``).

Demonstrates:
  - parse_external_contracts() / load_external_contracts()
  - Method calls on a receiver (self) with old() in postconditions
  - A call-site precondition failure
  - Calls without a contract (results are unconstrained)
"""

from __future__ import annotations

from wpcheck import parse_external_contracts, verify_source

CONTRACTS = parse_external_contracts('''
{"externalMethods": [
    {"name": "deposit",
     "params": ["amount"],
     "preconditions": ["amount > 0"],
     "postconditions": ["self == old(self) + amount"]},
    {"name": "isqrt",
     "params": ["n"],
     "preconditions": ["n >= 0"],
     "postconditions": ["result * result <= n && n < (result + 1) * (result + 1)"]}
]}
''')

SOURCE = '''
def top_up(balance: i64):
    pre("balance >= 0")
    post("balance == old(balance) + 15")
    balance.deposit(10)
    balance.deposit(5)

def refund(balance: i64, amount: i64):
    balance.deposit(amount)

def root_bound(n: u32) -> u32:
    post("result <= n")
    r = isqrt(n)
    return r

def unknown_callee(n: i32) -> i32:
    post("result == n")
    r = mystery(n)
    return r
'''

print("=== Modular verification ===")
reports = verify_source(SOURCE, CONTRACTS)
for report in reports.values():
    print(report)
    for result in report.failures:
        print(f"    counterexample: {result.counterexample}")
