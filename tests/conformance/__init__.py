"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the game ledger.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. test_rounding_invariants.py - Currency always lands on the cent grid, rounded up
2. test_order_invariants.py - Orders either fully apply or change nothing
3. test_settlement_invariants.py - Settlements pay out at most once per period
4. test_concurrency_invariants.py - Orders racing a liquidation never lose an update

These tests use hypothesis for property-based testing.
"""
