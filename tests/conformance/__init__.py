"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the mock chain.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. conservation.py - Per-asset value conservation, min-ada floor, fee fixpoint
2. atomicity.py - All-or-nothing submissions, alternative branches
3. determinism.py - Reproducible ids and states, read idempotence
4. temporal.py - Slot clock monotonicity
5. collateral_bounds.py - Collateral selection bounds

These tests use hypothesis for property-based testing.
"""
