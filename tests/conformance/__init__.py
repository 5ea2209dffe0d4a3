"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the collar loan system.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. conservation.py - Double-entry accounting and loan arithmetic laws
2. atomicity.py - All-or-nothing operations, terminal monotonicity

These tests use hypothesis for property-based testing.
"""
