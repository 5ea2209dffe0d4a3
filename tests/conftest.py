"""
conftest.py - Shared pytest fixtures for collar loan tests

Provides common fixtures used across unit, functional and conformance tests:
- Basic ledgers (empty, funded tokens)
- A fully wired protocol (oracle, pool, position book, rolls, loan engine)
- A protocol with one open loan

Wiring and comparison helpers live in tests/collar_setup.py.
"""

import pytest
from decimal import Decimal

from collar import Ledger, token

from tests.collar_setup import T0, build_protocol, fund


# =============================================================================
# BASIC FIXTURES
# =============================================================================

@pytest.fixture
def empty_ledger():
    """Fresh ledger with no registrations."""
    return Ledger("test", T0, verbose=False)


@pytest.fixture
def basic_ledger():
    """Ledger with USDC (6 decimals), WETH (18 decimals) and two wallets."""
    ledger = Ledger("test", T0, verbose=False)
    ledger.register_unit(token("USDC", "USD Coin", 6))
    ledger.register_unit(token("WETH", "Wrapped Ether", 18))
    ledger.register_wallet("alice")
    ledger.register_wallet("bob")
    return ledger


@pytest.fixture
def funded_ledger(basic_ledger):
    """Basic ledger with alice holding 10,000 USDC, issued from the system wallet."""
    fund(basic_ledger, "alice", "USDC", Decimal("10000"))
    return basic_ledger


# =============================================================================
# PROTOCOL FIXTURES
# =============================================================================

@pytest.fixture
def protocol():
    """Wired protocol: WETH at 2 USDC, put 90%, call 110%, 30 days, keeper "keeper"."""
    return build_protocol()


@pytest.fixture
def open_loan(protocol):
    """The protocol with alice's 1000 WETH loan (1800 USDC lent, 200 locked) open."""
    loan_id, _ = protocol.open()
    return protocol, loan_id
