"""
Conservation Law Conformance Tests

INVARIANT: For all units u, at all times t:
    Σ_{w ∈ wallets} balance(w, u, t) = constant

With every balance issued from the system wallet, the constant is zero.
Loan operations redistribute value between wallets and never create it.

Loan arithmetic laws checked alongside:
    loan_amount + locked = conversion proceeds
    new_loan_amount = loan_amount + transfer + roll_fee
    taker_withdrawable + provider_withdrawable = taker_locked + provider_locked
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from decimal import Decimal

from collar import (
    PriceDeviationTooHigh, BIPS_BASE,
    calculate_loan_amount, truncate,
)

from tests.collar_setup import build_protocol


ZERO_SUPPLY = {"USDC": Decimal("0"), "WETH": Decimal("0")}


def _assert_conserved(protocol):
    result = protocol.ledger.verify_double_entry(ZERO_SUPPLY)
    assert result["valid"], result
    assert protocol.ledger.get_balance(protocol.loans.wallet, "USDC") == Decimal("0")
    assert protocol.ledger.get_balance(protocol.loans.wallet, "WETH") == Decimal("0")


class TestLoanAmountLaw:
    """Proceeds split exactly into the loan and the locked amount."""

    @given(
        st.decimals(min_value=Decimal("0.000001"), max_value=Decimal("1000000"), places=6),
        st.integers(min_value=1, max_value=BIPS_BASE - 1),
    )
    @settings(max_examples=200)
    def test_split_is_exact(self, proceeds, put_strike_percent):
        """
        PROPERTY: loan + locked == proceeds, loan is truncated, never rounded up.
        """
        loan, locked = calculate_loan_amount(proceeds, put_strike_percent, 6)
        assert loan + locked == proceeds
        assert loan == truncate(proceeds * put_strike_percent / BIPS_BASE, 6)
        assert loan <= proceeds * put_strike_percent / BIPS_BASE
        assert locked >= 0

    @given(st.decimals(min_value=Decimal("1"), max_value=Decimal("5000"), places=3))
    @settings(max_examples=30)
    def test_open_conserves(self, deposit):
        """
        PROPERTY: Opening a loan moves value; supply and the engine float stay put.
        """
        protocol = build_protocol()
        _, amount = protocol.open(deposit=deposit)
        assert amount == truncate(deposit * 2 * Decimal("0.9"), 6)
        _assert_conserved(protocol)


class TestSettlementConservation:
    """Settlement splits the locked total between the two sides."""

    @given(st.decimals(min_value=Decimal("0.5"), max_value=Decimal("5"), places=2))
    @settings(max_examples=40)
    def test_close_at_any_price(self, end_price):
        """
        PROPERTY: For any end price, close returns what the settlement implies
        and conserves every unit.
        """
        protocol = build_protocol()
        loan_id, _ = protocol.open()
        protocol.expire()
        protocol.oracle.set_price(end_price)

        protocol.loans.close_loan("alice", loan_id, protocol.swap())

        position = protocol.book.get_position(loan_id)
        assert position.taker_withdrawable + position.provider_withdrawable == Decimal("400")
        assert Decimal("0") <= position.taker_withdrawable <= Decimal("400")
        assert protocol.book.withdraw_provider(loan_id, "lp") == position.provider_withdrawable
        _assert_conserved(protocol)


class TestRollConservation:
    """Rolls move value between borrower and provider only."""

    @given(st.decimals(min_value=Decimal("0"), max_value=Decimal("50"), places=2))
    @settings(max_examples=30)
    def test_unchanged_price_roll_keeps_loan(self, fee):
        """
        PROPERTY: At an unchanged price the borrower pays exactly the fee and
        the loan amount does not change.
        """
        protocol = build_protocol()
        loan_id, amount = protocol.open()
        roll_id = protocol.roll_offer(loan_id, fee=str(fee))

        result = protocol.loans.roll_loan("alice", loan_id, roll_id, -fee)

        assert result.transfer == -fee
        assert result.new_loan_amount == amount
        _assert_conserved(protocol)

    @given(st.decimals(min_value=Decimal("1.5"), max_value=Decimal("2.5"), places=3))
    @settings(max_examples=40)
    def test_roll_amount_law(self, price):
        """
        PROPERTY: new_loan_amount == loan_amount + transfer + roll_fee, and
        nothing is created or destroyed.
        """
        protocol = build_protocol()
        loan_id, amount = protocol.open()
        roll_id = protocol.roll_offer(loan_id, fee="10")
        protocol.oracle.set_price(price)

        result = protocol.loans.roll_loan("alice", loan_id, roll_id, Decimal("-100000"))

        assert result.new_loan_amount == amount + result.transfer + result.roll_fee
        _assert_conserved(protocol)


class TestPriceDeviationBoundary:
    """The conversion guard accepts exactly the tolerance band."""

    @given(st.decimals(min_value=Decimal("1.8"), max_value=Decimal("2.2"), places=4))
    @settings(max_examples=60)
    def test_open_passes_iff_within_band(self, rate):
        """
        PROPERTY: With the oracle at 2 and a 500 bips tolerance, a routed
        rate opens iff it lies within [1.9, 2.1].
        """
        protocol = build_protocol()
        within = abs(rate - 2) * BIPS_BASE / 2 <= 500
        if within:
            protocol.open(rate=rate)
            _assert_conserved(protocol)
        else:
            with pytest.raises(PriceDeviationTooHigh):
                protocol.open(rate=rate)
            assert protocol.ledger.get_balance("alice", "WETH") == Decimal("10000")
