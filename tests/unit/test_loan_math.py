"""
test_loan_math.py - Unit tests for loan records and loan arithmetic

Tests:
- Loan: validation, status coercion, state round trip
- calculate_loan_amount: the k split of conversion proceeds
- loan_amount_after_roll: increases, decreases, fee neutrality, over-repayment
- Price deviation guard: boundary behaviour
"""

import pytest
from datetime import datetime
from decimal import Decimal

from collar import (
    Loan, LoanStatus, load_loan,
    calculate_loan_amount, loan_amount_after_roll,
    calculate_swap_price, swap_price_deviation_bips, check_swap_price,
    LoanNotFound, NotActive, PriceDeviationTooHigh, RepaymentExceedsLoan,
    MAX_SWAP_PRICE_DEVIATION_BIPS,
)
from collar.units.loan import loan_state_dict, loan_symbol

from tests.fake_view import FakeView


def _loan(**overrides) -> Loan:
    fields = dict(
        loan_id=1,
        deposited_amount=Decimal("1000"),
        loan_amount=Decimal("1800"),
        asset="WETH",
        currency="USDC",
        opened_at=datetime(2025, 1, 1),
    )
    fields.update(overrides)
    return Loan(**fields)


class TestLoanRecord:
    """Tests for the Loan dataclass and its adapters."""

    def test_defaults(self):
        """New loans are active, undelegated and not rolled."""
        loan = _loan()
        assert loan.status is LoanStatus.ACTIVE
        assert loan.is_active
        assert loan.keeper_delegate is None
        assert loan.rolled_from is None

    def test_status_string_is_coerced(self):
        """Records read back from state carry the status by value."""
        assert _loan(status="CLOSED").status is LoanStatus.CLOSED

    def test_terminal_statuses(self):
        """Only ACTIVE is non-terminal."""
        assert not LoanStatus.ACTIVE.is_terminal
        for status in (LoanStatus.CLOSED, LoanStatus.ROLLED, LoanStatus.CANCELLED):
            assert status.is_terminal

    def test_zero_deposit_rejected(self):
        """A loan without collateral is invalid."""
        with pytest.raises(ValueError):
            _loan(deposited_amount=Decimal("0"))

    def test_negative_loan_rejected(self):
        """Loan amounts are never negative."""
        with pytest.raises(ValueError):
            _loan(loan_amount=Decimal("-1"))

    def test_state_round_trip(self):
        """loan_state_dict and load_loan agree."""
        loan = _loan(status=LoanStatus.ROLLED, rolled_from=3)
        state = loan_state_dict(loan)
        assert state["status"] == "ROLLED"
        view = FakeView({}, states={loan_symbol(1): state})
        assert load_loan(view, 1) == loan

    def test_unknown_loan(self):
        """A missing record is LoanNotFound, which is a NotActive."""
        with pytest.raises(LoanNotFound):
            load_loan(FakeView({}), 9)
        with pytest.raises(NotActive):
            load_loan(FakeView({}), 9)


class TestLoanAmount:
    """Tests for calculate_loan_amount."""

    def test_split(self):
        """k = 90% of 2000 proceeds is lent, the rest locked."""
        assert calculate_loan_amount(Decimal("2000"), 9000, 6) == (Decimal("1800"), Decimal("200"))

    def test_truncation_goes_to_locked(self):
        """The truncated remainder is locked, so both parts sum to the proceeds."""
        loan, locked = calculate_loan_amount(Decimal("0.000011"), 9000, 6)
        assert loan == Decimal("0.000009")
        assert locked == Decimal("0.000002")


class TestLoanAmountAfterRoll:
    """Tests for loan_amount_after_roll."""

    def test_repayment(self):
        """A pull of 50 with a fee of 10 repays 40."""
        assert loan_amount_after_roll(Decimal("1800"), Decimal("-50"), Decimal("10")) == Decimal("1760")

    def test_increase(self):
        """A payout of 80 with a fee of 10 borrows 90 more."""
        assert loan_amount_after_roll(Decimal("1800"), Decimal("80"), Decimal("10")) == Decimal("1890")

    def test_fee_only_is_neutral(self):
        """With an unchanged price the transfer is minus the fee and the loan stays."""
        assert loan_amount_after_roll(Decimal("1800"), Decimal("-10"), Decimal("10")) == Decimal("1800")

    def test_repay_entire_loan(self):
        """Repaying exactly the loan leaves zero."""
        assert loan_amount_after_roll(Decimal("100"), Decimal("-110"), Decimal("10")) == Decimal("0")

    def test_over_repayment(self):
        """Repaying more than the loan is an error."""
        with pytest.raises(RepaymentExceedsLoan):
            loan_amount_after_roll(Decimal("100"), Decimal("-111"), Decimal("10"))


class TestPriceDeviation:
    """Tests for the conversion price guard."""

    def test_swap_price(self):
        """2000 USDC for 1000 WETH is a price of 2 per token."""
        assert calculate_swap_price(Decimal("2000"), Decimal("1000"), Decimal("1")) == Decimal("2")

    def test_swap_price_with_base_amount(self):
        """Prices are quoted per base_token_amount."""
        assert calculate_swap_price(Decimal("2000"), Decimal("1000"), Decimal("1000")) == Decimal("2000")

    def test_deviation_bips(self):
        """5% above is 500 bips."""
        assert swap_price_deviation_bips(Decimal("1050000"), Decimal("1000000")) == Decimal("500")

    def test_boundary_passes(self):
        """Exactly the maximum deviation is allowed."""
        check_swap_price(Decimal("1050000"), Decimal("1000000"), MAX_SWAP_PRICE_DEVIATION_BIPS)
        check_swap_price(Decimal("950000"), Decimal("1000000"), MAX_SWAP_PRICE_DEVIATION_BIPS)

    def test_just_beyond_fails(self):
        """One unit beyond the boundary fails, in either direction."""
        with pytest.raises(PriceDeviationTooHigh):
            check_swap_price(Decimal("1050001"), Decimal("1000000"), MAX_SWAP_PRICE_DEVIATION_BIPS)
        with pytest.raises(PriceDeviationTooHigh):
            check_swap_price(Decimal("949999"), Decimal("1000000"), MAX_SWAP_PRICE_DEVIATION_BIPS)

    def test_zero_tolerance(self):
        """With max 0 only the exact price passes."""
        check_swap_price(Decimal("2"), Decimal("2"), 0)
        with pytest.raises(PriceDeviationTooHigh):
            check_swap_price(Decimal("2.000001"), Decimal("2"), 0)

    def test_non_positive_reference(self):
        """A zero reference price is an error, not a division crash."""
        with pytest.raises(ValueError):
            check_swap_price(Decimal("1"), Decimal("0"), 500)
