"""
loan.py - Loan Records and Pure Loan Arithmetic

A loan wraps one collar taker position held by the loan engine. The record
lives in the state of a LOAN_{id} ownership token whose holder is the
borrower; the id is the wrapped position's id.

ARCHITECTURE (Pure Function Pattern):
=====================================

1. FROZEN DATACLASS: Loan (status is a LoanStatus)
2. PURE CALCULATIONS:
   - calculate_loan_amount: split swap proceeds into loan and locked principal
   - loan_amount_after_roll: closed-form loan update after a roll
   - calculate_swap_price / swap_price_deviation_bips / check_swap_price:
     the price-deviation guard on the opening swap
3. ADAPTERS: load_loan reads the record once; loan_state_dict writes it back

Key Formulas:
    loan_amount = floor(proceeds * k / 10_000)      locked = proceeds - loan_amount
    loan_delta  = transfer + roll_fee
    new_loan    = old + loan_delta                  if loan_delta >= 0
                = old - |loan_delta|                if |loan_delta| <= old
    deviation   = |swap - twap| * 10_000 / twap     fails if > max_bips
"""

from __future__ import annotations
from dataclasses import dataclass, fields
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from ..core import (
    LedgerView, Unit,
    BIPS_BASE, UNIT_TYPE_LOAN,
    LedgerError, LoanNotFound, PriceDeviationTooHigh, RepaymentExceedsLoan,
    mul_div, ownership_token, to_decimal,
)


class LoanStatus(str, Enum):
    """Active is the only non-terminal status; a loan leaves it exactly once."""
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"
    ROLLED = "ROLLED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not LoanStatus.ACTIVE


def loan_symbol(loan_id: int) -> str:
    return f"LOAN_{loan_id}"


@dataclass(frozen=True, slots=True)
class Loan:
    """
    Immutable loan record.

    keeper_delegate is the owner who had keeper delegation enabled when the
    record was written, kept for reference only; keeper authorization is
    always checked against the current owner.
    """
    loan_id: int
    deposited_amount: Decimal
    loan_amount: Decimal
    asset: str
    currency: str
    opened_at: datetime
    status: LoanStatus = LoanStatus.ACTIVE
    keeper_delegate: Optional[str] = None
    rolled_from: Optional[int] = None

    def __post_init__(self):
        if not isinstance(self.status, LoanStatus):
            object.__setattr__(self, 'status', LoanStatus(self.status))
        if self.deposited_amount <= 0:
            raise ValueError(f"deposited_amount must be positive, got {self.deposited_amount}")
        if self.loan_amount < 0:
            raise ValueError(f"loan_amount must be non-negative, got {self.loan_amount}")

    @property
    def is_active(self) -> bool:
        return self.status is LoanStatus.ACTIVE


# ============================================================================
# ADAPTERS
# ============================================================================

def loan_state_dict(loan: Loan) -> Dict[str, Any]:
    """Unit state for a loan; the status is stored by value."""
    state = {f.name: getattr(loan, f.name) for f in fields(loan)}
    state['status'] = loan.status.value
    return state


def create_loan_unit(loan: Loan) -> Unit:
    return ownership_token(
        loan_symbol(loan.loan_id),
        f"Collar loan #{loan.loan_id}",
        UNIT_TYPE_LOAN,
        loan_state_dict(loan),
    )


def load_loan(view: LedgerView, loan_id: int) -> Loan:
    """
    Raises:
        LoanNotFound: If no loan was ever opened under loan_id
    """
    try:
        state = view.get_unit_state(loan_symbol(loan_id))
    except LedgerError:
        raise LoanNotFound(f"No loan {loan_id}") from None
    return Loan(**state)


# ============================================================================
# PURE CALCULATIONS
# ============================================================================

def calculate_loan_amount(
    proceeds: Decimal,
    put_strike_percent: int,
    decimal_places: Optional[int],
) -> Tuple[Decimal, Decimal]:
    """
    Split conversion proceeds into the amount lent and the principal locked
    in the position.

    Returns:
        (loan_amount, locked_principal), summing exactly to proceeds

    Example:
        calculate_loan_amount(Decimal("2000"), 9000, 6) == (Decimal("1800.000000"), Decimal("200.000000"))
    """
    proceeds = to_decimal(proceeds)
    loan_amount = mul_div(proceeds, put_strike_percent, BIPS_BASE, decimal_places)
    return loan_amount, proceeds - loan_amount


def loan_amount_after_roll(old_loan_amount: Decimal, transfer: Decimal, roll_fee: Decimal) -> Decimal:
    """
    Loan amount after a roll paying transfer to the borrower (negative when
    the borrower pays) and charging roll_fee.

    The fee was netted out of transfer, so it is added back: the fee is paid,
    not borrowed. With an unchanged price transfer == -roll_fee and the loan
    amount is unchanged.

    Raises:
        RepaymentExceedsLoan: If the implied repayment is larger than the loan

    Example:
        loan_amount_after_roll(Decimal("1800"), Decimal("-50"), Decimal("10")) == Decimal("1760")
    """
    loan_delta = to_decimal(transfer) + to_decimal(roll_fee)
    if loan_delta < 0:
        repayment = -loan_delta
        if repayment > old_loan_amount:
            raise RepaymentExceedsLoan(
                f"roll repays {repayment}, loan amount is only {old_loan_amount}"
            )
        return old_loan_amount - repayment
    return old_loan_amount + loan_delta


def calculate_swap_price(proceeds: Decimal, deposit: Decimal, base_token_amount: Decimal) -> Decimal:
    """Realized price of a conversion, in currency per base_token_amount of the asset."""
    return to_decimal(proceeds) * to_decimal(base_token_amount) / to_decimal(deposit)


def swap_price_deviation_bips(swap_price: Decimal, twap_price: Decimal) -> Decimal:
    """Exact relative deviation of swap_price from twap_price, in bips (not truncated)."""
    twap_price = to_decimal(twap_price)
    if twap_price <= 0:
        raise ValueError(f"reference price must be positive, got {twap_price}")
    return abs(to_decimal(swap_price) - twap_price) * BIPS_BASE / twap_price


def check_swap_price(swap_price: Decimal, twap_price: Decimal, max_deviation_bips: int) -> None:
    """
    Reject a conversion whose price strays more than max_deviation_bips from
    the reference price. A deviation of exactly max_deviation_bips passes.

    The comparison is cross-multiplied so no division rounding can move a
    price across the boundary.

    Raises:
        PriceDeviationTooHigh: If |swap - twap| * 10_000 > max_bips * twap
    """
    swap_price = to_decimal(swap_price)
    twap_price = to_decimal(twap_price)
    if twap_price <= 0:
        raise ValueError(f"reference price must be positive, got {twap_price}")
    if abs(swap_price - twap_price) * BIPS_BASE > max_deviation_bips * twap_price:
        raise PriceDeviationTooHigh(
            f"swap price {swap_price} deviates "
            f"{swap_price_deviation_bips(swap_price, twap_price):.2f} bips from reference "
            f"{twap_price} (max {max_deviation_bips})"
        )
