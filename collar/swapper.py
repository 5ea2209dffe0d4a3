"""
swapper.py - Currency conversion venue for the collar loan protocol

The loan engine converts the deposited asset into the settlement currency when
a loan opens, and back again when it closes. It does so through anything
implementing CurrencyConverter; PoolSwapper is the in-ledger reference venue.

A converter moves amount_in of asset_in from the payer and delivers its output
to the payer. The converter enforces its own minimum output, but callers must
not trust the amount it reports: the loan engine re-checks it against its
own balance delta.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, List, Mapping, Optional, Protocol, runtime_checkable

from .core import (
    LedgerView, Move, PendingTransaction, TransactionOrigin, OriginType,
    BIPS_BASE, SWAP_POOL_WALLET,
    SlippageTooLow,
    build_transaction, mul_div, to_decimal,
)
from .ledger import Ledger
from .pricing_source import PriceOracle


@runtime_checkable
class CurrencyConverter(Protocol):
    """Executes a conversion for a payer and returns the realized output."""

    def convert(
        self,
        payer: str,
        asset_in: str,
        asset_out: str,
        amount_in: Decimal,
        min_amount_out: Decimal,
        routing_data: Mapping[str, Any],
    ) -> Decimal:
        ...


@dataclass(frozen=True, slots=True)
class SwapParams:
    """
    Caller-chosen conversion parameters: the venue, the minimum acceptable
    output, and venue-specific routing data passed through untouched.
    """
    min_amount_out: Decimal
    converter: CurrencyConverter
    routing_data: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.min_amount_out, Decimal):
            object.__setattr__(self, 'min_amount_out', Decimal(str(self.min_amount_out)))
        if self.min_amount_out < 0:
            raise ValueError(f"min_amount_out must be non-negative, got {self.min_amount_out}")


# ============================================================================
# PURE FUNCTIONS
# ============================================================================

def calculate_swap_output(
    amount_in: Decimal,
    rate: Decimal,
    fee_bips: int,
    decimal_places: Optional[int],
) -> Decimal:
    """
    Output of a conversion at rate (asset_out per asset_in), less fee_bips,
    truncated toward zero at the output token's decimals.

    Example:
        calculate_swap_output(Decimal("1000"), Decimal("2"), 30, 6) == Decimal("1994.000000")
    """
    gross = to_decimal(amount_in) * to_decimal(rate)
    return mul_div(gross, BIPS_BASE - fee_bips, BIPS_BASE, decimal_places)


def compute_swap(
    view: LedgerView,
    pool: str,
    payer: str,
    asset_in: str,
    asset_out: str,
    amount_in: Decimal,
    amount_out: Decimal,
    contract_id: str,
) -> PendingTransaction:
    """Both legs of a conversion between a payer and a pool wallet, as one transaction."""
    moves: List[Move] = [
        Move(amount_in, asset_in, payer, pool, f"{contract_id}:in"),
    ]
    if amount_out > 0:
        moves.append(Move(amount_out, asset_out, pool, payer, f"{contract_id}:out"))
    origin = TransactionOrigin(OriginType.EXTERNAL, pool, asset_out, "SWAP")
    return build_transaction(view, moves, origin=origin)


# ============================================================================
# REFERENCE VENUE
# ============================================================================

class PoolSwapper:
    """
    Converter trading against a pool wallet at the oracle rate.

    The asset -> currency direction uses reference_price() / base_token_amount,
    the opposite direction its inverse. routing_data["rate"], when present,
    overrides the rate for that one conversion (asset_out per asset_in); tests
    use it to model a manipulated or off-market route.

    Example:
        swapper = PoolSwapper(ledger, oracle, fee_bips=30)
        out = swapper.convert("alice", "WETH", "USDC", Decimal("1"), Decimal("1.9"), {})
    """

    def __init__(
        self,
        ledger: Ledger,
        oracle: PriceOracle,
        wallet: str = SWAP_POOL_WALLET,
        fee_bips: int = 0,
    ):
        if not 0 <= fee_bips < BIPS_BASE:
            raise ValueError(f"fee_bips must be in [0, {BIPS_BASE}), got {fee_bips}")
        self.ledger = ledger
        self.oracle = oracle
        self.wallet = ledger.ensure_wallet(wallet)
        self.fee_bips = fee_bips

    def rate(self, asset_in: str, asset_out: str, routing_data: Mapping[str, Any]) -> Decimal:
        """
        Raises:
            ValueError: If the pair is not the oracle's pair and no rate is routed
        """
        if "rate" in routing_data:
            return to_decimal(routing_data["rate"])
        price = self.oracle.reference_price()
        if (asset_in, asset_out) == (self.oracle.asset, self.oracle.currency):
            return price / self.oracle.base_token_amount
        if (asset_in, asset_out) == (self.oracle.currency, self.oracle.asset):
            return self.oracle.base_token_amount / price
        raise ValueError(f"No route for {asset_in} -> {asset_out}")

    def quote(
        self,
        asset_in: str,
        asset_out: str,
        amount_in: Decimal,
        routing_data: Optional[Mapping[str, Any]] = None,
    ) -> Decimal:
        rate = self.rate(asset_in, asset_out, routing_data or {})
        places = self.ledger.get_unit(asset_out).decimal_places
        return calculate_swap_output(amount_in, rate, self.fee_bips, places)

    def convert(
        self,
        payer: str,
        asset_in: str,
        asset_out: str,
        amount_in: Decimal,
        min_amount_out: Decimal,
        routing_data: Mapping[str, Any],
    ) -> Decimal:
        """
        Raises:
            SlippageTooLow: If the output is below min_amount_out
            InsufficientFunds: If the payer or the pool cannot cover its leg
        """
        amount_out = self.quote(asset_in, asset_out, amount_in, routing_data)
        if amount_out < min_amount_out:
            raise SlippageTooLow(
                f"swap output {amount_out} {asset_out} < minimum {min_amount_out}"
            )
        contract_id = f"{self.wallet}:swap:{self.ledger.sequence}"
        self.ledger.apply(compute_swap(
            self.ledger, self.wallet, payer, asset_in, asset_out,
            amount_in, amount_out, contract_id,
        ))
        if self.ledger.verbose:
            print(f"🔄 SWAP {payer}: {amount_in} {asset_in} → {amount_out} {asset_out}")
        return amount_out
