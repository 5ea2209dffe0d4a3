"""
collar_setup.py - Test Helper wiring the collar loan protocol

Builds a ledger with WETH/USDC, a price oracle, a swap pool, a position
book, a roll executor and a loan engine, plus helpers for comparing ledgers.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Tuple

from collar import (
    Ledger, Move, build_transaction,
    SYSTEM_WALLET,
    token,
    StaticPriceOracle,
    PoolSwapper, SwapParams,
    PositionBook, RollExecutor, LoanEngine,
)


T0 = datetime(2025, 1, 1)
DURATION = int(timedelta(days=30).total_seconds())
EXPIRY = T0 + timedelta(days=30)

WALLETS = ("alice", "bob", "lp", "keeper")


def fund(ledger: Ledger, wallet: str, unit: str, amount) -> None:
    """Issue amount of unit to wallet from the system wallet (keeps supply balanced)."""
    ledger.apply(build_transaction(ledger, [
        Move(Decimal(str(amount)), unit, SYSTEM_WALLET, wallet, f"fund:{wallet}:{unit}:{ledger.sequence}")
    ]))


def drain(ledger: Ledger, wallet: str, unit: str, leave="0") -> None:
    """Return wallet's unit balance above leave to the system wallet."""
    excess = ledger.get_balance(wallet, unit) - Decimal(str(leave))
    ledger.apply(build_transaction(ledger, [
        Move(excess, unit, wallet, SYSTEM_WALLET, f"drain:{wallet}:{unit}:{ledger.sequence}")
    ]))


def compare_ledger_states(ledger1: Ledger, ledger2: Ledger, tolerance: Decimal = None) -> dict:
    """Compare two ledger states and return differences."""
    if tolerance is None:
        tolerance = Decimal("1e-9")
    balance_diffs = []
    state_diffs = []

    all_wallets = ledger1.registered_wallets | ledger2.registered_wallets
    all_units = set(ledger1.units.keys()) | set(ledger2.units.keys())

    for wallet in all_wallets:
        for unit in all_units:
            bal1 = ledger1.balances.get(wallet, {}).get(unit, Decimal("0"))
            bal2 = ledger2.balances.get(wallet, {}).get(unit, Decimal("0"))
            if abs(bal1 - bal2) > tolerance:
                balance_diffs.append({
                    "wallet": wallet,
                    "unit": unit,
                    "ledger1": bal1,
                    "ledger2": bal2,
                    "diff": bal1 - bal2
                })

    for unit_sym in all_units:
        if unit_sym not in ledger1.units or unit_sym not in ledger2.units:
            state_diffs.append({"unit": unit_sym, "diffs": "registered in one ledger only"})
            continue
        state1 = ledger1.get_unit_state(unit_sym)
        state2 = ledger2.get_unit_state(unit_sym)
        field_diffs = {
            key: {"ledger1": state1.get(key), "ledger2": state2.get(key)}
            for key in set(state1) | set(state2)
            if state1.get(key) != state2.get(key)
        }
        if field_diffs:
            state_diffs.append({"unit": unit_sym, "diffs": field_diffs})

    return {
        "equal": len(balance_diffs) == 0 and len(state_diffs) == 0,
        "balance_diffs": balance_diffs,
        "state_diffs": state_diffs,
    }


def snapshot_balances(ledger: Ledger, units=("USDC", "WETH")) -> Dict[Tuple[str, str], Decimal]:
    """(wallet, unit) -> balance for every registered wallet."""
    return {
        (wallet, unit): ledger.get_balance(wallet, unit)
        for wallet in sorted(ledger.registered_wallets)
        for unit in units
    }


@dataclass
class CollarSetup:
    """Everything a loan test touches, wired onto one ledger."""
    ledger: Ledger
    oracle: StaticPriceOracle
    swapper: PoolSwapper
    book: PositionBook
    rolls: RollExecutor
    loans: LoanEngine
    offer_id: int

    def swap(self, min_amount_out="0", **routing) -> SwapParams:
        return SwapParams(Decimal(str(min_amount_out)), self.swapper, routing)

    def open(self, borrower: str = "alice", deposit="1000", min_loan="0", **routing) -> Tuple[int, Decimal]:
        return self.loans.open_loan(borrower, Decimal(str(deposit)), Decimal(str(min_loan)),
                                    self.swap(**routing), self.offer_id)

    def expire(self, days: int = 0) -> None:
        self.ledger.advance_time(EXPIRY + timedelta(days=days))

    def roll_offer(self, position_id: int, fee="10", factor=0, min_price="0.01", max_price="1000",
                   min_to_provider="-100000", deadline: datetime = None) -> int:
        return self.rolls.create_offer(
            "lp", position_id, Decimal(fee), factor,
            Decimal(min_price), Decimal(max_price), Decimal(min_to_provider),
            deadline or T0 + timedelta(days=10),
        )


def build_protocol(put_strike_percent: int = 9000, call_strike_percent: int = 11000,
                   offer_amount="50000", closing_keeper: str = "keeper",
                   verbose: bool = False) -> CollarSetup:
    """
    WETH/USDC at price 2, a pool with deep liquidity on both sides and one
    liquidity offer from lp for 30-day positions.
    """
    ledger = Ledger("collar", T0, verbose=verbose)
    ledger.register_unit(token("USDC", "USD Coin", 6))
    ledger.register_unit(token("WETH", "Wrapped Ether", 18))
    for wallet in WALLETS:
        ledger.register_wallet(wallet)

    oracle = StaticPriceOracle("WETH", "USDC", Decimal("2"))
    swapper = PoolSwapper(ledger, oracle)
    book = PositionBook(ledger, oracle)
    rolls = RollExecutor(ledger, book, oracle)
    loans = LoanEngine(ledger, oracle, book, rolls, closing_keeper=closing_keeper)

    fund(ledger, swapper.wallet, "USDC", "1000000")
    fund(ledger, swapper.wallet, "WETH", "1000000")
    for wallet in ("alice", "bob"):
        fund(ledger, wallet, "WETH", "10000")
        fund(ledger, wallet, "USDC", "10000")
    fund(ledger, "lp", "USDC", "100000")

    offer_id = book.create_offer("lp", put_strike_percent, call_strike_percent, DURATION, Decimal(offer_amount))
    return CollarSetup(ledger, oracle, swapper, book, rolls, loans, offer_id)
