#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: Collar Loans Step by Step

A walk through the life of a collar loan on the double-entry ledger.
Each step builds on the previous one. Press Enter to advance.

WHAT YOU'LL LEARN:
  1-3:  Setup       - Tokens, wallets, oracle, venue, a provider's offer
  4-5:  Borrowing   - Opening a loan, what a failed open leaves behind
  6:    Rolling     - Moving a loan to a new price and expiration
  7-8:  Closing     - Keeper delegation, LifecycleEngine at expiration
  9:    Cancelling  - Unwrapping a loan into its position
  10:   Finale      - Conservation across everything that happened

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import sys

from collar import (
    Ledger, Move, build_transaction, token,
    SYSTEM_WALLET,
    StaticPriceOracle, PoolSwapper, SwapParams,
    PositionBook, RollExecutor, LoanEngine, LifecycleEngine,
    LoanError,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    start_time: datetime = datetime(2025, 1, 1, 9, 0, 0)
    duration_days: int = 30

    start_price: Decimal = Decimal("2")
    roll_price: Decimal = Decimal("2.1")
    expiry_price: Decimal = Decimal("1.7")

    put_strike_percent: int = 9000
    call_strike_percent: int = 11000
    offer_amount: Decimal = Decimal("50000")
    roll_fee: Decimal = Decimal("10")

    deposit: Decimal = Decimal("1000")


CONFIG = DemoConfig()

QUICK_MODE = "--quick" in sys.argv


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    """Print a step header with learning objective."""
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def show_balances(ledger: Ledger, wallets, units=("USDC", "WETH")):
    for wallet in wallets:
        row = "  ".join(f"{unit}={ledger.get_balance(wallet, unit):>14}" for unit in units)
        print(f"    {wallet:<18} {row}")


def issue(ledger: Ledger, wallet: str, unit: str, amount: Decimal):
    ledger.apply(build_transaction(ledger, [
        Move(amount, unit, SYSTEM_WALLET, wallet, f"issue:{wallet}:{unit}")
    ]))


# ============================================================================
# STEPS
# ============================================================================

def step_01_setup():
    """Ledger, tokens and participants."""
    step_header(1, "The Ledger and Its Tokens",
        "Register the settlement currency, the collateral asset and the participants.")

    ledger = Ledger("collar-demo", CONFIG.start_time, verbose=False)
    ledger.register_unit(token("USDC", "USD Coin", 6))
    ledger.register_unit(token("WETH", "Wrapped Ether", 18))
    for wallet in ("alice", "lp", "keeper"):
        ledger.register_wallet(wallet)

    print("    USDC has 6 decimals, WETH 18. Every amount is truncated at its")
    print("    token's decimals, exactly like integer base units on-chain.")
    wait_for_enter()
    return ledger


def step_02_market(ledger: Ledger):
    """Oracle and conversion venue."""
    step_header(2, "Oracle and Venue",
        "Give the protocol a reference price and somewhere to convert.")

    oracle = StaticPriceOracle("WETH", "USDC", CONFIG.start_price)
    swapper = PoolSwapper(ledger, oracle)
    issue(ledger, swapper.wallet, "USDC", Decimal("1000000"))
    issue(ledger, swapper.wallet, "WETH", Decimal("1000000"))
    issue(ledger, "alice", "WETH", Decimal("10000"))
    issue(ledger, "alice", "USDC", Decimal("10000"))
    issue(ledger, "lp", "USDC", Decimal("100000"))

    print(f"    {oracle}")
    print("    All balances were issued from SYSTEM_WALLET, so every unit sums to zero.")
    show_balances(ledger, ["alice", "lp", swapper.wallet])
    wait_for_enter()
    return oracle, swapper


def step_03_offer(ledger: Ledger, oracle, swapper):
    """Wire the protocol and publish liquidity."""
    step_header(3, "A Provider's Offer",
        "The liquidity provider commits currency for collars at fixed strikes.")

    book = PositionBook(ledger, oracle)
    rolls = RollExecutor(ledger, book, oracle)
    loans = LoanEngine(ledger, oracle, book, rolls, closing_keeper="keeper")
    duration = int(timedelta(days=CONFIG.duration_days).total_seconds())
    offer_id = book.create_offer(
        "lp", CONFIG.put_strike_percent, CONFIG.call_strike_percent, duration, CONFIG.offer_amount,
    )

    offer = book.get_offer(offer_id)
    print(f"    Offer #{offer_id}: put {offer.put_strike_percent} bips, call {offer.call_strike_percent} bips,")
    print(f"    {offer.available} USDC available, {CONFIG.duration_days} days")
    print("    The put strike doubles as the loan ratio: 90% of the proceeds are lent.")
    wait_for_enter()
    return book, rolls, loans, offer_id


def step_04_open(ledger: Ledger, loans: LoanEngine, swapper, offer_id: int):
    """Open a loan."""
    step_header(4, "Opening a Loan",
        "Deposit WETH, receive USDC now, keep exposure between the strikes.")

    loan_id, amount = loans.open_loan(
        "alice", CONFIG.deposit, Decimal("0"), SwapParams(Decimal("0"), swapper), offer_id,
    )
    loan = loans.get_loan(loan_id)
    position = loans.book.get_position(loan_id)
    print(f"    Loan #{loan_id}: deposited {loan.deposited_amount} WETH, borrowed {amount} USDC")
    print(f"    Position locks taker={position.taker_locked} provider={position.provider_locked} USDC")
    print(f"    alice holds LOAN_{loan_id}; the engine holds TAKER_{loan_id}")
    show_balances(ledger, ["alice", loans.wallet])
    wait_for_enter()
    return loan_id


def step_05_failed_open(ledger: Ledger, loans: LoanEngine, swapper, offer_id: int):
    """Rejections are atomic."""
    step_header(5, "A Rejected Open",
        "A manipulated conversion is caught and nothing changes.")

    sequence = ledger.sequence
    try:
        loans.open_loan("alice", CONFIG.deposit, Decimal("0"),
                        SwapParams(Decimal("0"), swapper, {"rate": "2.5"}), offer_id)
    except LoanError as e:
        print(f"    ✗ {type(e).__name__}: {e}")
    print(f"    Ledger sequence before {sequence}, after {ledger.sequence}")
    wait_for_enter()


def step_06_roll(ledger: Ledger, loans: LoanEngine, oracle, rolls, loan_id: int):
    """Roll into a new position."""
    step_header(6, "Rolling",
        "At a new price, settle the old position into a new one and adjust the loan.")

    roll_id = rolls.create_offer(
        "lp", loan_id, CONFIG.roll_fee, 0, Decimal("1"), Decimal("3"), Decimal("-1000"),
        ledger.current_time + timedelta(days=5),
    )
    ledger.advance_time(ledger.current_time + timedelta(days=2))
    oracle.set_price(CONFIG.roll_price)
    preview = rolls.preview(roll_id, oracle.reference_price())
    print(f"    Price moved to {CONFIG.roll_price}; preview pays alice {preview.to_taker} (fee {preview.roll_fee})")

    result = loans.roll_loan("alice", loan_id, roll_id, preview.to_taker)
    print(f"    Loan #{loan_id} ROLLED → loan #{result.new_loan_id} of {result.new_loan_amount} USDC")
    wait_for_enter()
    return result.new_loan_id


def step_07_delegate(loans: LoanEngine):
    """Keeper delegation."""
    step_header(7, "Keeper Delegation",
        "Let the closing keeper close at expiration on alice's behalf.")

    loans.set_keeper_approved("alice", True)
    print(f"    keeper approved by alice: {loans.is_keeper_approved('alice')}")
    print("    Funds still come from and go to alice; the keeper only pulls the trigger.")
    wait_for_enter()


def step_08_lifecycle(ledger: Ledger, loans: LoanEngine, oracle, swapper, loan_id: int):
    """LifecycleEngine at expiration."""
    step_header(8, "LifecycleEngine",
        "Advance to expiration: positions settle, delegated loans close.")

    engine = LifecycleEngine(ledger, loans, swapper)
    expiry = loans.book.expiration(loan_id)
    oracle.set_price(CONFIG.expiry_price)
    reports = engine.run([expiry - timedelta(days=1), expiry])
    for report in reports:
        print(f"    {report.timestamp}: {len(report.transactions)} settlements, "
              f"closed={dict(report.closed)} failed={list(report.failed)}")

    position = loans.book.get_position(loan_id)
    print(f"    Settled at {position.end_price}: taker {position.taker_withdrawable}, "
          f"provider {position.provider_withdrawable}")
    print(f"    The put protected alice below {position.put_price}")
    show_balances(ledger, ["alice", "lp"])
    wait_for_enter()


def step_09_cancel(ledger: Ledger, loans: LoanEngine, swapper, offer_id: int):
    """Cancel a loan."""
    step_header(9, "Cancelling",
        "Keep the borrowed USDC and take the bare position instead of repaying.")

    loan_id, _ = loans.open_loan("alice", Decimal("100"), Decimal("0"), SwapParams(Decimal("0"), swapper), offer_id)
    loans.cancel_loan("alice", loan_id)
    print(f"    Loan #{loan_id} is {loans.get_loan(loan_id).status.value}; "
          f"alice now holds TAKER_{loan_id}: {ledger.get_balance('alice', f'TAKER_{loan_id}')}")
    wait_for_enter()


def step_10_conservation(ledger: Ledger):
    """Conservation across the whole run."""
    step_header(10, "Conservation",
        "Every unit still sums to zero across all wallets.")

    result = ledger.verify_double_entry({"USDC": Decimal("0"), "WETH": Decimal("0")})
    for unit in ("USDC", "WETH"):
        print(f"    Σ {unit} = {result['supplies'][unit]}")
    print(f"    valid: {result['valid']}  ({len(ledger.transaction_log)} transactions logged)")


def main():
    print("""
    ╔══════════════════════════════════════════════════════════════════╗
    ║                 COLLAR LOANS: AN INTERACTIVE TOUR                ║
    ╚══════════════════════════════════════════════════════════════════╝
    """)
    ledger = step_01_setup()
    oracle, swapper = step_02_market(ledger)
    book, rolls, loans, offer_id = step_03_offer(ledger, oracle, swapper)
    loan_id = step_04_open(ledger, loans, swapper, offer_id)
    step_05_failed_open(ledger, loans, swapper, offer_id)
    loan_id = step_06_roll(ledger, loans, oracle, rolls, loan_id)
    step_07_delegate(loans)
    step_08_lifecycle(ledger, loans, oracle, swapper, loan_id)
    oracle.set_price(CONFIG.start_price)
    step_09_cancel(ledger, loans, swapper, offer_id)
    step_10_conservation(ledger)


if __name__ == "__main__":
    main()
