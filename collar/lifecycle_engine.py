"""
lifecycle_engine.py - Keeper automation for collar loans

Each step():
1. Advance ledger time
2. Poll smart contracts by unit type (expired positions settle), repeating
   until a pass executes nothing
3. Close every active loan whose position has expired and whose current
   owner approved the keeper, as the engine's closing keeper

A failed close is reported, not retried: the keeper tries again next step.
The transaction log is the audit trail.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from .core import (
    PendingTransaction, Transaction,
    ExecuteResult, LedgerError,
    SmartContract,
    BIPS_BASE, DEFAULT_KEEPER_SLIPPAGE_BIPS, UNIT_TYPE_COLLAR_TAKER,
    mul_div,
)
from .ledger import Ledger
from .loan_engine import LoanEngine
from .swapper import CurrencyConverter, SwapParams


@dataclass
class KeeperReport:
    """What one step did."""
    timestamp: datetime
    transactions: List[Transaction] = field(default_factory=list)
    closed: Dict[int, Decimal] = field(default_factory=dict)
    failed: Dict[int, LedgerError] = field(default_factory=dict)


class LifecycleEngine:
    """
    Settles expired positions and closes delegated loans as they come due.

    Example:
        engine = LifecycleEngine(ledger, loans, swapper)
        reports = engine.run([t0 + timedelta(days=d) for d in range(40)])
    """

    def __init__(
        self,
        ledger: Ledger,
        loans: LoanEngine,
        converter: CurrencyConverter,
        contracts: Optional[Dict[str, SmartContract]] = None,
        slippage_bips: int = DEFAULT_KEEPER_SLIPPAGE_BIPS,
    ):
        """
        Args:
            ledger: The ledger to operate on
            loans: Engine whose loans the keeper closes (as loans.closing_keeper)
            converter: Venue for the keeper's closing conversions
            contracts: Smart contracts for polling (unit_type -> contract);
                       defaults to settling taker positions through the loans' book
            slippage_bips: Tolerance below the oracle-implied close output
        """
        if not 0 <= slippage_bips < BIPS_BASE:
            raise ValueError(f"slippage_bips must be in [0, {BIPS_BASE}), got {slippage_bips}")
        self.ledger = ledger
        self.loans = loans
        self.converter = converter
        self.contracts: Dict[str, SmartContract] = (
            contracts if contracts is not None else {UNIT_TYPE_COLLAR_TAKER: loans.book}
        )
        self.slippage_bips = slippage_bips

        # Configuration
        self.max_passes = 10  # Safety limit for cascading events
        self.verbose = ledger.verbose

    def register(self, unit_type: str, contract: SmartContract) -> None:
        """Register a smart contract (callable or object with check_lifecycle) for a unit type."""
        self.contracts[unit_type] = contract

    def step(self, timestamp: datetime, prices: Optional[Dict[str, Decimal]] = None) -> KeeperReport:
        """
        Advance time, run contract polling, then keeper closes.

        Args:
            timestamp: New timestamp
            prices: Market prices for registered contracts that take them.
                    Position settlement reads the oracle's expiration price
                    and needs none.

        Raises:
            LedgerError: If a contract returns something other than a
                PendingTransaction, or its transaction is rejected
        """
        self.ledger.advance_time(timestamp)
        report = KeeperReport(timestamp)
        prices = dict(prices) if prices else {}

        for _ in range(self.max_passes):
            pass_executed = self._process_smart_contracts(timestamp, prices)
            report.transactions.extend(pass_executed)
            if not pass_executed:
                break

        if self.loans.closing_keeper is not None:
            self._close_due_loans(timestamp, report)
        return report

    def _process_smart_contracts(
        self,
        timestamp: datetime,
        prices: Dict[str, Decimal],
    ) -> List[Transaction]:
        executed: List[Transaction] = []

        # Sorted for deterministic iteration order
        for symbol in sorted(self.ledger.units.keys()):
            unit = self.ledger.units[symbol]
            contract = self.contracts.get(unit.unit_type)
            if not contract:
                continue

            if hasattr(contract, 'check_lifecycle'):
                pending = contract.check_lifecycle(self.ledger, symbol, timestamp, prices)
            else:
                pending = contract(self.ledger, symbol, timestamp, prices)

            if not isinstance(pending, PendingTransaction):
                raise LedgerError(
                    f"Contract for {symbol} must return PendingTransaction, got {type(pending)}"
                )
            if pending.is_empty():
                continue

            exec_result = self.ledger.execute(pending)
            if exec_result == ExecuteResult.REJECTED:
                raise LedgerError(f"Lifecycle event failed for {symbol}: contract execution rejected")
            if exec_result == ExecuteResult.APPLIED:
                executed.append(self.ledger.transaction_log[-1])

        return executed

    def min_close_output(self, loan_id: int) -> Decimal:
        """
        Oracle-implied asset output of closing a loan, less the keeper's slippage.

        Uses the settled taker amount, or a preview at the settlement price
        while the position is still unsettled.
        """
        loan = self.loans.get_loan(loan_id)
        book = self.loans.book
        position = book.get_position(loan_id)
        if position.settled:
            withdrawable = position.taker_withdrawable
        else:
            withdrawable, _ = book.preview_settlement(loan_id, book.settlement_price(position))
        oracle = self.loans.oracle
        expected = mul_div(loan.loan_amount + withdrawable, oracle.base_token_amount, oracle.reference_price())
        places = self.ledger.get_unit(self.loans.asset).decimal_places
        return mul_div(expected, BIPS_BASE - self.slippage_bips, BIPS_BASE, places)

    def _close_due_loans(self, timestamp: datetime, report: KeeperReport) -> None:
        keeper = self.loans.closing_keeper
        for loan_id in self.loans.active_loan_ids():
            owner = self.loans.owner_of(loan_id)
            if owner is None or not self.loans.is_keeper_approved(owner):
                continue
            if timestamp < self.loans.book.expiration(loan_id):
                continue
            params = SwapParams(self.min_close_output(loan_id), self.converter)
            try:
                report.closed[loan_id] = self.loans.close_loan(keeper, loan_id, params)
            except LedgerError as e:
                report.failed[loan_id] = e
                if self.verbose:
                    print(f"✗ KEEPER close of loan #{loan_id} failed: {e}")

    def run(
        self,
        timestamps: List[datetime],
        get_prices_at_timestamp: Optional[Callable[[datetime], Dict[str, Decimal]]] = None,
    ) -> List[KeeperReport]:
        """Run step() over a sequence of timestamps."""
        return [
            self.step(timestamp, get_prices_at_timestamp(timestamp) if get_prices_at_timestamp else None)
            for timestamp in timestamps
        ]
