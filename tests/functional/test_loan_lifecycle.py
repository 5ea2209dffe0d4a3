"""
test_loan_lifecycle.py - End-to-end lifecycle tests for collar loans

Tests complete loan scenarios:
- Open to keeper close at expiration
- Borrowers who did not delegate close themselves
- Keeper failures are reported and retried on a later step
- Roll into a new loan, then close the rolled loan
- Cancel and withdraw the position directly
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from collar import (
    LifecycleEngine, LoanStatus, InsufficientFunds,
    TimeSeriesPricingSource, TimeSeriesPriceOracle,
    PoolSwapper, PositionBook, RollExecutor, LoanEngine,
)

from tests.collar_setup import T0, EXPIRY, build_protocol, drain, fund, snapshot_balances


class TestKeeperLifecycle:
    """LifecycleEngine settling positions and closing delegated loans."""

    def test_nothing_happens_before_expiry(self, open_loan):
        protocol, loan_id = open_loan
        protocol.loans.set_keeper_approved("alice", True)
        keeper = LifecycleEngine(protocol.ledger, protocol.loans, protocol.swapper)

        report = keeper.step(T0 + timedelta(days=1))

        assert report.transactions == []
        assert report.closed == {}
        assert report.failed == {}
        assert protocol.loans.get_loan(loan_id).is_active

    def test_open_to_keeper_close(self):
        """Expired positions settle; only the delegated loan is closed."""
        protocol = build_protocol()
        protocol.loans.set_keeper_approved("alice", True)
        alice_loan, _ = protocol.open("alice")
        bob_loan, _ = protocol.open("bob")
        keeper = LifecycleEngine(protocol.ledger, protocol.loans, protocol.swapper)

        reports = keeper.run([T0 + timedelta(days=10), EXPIRY, EXPIRY + timedelta(days=1)])

        assert len(reports[1].transactions) == 2
        assert reports[1].closed == {alice_loan: Decimal("1000")}
        assert reports[2].closed == {}
        assert protocol.book.is_settled(bob_loan)
        assert protocol.loans.get_loan(alice_loan).status is LoanStatus.CLOSED
        assert protocol.loans.active_loan_ids() == [bob_loan]
        assert protocol.ledger.get_balance("alice", "WETH") == Decimal("10000")

        # bob closes directly against the already settled position
        assert protocol.loans.close_loan("bob", bob_loan, protocol.swap()) == Decimal("1000")

    def test_keeper_close_after_price_rise(self, open_loan):
        """Capped upside: 2200 USDC at 2.5 buys 880 WETH for alice."""
        protocol, loan_id = open_loan
        protocol.loans.set_keeper_approved("alice", True)
        protocol.oracle.set_price(Decimal("2.5"))
        keeper = LifecycleEngine(protocol.ledger, protocol.loans, protocol.swapper)

        assert keeper.min_close_output(loan_id) == Decimal("871.2")
        report = keeper.step(EXPIRY)

        assert report.closed == {loan_id: Decimal("880")}
        assert protocol.ledger.get_balance("alice", "WETH") == Decimal("9880")
        assert protocol.book.get_position(loan_id).provider_withdrawable == Decimal("0")

    def test_failed_close_is_retried(self, open_loan):
        """An owner who cannot repay is reported; the next step closes once funded."""
        protocol, loan_id = open_loan
        protocol.loans.set_keeper_approved("alice", True)
        drain(protocol.ledger, "alice", "USDC")
        keeper = LifecycleEngine(protocol.ledger, protocol.loans, protocol.swapper)

        first = keeper.step(EXPIRY)
        assert isinstance(first.failed[loan_id], InsufficientFunds)
        assert protocol.loans.get_loan(loan_id).is_active
        assert protocol.book.is_settled(loan_id)

        fund(protocol.ledger, "alice", "USDC", "1800")
        second = keeper.step(EXPIRY + timedelta(hours=1))
        assert second.closed == {loan_id: Decimal("1000")}
        assert second.failed == {}

    def test_keeper_slippage_rejects_bad_venue(self, open_loan):
        """A venue paying less than the oracle-implied output fails the close."""
        protocol, loan_id = open_loan
        protocol.loans.set_keeper_approved("alice", True)
        costly = PoolSwapper(protocol.ledger, protocol.oracle, fee_bips=200)
        keeper = LifecycleEngine(protocol.ledger, protocol.loans, costly, slippage_bips=100)

        report = keeper.step(EXPIRY)

        assert loan_id in report.failed
        assert protocol.loans.get_loan(loan_id).is_active

    def test_no_closing_keeper(self):
        """Without a closing keeper the engine only settles."""
        protocol = build_protocol(closing_keeper=None)
        protocol.loans.set_keeper_approved("alice", True)
        loan_id, _ = protocol.open()
        keeper = LifecycleEngine(protocol.ledger, protocol.loans, protocol.swapper)

        report = keeper.step(EXPIRY)

        assert len(report.transactions) == 1
        assert report.closed == {}
        assert protocol.loans.get_loan(loan_id).is_active

    def test_invalid_slippage(self, protocol):
        with pytest.raises(ValueError):
            LifecycleEngine(protocol.ledger, protocol.loans, protocol.swapper, slippage_bips=10_000)


class TestTimeSeriesLifecycle:
    """Loans priced from a price history; settlement uses the expiration price."""

    @staticmethod
    def _wire(protocol, path):
        source = TimeSeriesPricingSource({"WETH": path})
        oracle = TimeSeriesPriceOracle(protocol.ledger, source, "WETH")
        book = PositionBook(protocol.ledger, oracle)
        loans = LoanEngine(protocol.ledger, oracle, book, RollExecutor(protocol.ledger, book, oracle),
                           closing_keeper="keeper", wallet="ts_loans")
        swapper = PoolSwapper(protocol.ledger, oracle)
        offer_id = book.create_offer("lp", 9000, 11000, 30 * 24 * 3600, Decimal("10000"))
        return book, loans, swapper, offer_id

    def test_settles_at_expiration_price(self):
        protocol = build_protocol()
        book, loans, swapper, offer_id = self._wire(protocol, [
            (T0, Decimal("2")),
            (T0 + timedelta(days=15), Decimal("2.1")),
            (EXPIRY, Decimal("1.6")),
            (EXPIRY + timedelta(days=5), Decimal("2")),
        ])
        loan_id, amount = loans.open_loan("alice", Decimal("1000"), Decimal("1800"),
                                          protocol.swap(), offer_id)
        assert amount == Decimal("1800")

        keeper = LifecycleEngine(protocol.ledger, loans, swapper)
        keeper.step(EXPIRY + timedelta(days=6))

        position = book.get_position(loan_id)
        assert position.end_price == Decimal("1.6")
        assert position.taker_withdrawable == Decimal("0")
        assert position.provider_withdrawable == Decimal("400")

    def test_late_poll_ignores_current_prices(self):
        """Polling days after expiry still settles at the expiration price, whatever prices are passed."""
        protocol = build_protocol()
        book, loans, swapper, offer_id = self._wire(protocol, [
            (T0, Decimal("2")),
            (EXPIRY, Decimal("2.1")),
            (EXPIRY + timedelta(days=5), Decimal("1.5")),
        ])
        position_id = book.open("bob", Decimal("200"), offer_id)
        keeper = LifecycleEngine(protocol.ledger, loans, swapper)

        report = keeper.step(EXPIRY + timedelta(days=5), prices={"WETH": Decimal("1.5")})

        assert len(report.transactions) == 1
        position = book.get_position(position_id)
        assert position.end_price == Decimal("2.1")
        assert (position.taker_withdrawable, position.provider_withdrawable) == (Decimal("300"), Decimal("100"))
        assert book.withdraw(position_id, "bob") == Decimal("300")

    def test_step_before_first_observation(self):
        """With nothing due, a step needs no price at all."""
        protocol = build_protocol()
        book, loans, swapper, _ = self._wire(protocol, [(T0 + timedelta(days=2), Decimal("2"))])
        keeper = LifecycleEngine(protocol.ledger, loans, swapper)

        report = keeper.step(T0 + timedelta(days=1))

        assert report.transactions == []
        assert report.closed == {}
        assert report.failed == {}


class TestLoanScenarios:
    """Borrower-driven flows across several operations."""

    def test_roll_then_close(self, open_loan):
        """A rolled loan is closed at the new position's expiration."""
        protocol, loan_id = open_loan
        roll_id = protocol.roll_offer(loan_id)
        protocol.ledger.advance_time(T0 + timedelta(days=5))
        protocol.oracle.set_price(Decimal("2.1"))

        result = protocol.loans.roll_loan("alice", loan_id, roll_id, Decimal("80"))
        new_expiry = protocol.book.expiration(result.new_loan_id)
        assert new_expiry == T0 + timedelta(days=35)

        protocol.ledger.advance_time(new_expiry)
        out = protocol.loans.close_loan("alice", result.new_loan_id, protocol.swap())

        # repay 1890, withdraw 210 at an unchanged price: 2100 USDC at 2.1
        assert out == Decimal("1000")
        assert protocol.ledger.get_balance("alice", "USDC") == Decimal("11800") + Decimal("80") - Decimal("1890")

    def test_cancel_and_withdraw(self, open_loan):
        """A cancelled loan leaves the borrower with a plain taker position."""
        protocol, loan_id = open_loan
        protocol.loans.cancel_loan("alice", loan_id)
        protocol.expire()
        protocol.oracle.set_price(Decimal("2.1"))

        protocol.book.settle(loan_id)
        assert protocol.book.withdraw(loan_id, "alice") == Decimal("300")
        assert protocol.book.withdraw_provider(loan_id, "lp") == Decimal("100")
        assert protocol.ledger.get_balance("alice", "USDC") == Decimal("12100")

    def test_value_only_moves_between_wallets(self, open_loan):
        """Open, settle and close leave every wallet as it started at an unchanged price."""
        protocol, loan_id = open_loan
        ledger = protocol.ledger
        protocol.expire()
        protocol.loans.close_loan("alice", loan_id, protocol.swap())
        protocol.book.withdraw_provider(loan_id, "lp")

        balances = snapshot_balances(ledger)
        assert balances[("alice", "WETH")] == Decimal("10000")
        assert balances[("alice", "USDC")] == Decimal("10000")
        assert balances[("lp", "USDC")] == Decimal("50000") + Decimal("200")
        assert balances[(protocol.loans.wallet, "USDC")] == Decimal("0")
        assert ledger.verify_double_entry({"USDC": Decimal("0"), "WETH": Decimal("0")})["valid"]
