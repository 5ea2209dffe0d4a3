"""
Atomicity Conformance Tests

INVARIANT: Transactions and loan operations are all-or-nothing.

    ∀ transaction T:
        T succeeds ⟹ all moves in T are applied
        T fails ⟹ no moves in T are applied

    ∀ loan operation op:
        op raises ⟹ the ledger is exactly as before op

INVARIANT: A loan leaves ACTIVE at most once; every operation on a
terminal loan fails with NotActive.
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from decimal import Decimal

from collar import (
    Ledger, Move, ExecuteResult, token, build_transaction,
    LoanError, NotActive, LoanStatus,
)

from tests.collar_setup import build_protocol, compare_ledger_states, fund


class TestAtomicityProperties:
    """Property-based atomicity tests."""

    @given(st.integers(min_value=2, max_value=10), st.integers(min_value=0, max_value=1500))
    @settings(max_examples=50)
    def test_multi_move_all_or_nothing(self, num_moves, funding):
        """
        PROPERTY: A transaction with N moves either applies all N or none.
        """
        ledger = Ledger("test", verbose=False)
        ledger.register_unit(token("USDC", "USD Coin", 6))
        wallets = [f"wallet_{i}" for i in range(num_moves + 1)]
        for w in wallets:
            ledger.register_wallet(w)
        if funding:
            fund(ledger, wallets[0], "USDC", funding)
        initial = {w: ledger.get_balance(w, "USDC") for w in wallets}

        # each hop forwards 100; a wallet in the middle can only pass on what it received
        moves = [Move(Decimal("100"), "USDC", wallets[i], wallets[i + 1], f"chain_{i}") for i in range(num_moves)]
        result = ledger.execute(build_transaction(ledger, moves))

        if result == ExecuteResult.APPLIED:
            assert ledger.get_balance(wallets[0], "USDC") == Decimal(funding) - Decimal("100")
            assert ledger.get_balance(wallets[-1], "USDC") == Decimal("100")
        else:
            for w in wallets:
                assert ledger.get_balance(w, "USDC") == initial[w]

    @given(st.decimals(min_value=Decimal("1700"), max_value=Decimal("1900"), places=6))
    @settings(max_examples=40)
    def test_open_all_or_nothing(self, min_loan):
        """
        PROPERTY: open_loan either fully succeeds or changes nothing.
        """
        protocol = build_protocol()
        before = protocol.ledger.clone()
        try:
            _, amount = protocol.open(min_loan=min_loan)
        except LoanError:
            assert min_loan > Decimal("1800")
            assert compare_ledger_states(before, protocol.ledger)["equal"]
            assert protocol.ledger.sequence == before.sequence
        else:
            assert amount >= min_loan
            assert protocol.ledger.get_balance("alice", "WETH") == Decimal("9000")

    @given(
        st.decimals(min_value=Decimal("1.5"), max_value=Decimal("2.5"), places=2),
        st.decimals(min_value=Decimal("-200"), max_value=Decimal("200"), places=2),
    )
    @settings(max_examples=40)
    def test_roll_all_or_nothing(self, price, min_to_user):
        """
        PROPERTY: roll_loan either replaces the loan or changes nothing.
        """
        protocol = build_protocol()
        loan_id, _ = protocol.open()
        roll_id = protocol.roll_offer(loan_id)
        protocol.oracle.set_price(price)
        before = protocol.ledger.clone()

        try:
            result = protocol.loans.roll_loan("alice", loan_id, roll_id, min_to_user)
        except LoanError:
            assert compare_ledger_states(before, protocol.ledger)["equal"]
            assert protocol.loans.get_loan(loan_id).is_active
        else:
            assert result.transfer >= min_to_user
            assert protocol.loans.get_loan(loan_id).status is LoanStatus.ROLLED
            assert protocol.loans.get_loan(result.new_loan_id).is_active


class TestTerminalMonotonicity:
    """Terminal loans stay terminal."""

    @given(st.lists(st.sampled_from(["close", "roll", "cancel"]), min_size=2, max_size=6))
    @settings(max_examples=30)
    def test_at_most_one_terminal_transition(self, operations):
        """
        PROPERTY: Of any sequence of operations on one loan, only the first
        can succeed; the rest raise NotActive and the status never changes again.
        """
        protocol = build_protocol()
        loan_id, _ = protocol.open()
        roll_id = protocol.roll_offer(loan_id)
        loans = protocol.loans

        calls = {
            "close": lambda: loans.close_loan("alice", loan_id, protocol.swap()),
            "roll": lambda: loans.roll_loan("alice", loan_id, roll_id, Decimal("-10")),
            "cancel": lambda: loans.cancel_loan("alice", loan_id),
        }
        if operations[0] == "close":
            protocol.expire()
        calls[operations[0]]()
        status = loans.get_loan(loan_id).status
        assert status.is_terminal

        for operation in operations[1:]:
            with pytest.raises(NotActive):
                calls[operation]()
            assert loans.get_loan(loan_id).status is status
