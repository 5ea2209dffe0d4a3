"""
loan_engine.py - Collar loans: open, close, roll and cancel

A borrower deposits an asset; the engine converts it into the settlement
currency, lends a fraction k (the offer's put strike) of the proceeds and locks
the rest as the taker side of a collar position it keeps in custody. The
borrower receives a LOAN_{id} token whose holder owns the loan.

Per-loan state machine:

    ACTIVE ──close──▶ CLOSED
       │  ──roll───▶ ROLLED     (replaced by a new ACTIVE loan)
       └──cancel──▶ CANCELLED

Ordering rules every operation follows:
    1. Checks in a fixed order: existence, status, then authorization.
    2. The terminal status is written (and the loan token burned) before any
       collaborator is called. A reentrant call on the same loan therefore
       fails with NotActive.
    3. The rest of the operation only uses the TerminatedLoan returned by
       that write; loan storage is not read again.
    4. Everything runs in one Ledger.atomic() block: any error restores the
       ledger as it was before the call.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import List, Optional, Tuple

from .core import (
    Move, UnitStateChange, TransactionOrigin, OriginType,
    LOANS_WALLET, MAX_SWAP_PRICE_DEVIATION_BIPS, UNIT_TYPE_LOAN,
    ZeroDeposit, SlippageTooLow, Unauthorized, NotActive, TransferMismatch,
    BalanceInvariantViolated, InvalidRollOffer, AlreadySettled,
    build_transaction, burn, mint, owner_of, registry, to_decimal,
)
from .ledger import Ledger
from .pricing_source import PriceOracle
from .rolls import RollExecutor
from .swapper import SwapParams
from .units.collar_position import PositionBook, position_id_of, taker_symbol
from .units.loan import (
    Loan, LoanStatus,
    calculate_loan_amount, calculate_swap_price, check_swap_price,
    create_loan_unit, load_loan, loan_amount_after_roll, loan_state_dict, loan_symbol,
)


@dataclass(frozen=True, slots=True)
class TerminatedLoan:
    """
    A loan as it was the moment it left ACTIVE, and who owned it then.

    Returned by the terminal write; later phases of an operation read only this.
    """
    loan: Loan
    owner: str


@dataclass(frozen=True, slots=True)
class RollResult:
    new_loan_id: int
    new_loan_amount: Decimal
    transfer: Decimal
    roll_fee: Decimal


class LoanEngine:
    """
    Orchestrates loans over a PositionBook, a RollExecutor, a PriceOracle and
    caller-chosen currency converters, on one Ledger.

    The engine's wallet holds the taker token of every active loan and,
    during an operation only, the deposit and conversion proceeds.

    Example:
        engine = LoanEngine(ledger, oracle, book, rolls, closing_keeper="keeper")
        loan_id, amount = engine.open_loan(
            "alice", Decimal("1000"), Decimal("1790"),
            SwapParams(Decimal("1990"), swapper), offer_id,
        )
        engine.close_loan("alice", loan_id, SwapParams(Decimal("0"), swapper))
    """

    def __init__(
        self,
        ledger: Ledger,
        oracle: PriceOracle,
        book: PositionBook,
        rolls: RollExecutor,
        closing_keeper: Optional[str] = None,
        wallet: str = LOANS_WALLET,
        max_swap_price_deviation_bips: int = MAX_SWAP_PRICE_DEVIATION_BIPS,
    ):
        if max_swap_price_deviation_bips < 0:
            raise ValueError(
                f"max_swap_price_deviation_bips must be non-negative, got {max_swap_price_deviation_bips}"
            )
        self.ledger = ledger
        self.oracle = oracle
        self.book = book
        self.rolls = rolls
        self.asset = oracle.asset
        self.currency = oracle.currency
        self.closing_keeper = closing_keeper
        self.wallet = ledger.ensure_wallet(wallet)
        self.max_swap_price_deviation_bips = max_swap_price_deviation_bips
        self.registry_symbol = f"{wallet.upper()}_REGISTRY"
        self.verbose = ledger.verbose
        if not ledger.has_unit(self.registry_symbol):
            ledger.register_unit(registry(self.registry_symbol, "Keeper delegations", {'keeper_approved': (), 'revision': 0}))

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_loan(self, loan_id: int) -> Loan:
        """
        The loan record, terminal ones included.

        Raises:
            LoanNotFound: If no loan was ever opened under loan_id
        """
        return load_loan(self.ledger, loan_id)

    def owner_of(self, loan_id: int) -> Optional[str]:
        """Current holder of the loan token; None once the loan is terminal."""
        return owner_of(self.ledger, loan_symbol(loan_id))

    def is_keeper_approved(self, owner: str) -> bool:
        return owner in self.ledger.get_unit_state(self.registry_symbol)['keeper_approved']

    def active_loan_ids(self) -> List[int]:
        ids = []
        for symbol in self.ledger.list_units(UNIT_TYPE_LOAN):
            loan = load_loan(self.ledger, position_id_of(symbol))
            if loan.is_active:
                ids.append(loan.loan_id)
        return sorted(ids)

    # ========================================================================
    # KEEPER DELEGATION
    # ========================================================================

    def set_keeper_approved(self, owner: str, enabled: bool) -> None:
        """
        Allow (or stop allowing) the closing keeper to close loans owned by owner.

        Delegation belongs to the owner, not to a loan: a loan transferred to
        someone else is closable by the keeper only if the new owner opted in.
        """
        old = self.ledger.get_unit_state(self.registry_symbol)
        approved = set(old['keeper_approved'])
        if enabled:
            approved.add(owner)
        else:
            approved.discard(owner)
        # revision keeps repeated toggles distinct intents
        new = {**old, 'keeper_approved': tuple(sorted(approved)), 'revision': old['revision'] + 1}
        self.ledger.apply(build_transaction(
            self.ledger, [], [UnitStateChange(self.registry_symbol, old, new)],
            origin=TransactionOrigin(OriginType.USER_ACTION, owner, self.registry_symbol, "KEEPER_APPROVAL"),
        ))
        if self.verbose:
            print(f"🔑 KEEPER {'approved' if enabled else 'revoked'} by {owner}")

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _contract_id(self, action: str, loan_id: Optional[int]) -> str:
        return f"{self.wallet}:{action}:{loan_id or 'new'}:{self.ledger.sequence}"

    def _origin(self, caller: str, loan_id: int, event: str) -> TransactionOrigin:
        return TransactionOrigin(OriginType.USER_ACTION, caller, loan_symbol(loan_id), event)

    def _transfer(
        self, amount: Decimal, unit: str, source: str, dest: str, action: str, loan_id: Optional[int],
    ) -> None:
        if amount <= 0:
            return
        symbol = loan_symbol(loan_id) if loan_id is not None else None
        move = Move(amount, unit, source, dest, self._contract_id(action, loan_id))
        self.ledger.apply(build_transaction(
            self.ledger, [move],
            origin=TransactionOrigin(OriginType.CONTRACT, self.wallet, symbol, action.upper()),
        ))

    def _load_active(self, loan_id: int) -> Tuple[Loan, str]:
        """
        Existence, then status. Returns the loan and its current owner.

        Raises:
            LoanNotFound: If the loan never existed
            NotActive: If the loan is terminal
        """
        loan = load_loan(self.ledger, loan_id)
        if not loan.is_active:
            raise NotActive(f"loan {loan_id} is {loan.status.value}")
        owner = self.owner_of(loan_id)
        if owner is None:
            raise NotActive(f"loan {loan_id} has no owner")
        return loan, owner

    def _terminate(self, loan: Loan, owner: str, status: LoanStatus, caller: str) -> TerminatedLoan:
        """Write the terminal status and burn the loan token, in one transaction."""
        symbol = loan_symbol(loan.loan_id)
        change = UnitStateChange(symbol, loan_state_dict(loan), loan_state_dict(replace(loan, status=status)))
        self.ledger.apply(build_transaction(
            self.ledger,
            [burn(symbol, owner, self._contract_id(status.value.lower(), loan.loan_id))],
            [change],
            origin=self._origin(caller, loan.loan_id, status.value),
        ))
        return TerminatedLoan(loan=loan, owner=owner)

    def _record_loan(self, loan: Loan, borrower: str, release: Decimal) -> None:
        """Create the loan record, mint its token and release currency to the borrower."""
        symbol = loan_symbol(loan.loan_id)
        contract_id = self._contract_id("record", loan.loan_id)
        moves = [mint(symbol, borrower, contract_id)]
        if release > 0:
            moves.append(Move(release, self.currency, self.wallet, borrower, contract_id))
        self.ledger.apply(build_transaction(
            self.ledger, moves,
            origin=self._origin(borrower, loan.loan_id, "ROLLED_IN" if loan.rolled_from is not None else "OPEN"),
            units_to_create=(create_loan_unit(loan),),
        ))

    def _swap(self, asset_in: str, asset_out: str, amount_in: Decimal, swap_params: SwapParams) -> Decimal:
        """
        Convert through the caller-chosen converter and verify what arrived.

        Raises:
            BalanceInvariantViolated: If the reported output differs from the balance change
            SlippageTooLow: If the output is below swap_params.min_amount_out
        """
        balance_before = self.ledger.get_balance(self.wallet, asset_out)
        amount_out = to_decimal(swap_params.converter.convert(
            self.wallet, asset_in, asset_out, amount_in,
            swap_params.min_amount_out, swap_params.routing_data,
        ))
        received = self.ledger.get_balance(self.wallet, asset_out) - balance_before
        if amount_out != received:
            raise BalanceInvariantViolated(
                f"converter reported {amount_out} {asset_out}, engine received {received}"
            )
        if amount_out < swap_params.min_amount_out:
            raise SlippageTooLow(
                f"conversion output {amount_out} {asset_out} < minimum {swap_params.min_amount_out}"
            )
        return amount_out

    def _check_swap_price(self, proceeds: Decimal, deposit: Decimal) -> None:
        # Sampled after the conversion, so a large conversion can move the
        # reference before it is read.
        swap_price = calculate_swap_price(proceeds, deposit, self.oracle.base_token_amount)
        check_swap_price(swap_price, self.oracle.reference_price(), self.max_swap_price_deviation_bips)

    # ========================================================================
    # OPEN
    # ========================================================================

    def open_loan(
        self,
        caller: str,
        deposit_amount: Decimal,
        min_loan_amount: Decimal,
        swap_params: SwapParams,
        offer_id: int,
    ) -> Tuple[int, Decimal]:
        """
        Open a loan against offer_id by depositing deposit_amount of the asset.

        Returns:
            (loan_id, loan_amount)

        Raises:
            ZeroDeposit: If deposit_amount <= 0
            SlippageTooLow: If the conversion or the loan amount is below its minimum
            PriceDeviationTooHigh: If the conversion price strays from the oracle
            InsufficientLiquidity: If the offer cannot cover the provider side
            InsufficientFunds: If the caller cannot pay the deposit
        """
        deposit = to_decimal(deposit_amount)
        min_loan_amount = to_decimal(min_loan_amount)
        if deposit <= 0:
            raise ZeroDeposit(f"deposit must be positive, got {deposit}")

        with self.ledger.atomic():
            self._transfer(deposit, self.asset, caller, self.wallet, "deposit", None)
            proceeds = self._swap(self.asset, self.currency, deposit, swap_params)
            self._check_swap_price(proceeds, deposit)

            offer = self.book.get_offer(offer_id)
            loan_amount, locked = calculate_loan_amount(
                proceeds, offer.put_strike_percent, self.ledger.get_unit(self.currency).decimal_places,
            )
            if loan_amount < min_loan_amount:
                raise SlippageTooLow(f"loan amount {loan_amount} < minimum {min_loan_amount}")

            loan_id = self.book.open(self.wallet, locked, offer_id)
            loan = Loan(
                loan_id=loan_id,
                deposited_amount=deposit,
                loan_amount=loan_amount,
                asset=self.asset,
                currency=self.currency,
                opened_at=self.ledger.current_time,
                keeper_delegate=caller if self.is_keeper_approved(caller) else None,
            )
            self._record_loan(loan, caller, loan_amount)

        if self.verbose:
            print(f"🏦 OPEN loan #{loan_id} for {caller}: deposit={deposit} {self.asset} "
                  f"proceeds={proceeds} loan={loan_amount} locked={locked} {self.currency}")
        return loan_id, loan_amount

    # ========================================================================
    # CLOSE
    # ========================================================================

    def close_loan(self, caller: str, loan_id: int, swap_params: SwapParams) -> Decimal:
        """
        Repay a loan and receive the asset back.

        The owner repays loan_amount; the position is settled if needed, the
        taker side withdrawn, and repayment plus withdrawal converted back to
        the asset for the owner. A keeper may close on behalf of an owner who
        approved it; the funds still come from and go to the owner.

        Returns:
            Amount of the asset released to the owner

        Raises:
            LoanNotFound, NotActive, Unauthorized
            NotYetSettleable: If the position has not expired
            SlippageTooLow, BalanceInvariantViolated: From the conversion
        """
        loan, owner = self._load_active(loan_id)
        keeper_allowed = (
            self.closing_keeper is not None
            and caller == self.closing_keeper
            and self.is_keeper_approved(owner)
        )
        if caller != owner and not keeper_allowed:
            raise Unauthorized(f"{caller} may not close loan {loan_id} owned by {owner}")

        with self.ledger.atomic():
            terminated = self._terminate(loan, owner, LoanStatus.CLOSED, caller)
            loan = terminated.loan
            self._transfer(loan.loan_amount, self.currency, terminated.owner, self.wallet, "repay", loan_id)

            if not self.book.is_settled(loan_id):
                self.book.settle(loan_id)
            withdrawal = self.book.withdraw(loan_id, self.wallet)

            total = loan.loan_amount + withdrawal
            asset_out = Decimal("0")
            if total > 0:
                asset_out = self._swap(self.currency, self.asset, total, swap_params)
            self._transfer(asset_out, self.asset, self.wallet, terminated.owner, "release", loan_id)

        if self.verbose:
            print(f"🏁 CLOSE loan #{loan_id} by {caller}: repaid={loan.loan_amount} "
                  f"withdrawn={withdrawal} → {asset_out} {self.asset} to {terminated.owner}")
        return asset_out

    # ========================================================================
    # ROLL
    # ========================================================================

    def roll_loan(self, caller: str, loan_id: int, roll_id: int, min_to_user: Decimal) -> RollResult:
        """
        Roll a loan's position through a roll offer into a new loan.

        A negative preview transfer is pulled from the caller before the
        executor runs; a positive one is paid out after it. The new loan
        amount follows loan_amount_after_roll().

        Raises:
            LoanNotFound, NotActive
            Unauthorized: If caller is not the owner (keepers cannot roll)
            InvalidRollOffer: Inactive offer, or an offer for another position
            RepaymentExceedsLoan: If the roll would repay more than the loan
            TransferMismatch: If the executed transfer differs from the preview
            SlippageTooLow: If the transfer is below min_to_user
            BalanceInvariantViolated: If the engine's currency float changed
        """
        min_to_user = to_decimal(min_to_user)
        loan, owner = self._load_active(loan_id)
        if caller != owner:
            raise Unauthorized(f"{caller} may not roll loan {loan_id} owned by {owner}")
        offer = self.rolls.get_offer(roll_id)
        if not offer.active or offer.position_id != loan_id:
            raise InvalidRollOffer(f"roll offer {roll_id} is not an active offer for loan {loan_id}")

        with self.ledger.atomic():
            terminated = self._terminate(loan, owner, LoanStatus.ROLLED, caller)
            loan = terminated.loan

            preview = self.rolls.preview(roll_id, self.oracle.reference_price())
            new_loan_amount = loan_amount_after_roll(loan.loan_amount, preview.to_taker, preview.roll_fee)

            float_before = self.ledger.get_balance(self.wallet, self.currency)
            if preview.to_taker < 0:
                self._transfer(-preview.to_taker, self.currency, caller, self.wallet, "roll_pull", loan_id)

            new_id, transfer = self.rolls.execute(roll_id, min_to_user, self.wallet)
            if transfer != preview.to_taker:
                raise TransferMismatch(f"roll transferred {transfer}, preview was {preview.to_taker}")
            if transfer < min_to_user:
                raise SlippageTooLow(f"roll transfer {transfer} < minimum {min_to_user}")
            self._transfer(transfer, self.currency, self.wallet, caller, "roll_pay", loan_id)

            float_after = self.ledger.get_balance(self.wallet, self.currency)
            if float_after != float_before:
                raise BalanceInvariantViolated(
                    f"roll of loan {loan_id} changed engine float: {float_before} -> {float_after}"
                )

            new_loan = Loan(
                loan_id=new_id,
                deposited_amount=loan.deposited_amount,
                loan_amount=new_loan_amount,
                asset=loan.asset,
                currency=loan.currency,
                opened_at=self.ledger.current_time,
                keeper_delegate=caller if self.is_keeper_approved(caller) else None,
                rolled_from=loan_id,
            )
            self._record_loan(new_loan, caller, Decimal("0"))

        if self.verbose:
            print(f"🔁 ROLL loan #{loan_id} → #{new_id}: transfer={transfer} fee={preview.roll_fee} "
                  f"loan {loan.loan_amount} → {new_loan_amount}")
        return RollResult(new_id, new_loan_amount, transfer, preview.roll_fee)

    # ========================================================================
    # CANCEL
    # ========================================================================

    def cancel_loan(self, caller: str, loan_id: int) -> None:
        """
        Give up the loan wrapper without repaying: the owner receives the
        taker position token and keeps the loan amount. No currency moves.

        Raises:
            LoanNotFound, NotActive
            Unauthorized: If caller is not the owner
            AlreadySettled: If the position is settled
        """
        loan, owner = self._load_active(loan_id)
        if caller != owner:
            raise Unauthorized(f"{caller} may not cancel loan {loan_id} owned by {owner}")
        if self.book.is_settled(loan_id):
            raise AlreadySettled(f"position {loan_id} is settled")

        with self.ledger.atomic():
            terminated = self._terminate(loan, owner, LoanStatus.CANCELLED, caller)
            self._transfer(Decimal("1"), taker_symbol(loan_id), self.wallet, terminated.owner, "unwrap", loan_id)

        if self.verbose:
            print(f"✂️  CANCEL loan #{loan_id}: position token to {terminated.owner}")
