"""
rolls.py - Rolling collar positions into new ones

A roll replaces an existing paired position with a new one opened at the
current price, keeping the old strikes and duration. The position's provider
publishes a roll offer (fee terms, acceptable price range, deadline) and
escrows its provider token; the taker executes it.

Pure part (the roll calculator):
    calculate_roll_fee   fee adjusted by the price move since the offer
    new_locked_amounts   locked amounts of the replacement position
    preview_roll         signed transfers to each side

Stateful part: RollExecutor applies offers and executions to a Ledger.

Key Formulas:
    fee          = fee_amount + |fee_amount| * factor * (price - ref) / ref / 10_000
    new_taker    = taker_locked * price / start_price
    new_provider = new_taker * (call - 10_000) / (10_000 - put)
    to_taker     = taker_settled - new_taker - fee
    to_provider  = provider_settled - new_provider + fee

to_taker + to_provider + new_taker + new_provider equals the old position's
locked total, so an execution leaves the executor's float unchanged.
"""

from __future__ import annotations
from dataclasses import dataclass, fields, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from .core import (
    LedgerView, Move, UnitStateChange, TransactionOrigin, OriginType,
    BIPS_BASE, ROLLS_WALLET, UNIT_TYPE_ROLL_OFFER,
    LedgerError, InvalidRollOffer, SlippageTooLow, Unauthorized,
    BalanceInvariantViolated,
    build_transaction, mul_div, record, registry, to_decimal, truncate,
)
from .ledger import Ledger
from .pricing_source import PriceOracle
from .units.collar_position import (
    CollarPosition, PositionBook,
    calculate_provider_locked, calculate_settlement,
    provider_symbol, taker_symbol,
)


def roll_symbol(roll_id: int) -> str:
    return f"ROLL_{roll_id}"


@dataclass(frozen=True, slots=True)
class RollOffer:
    """A provider's terms for rolling one position."""
    roll_id: int
    position_id: int
    provider: str
    fee_amount: Decimal
    fee_delta_factor_bips: int
    fee_reference_price: Decimal
    min_price: Decimal
    max_price: Decimal
    min_to_provider: Decimal
    deadline: datetime
    active: bool = True


@dataclass(frozen=True, slots=True)
class RollPreview:
    """
    Economics of rolling a position at price.

    to_taker and to_provider are signed: positive is paid to that side,
    negative is owed by it.
    """
    to_taker: Decimal
    to_provider: Decimal
    roll_fee: Decimal
    new_taker_locked: Decimal
    new_provider_locked: Decimal
    price: Decimal


# ============================================================================
# ROLL CALCULATOR (pure)
# ============================================================================

def calculate_roll_fee(
    fee_amount: Decimal,
    fee_delta_factor_bips: int,
    fee_reference_price: Decimal,
    price: Decimal,
    decimal_places: Optional[int],
) -> Decimal:
    """
    Roll fee adjusted for the price move since the offer was made.

    The adjustment scales with |fee_amount| so a negative fee (a provider
    paying the taker to roll) moves in the same direction as a positive one.
    Truncated toward zero.

    Example:
        calculate_roll_fee(Decimal("10"), 5000, Decimal("2"), Decimal("2.1"), 6) == Decimal("10.25")
    """
    fee_amount = to_decimal(fee_amount)
    fee_reference_price = to_decimal(fee_reference_price)
    price_change = to_decimal(price) - fee_reference_price
    change = abs(fee_amount) * fee_delta_factor_bips * price_change / fee_reference_price / BIPS_BASE
    return truncate(fee_amount + change, decimal_places)


def new_locked_amounts(
    position: CollarPosition,
    price: Decimal,
    decimal_places: Optional[int],
) -> Tuple[Decimal, Decimal]:
    """
    Locked amounts of the replacement position: the taker side scales with
    the price so the same asset exposure is kept.
    """
    new_taker_locked = mul_div(position.taker_locked, price, position.start_price, decimal_places)
    new_provider_locked = calculate_provider_locked(
        new_taker_locked, position.put_strike_percent, position.call_strike_percent, decimal_places,
    )
    return new_taker_locked, new_provider_locked


def preview_roll(
    position: CollarPosition,
    offer: RollOffer,
    price: Decimal,
    decimal_places: Optional[int],
) -> RollPreview:
    """Transfers for rolling position under offer at price, as if settled at price now."""
    price = to_decimal(price)
    taker_settled, provider_change = calculate_settlement(position, price, decimal_places)
    provider_settled = position.provider_locked + provider_change
    new_taker_locked, new_provider_locked = new_locked_amounts(position, price, decimal_places)
    roll_fee = calculate_roll_fee(
        offer.fee_amount, offer.fee_delta_factor_bips, offer.fee_reference_price, price, decimal_places,
    )
    return RollPreview(
        to_taker=taker_settled - new_taker_locked - roll_fee,
        to_provider=provider_settled - new_provider_locked + roll_fee,
        roll_fee=roll_fee,
        new_taker_locked=new_taker_locked,
        new_provider_locked=new_provider_locked,
        price=price,
    )


def roll_offer_state(offer: RollOffer) -> Dict[str, Any]:
    return {f.name: getattr(offer, f.name) for f in fields(offer)}


def load_roll_offer(view: LedgerView, roll_id: int) -> RollOffer:
    """
    Raises:
        InvalidRollOffer: If no such offer exists
    """
    try:
        state = view.get_unit_state(roll_symbol(roll_id))
    except LedgerError:
        raise InvalidRollOffer(f"Unknown roll offer {roll_id}") from None
    return RollOffer(**state)


# ============================================================================
# ROLL EXECUTOR
# ============================================================================

class RollExecutor:
    """
    Holds roll offers and executes them against a PositionBook.

    The executor's wallet escrows offered provider tokens and is the
    pass-through for every transfer of an execution; its currency balance
    must be the same before and after each execution.
    """

    def __init__(
        self,
        ledger: Ledger,
        book: PositionBook,
        oracle: PriceOracle,
        wallet: str = ROLLS_WALLET,
    ):
        self.ledger = ledger
        self.book = book
        self.oracle = oracle
        self.currency = book.currency
        self.wallet = ledger.ensure_wallet(wallet)
        self.registry_symbol = f"{wallet.upper()}_REGISTRY"
        self.verbose = ledger.verbose
        if not ledger.has_unit(self.registry_symbol):
            ledger.register_unit(registry(self.registry_symbol, "Roll offer counters", {'next_roll_id': 1}))

    @property
    def decimal_places(self) -> Optional[int]:
        return self.ledger.get_unit(self.currency).decimal_places

    def get_offer(self, roll_id: int) -> RollOffer:
        return load_roll_offer(self.ledger, roll_id)

    def _contract_id(self, action: str, roll_id: int) -> str:
        return f"{self.wallet}:{action}:{roll_id}:{self.ledger.sequence}"

    def create_offer(
        self,
        provider: str,
        position_id: int,
        fee_amount: Decimal,
        fee_delta_factor_bips: int,
        min_price: Decimal,
        max_price: Decimal,
        min_to_provider: Decimal,
        deadline: datetime,
    ) -> int:
        """
        Offer to roll a position, escrowing its provider token.

        The fee reference price is the current oracle price.

        Raises:
            Unauthorized: If provider does not hold the position's provider token
            InvalidRollOffer: If the position is settled
            ValueError: On an empty price range
        """
        min_price, max_price = to_decimal(min_price), to_decimal(max_price)
        if min_price > max_price:
            raise ValueError(f"min_price {min_price} > max_price {max_price}")
        position = self.book.get_position(position_id)
        if position.settled:
            raise InvalidRollOffer(f"position {position_id} is settled")
        token = provider_symbol(position_id)
        if self.ledger.get_balance(provider, token) != 1:
            raise Unauthorized(f"{provider} does not hold {token}")

        old = self.ledger.get_unit_state(self.registry_symbol)
        roll_id = old['next_roll_id']
        counter_change = UnitStateChange(self.registry_symbol, old, {**old, 'next_roll_id': roll_id + 1})
        offer = RollOffer(
            roll_id=roll_id,
            position_id=position_id,
            provider=provider,
            fee_amount=to_decimal(fee_amount),
            fee_delta_factor_bips=fee_delta_factor_bips,
            fee_reference_price=self.oracle.reference_price(),
            min_price=min_price,
            max_price=max_price,
            min_to_provider=to_decimal(min_to_provider),
            deadline=deadline,
        )
        symbol = roll_symbol(roll_id)
        unit = record(symbol, f"Roll offer #{roll_id}", UNIT_TYPE_ROLL_OFFER, roll_offer_state(offer))
        moves = [Move(Decimal("1"), token, provider, self.wallet, self._contract_id("offer", roll_id))]
        self.ledger.apply(build_transaction(
            self.ledger, moves, [counter_change],
            origin=TransactionOrigin(OriginType.USER_ACTION, provider, symbol, "CREATE_ROLL_OFFER"),
            units_to_create=(unit,),
        ))
        if self.verbose:
            print(f"📣 ROLL OFFER #{roll_id} on position #{position_id} by {provider}: "
                  f"fee={offer.fee_amount} price=[{min_price}, {max_price}]")
        return roll_id

    def cancel_offer(self, roll_id: int, caller: str) -> None:
        """
        Deactivate an offer and return the escrowed provider token.

        Raises:
            Unauthorized: If caller is not the offer's provider
            InvalidRollOffer: If the offer is already inactive
        """
        offer = self.get_offer(roll_id)
        if caller != offer.provider:
            raise Unauthorized(f"{caller} did not make roll offer {roll_id}")
        if not offer.active:
            raise InvalidRollOffer(f"roll offer {roll_id} is not active")

        token = provider_symbol(offer.position_id)
        moves: List[Move] = []
        # The token is gone once its side was withdrawn after settlement
        if self.ledger.get_balance(self.wallet, token) == 1:
            moves.append(Move(Decimal("1"), token, self.wallet, offer.provider, self._contract_id("cancel", roll_id)))
        change = UnitStateChange(
            roll_symbol(roll_id), roll_offer_state(offer), roll_offer_state(replace(offer, active=False)),
        )
        self.ledger.apply(build_transaction(
            self.ledger, moves, [change],
            origin=TransactionOrigin(OriginType.USER_ACTION, caller, roll_symbol(roll_id), "CANCEL_ROLL_OFFER"),
        ))

    def preview(self, roll_id: int, price: Decimal) -> RollPreview:
        offer = self.get_offer(roll_id)
        position = self.book.get_position(offer.position_id)
        return preview_roll(position, offer, price, self.decimal_places)

    def _validate(self, offer: RollOffer, position: CollarPosition, taker: str, price: Decimal) -> None:
        now = self.ledger.current_time
        if not offer.active:
            raise InvalidRollOffer(f"roll offer {offer.roll_id} is not active")
        if self.ledger.get_balance(taker, taker_symbol(offer.position_id)) != 1:
            raise Unauthorized(f"{taker} does not hold {taker_symbol(offer.position_id)}")
        if not offer.min_price <= price <= offer.max_price:
            raise InvalidRollOffer(
                f"price {price} outside roll offer range [{offer.min_price}, {offer.max_price}]"
            )
        if now > offer.deadline:
            raise InvalidRollOffer(f"roll offer {offer.roll_id} expired at {offer.deadline}")
        if position.settled or now >= position.expiration:
            raise InvalidRollOffer(f"position {position.position_id} is expired or settled")

    def execute(self, roll_id: int, min_to_taker: Decimal, taker: str) -> Tuple[int, Decimal]:
        """
        Replace the offer's position with a new one at the current price.

        The taker's token is pulled, any negative transfers are pulled from
        their side, the old pair is cancelled, a new pair is opened through a
        single-use liquidity offer, and the new tokens and positive transfers
        go out to both sides.

        Returns:
            (new_position_id, to_taker)

        Raises:
            InvalidRollOffer: Inactive offer, price out of range, past deadline,
                or position expired/settled
            Unauthorized: If taker does not hold the taker token
            SlippageTooLow: If to_taker < min_to_taker or to_provider < min_to_provider
            BalanceInvariantViolated: If the executor's float changed
        """
        offer = self.get_offer(roll_id)
        position = self.book.get_position(offer.position_id)
        price = self.oracle.reference_price()
        self._validate(offer, position, taker, price)

        preview = preview_roll(position, offer, price, self.decimal_places)
        if preview.to_taker < to_decimal(min_to_taker):
            raise SlippageTooLow(f"roll pays taker {preview.to_taker} < minimum {min_to_taker}")
        if preview.to_provider < offer.min_to_provider:
            raise SlippageTooLow(
                f"roll pays provider {preview.to_provider} < minimum {offer.min_to_provider}"
            )

        symbol = roll_symbol(roll_id)
        float_before = self.ledger.get_balance(self.wallet, self.currency)
        with self.ledger.atomic():
            contract_id = self._contract_id("pull", roll_id)
            moves = [Move(Decimal("1"), taker_symbol(position.position_id), taker, self.wallet, contract_id)]
            if preview.to_taker < 0:
                moves.append(Move(-preview.to_taker, self.currency, taker, self.wallet, contract_id))
            if preview.to_provider < 0:
                moves.append(Move(-preview.to_provider, self.currency, offer.provider, self.wallet, contract_id))
            change = UnitStateChange(symbol, roll_offer_state(offer), roll_offer_state(replace(offer, active=False)))
            self.ledger.apply(build_transaction(
                self.ledger, moves, [change],
                origin=TransactionOrigin(OriginType.CONTRACT, self.wallet, symbol, "ROLL"),
            ))

            self.book.cancel_paired(position.position_id, self.wallet)
            new_offer_id = self.book.create_offer(
                self.wallet, position.put_strike_percent, position.call_strike_percent,
                position.duration, preview.new_provider_locked,
            )
            new_id = self.book.open(self.wallet, preview.new_taker_locked, new_offer_id)
            self.book.cancel_offer(new_offer_id, self.wallet)

            contract_id = self._contract_id("deliver", roll_id)
            moves = [
                Move(Decimal("1"), taker_symbol(new_id), self.wallet, taker, contract_id),
                Move(Decimal("1"), provider_symbol(new_id), self.wallet, offer.provider, contract_id),
            ]
            if preview.to_taker > 0:
                moves.append(Move(preview.to_taker, self.currency, self.wallet, taker, contract_id))
            if preview.to_provider > 0:
                moves.append(Move(preview.to_provider, self.currency, self.wallet, offer.provider, contract_id))
            self.ledger.apply(build_transaction(
                self.ledger, moves,
                origin=TransactionOrigin(OriginType.CONTRACT, self.wallet, symbol, "ROLL_DELIVER"),
            ))

            float_after = self.ledger.get_balance(self.wallet, self.currency)
            if float_after != float_before:
                raise BalanceInvariantViolated(
                    f"roll {roll_id} changed executor float: {float_before} -> {float_after}"
                )

        if self.verbose:
            print(f"🔁 ROLLED position #{position.position_id} → #{new_id} at {price}: "
                  f"to_taker={preview.to_taker} to_provider={preview.to_provider} fee={preview.roll_fee}")
        return new_id, preview.to_taker
