"""
collar_position.py - Paired Collar Positions and Provider Liquidity Offers

A collar position pairs two sides locked in the settlement currency:
    - the taker side (TAKER_{id}) keeps the downside down to the put strike
      and receives the upside up to the call strike,
    - the provider side (PROVIDER_{id}) takes the opposite exposure.

Providers publish liquidity offers (OFFER_{id}) with a put strike, a call
strike and a duration; a taker opens a position against an offer by locking
currency, and the offer's liquidity covers the provider side.

ARCHITECTURE (Pure Function Pattern):
=====================================

1. FROZEN DATACLASSES: ProviderOffer, CollarPosition
2. PURE CALCULATIONS: calculate_provider_locked, calculate_settlement
3. ADAPTERS: load_offer / load_position read unit state once; to_state_dict
   writes it back
4. TRANSACTION BUILDERS: compute_settlement (PositionBook.check_lifecycle is
   the lifecycle hook)
5. PositionBook: the stateful facade applying transactions to a Ledger

Key Formulas (prices in currency per base token, strikes in bips):
    provider_locked = taker_locked * (call - 10_000) / (10_000 - put)
    put_price  = start_price * put / 10_000
    call_price = start_price * call / 10_000
    end        = clamp(end_price, put_price, call_price)
    end < start: provider gains taker_locked * (start - end) / (start - put_price)
    end > start: taker gains provider_locked * (end - start) / (call_price - start)
"""

from __future__ import annotations
from dataclasses import dataclass, fields, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from ..core import (
    LedgerView, Move, PendingTransaction, Unit, UnitStateChange,
    TransactionOrigin, OriginType,
    BIPS_BASE, POSITIONS_WALLET,
    UNIT_TYPE_COLLAR_TAKER, UNIT_TYPE_COLLAR_PROVIDER, UNIT_TYPE_PROVIDER_OFFER,
    LedgerError, InsufficientLiquidity, NotYetSettleable, AlreadySettled, Unauthorized,
    build_transaction, empty_pending_transaction,
    mint, burn, mul_div, owner_of, ownership_token, registry, to_decimal,
)
from ..ledger import Ledger
from ..pricing_source import PriceOracle


def taker_symbol(position_id: int) -> str:
    return f"TAKER_{position_id}"


def provider_symbol(position_id: int) -> str:
    return f"PROVIDER_{position_id}"


def offer_symbol(offer_id: int) -> str:
    return f"OFFER_{offer_id}"


def position_id_of(symbol: str) -> int:
    """TAKER_7 -> 7"""
    return int(symbol.rsplit("_", 1)[1])


# ============================================================================
# FROZEN DATACLASSES
# ============================================================================

@dataclass(frozen=True, slots=True)
class ProviderOffer:
    """A provider's published liquidity for new positions at fixed strikes and duration."""
    offer_id: int
    provider: str
    currency: str
    put_strike_percent: int      # bips of start price, < 10_000 (also the loan ratio k)
    call_strike_percent: int     # bips of start price, > 10_000
    duration: int                # seconds
    available: Decimal           # unreserved liquidity held by the book


@dataclass(frozen=True, slots=True)
class CollarPosition:
    """
    Immutable snapshot of a paired position.

    settled flips once, at or after expiration (or on a paired cancel); the
    withdrawable amounts are fixed at that moment and each side can withdraw
    exactly once by burning its token.
    """
    position_id: int
    offer_id: int
    currency: str
    asset: str
    duration: int
    expiration: datetime
    start_price: Decimal
    put_strike_percent: int
    call_strike_percent: int
    taker_locked: Decimal
    provider_locked: Decimal
    settled: bool = False
    cancelled: bool = False
    end_price: Optional[Decimal] = None
    taker_withdrawable: Decimal = Decimal("0")
    provider_withdrawable: Decimal = Decimal("0")
    taker_withdrawn: bool = False
    provider_withdrawn: bool = False

    @property
    def put_price(self) -> Decimal:
        return self.start_price * self.put_strike_percent / BIPS_BASE

    @property
    def call_price(self) -> Decimal:
        return self.start_price * self.call_strike_percent / BIPS_BASE


# ============================================================================
# PURE CALCULATIONS
# ============================================================================

def validate_strikes(put_strike_percent: int, call_strike_percent: int) -> None:
    """
    Raises:
        ValueError: Unless 0 < put < 10_000 < call
    """
    if not 0 < put_strike_percent < BIPS_BASE:
        raise ValueError(f"put_strike_percent must be in (0, {BIPS_BASE}), got {put_strike_percent}")
    if not call_strike_percent > BIPS_BASE:
        raise ValueError(f"call_strike_percent must exceed {BIPS_BASE}, got {call_strike_percent}")


def calculate_provider_locked(
    taker_locked: Decimal,
    put_strike_percent: int,
    call_strike_percent: int,
    decimal_places: Optional[int],
) -> Decimal:
    """
    Provider-side amount matching a taker-side amount.

    The taker risks (start - put) and the provider risks (call - start), so
    the locked amounts are in that ratio.

    Example:
        calculate_provider_locked(Decimal("200"), 9000, 11000, 6) == Decimal("200")
        calculate_provider_locked(Decimal("200"), 9000, 12000, 6) == Decimal("400")
    """
    return mul_div(
        taker_locked,
        call_strike_percent - BIPS_BASE,
        BIPS_BASE - put_strike_percent,
        decimal_places,
    )


def calculate_settlement(
    position: CollarPosition,
    end_price: Decimal,
    decimal_places: Optional[int],
) -> Tuple[Decimal, Decimal]:
    """
    Split a position's locked funds at end_price.

    Returns:
        (taker_balance, provider_change): the taker side's payout and the
        signed change of the provider side. taker_balance + provider_locked
        + provider_change == taker_locked + provider_locked, exactly.

    Example (start 2, put 90%, call 110%, 200 locked on each side):
        end 1.9 -> (100, +100); end 1.5 -> (0, +200)
        end 2.1 -> (300, -100); end 3.0 -> (400, -200)
    """
    end_price = to_decimal(end_price)
    start = position.start_price
    put_price = position.put_price
    call_price = position.call_price
    end = min(max(end_price, put_price), call_price)

    taker_balance = position.taker_locked
    if end < start:
        provider_gain = mul_div(position.taker_locked, start - end, start - put_price, decimal_places)
        return taker_balance - provider_gain, provider_gain
    taker_gain = mul_div(position.provider_locked, end - start, call_price - start, decimal_places)
    return taker_balance + taker_gain, -taker_gain


# ============================================================================
# ADAPTERS
# ============================================================================

def to_state_dict(record: Any) -> Dict[str, Any]:
    """Flatten a frozen record into a unit state dict."""
    return {f.name: getattr(record, f.name) for f in fields(record)}


def load_offer(view: LedgerView, offer_id: int) -> ProviderOffer:
    """
    Raises:
        LedgerError: If no such offer exists
    """
    symbol = offer_symbol(offer_id)
    try:
        state = view.get_unit_state(symbol)
    except LedgerError:
        raise LedgerError(f"Unknown offer {offer_id}") from None
    return ProviderOffer(**state)


def load_position(view: LedgerView, position_id: int) -> CollarPosition:
    """
    Raises:
        LedgerError: If no such position exists
    """
    symbol = taker_symbol(position_id)
    try:
        state = view.get_unit_state(symbol)
    except LedgerError:
        raise LedgerError(f"Unknown position {position_id}") from None
    return CollarPosition(**state)


def create_position_units(position: CollarPosition) -> Tuple[Unit, Unit]:
    """The taker unit carries the position record; the provider unit points back to it."""
    taker = ownership_token(
        taker_symbol(position.position_id),
        f"Collar taker #{position.position_id}",
        UNIT_TYPE_COLLAR_TAKER,
        to_state_dict(position),
    )
    provider = ownership_token(
        provider_symbol(position.position_id),
        f"Collar provider #{position.position_id}",
        UNIT_TYPE_COLLAR_PROVIDER,
        {'position_id': position.position_id, 'offer_id': position.offer_id},
    )
    return taker, provider


# ============================================================================
# TRANSACTION BUILDERS
# ============================================================================

def compute_settlement(
    view: LedgerView,
    position_id: int,
    end_price: Decimal,
    book_wallet: str = POSITIONS_WALLET,
) -> PendingTransaction:
    """
    Settle an expired position at end_price.

    Only the record changes: both sides' funds stay in the book until each
    side withdraws. Empty if the position is settled or not yet expired.
    """
    position = load_position(view, position_id)
    if position.settled or view.current_time < position.expiration:
        return empty_pending_transaction(view)

    places = view.get_unit(position.currency).decimal_places
    taker_balance, provider_change = calculate_settlement(position, end_price, places)
    settled = replace(
        position,
        settled=True,
        end_price=to_decimal(end_price),
        taker_withdrawable=taker_balance,
        provider_withdrawable=position.provider_locked + provider_change,
    )
    symbol = taker_symbol(position_id)
    change = UnitStateChange(symbol, to_state_dict(position), to_state_dict(settled))
    origin = TransactionOrigin(OriginType.LIFECYCLE, book_wallet, symbol, "SETTLE")
    return build_transaction(view, [], [change], origin=origin)


# ============================================================================
# POSITION BOOK
# ============================================================================

class PositionBook:
    """
    Stateful facade over offers and positions stored on a Ledger.

    The book's wallet custodies offer liquidity and locked position funds. Id
    counters live in a registry unit, so everything the book knows is ledger
    state and rolls back with Ledger.atomic().

    Example:
        book = PositionBook(ledger, oracle)
        offer_id = book.create_offer("lp", 9000, 11000, 86400, Decimal("10000"))
        position_id = book.open("collar_loans", Decimal("200"), offer_id)
    """

    def __init__(self, ledger: Ledger, oracle: PriceOracle, wallet: str = POSITIONS_WALLET):
        self.ledger = ledger
        self.oracle = oracle
        self.asset = oracle.asset
        self.currency = oracle.currency
        self.wallet = ledger.ensure_wallet(wallet)
        self.registry_symbol = f"{wallet.upper()}_REGISTRY"
        self.verbose = ledger.verbose
        if not ledger.has_unit(self.registry_symbol):
            ledger.register_unit(registry(
                self.registry_symbol, "Position book counters",
                {'next_offer_id': 1, 'next_position_id': 1},
            ))

    @property
    def decimal_places(self) -> Optional[int]:
        return self.ledger.get_unit(self.currency).decimal_places

    def _origin(self, symbol: str, event: str, origin_type: OriginType = OriginType.CONTRACT) -> TransactionOrigin:
        return TransactionOrigin(origin_type, self.wallet, symbol, event)

    def _next_id(self, key: str) -> Tuple[int, UnitStateChange]:
        old = self.ledger.get_unit_state(self.registry_symbol)
        new = {**old, key: old[key] + 1}
        return old[key], UnitStateChange(self.registry_symbol, old, new)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_position(self, position_id: int) -> CollarPosition:
        return load_position(self.ledger, position_id)

    def get_offer(self, offer_id: int) -> ProviderOffer:
        return load_offer(self.ledger, offer_id)

    def is_settled(self, position_id: int) -> bool:
        return self.get_position(position_id).settled

    def expiration(self, position_id: int) -> datetime:
        return self.get_position(position_id).expiration

    def taker_of(self, position_id: int) -> Optional[str]:
        return owner_of(self.ledger, taker_symbol(position_id))

    def provider_of(self, position_id: int) -> Optional[str]:
        return owner_of(self.ledger, provider_symbol(position_id))

    def settlement_price(self, position: CollarPosition) -> Decimal:
        """Oracle price at expiration, or the current price if the oracle has none."""
        price = self.oracle.price_at(position.expiration)
        return price if price is not None else self.oracle.reference_price()

    def preview_settlement(self, position_id: int, end_price: Decimal) -> Tuple[Decimal, Decimal]:
        return calculate_settlement(self.get_position(position_id), end_price, self.decimal_places)

    # ------------------------------------------------------------------
    # Offers
    # ------------------------------------------------------------------

    def create_offer(
        self,
        provider: str,
        put_strike_percent: int,
        call_strike_percent: int,
        duration: int,
        amount: Decimal,
    ) -> int:
        """
        Escrow amount from the provider as liquidity for new positions.

        Raises:
            ValueError: On invalid strikes, duration or amount
            InsufficientFunds: If the provider cannot fund the offer
        """
        validate_strikes(put_strike_percent, call_strike_percent)
        amount = to_decimal(amount)
        if duration <= 0:
            raise ValueError(f"duration must be positive, got {duration}")
        if amount <= 0:
            raise ValueError(f"offer amount must be positive, got {amount}")

        offer_id, counter_change = self._next_id('next_offer_id')
        symbol = offer_symbol(offer_id)
        offer = ProviderOffer(
            offer_id=offer_id,
            provider=provider,
            currency=self.currency,
            put_strike_percent=put_strike_percent,
            call_strike_percent=call_strike_percent,
            duration=duration,
            available=amount,
        )
        unit = ownership_token(symbol, f"Liquidity offer #{offer_id}", UNIT_TYPE_PROVIDER_OFFER, to_state_dict(offer))
        moves = [
            Move(amount, self.currency, provider, self.wallet, f"{self.wallet}:offer:{offer_id}"),
            mint(symbol, provider, f"{self.wallet}:offer:{offer_id}"),
        ]
        self.ledger.apply(build_transaction(
            self.ledger, moves, [counter_change],
            origin=self._origin(symbol, "CREATE_OFFER", OriginType.USER_ACTION),
            units_to_create=(unit,),
        ))
        if self.verbose:
            print(f"📣 OFFER #{offer_id} by {provider}: {amount} {self.currency} "
                  f"put={put_strike_percent} call={call_strike_percent} duration={duration}s")
        return offer_id

    def cancel_offer(self, offer_id: int, caller: str) -> Decimal:
        """
        Withdraw an offer's remaining liquidity to its provider.

        Raises:
            Unauthorized: If caller does not own the offer
        """
        offer = self.get_offer(offer_id)
        symbol = offer_symbol(offer_id)
        if owner_of(self.ledger, symbol) != caller:
            raise Unauthorized(f"{caller} does not own offer {offer_id}")

        contract_id = f"{self.wallet}:cancel_offer:{offer_id}"
        moves = [burn(symbol, caller, contract_id)]
        if offer.available > 0:
            moves.append(Move(offer.available, self.currency, self.wallet, caller, contract_id))
        change = UnitStateChange(symbol, to_state_dict(offer), to_state_dict(replace(offer, available=Decimal("0"))))
        self.ledger.apply(build_transaction(
            self.ledger, moves, [change], origin=self._origin(symbol, "CANCEL_OFFER", OriginType.USER_ACTION),
        ))
        return offer.available

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def open(self, taker: str, taker_locked: Decimal, offer_id: int) -> int:
        """
        Open a paired position: taker_locked moves from the taker into the
        book, the matching provider amount is taken from the offer.

        Raises:
            ValueError: If either side would lock a non-positive amount
            InsufficientLiquidity: If the offer cannot cover the provider side
            InsufficientFunds: If the taker cannot pay taker_locked
        """
        taker_locked = to_decimal(taker_locked)
        offer = self.get_offer(offer_id)
        provider_locked = calculate_provider_locked(
            taker_locked, offer.put_strike_percent, offer.call_strike_percent, self.decimal_places,
        )
        if taker_locked <= 0 or provider_locked <= 0:
            raise ValueError(f"position amounts must be positive: taker={taker_locked}, provider={provider_locked}")
        if provider_locked > offer.available:
            raise InsufficientLiquidity(
                f"offer {offer_id} has {offer.available} {self.currency}, position needs {provider_locked}"
            )

        position_id, counter_change = self._next_id('next_position_id')
        now = self.ledger.current_time
        position = CollarPosition(
            position_id=position_id,
            offer_id=offer_id,
            currency=self.currency,
            asset=self.asset,
            duration=offer.duration,
            expiration=now + timedelta(seconds=offer.duration),
            start_price=self.oracle.reference_price(),
            put_strike_percent=offer.put_strike_percent,
            call_strike_percent=offer.call_strike_percent,
            taker_locked=taker_locked,
            provider_locked=provider_locked,
        )
        taker_unit, provider_unit = create_position_units(position)

        contract_id = f"{self.wallet}:open:{position_id}"
        moves = [
            Move(taker_locked, self.currency, taker, self.wallet, contract_id),
            mint(taker_unit.symbol, taker, contract_id),
            mint(provider_unit.symbol, offer.provider, contract_id),
        ]
        offer_change = UnitStateChange(
            offer_symbol(offer_id),
            to_state_dict(offer),
            to_state_dict(replace(offer, available=offer.available - provider_locked)),
        )
        self.ledger.apply(build_transaction(
            self.ledger, moves, [counter_change, offer_change],
            origin=self._origin(taker_unit.symbol, "OPEN"),
            units_to_create=(taker_unit, provider_unit),
        ))
        if self.verbose:
            print(f"📈 POSITION #{position_id}: taker={taker} locked={taker_locked} "
                  f"provider={offer.provider} locked={provider_locked} start={position.start_price}")
        return position_id

    def settle(self, position_id: int) -> Tuple[Decimal, Decimal]:
        """
        Settle at the oracle price for the expiration time.

        Returns:
            (taker_withdrawable, provider_withdrawable)

        Raises:
            NotYetSettleable: Before expiration
            AlreadySettled: If already settled
        """
        position = self.get_position(position_id)
        if position.settled:
            raise AlreadySettled(f"position {position_id} already settled")
        if self.ledger.current_time < position.expiration:
            raise NotYetSettleable(
                f"position {position_id} expires at {position.expiration}, now {self.ledger.current_time}"
            )
        self.ledger.apply(compute_settlement(
            self.ledger, position_id, self.settlement_price(position), self.wallet,
        ))
        settled = self.get_position(position_id)
        if self.verbose:
            print(f"⚖️  SETTLED #{position_id} at {settled.end_price}: taker={settled.taker_withdrawable} "
                  f"provider={settled.provider_withdrawable}")
        return settled.taker_withdrawable, settled.provider_withdrawable

    def check_lifecycle(
        self,
        view: LedgerView,
        symbol: str,
        timestamp: datetime,
        prices: Dict[str, Decimal],
    ) -> PendingTransaction:
        """SmartContract hook: settle expired taker units at the oracle's expiration price."""
        position = load_position(view, position_id_of(symbol))
        if position.settled or timestamp < position.expiration:
            return empty_pending_transaction(view)
        return compute_settlement(view, position.position_id, self.settlement_price(position), self.wallet)

    def _withdraw(self, position_id: int, holder: str, side: str) -> Decimal:
        position = self.get_position(position_id)
        if not position.settled:
            raise NotYetSettleable(f"position {position_id} is not settled")
        symbol = taker_symbol(position_id) if side == "taker" else provider_symbol(position_id)
        if self.ledger.get_balance(holder, symbol) != 1:
            raise Unauthorized(f"{holder} does not hold {symbol}")

        amount = position.taker_withdrawable if side == "taker" else position.provider_withdrawable
        withdrawn = (
            replace(position, taker_withdrawn=True) if side == "taker"
            else replace(position, provider_withdrawn=True)
        )
        contract_id = f"{self.wallet}:withdraw:{symbol}"
        moves = [burn(symbol, holder, contract_id)]
        if amount > 0:
            moves.append(Move(amount, self.currency, self.wallet, holder, contract_id))
        change = UnitStateChange(taker_symbol(position_id), to_state_dict(position), to_state_dict(withdrawn))
        self.ledger.apply(build_transaction(
            self.ledger, moves, [change], origin=self._origin(symbol, "WITHDRAW"),
        ))
        return amount

    def withdraw(self, position_id: int, holder: str) -> Decimal:
        """
        Pay a settled position's taker side to the taker-token holder, burning the token.

        Raises:
            NotYetSettleable: If the position is not settled
            Unauthorized: If holder does not hold the taker token
        """
        return self._withdraw(position_id, holder, "taker")

    def withdraw_provider(self, position_id: int, holder: str) -> Decimal:
        """Provider-side counterpart of withdraw()."""
        return self._withdraw(position_id, holder, "provider")

    def cancel_paired(self, position_id: int, holder: str) -> Decimal:
        """
        Unwind an unsettled position whose two tokens are held by the same wallet.

        Both tokens are burned and both locked amounts are paid to the holder.

        Raises:
            AlreadySettled: If the position is settled
            Unauthorized: If holder does not hold both tokens
        """
        position = self.get_position(position_id)
        if position.settled:
            raise AlreadySettled(f"position {position_id} already settled")
        taker, provider = taker_symbol(position_id), provider_symbol(position_id)
        if self.ledger.get_balance(holder, taker) != 1 or self.ledger.get_balance(holder, provider) != 1:
            raise Unauthorized(f"{holder} does not hold both sides of position {position_id}")

        total = position.taker_locked + position.provider_locked
        cancelled = replace(
            position, settled=True, cancelled=True,
            taker_withdrawn=True, provider_withdrawn=True,
        )
        contract_id = f"{self.wallet}:cancel:{position_id}"
        moves: List[Move] = [
            burn(taker, holder, contract_id),
            burn(provider, holder, contract_id),
            Move(total, self.currency, self.wallet, holder, contract_id),
        ]
        change = UnitStateChange(taker, to_state_dict(position), to_state_dict(cancelled))
        self.ledger.apply(build_transaction(
            self.ledger, moves, [change], origin=self._origin(taker, "CANCEL"),
        ))
        if self.verbose:
            print(f"✂️  CANCELLED #{position_id}: {total} {self.currency} to {holder}")
        return total
