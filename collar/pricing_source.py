"""
pricing_source.py - Reference prices for the collar loan protocol

Provides the oracle the protocol components read their reference price from.

Classes:
- PriceOracle: Protocol for an asset/currency reference rate
- StaticPriceOracle: Settable constant rate (tests, demos)
- TimeSeriesPricingSource: Time-varying price history with point-in-time lookup
- TimeSeriesPriceOracle: Oracle reading a TimeSeriesPricingSource at ledger time

Prices are quoted in settlement currency per base_token_amount of the asset
(base_token_amount is one whole token unless configured otherwise).
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, Set, Optional, List, Tuple, Protocol, runtime_checkable
from bisect import bisect_right

from .core import LedgerError, LedgerView, to_decimal


@runtime_checkable
class PriceOracle(Protocol):
    """
    Protocol for the asset -> currency reference rate.

    reference_price() is the rate at call time (a TWAP in a live deployment).
    price_at() is the historical rate used for settlement at expiration; it
    returns None when no observation exists for that time.
    """
    asset: str
    currency: str
    base_token_amount: Decimal

    def reference_price(self) -> Decimal:
        ...

    def price_at(self, timestamp: datetime) -> Optional[Decimal]:
        ...


class StaticPriceOracle:
    """
    Oracle with a single settable price, independent of time.

    Example:
        oracle = StaticPriceOracle("WETH", "USDC", Decimal("2"))
        oracle.set_price(Decimal("2.1"))
    """

    def __init__(
        self,
        asset: str,
        currency: str,
        price: Decimal,
        base_token_amount: Decimal = Decimal("1"),
    ):
        self.asset = asset
        self.currency = currency
        self.base_token_amount = to_decimal(base_token_amount)
        self.set_price(price)

    def set_price(self, price: Decimal) -> None:
        price = to_decimal(price)
        if price <= 0:
            raise ValueError(f"price must be positive, got {price}")
        self.price = price

    def reference_price(self) -> Decimal:
        return self.price

    def price_at(self, timestamp: datetime) -> Optional[Decimal]:
        """Static price (timestamp is ignored)."""
        return self.price

    def __repr__(self):
        return f"StaticPriceOracle({self.asset}/{self.currency}={self.price})"


class TimeSeriesPricingSource:
    """
    Pricing source with time-varying prices.

    Stores historical price data and supports point-in-time lookup: the most
    recent price at or before the requested timestamp.

    Supports two initialization patterns:
    - Empty initialization for incremental price addition via add_price()
    - Batch initialization with complete price paths for simulations
    """

    def __init__(
        self,
        price_paths: Optional[Dict[str, List[Tuple[datetime, Decimal]]]] = None,
        base_currency: str = "USDC"
    ):
        """
        Initialize pricing source.

        Args:
            price_paths: Optional dict mapping unit symbols to list of (timestamp, price) tuples.
            base_currency: Currency prices are quoted in

        Examples:
            pricer = TimeSeriesPricingSource()
            pricer.add_price('WETH', datetime(2025, 1, 15), Decimal("2"))

            pricer = TimeSeriesPricingSource({
                'WETH': [(t0, Decimal("2")), (t1, Decimal("2.1"))],
            })
        """
        self.base_currency = base_currency
        self.price_history: Dict[str, List[Tuple[datetime, Decimal]]] = {}

        if price_paths:
            for unit, path in price_paths.items():
                if not path:
                    continue
                self.price_history[unit] = sorted(
                    ((ts, to_decimal(price)) for ts, price in path), key=lambda x: x[0]
                )

    def add_price(self, unit_symbol: str, timestamp: datetime, price: Decimal):
        """Add a price observation for a unit at a specific time."""
        history = self.price_history.setdefault(unit_symbol, [])
        history.append((timestamp, to_decimal(price)))
        history.sort(key=lambda x: x[0])

    def get_price(self, unit_symbol: str, timestamp: datetime) -> Optional[Decimal]:
        """
        Get price at or before the specified timestamp.

        Returns None if no price data is available at or before the timestamp.
        Uses binary search for O(log n) lookup.
        """
        if unit_symbol == self.base_currency:
            return Decimal("1")

        history = self.price_history.get(unit_symbol)
        if not history:
            return None

        timestamps = [ts for ts, _ in history]
        idx = bisect_right(timestamps, timestamp)
        if idx == 0:
            return None
        return history[idx - 1][1]

    def get_all_timestamps(self, unit_symbol: Optional[str] = None) -> List[datetime]:
        """Sorted timestamps for one unit, or the union across all units."""
        if unit_symbol:
            return [ts for ts, _ in self.price_history.get(unit_symbol, [])]

        all_times: Set[datetime] = set()
        for path in self.price_history.values():
            all_times.update(ts for ts, _ in path)
        return sorted(all_times)

    def __repr__(self):
        total_observations = sum(len(history) for history in self.price_history.values())
        return f"TimeSeriesPricingSource({len(self.price_history)} units, {total_observations} observations, base={self.base_currency})"


class TimeSeriesPriceOracle:
    """
    Oracle over a TimeSeriesPricingSource, read at the ledger's current time.

    The oracle holds a LedgerView for its clock only; it never reads balances.
    """

    def __init__(
        self,
        view: LedgerView,
        source: TimeSeriesPricingSource,
        asset: str,
        base_token_amount: Decimal = Decimal("1"),
    ):
        self.view = view
        self.source = source
        self.asset = asset
        self.currency = source.base_currency
        self.base_token_amount = to_decimal(base_token_amount)

    def reference_price(self) -> Decimal:
        """
        Raises:
            LedgerError: If no observation exists at or before the ledger's time
        """
        price = self.source.get_price(self.asset, self.view.current_time)
        if price is None:
            raise LedgerError(
                f"No {self.asset}/{self.currency} price at or before {self.view.current_time}"
            )
        return price

    def price_at(self, timestamp: datetime) -> Optional[Decimal]:
        return self.source.get_price(self.asset, timestamp)

    def __repr__(self):
        return f"TimeSeriesPriceOracle({self.asset}/{self.currency}, {self.source!r})"
