"""
fake_view.py - Test Helper for LedgerView

Provides a minimal LedgerView implementation for testing pure functions
(settlement, lifecycle contracts, loan loading) without a full Ledger.
"""

from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Dict, Set, Optional, Any

from collar import LedgerView, UnitNotRegistered, token


# Type aliases (matching core.py)
Positions = Dict[str, Decimal]
UnitState = Dict[str, Any]


class FakeView:
    """
    Minimal LedgerView implementation for testing contract functions.

    Unknown unit states raise UnitNotRegistered like the real Ledger, so
    adapters that translate that error can be exercised.

    Example:
        view = FakeView(
            balances={'collar_loans': {'TAKER_1': Decimal("1")}},
            states={'TAKER_1': to_state_dict(position)},
            time=datetime(2025, 2, 1),
            units={'USDC': token("USDC", "USD Coin", 6)},
        )
    """

    def __init__(
        self,
        balances: Dict[str, Dict[str, Decimal]],
        states: Optional[Dict[str, UnitState]] = None,
        time: Optional[datetime] = None,
        units: Optional[Dict[str, Any]] = None
    ):
        self._balances = balances
        self._states = states or {}
        self._time = time or datetime(2025, 1, 1)
        self._units = units or {}

    @property
    def current_time(self) -> datetime:
        return self._time

    def get_balance(self, wallet: str, unit: str) -> Decimal:
        return self._balances.get(wallet, {}).get(unit, Decimal("0"))

    def get_unit_state(self, unit: str) -> UnitState:
        if unit not in self._states:
            raise UnitNotRegistered(f"Unit {unit} not registered")
        return dict(self._states[unit])

    def get_positions(self, unit: str) -> Positions:
        return {
            w: b[unit]
            for w, b in self._balances.items()
            if unit in b and b[unit] != 0
        }

    def list_wallets(self) -> Set[str]:
        return set(self._balances.keys())

    def get_unit(self, symbol: str) -> Any:
        """Return the registered unit, or a 6-decimal token."""
        if symbol in self._units:
            return self._units[symbol]
        return token(symbol, symbol, 6)


# Verify FakeView satisfies the protocol at import time
assert isinstance(FakeView({}), LedgerView)
