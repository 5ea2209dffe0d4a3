"""
Units module - Records the collar protocol keeps as unit state.

- Collar positions (taker/provider sides) and provider liquidity offers
- Loans wrapping a taker position

All unit factories and related functions are re-exported here for convenience.
"""

# Collar positions
from .collar_position import (
    ProviderOffer,
    CollarPosition,
    PositionBook,
    validate_strikes,
    calculate_provider_locked,
    calculate_settlement,
    compute_settlement,
    create_position_units,
    load_offer,
    load_position,
    to_state_dict,
    taker_symbol,
    provider_symbol,
    offer_symbol,
    position_id_of,
)

# Loans
from .loan import (
    Loan,
    LoanStatus,
    create_loan_unit,
    load_loan,
    loan_state_dict,
    loan_symbol,
    calculate_loan_amount,
    loan_amount_after_roll,
    calculate_swap_price,
    swap_price_deviation_bips,
    check_swap_price,
)

__all__ = [
    # Collar positions
    'ProviderOffer', 'CollarPosition', 'PositionBook',
    'validate_strikes', 'calculate_provider_locked', 'calculate_settlement',
    'compute_settlement', 'create_position_units',
    'load_offer', 'load_position', 'to_state_dict',
    'taker_symbol', 'provider_symbol', 'offer_symbol', 'position_id_of',
    # Loans
    'Loan', 'LoanStatus', 'create_loan_unit', 'load_loan', 'loan_state_dict', 'loan_symbol',
    'calculate_loan_amount', 'loan_amount_after_roll',
    'calculate_swap_price', 'swap_price_deviation_bips', 'check_swap_price',
]
