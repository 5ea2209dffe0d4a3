"""
collar - Collateralized loans built from collar positions, on a double-entry ledger

A borrower deposits an asset, it is converted into the settlement currency,
part of the proceeds is lent and the rest is locked in a collar position
against a provider's liquidity. Loans can be closed, rolled or cancelled.

Usage:
    from collar import (
        Ledger, token, Move, build_transaction, SYSTEM_WALLET,
        StaticPriceOracle, PoolSwapper, SwapParams,
        PositionBook, RollExecutor, LoanEngine,
    )

    ledger = Ledger("main")
    ledger.register_unit(token("USDC", "USD Coin", 6))
    ledger.register_unit(token("WETH", "Wrapped Ether", 18))
    ledger.register_wallet("alice")

    # Fund wallets via SYSTEM_WALLET (proper issuance)
    ledger.apply(build_transaction(ledger, [
        Move(Decimal("1000"), "WETH", SYSTEM_WALLET, "alice", "initial_balance")
    ]))

    oracle = StaticPriceOracle("WETH", "USDC", Decimal("2"))
    book = PositionBook(ledger, oracle)
    rolls = RollExecutor(ledger, book, oracle)
    loans = LoanEngine(ledger, oracle, book, rolls, closing_keeper="keeper")
    swapper = PoolSwapper(ledger, oracle)

    loan_id, amount = loans.open_loan(
        "alice", Decimal("1000"), Decimal("0"), SwapParams(Decimal("0"), swapper), offer_id
    )
"""

# Core types
from .core import (
    LedgerView,
    SmartContract,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    empty_pending_transaction,
    Unit,
    UnitStateChange,
    ExecuteResult,
    # Errors
    LedgerError,
    InsufficientFunds,
    BalanceConstraintViolation,
    TransferRuleViolation,
    UnitNotRegistered,
    WalletNotRegistered,
    InsufficientLiquidity,
    LoanError,
    ZeroDeposit,
    SlippageTooLow,
    PriceDeviationTooHigh,
    NotYetSettleable,
    Unauthorized,
    NotActive,
    LoanNotFound,
    TransferMismatch,
    BalanceInvariantViolated,
    RepaymentExceedsLoan,
    InvalidRollOffer,
    AlreadySettled,
    # Factories and helpers
    token,
    ownership_token,
    record,
    registry,
    owner_of,
    mint,
    burn,
    mul_div,
    truncate,
    # Constants
    SYSTEM_WALLET,
    LOANS_WALLET,
    POSITIONS_WALLET,
    ROLLS_WALLET,
    SWAP_POOL_WALLET,
    BIPS_BASE,
    MAX_SWAP_PRICE_DEVIATION_BIPS,
    DEFAULT_KEEPER_SLIPPAGE_BIPS,
    UNIT_TYPE_TOKEN,
    UNIT_TYPE_COLLAR_TAKER,
    UNIT_TYPE_COLLAR_PROVIDER,
    UNIT_TYPE_PROVIDER_OFFER,
    UNIT_TYPE_ROLL_OFFER,
    UNIT_TYPE_LOAN,
    UNIT_TYPE_REGISTRY,
)

# Ledger
from .ledger import Ledger

# Pricing
from .pricing_source import (
    PriceOracle,
    StaticPriceOracle,
    TimeSeriesPricingSource,
    TimeSeriesPriceOracle,
)

# Conversion
from .swapper import (
    CurrencyConverter,
    SwapParams,
    PoolSwapper,
    calculate_swap_output,
    compute_swap,
)

# Units
from .units import (
    ProviderOffer,
    CollarPosition,
    PositionBook,
    calculate_provider_locked,
    calculate_settlement,
    compute_settlement,
    load_offer,
    load_position,
    Loan,
    LoanStatus,
    load_loan,
    calculate_loan_amount,
    loan_amount_after_roll,
    calculate_swap_price,
    swap_price_deviation_bips,
    check_swap_price,
)

# Rolls
from .rolls import (
    RollOffer,
    RollPreview,
    RollExecutor,
    calculate_roll_fee,
    new_locked_amounts,
    preview_roll,
    load_roll_offer,
)

# Loans
from .loan_engine import LoanEngine, RollResult, TerminatedLoan

# Lifecycle
from .lifecycle_engine import LifecycleEngine, KeeperReport

__all__ = [
    # Core
    'LedgerView', 'SmartContract', 'Move', 'Transaction', 'PendingTransaction',
    'TransactionOrigin', 'OriginType', 'build_transaction', 'empty_pending_transaction',
    'Unit', 'UnitStateChange', 'ExecuteResult',
    # Errors
    'LedgerError', 'InsufficientFunds', 'BalanceConstraintViolation',
    'TransferRuleViolation', 'UnitNotRegistered', 'WalletNotRegistered',
    'InsufficientLiquidity', 'LoanError', 'ZeroDeposit', 'SlippageTooLow',
    'PriceDeviationTooHigh', 'NotYetSettleable', 'Unauthorized', 'NotActive',
    'LoanNotFound', 'TransferMismatch', 'BalanceInvariantViolated',
    'RepaymentExceedsLoan', 'InvalidRollOffer', 'AlreadySettled',
    # Factories and helpers
    'token', 'ownership_token', 'record', 'registry', 'owner_of', 'mint', 'burn',
    'mul_div', 'truncate',
    # Constants
    'SYSTEM_WALLET', 'LOANS_WALLET', 'POSITIONS_WALLET', 'ROLLS_WALLET', 'SWAP_POOL_WALLET',
    'BIPS_BASE', 'MAX_SWAP_PRICE_DEVIATION_BIPS', 'DEFAULT_KEEPER_SLIPPAGE_BIPS',
    'UNIT_TYPE_TOKEN', 'UNIT_TYPE_COLLAR_TAKER', 'UNIT_TYPE_COLLAR_PROVIDER',
    'UNIT_TYPE_PROVIDER_OFFER', 'UNIT_TYPE_ROLL_OFFER', 'UNIT_TYPE_LOAN', 'UNIT_TYPE_REGISTRY',
    # Ledger
    'Ledger',
    # Pricing
    'PriceOracle', 'StaticPriceOracle', 'TimeSeriesPricingSource', 'TimeSeriesPriceOracle',
    # Conversion
    'CurrencyConverter', 'SwapParams', 'PoolSwapper', 'calculate_swap_output', 'compute_swap',
    # Collar positions
    'ProviderOffer', 'CollarPosition', 'PositionBook',
    'calculate_provider_locked', 'calculate_settlement', 'compute_settlement',
    'load_offer', 'load_position',
    # Loans
    'Loan', 'LoanStatus', 'load_loan', 'calculate_loan_amount', 'loan_amount_after_roll',
    'calculate_swap_price', 'swap_price_deviation_bips', 'check_swap_price',
    'LoanEngine', 'RollResult', 'TerminatedLoan',
    # Rolls
    'RollOffer', 'RollPreview', 'RollExecutor',
    'calculate_roll_fee', 'new_locked_amounts', 'preview_roll', 'load_roll_offer',
    # Lifecycle
    'LifecycleEngine', 'KeeperReport',
]

__version__ = '1.0.0'
