"""
Aid Ledger Core Engines
"""
from .financial_precision import (
    to_decimal,
    round_financial,
    to_float,
    format_financial,
    safe_divide,
    calculate_ratio_percentage,
    FinancialPrecisionError
)

from .errors import (
    LedgerError,
    NotFoundError,
    ForbiddenError,
    ValidationFailure,
    DisbursementCeilingError,
    ConcurrentModificationError
)

from .state_machine import (
    StateMachine,
    StateMachineError,
    InvalidTransitionError
)

from .ledger import (
    LedgerService,
    LedgerReconciler,
    signed_effect,
    sort_chronologically,
    replay,
    compute_balance
)

__all__ = [
    # Financial Precision
    'to_decimal',
    'round_financial',
    'to_float',
    'format_financial',
    'safe_divide',
    'calculate_ratio_percentage',
    'FinancialPrecisionError',

    # Errors
    'LedgerError',
    'NotFoundError',
    'ForbiddenError',
    'ValidationFailure',
    'DisbursementCeilingError',
    'ConcurrentModificationError',

    # State Machine
    'StateMachine',
    'StateMachineError',
    'InvalidTransitionError',

    # Ledger
    'LedgerService',
    'LedgerReconciler',
    'signed_effect',
    'sort_chronologically',
    'replay',
    'compute_balance',
]
