"""Data models for the visibility credits ledger and service escrow."""

from visibility.models.credits import (
    CreditsTradeQuote,
    LedgerState,
    VisibilityRecord,
    VisibilityView,
)
from visibility.models.services import (
    EXECUTION_TRANSITIONS,
    Execution,
    ExecutionState,
    PaymentType,
    Service,
    ServicesState,
)

__all__ = [
    "CreditsTradeQuote",
    "LedgerState",
    "VisibilityRecord",
    "VisibilityView",
    "EXECUTION_TRANSITIONS",
    "Execution",
    "ExecutionState",
    "PaymentType",
    "Service",
    "ServicesState",
]
