"""Service and execution models for the escrow.

Execution lifecycle:
    UNINITIALIZED → REQUESTED → ACCEPTED → VALIDATED
    UNINITIALIZED → REQUESTED → ACCEPTED → DISPUTED → VALIDATED
    UNINITIALIZED → REQUESTED → ACCEPTED → DISPUTED → REFUNDED
    UNINITIALIZED → REQUESTED → REFUNDED               (cancelled)

VALIDATED and REFUNDED are terminal. Executions are never deleted.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional


class PaymentType(str, enum.Enum):
    """How requesters pay for a service."""
    CREDITS = "credits"
    CURRENCY = "currency"


class ExecutionState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    REQUESTED = "requested"
    ACCEPTED = "accepted"
    DISPUTED = "disputed"
    REFUNDED = "refunded"
    VALIDATED = "validated"


EXECUTION_TRANSITIONS: Dict[ExecutionState, frozenset] = {
    ExecutionState.UNINITIALIZED: frozenset({ExecutionState.REQUESTED}),
    ExecutionState.REQUESTED: frozenset({
        ExecutionState.ACCEPTED,
        ExecutionState.REFUNDED,
    }),
    ExecutionState.ACCEPTED: frozenset({
        ExecutionState.VALIDATED,
        ExecutionState.DISPUTED,
    }),
    ExecutionState.DISPUTED: frozenset({
        ExecutionState.VALIDATED,
        ExecutionState.REFUNDED,
    }),
    ExecutionState.VALIDATED: frozenset(),
    ExecutionState.REFUNDED: frozenset(),
}


@dataclass
class Execution:
    """One escrowed payment against one service."""
    requester: str
    state: ExecutionState = ExecutionState.UNINITIALIZED
    last_update_timestamp: Optional[datetime] = None


@dataclass
class Service:
    """A priced offer to act on behalf of an entity.

    Identity fields are fixed at creation. Only `enabled` and
    `buy_back_credits_share` change afterwards; a price change goes
    through create-and-update, which keeps the old record for history.
    """
    service_type: str
    visibility_id: str
    originator: str
    payment_type: PaymentType = PaymentType.CREDITS
    credits_cost_amount: int = 0
    wei_cost_amount: int = 0
    buy_back_credits_share: int = 0
    enabled: bool = True
    executions: List[Execution] = field(default_factory=list)

    @property
    def cost_amount(self) -> int:
        """Price in the unit of this service's payment type."""
        if self.payment_type == PaymentType.CREDITS:
            return self.credits_cost_amount
        return self.wei_cost_amount


@dataclass
class ServicesState:
    """Everything the escrow persists. Services are indexed by nonce."""
    services: List[Service] = field(default_factory=list)
    buy_back_pools: Dict[str, int] = field(default_factory=dict)
