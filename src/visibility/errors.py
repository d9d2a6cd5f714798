"""Typed failures raised by the ledger and escrow.

Every failure aborts the whole operation. The hierarchy is rooted at
ValueError so callers that already treat ValueError as "operation
rejected" keep working unchanged.

Taxonomy:
    InputError          — malformed or unknown input
    AuthorizationError  — caller lacks a relationship or capability
    StateError          — operation not permitted from the current state
    EconomicError       — payment, balance or pool shortfall
"""

from __future__ import annotations

from typing import Optional


class VisibilityError(ValueError):
    """Base class for every rejected operation."""


# ------------------------------------------------------------------
# Input validation
# ------------------------------------------------------------------


class InputError(VisibilityError):
    pass


class InvalidAddress(InputError):
    pass


class InvalidAmount(InputError):
    pass


class PayloadTooLarge(InputError):
    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"Payload of {size} bytes exceeds limit of {limit} bytes")
        self.size = size
        self.limit = limit


class UnknownService(InputError):
    def __init__(self, service_nonce: int) -> None:
        super().__init__(f"Unknown service: {service_nonce}")
        self.service_nonce = service_nonce


class UnknownExecution(InputError):
    def __init__(self, service_nonce: int, execution_nonce: int) -> None:
        super().__init__(
            f"Unknown execution {execution_nonce} for service {service_nonce}"
        )
        self.service_nonce = service_nonce
        self.execution_nonce = execution_nonce


class DisabledService(InputError):
    def __init__(self, service_nonce: int) -> None:
        super().__init__(f"Service {service_nonce} is disabled")
        self.service_nonce = service_nonce


class InvalidPaymentType(InputError):
    pass


# ------------------------------------------------------------------
# Authorization
# ------------------------------------------------------------------


class AuthorizationError(VisibilityError):
    pass


class Unauthorized(AuthorizationError):
    """Caller does not hold the capability an operation requires."""

    def __init__(self, account: str, role: str) -> None:
        super().__init__(f"Account {account} is missing role {role}")
        self.account = account
        self.role = role


class InvalidOriginator(AuthorizationError):
    pass


class InvalidCreator(AuthorizationError):
    pass


class UnauthorizedExecutionAction(AuthorizationError):
    pass


# ------------------------------------------------------------------
# State
# ------------------------------------------------------------------


class StateError(VisibilityError):
    pass


class InvalidExecutionState(StateError):
    def __init__(self, current: str, target: Optional[str] = None) -> None:
        if target is None:
            message = f"Execution state {current} does not permit this operation"
        else:
            message = f"Invalid execution transition: {current} → {target}"
        super().__init__(message)
        self.current = current
        self.target = target


class ReentrantCall(StateError):
    pass


class AdminTransferNotReady(StateError):
    pass


# ------------------------------------------------------------------
# Economic
# ------------------------------------------------------------------


class EconomicError(VisibilityError):
    pass


class NotEnoughEthSent(EconomicError):
    def __init__(self, sent: int, required: int) -> None:
        super().__init__(f"Sent {sent} wei, required {required} wei")
        self.sent = sent
        self.required = required


class NotEnoughCreditsOwned(EconomicError):
    def __init__(self, owned: int, required: int) -> None:
        super().__init__(f"Owns {owned} credits, required {required}")
        self.owned = owned
        self.required = required


class InsufficientFunds(EconomicError):
    pass


class InsufficientBuyBackPool(EconomicError):
    def __init__(self, available: int, required: int) -> None:
        super().__init__(
            f"Buy-back pool holds {available} wei, required {required} wei"
        )
        self.available = available
        self.required = required


class SlippageExceeded(EconomicError):
    def __init__(self, cost: int, max_cost: int) -> None:
        super().__init__(f"Buy-back cost {cost} wei exceeds maximum {max_cost} wei")
        self.cost = cost
        self.max_cost = max_cost


class TransferFailed(EconomicError):
    pass
