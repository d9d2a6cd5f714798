"""Service escrow — service registry, execution lifecycle and settlement.

Anyone may list a service for an entity. A holder requests an execution,
which escrows the price: credits move into the escrow's own ledger
balance (CREDITS mode) or wei move to the escrow's rail account
(CURRENCY mode). The execution then runs through the state machine:

    request → accept → validate                 (payment)
    request → accept → dispute → resolve(...)   (payment or refund)
    request → cancel                            (refund)

Payment in CURRENCY mode splits the escrowed wei three ways:

    protocol_fee   = wei_cost × PROTOCOL_FEE / DENOM           → treasury
    buy_back       = wei_cost × buy_back_credits_share / DENOM → entity pool
    creator_amount = wei_cost − protocol_fee − buy_back        → creator

The buy-back pool is only spent by the entity's creator through
buy_back(), which purchases credits on the ledger for the escrow itself.

Every operation flips state and debits pools before moving value out.
"""

from __future__ import annotations

import copy
from datetime import datetime, timedelta
from typing import Optional, Protocol, Tuple

from visibility.access import AccessPolicy, Role
from visibility.errors import (
    DisabledService,
    InsufficientBuyBackPool,
    InvalidAmount,
    InvalidCreator,
    InvalidOriginator,
    InvalidPaymentType,
    NotEnoughEthSent,
    PayloadTooLarge,
    SlippageExceeded,
    UnauthorizedExecutionAction,
    UnknownExecution,
    UnknownService,
)
from visibility.escrow.state_machine import ExecutionStateMachine
from visibility.identity import normalize_address, require_address
from visibility.models.credits import (
    FEE_DENOMINATOR,
    PROTOCOL_FEE,
    CreditsTradeQuote,
    VisibilityView,
)
from visibility.models.services import (
    Execution,
    ExecutionState,
    PaymentType,
    Service,
    ServicesState,
)
from visibility.persistence.event_log import EventKind
from visibility.rails import ValueTransfer
from visibility.runtime import Runtime, utc_now

VALIDATION_DELAY = timedelta(days=5)
MAX_PAYLOAD_BYTES = 1024
MAX_BUY_BACK_SHARE = FEE_DENOMINATOR - PROTOCOL_FEE


class CreditsPort(Protocol):
    """What the escrow needs from the credit ledger."""

    def get_visibility(self, visibility_id: str) -> VisibilityView:
        ...

    def get_protocol_treasury(self) -> str:
        ...

    def buy_cost_with_fees(
        self,
        visibility_id: str,
        amount: int,
        user: str,
        referrer: Optional[str] = None,
    ) -> Tuple[int, CreditsTradeQuote]:
        ...

    def buy_credits(
        self,
        caller: str,
        visibility_id: str,
        amount: int,
        referrer: Optional[str] = None,
        value: int = 0,
        now: Optional[datetime] = None,
    ) -> CreditsTradeQuote:
        ...

    def transfer_credits(
        self,
        caller: str,
        visibility_id: str,
        from_: str,
        to: str,
        amount: int,
        now: Optional[datetime] = None,
    ) -> None:
        ...


def check_payload(data: str) -> None:
    """Reject free-text payloads over MAX_PAYLOAD_BYTES (UTF-8)."""
    size = len(data.encode("utf-8"))
    if size > MAX_PAYLOAD_BYTES:
        raise PayloadTooLarge(size, MAX_PAYLOAD_BYTES)


def split_currency_payment(
    wei_cost_amount: int,
    buy_back_credits_share: int,
) -> Tuple[int, int, int]:
    """Return (protocol_fee, buy_back_amount, creator_amount) for a payment.

    The three parts always sum to wei_cost_amount.
    """
    protocol_fee = wei_cost_amount * PROTOCOL_FEE // FEE_DENOMINATOR
    buy_back_amount = wei_cost_amount * buy_back_credits_share // FEE_DENOMINATOR
    creator_amount = wei_cost_amount - protocol_fee - buy_back_amount
    return protocol_fee, buy_back_amount, creator_amount


class ServiceEscrow:
    """Registry of services and escrow of their executions.

    Usage:
        escrow = ServiceEscrow(runtime, rail, ledger, access, escrow_address)
        nonce = escrow.create_service(creator, "x-post", "x-123", 50)
        execution = escrow.request_service_execution(user, nonce, "please")
        escrow.accept_service_execution(creator, nonce, execution, "ok")
        escrow.validate_service_execution(user, nonce, execution)
    """

    def __init__(
        self,
        runtime: Runtime,
        rail: ValueTransfer,
        credits: CreditsPort,
        access: AccessPolicy,
        address: str,
    ) -> None:
        self._runtime = runtime
        self._rail = rail
        self._credits = credits
        self._access = access
        self._address = require_address(address)
        self._state = ServicesState()
        runtime.register(self)

    @property
    def address(self) -> str:
        return self._address

    @property
    def access(self) -> AccessPolicy:
        return self._access

    @property
    def state(self) -> ServicesState:
        return self._state

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def get_service(self, service_nonce: int) -> Service:
        if not 0 <= service_nonce < len(self._state.services):
            raise UnknownService(service_nonce)
        return self._state.services[service_nonce]

    def get_service_execution(self, service_nonce: int, execution_nonce: int) -> Execution:
        service = self.get_service(service_nonce)
        if not 0 <= execution_nonce < len(service.executions):
            raise UnknownExecution(service_nonce, execution_nonce)
        return service.executions[execution_nonce]

    def service_count(self) -> int:
        return len(self._state.services)

    def execution_count(self, service_nonce: int) -> int:
        return len(self.get_service(service_nonce).executions)

    def get_buy_back_pool(self, visibility_id: str) -> int:
        return self._state.buy_back_pools.get(visibility_id, 0)

    def creator_of(self, visibility_id: str) -> Optional[str]:
        return self._credits.get_visibility(visibility_id).creator

    # ------------------------------------------------------------------
    # Service registry
    # ------------------------------------------------------------------

    def create_service(
        self,
        caller: str,
        service_type: str,
        visibility_id: str,
        credits_cost_amount: int,
        now: Optional[datetime] = None,
    ) -> int:
        """List a service paid in credits. Returns the new service nonce."""
        with self._runtime.transaction():
            service = Service(
                service_type=service_type,
                visibility_id=visibility_id,
                originator=require_address(caller),
                payment_type=PaymentType.CREDITS,
                credits_cost_amount=credits_cost_amount,
            )
            return self._register(service, now)

    def create_service_with_eth(
        self,
        caller: str,
        service_type: str,
        visibility_id: str,
        buy_back_credits_share: int,
        wei_cost_amount: int,
        now: Optional[datetime] = None,
    ) -> int:
        """List a service paid in wei. Returns the new service nonce."""
        with self._runtime.transaction():
            _check_share(buy_back_credits_share)
            service = Service(
                service_type=service_type,
                visibility_id=visibility_id,
                originator=require_address(caller),
                payment_type=PaymentType.CURRENCY,
                wei_cost_amount=wei_cost_amount,
                buy_back_credits_share=buy_back_credits_share,
            )
            return self._register(service, now)

    def create_and_update_from_service(
        self,
        caller: str,
        service_nonce: int,
        cost_amount: int,
        now: Optional[datetime] = None,
    ) -> int:
        """Disable a service and list its successor at a new price.

        The successor keeps type, entity, payment mode and buy-back share.
        `cost_amount` is in credits or wei according to the payment mode.
        """
        with self._runtime.transaction():
            source = self._require_originator(caller, service_nonce)
            self._set_enabled(caller, service_nonce, source, False, now)
            successor = Service(
                service_type=source.service_type,
                visibility_id=source.visibility_id,
                originator=source.originator,
                payment_type=source.payment_type,
                buy_back_credits_share=source.buy_back_credits_share,
            )
            if source.payment_type == PaymentType.CREDITS:
                successor.credits_cost_amount = cost_amount
            else:
                successor.wei_cost_amount = cost_amount
            return self._register(successor, now)

    def update_service(
        self,
        caller: str,
        service_nonce: int,
        enabled: bool,
        now: Optional[datetime] = None,
    ) -> None:
        """Enable or disable a service. In-flight executions are unaffected."""
        with self._runtime.transaction():
            service = self._require_originator(caller, service_nonce)
            self._set_enabled(caller, service_nonce, service, enabled, now)

    def update_buy_back_credits_share(
        self,
        caller: str,
        service_nonce: int,
        buy_back_credits_share: int,
        now: Optional[datetime] = None,
    ) -> None:
        with self._runtime.transaction():
            caller = require_address(caller)
            service = self.get_service(service_nonce)
            if self.creator_of(service.visibility_id) != caller:
                raise InvalidCreator(
                    f"{caller} is not the creator of {service.visibility_id}"
                )
            if service.payment_type != PaymentType.CURRENCY:
                raise InvalidPaymentType(
                    "Buy-back share only applies to currency services"
                )
            _check_share(buy_back_credits_share)
            service.buy_back_credits_share = buy_back_credits_share
            self._runtime.emit(
                EventKind.SERVICE_BUY_BACK_SHARE_UPDATED,
                caller,
                {
                    "service_nonce": service_nonce,
                    "buy_back_credits_share": buy_back_credits_share,
                },
                now,
            )

    # ------------------------------------------------------------------
    # Execution lifecycle
    # ------------------------------------------------------------------

    def request_service_execution(
        self,
        caller: str,
        service_nonce: int,
        request_data: str,
        value: int = 0,
        now: Optional[datetime] = None,
    ) -> int:
        """Escrow the service price and open an execution.

        Returns the execution nonce.
        """
        check_payload(request_data)
        now = utc_now(now)
        with self._runtime.transaction():
            caller = require_address(caller)
            service = self.get_service(service_nonce)
            if not service.enabled:
                raise DisabledService(service_nonce)
            if value < 0:
                raise InvalidAmount("Attached value must be non-negative")

            execution = Execution(requester=caller)
            service.executions.append(execution)
            execution_nonce = len(service.executions) - 1
            ExecutionStateMachine.apply_transition(execution, ExecutionState.REQUESTED, now)

            self._runtime.emit(
                EventKind.SERVICE_EXECUTION_REQUESTED,
                caller,
                {
                    "service_nonce": service_nonce,
                    "execution_nonce": execution_nonce,
                    "requester": caller,
                    "request_data": request_data,
                },
                now,
            )

            if service.payment_type == PaymentType.CREDITS:
                if value != 0:
                    raise InvalidAmount("Credits services do not accept currency")
                self._credits.transfer_credits(
                    self._address,
                    service.visibility_id,
                    caller,
                    self._address,
                    service.credits_cost_amount,
                    now,
                )
            else:
                if value < service.wei_cost_amount:
                    raise NotEnoughEthSent(value, service.wei_cost_amount)
                self._rail.transfer(caller, self._address, value)
                self._rail.transfer(self._address, caller, value - service.wei_cost_amount)
            return execution_nonce

    def add_information_for_service_execution(
        self,
        caller: str,
        service_nonce: int,
        execution_nonce: int,
        information_data: str,
        now: Optional[datetime] = None,
    ) -> None:
        """Attach a note to an execution. No state change."""
        check_payload(information_data)
        with self._runtime.transaction():
            caller = normalize_address(caller)
            service = self.get_service(service_nonce)
            execution = self.get_service_execution(service_nonce, execution_nonce)
            is_creator = self.creator_of(service.visibility_id) == caller
            is_requester = execution.requester == caller
            is_dispute_resolver = self._access.has_role(Role.DISPUTE_RESOLVER, caller)
            if not (is_creator or is_requester or is_dispute_resolver):
                raise UnauthorizedExecutionAction(
                    f"{caller} may not add information to this execution"
                )
            self._runtime.emit(
                EventKind.SERVICE_EXECUTION_INFORMATION,
                caller,
                {
                    "service_nonce": service_nonce,
                    "execution_nonce": execution_nonce,
                    "sender": caller,
                    "is_creator": is_creator,
                    "is_requester": is_requester,
                    "is_dispute_resolver": is_dispute_resolver,
                    "information_data": information_data,
                },
                now,
            )

    def accept_service_execution(
        self,
        caller: str,
        service_nonce: int,
        execution_nonce: int,
        response_data: str,
        now: Optional[datetime] = None,
    ) -> None:
        check_payload(response_data)
        now = utc_now(now)
        with self._runtime.transaction():
            caller = normalize_address(caller)
            service = self.get_service(service_nonce)
            execution = self.get_service_execution(service_nonce, execution_nonce)
            ExecutionStateMachine.require_state(execution, ExecutionState.REQUESTED)
            if self.creator_of(service.visibility_id) != caller:
                raise UnauthorizedExecutionAction(
                    f"Only the creator of {service.visibility_id} may accept"
                )
            ExecutionStateMachine.apply_transition(execution, ExecutionState.ACCEPTED, now)
            self._runtime.emit(
                EventKind.SERVICE_EXECUTION_ACCEPTED,
                caller,
                {
                    "service_nonce": service_nonce,
                    "execution_nonce": execution_nonce,
                    "response_data": response_data,
                },
                now,
            )

    def cancel_service_execution(
        self,
        caller: str,
        service_nonce: int,
        execution_nonce: int,
        cancel_data: str,
        now: Optional[datetime] = None,
    ) -> None:
        """Withdraw a request before acceptance and refund the requester."""
        check_payload(cancel_data)
        now = utc_now(now)
        with self._runtime.transaction():
            caller = normalize_address(caller)
            service = self.get_service(service_nonce)
            execution = self.get_service_execution(service_nonce, execution_nonce)
            ExecutionStateMachine.require_state(execution, ExecutionState.REQUESTED)
            if caller not in (execution.requester, self.creator_of(service.visibility_id)):
                raise UnauthorizedExecutionAction(
                    "Only the requester or the creator may cancel"
                )
            ExecutionStateMachine.apply_transition(execution, ExecutionState.REFUNDED, now)
            self._runtime.emit(
                EventKind.SERVICE_EXECUTION_CANCELED,
                caller,
                {
                    "service_nonce": service_nonce,
                    "execution_nonce": execution_nonce,
                    "cancel_data": cancel_data,
                },
                now,
            )
            self._settle_refund(service, execution, now)

    def validate_service_execution(
        self,
        caller: str,
        service_nonce: int,
        execution_nonce: int,
        now: Optional[datetime] = None,
    ) -> None:
        """Release an accepted execution's payment.

        The requester may validate at any time; anyone may once
        VALIDATION_DELAY has elapsed since the last state change.
        """
        now = utc_now(now)
        with self._runtime.transaction():
            caller = normalize_address(caller)
            service = self.get_service(service_nonce)
            execution = self.get_service_execution(service_nonce, execution_nonce)
            ExecutionStateMachine.require_state(execution, ExecutionState.ACCEPTED)
            if caller != execution.requester:
                last = execution.last_update_timestamp
                if last is not None and now < last + VALIDATION_DELAY:
                    raise UnauthorizedExecutionAction(
                        "Only the requester may validate before the validation delay"
                    )
            ExecutionStateMachine.apply_transition(execution, ExecutionState.VALIDATED, now)
            self._runtime.emit(
                EventKind.SERVICE_EXECUTION_VALIDATED,
                caller,
                {"service_nonce": service_nonce, "execution_nonce": execution_nonce},
                now,
            )
            self._settle_payment(service_nonce, service, execution_nonce, now)

    def dispute_service_execution(
        self,
        caller: str,
        service_nonce: int,
        execution_nonce: int,
        dispute_data: str,
        now: Optional[datetime] = None,
    ) -> None:
        check_payload(dispute_data)
        now = utc_now(now)
        with self._runtime.transaction():
            caller = normalize_address(caller)
            self.get_service(service_nonce)
            execution = self.get_service_execution(service_nonce, execution_nonce)
            ExecutionStateMachine.require_state(execution, ExecutionState.ACCEPTED)
            if caller != execution.requester:
                raise UnauthorizedExecutionAction("Only the requester may dispute")
            ExecutionStateMachine.apply_transition(execution, ExecutionState.DISPUTED, now)
            self._runtime.emit(
                EventKind.SERVICE_EXECUTION_DISPUTED,
                caller,
                {
                    "service_nonce": service_nonce,
                    "execution_nonce": execution_nonce,
                    "dispute_data": dispute_data,
                },
                now,
            )

    def resolve_service_execution(
        self,
        caller: str,
        service_nonce: int,
        execution_nonce: int,
        refund: bool,
        resolve_data: str,
        now: Optional[datetime] = None,
    ) -> None:
        """Settle a disputed execution: refund the requester or pay the creator."""
        check_payload(resolve_data)
        now = utc_now(now)
        with self._runtime.transaction():
            service = self.get_service(service_nonce)
            execution = self.get_service_execution(service_nonce, execution_nonce)
            ExecutionStateMachine.require_state(execution, ExecutionState.DISPUTED)
            self._access.require(Role.DISPUTE_RESOLVER, caller)
            target = ExecutionState.REFUNDED if refund else ExecutionState.VALIDATED
            ExecutionStateMachine.apply_transition(execution, target, now)
            self._runtime.emit(
                EventKind.SERVICE_EXECUTION_RESOLVED,
                normalize_address(caller),
                {
                    "service_nonce": service_nonce,
                    "execution_nonce": execution_nonce,
                    "refund": refund,
                    "resolve_data": resolve_data,
                },
                now,
            )
            if refund:
                self._settle_refund(service, execution, now)
            else:
                self._settle_payment(service_nonce, service, execution_nonce, now)

    # ------------------------------------------------------------------
    # Buy-back
    # ------------------------------------------------------------------

    def buy_back(
        self,
        caller: str,
        visibility_id: str,
        credits_amount: int,
        max_wei_amount: int,
        now: Optional[datetime] = None,
    ) -> CreditsTradeQuote:
        """Spend the entity's buy-back pool on credits held by the escrow.

        Raises SlippageExceeded if the quoted cost is above max_wei_amount
        and InsufficientBuyBackPool if the pool cannot cover it.
        """
        with self._runtime.transaction():
            caller = require_address(caller)
            if self.creator_of(visibility_id) != caller:
                raise InvalidCreator(f"{caller} is not the creator of {visibility_id}")

            cost, _ = self._credits.buy_cost_with_fees(
                visibility_id, credits_amount, self._address, None
            )
            if cost > max_wei_amount:
                raise SlippageExceeded(cost, max_wei_amount)
            pool = self.get_buy_back_pool(visibility_id)
            if cost > pool:
                raise InsufficientBuyBackPool(pool, cost)

            self._state.buy_back_pools[visibility_id] = pool - cost
            self._runtime.emit(
                EventKind.BUY_BACK_POOL_UPDATED,
                caller,
                {
                    "visibility_id": visibility_id,
                    "is_buy_back": True,
                    "amount": cost,
                    "pool_balance": pool - cost,
                },
                now,
            )

            quote = self._credits.buy_credits(
                self._address, visibility_id, credits_amount, None, cost, now
            )
            self._runtime.emit(
                EventKind.BUY_BACK,
                caller,
                {
                    "visibility_id": visibility_id,
                    "credits_amount": credits_amount,
                    "wei_amount": cost,
                },
                now,
            )
            return quote

    # ------------------------------------------------------------------
    # Participant protocol
    # ------------------------------------------------------------------

    def snapshot(self) -> ServicesState:
        return copy.deepcopy(self._state)

    def restore(self, snapshot: ServicesState) -> None:
        self._state = snapshot

    def load_state(self, state: ServicesState) -> None:
        self._state = state

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _register(self, service: Service, now: Optional[datetime]) -> int:
        if service.cost_amount <= 0:
            raise InvalidAmount("Service price must be positive")
        self._state.services.append(service)
        service_nonce = len(self._state.services) - 1
        if service.payment_type == PaymentType.CREDITS:
            kind = EventKind.SERVICE_CREATED
            payload = {"credits_cost_amount": service.credits_cost_amount}
        else:
            kind = EventKind.SERVICE_WITH_ETH_CREATED
            payload = {
                "wei_cost_amount": service.wei_cost_amount,
                "buy_back_credits_share": service.buy_back_credits_share,
            }
        payload.update(
            {
                "originator": service.originator,
                "service_nonce": service_nonce,
                "service_type": service.service_type,
                "visibility_id": service.visibility_id,
            }
        )
        self._runtime.emit(kind, service.originator, payload, now)
        return service_nonce

    def _require_originator(self, caller: str, service_nonce: int) -> Service:
        service = self.get_service(service_nonce)
        if service.originator != normalize_address(caller):
            raise InvalidOriginator(
                f"{caller} is not the originator of service {service_nonce}"
            )
        return service

    def _set_enabled(
        self,
        caller: str,
        service_nonce: int,
        service: Service,
        enabled: bool,
        now: Optional[datetime],
    ) -> None:
        service.enabled = enabled
        self._runtime.emit(
            EventKind.SERVICE_UPDATED,
            normalize_address(caller),
            {"service_nonce": service_nonce, "enabled": enabled},
            now,
        )

    def _settle_refund(
        self,
        service: Service,
        execution: Execution,
        now: Optional[datetime],
    ) -> None:
        if service.payment_type == PaymentType.CREDITS:
            self._credits.transfer_credits(
                self._address,
                service.visibility_id,
                self._address,
                execution.requester,
                service.credits_cost_amount,
                now,
            )
        else:
            self._rail.transfer(self._address, execution.requester, service.wei_cost_amount)

    def _settle_payment(
        self,
        service_nonce: int,
        service: Service,
        execution_nonce: int,
        now: Optional[datetime],
    ) -> None:
        creator = self.creator_of(service.visibility_id)
        if creator is None:
            raise InvalidCreator(f"No creator linked to {service.visibility_id}")

        if service.payment_type == PaymentType.CREDITS:
            self._credits.transfer_credits(
                self._address,
                service.visibility_id,
                self._address,
                creator,
                service.credits_cost_amount,
                now,
            )
            return

        protocol_fee, buy_back_amount, creator_amount = split_currency_payment(
            service.wei_cost_amount, service.buy_back_credits_share
        )
        pool = self.get_buy_back_pool(service.visibility_id) + buy_back_amount
        self._state.buy_back_pools[service.visibility_id] = pool
        self._runtime.emit(
            EventKind.SERVICE_EXECUTION_ETH_PAYMENT,
            self._address,
            {
                "service_nonce": service_nonce,
                "execution_nonce": execution_nonce,
                "protocol_amount": protocol_fee,
                "creator_amount": creator_amount,
                "buy_back_amount": buy_back_amount,
            },
            now,
        )
        self._runtime.emit(
            EventKind.BUY_BACK_POOL_UPDATED,
            self._address,
            {
                "visibility_id": service.visibility_id,
                "is_buy_back": False,
                "amount": buy_back_amount,
                "pool_balance": pool,
            },
            now,
        )
        self._rail.transfer(
            self._address, self._credits.get_protocol_treasury(), protocol_fee
        )
        self._rail.transfer(self._address, creator, creator_amount)


def _check_share(buy_back_credits_share: int) -> None:
    if not 0 <= buy_back_credits_share <= MAX_BUY_BACK_SHARE:
        raise InvalidAmount(
            f"Buy-back share must be between 0 and {MAX_BUY_BACK_SHARE} ppm"
        )
