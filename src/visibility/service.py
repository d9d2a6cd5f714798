"""Visibility market service — unified facade over ledger and escrow.

This is the primary interface for programmatic access. It wires:
- Runtime (transactions, event buffering)
- NativeRail (wei balances)
- CreditLedger with its AccessPolicy (linkers, credits transfer)
- ServiceEscrow with its AccessPolicy (dispute resolver)
- Persistence (event log, state store)

Every operation returns a ServiceResult. Rejected operations carry the
error message and leave no trace in state or in the event log. Committed
operations are already in the event log when the state store is
written; a state store failure after that point does not undo anything
and instead marks the service persistence_degraded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from visibility.access import AccessPolicy, Role
from visibility.config import MarketConfig
from visibility.credits.ledger import CreditLedger
from visibility.errors import VisibilityError
from visibility.escrow.engine import ServiceEscrow
from visibility.identity import require_address
from visibility.models.credits import CreditsTradeQuote
from visibility.models.services import ExecutionState, PaymentType
from visibility.persistence.event_log import EventKind, EventLog
from visibility.persistence.state_store import (
    StateStore,
    access_from_dict,
    access_to_dict,
    ledger_from_dict,
    ledger_to_dict,
    services_from_dict,
    services_to_dict,
)
from visibility.rails import NativeRail
from visibility.runtime import Runtime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)


def _quote_dict(quote: CreditsTradeQuote) -> dict[str, Any]:
    return {
        "trade_cost": quote.trade_cost,
        "creator_fee": quote.creator_fee,
        "protocol_fee": quote.protocol_fee,
        "referrer_fee": quote.referrer_fee,
        "partner_fee": quote.partner_fee,
        "referrer": quote.referrer,
        "partner": quote.partner,
    }


class VisibilityMarket:
    """Ledger + escrow facade.

    Usage:
        config = MarketConfig.from_config_dir(config_dir)
        market = VisibilityMarket(config)

        market.fund(buyer, 10**18)
        result = market.buy(buyer, "x-123", 5, value=10**17)
        result = market.create_service(creator, "x-post", "x-123", 50)
        result = market.request(buyer, 0, "please repost")

    Persistence (optional):
        market = VisibilityMarket(config, event_log=log, state_store=store)
        # State is saved after each committed operation and loaded on
        # construction.
    """

    def __init__(
        self,
        config: MarketConfig,
        event_log: Optional[EventLog] = None,
        state_store: Optional[StateStore] = None,
    ) -> None:
        self._config = config
        self._runtime = Runtime(event_log)
        self._rail = NativeRail()
        self._runtime.register(self._rail)

        self._ledger_access = AccessPolicy(
            self._runtime,
            "ledger",
            config.admin,
            config.admin_delay,
            grants={
                Role.CREATORS_LINKER: [config.creators_linker],
                Role.PARTNERS_LINKER: [config.partners_linker],
                Role.CREDITS_TRANSFER: [config.escrow_address],
            },
        )
        self._escrow_access = AccessPolicy(
            self._runtime,
            "escrow",
            config.admin,
            config.admin_delay,
            grants={Role.DISPUTE_RESOLVER: [config.dispute_resolver]},
        )
        self._ledger = CreditLedger(
            self._runtime,
            self._rail,
            self._ledger_access,
            config.treasury,
            config.ledger_address,
        )
        self._escrow = ServiceEscrow(
            self._runtime,
            self._rail,
            self._ledger,
            self._escrow_access,
            config.escrow_address,
        )

        self._state_store = state_store
        self._persistence_degraded = False
        if state_store is not None:
            self._load_state()

    # ------------------------------------------------------------------
    # Component access
    # ------------------------------------------------------------------

    @property
    def config(self) -> MarketConfig:
        return self._config

    @property
    def runtime(self) -> Runtime:
        return self._runtime

    @property
    def event_log(self) -> EventLog:
        return self._runtime.event_log

    @property
    def rail(self) -> NativeRail:
        return self._rail

    @property
    def ledger(self) -> CreditLedger:
        return self._ledger

    @property
    def escrow(self) -> ServiceEscrow:
        return self._escrow

    @property
    def persistence_degraded(self) -> bool:
        return self._persistence_degraded

    # ------------------------------------------------------------------
    # Native currency
    # ------------------------------------------------------------------

    def fund(
        self,
        account: str,
        amount: int,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Credit wei to an account (test networks and local setups)."""

        def _fund() -> dict[str, Any]:
            with self._runtime.transaction():
                self._rail.fund(account, amount)
                self._runtime.emit(
                    EventKind.NATIVE_FUNDED,
                    require_address(account),
                    {"account": require_address(account), "amount": amount},
                    now,
                )
            return {"account": require_address(account), "balance": self._rail.balance_of(account)}

        return self._execute("fund", _fund)

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def link_creator(
        self,
        caller: str,
        visibility_id: str,
        creator: Optional[str],
        metadata: str = "",
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _link() -> dict[str, Any]:
            self._ledger.set_creator_visibility(caller, visibility_id, creator, metadata, now)
            view = self._ledger.get_visibility(visibility_id)
            return {"visibility_id": visibility_id, "creator": view.creator, "metadata": view.metadata}

        return self._execute("link_creator", _link)

    def set_partner(
        self,
        caller: str,
        referrer: str,
        partner: Optional[str],
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _set() -> dict[str, Any]:
            self._ledger.set_referrer_partner(caller, referrer, partner, now)
            return {"referrer": referrer, "partner": self._ledger.get_referrer_partner(referrer)}

        return self._execute("set_partner", _set)

    def update_treasury(
        self,
        caller: str,
        treasury: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _update() -> dict[str, Any]:
            self._ledger.update_treasury(caller, treasury, now)
            return {"treasury": self._ledger.get_protocol_treasury()}

        return self._execute("update_treasury", _update)

    def quote(
        self,
        visibility_id: str,
        amount: int,
        user: str,
        referrer: Optional[str] = None,
        sell: bool = False,
    ) -> ServiceResult:
        """Price a buy (or sell) without executing it."""
        try:
            if sell:
                total, quote = self._ledger.sell_cost_with_fees(visibility_id, amount, user, referrer)
            else:
                total, quote = self._ledger.buy_cost_with_fees(visibility_id, amount, user, referrer)
        except VisibilityError as e:
            return ServiceResult(success=False, errors=[str(e)])
        data = _quote_dict(quote)
        data["total"] = total
        data["side"] = "sell" if sell else "buy"
        return ServiceResult(success=True, data=data)

    def buy(
        self,
        caller: str,
        visibility_id: str,
        amount: int,
        referrer: Optional[str] = None,
        value: int = 0,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _buy() -> dict[str, Any]:
            quote = self._ledger.buy_credits(caller, visibility_id, amount, referrer, value, now)
            data = _quote_dict(quote)
            data["total"] = quote.buy_total
            data["balance"] = self._ledger.get_visibility_credit_balance(visibility_id, caller)
            return data

        return self._execute("buy", _buy)

    def sell(
        self,
        caller: str,
        visibility_id: str,
        amount: int,
        referrer: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _sell() -> dict[str, Any]:
            quote = self._ledger.sell_credits(caller, visibility_id, amount, referrer, now)
            data = _quote_dict(quote)
            data["reimbursement"] = quote.sell_reimbursement
            data["balance"] = self._ledger.get_visibility_credit_balance(visibility_id, caller)
            return data

        return self._execute("sell", _sell)

    def claim_fee(
        self,
        caller: str,
        visibility_id: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _claim() -> dict[str, Any]:
            amount = self._ledger.claim_creator_fee(caller, visibility_id, now)
            return {"visibility_id": visibility_id, "amount": amount}

        return self._execute("claim_fee", _claim)

    # ------------------------------------------------------------------
    # Escrow
    # ------------------------------------------------------------------

    def create_service(
        self,
        caller: str,
        service_type: str,
        visibility_id: str,
        cost_amount: int,
        payment_type: PaymentType = PaymentType.CREDITS,
        buy_back_credits_share: int = 0,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _create() -> dict[str, Any]:
            if payment_type == PaymentType.CREDITS:
                nonce = self._escrow.create_service(
                    caller, service_type, visibility_id, cost_amount, now
                )
            else:
                nonce = self._escrow.create_service_with_eth(
                    caller, service_type, visibility_id, buy_back_credits_share, cost_amount, now
                )
            return {"service_nonce": nonce, "payment_type": payment_type.value}

        return self._execute("create_service", _create)

    def update_service(
        self,
        caller: str,
        service_nonce: int,
        enabled: bool,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _update() -> dict[str, Any]:
            self._escrow.update_service(caller, service_nonce, enabled, now)
            return {"service_nonce": service_nonce, "enabled": enabled}

        return self._execute("update_service", _update)

    def reprice_service(
        self,
        caller: str,
        service_nonce: int,
        cost_amount: int,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _reprice() -> dict[str, Any]:
            nonce = self._escrow.create_and_update_from_service(
                caller, service_nonce, cost_amount, now
            )
            return {"previous_service_nonce": service_nonce, "service_nonce": nonce}

        return self._execute("reprice_service", _reprice)

    def request(
        self,
        caller: str,
        service_nonce: int,
        request_data: str,
        value: int = 0,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _request() -> dict[str, Any]:
            execution_nonce = self._escrow.request_service_execution(
                caller, service_nonce, request_data, value, now
            )
            return {"service_nonce": service_nonce, "execution_nonce": execution_nonce}

        return self._execute("request", _request)

    def add_information(
        self,
        caller: str,
        service_nonce: int,
        execution_nonce: int,
        information_data: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _info() -> dict[str, Any]:
            self._escrow.add_information_for_service_execution(
                caller, service_nonce, execution_nonce, information_data, now
            )
            return self._execution_data(service_nonce, execution_nonce)

        return self._execute("add_information", _info)

    def accept(
        self,
        caller: str,
        service_nonce: int,
        execution_nonce: int,
        response_data: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _accept() -> dict[str, Any]:
            self._escrow.accept_service_execution(
                caller, service_nonce, execution_nonce, response_data, now
            )
            return self._execution_data(service_nonce, execution_nonce)

        return self._execute("accept", _accept)

    def validate(
        self,
        caller: str,
        service_nonce: int,
        execution_nonce: int,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _validate() -> dict[str, Any]:
            self._escrow.validate_service_execution(caller, service_nonce, execution_nonce, now)
            return self._execution_data(service_nonce, execution_nonce)

        return self._execute("validate", _validate)

    def cancel(
        self,
        caller: str,
        service_nonce: int,
        execution_nonce: int,
        cancel_data: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _cancel() -> dict[str, Any]:
            self._escrow.cancel_service_execution(
                caller, service_nonce, execution_nonce, cancel_data, now
            )
            return self._execution_data(service_nonce, execution_nonce)

        return self._execute("cancel", _cancel)

    def dispute(
        self,
        caller: str,
        service_nonce: int,
        execution_nonce: int,
        dispute_data: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _dispute() -> dict[str, Any]:
            self._escrow.dispute_service_execution(
                caller, service_nonce, execution_nonce, dispute_data, now
            )
            return self._execution_data(service_nonce, execution_nonce)

        return self._execute("dispute", _dispute)

    def resolve(
        self,
        caller: str,
        service_nonce: int,
        execution_nonce: int,
        refund: bool,
        resolve_data: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _resolve() -> dict[str, Any]:
            self._escrow.resolve_service_execution(
                caller, service_nonce, execution_nonce, refund, resolve_data, now
            )
            return self._execution_data(service_nonce, execution_nonce)

        return self._execute("resolve", _resolve)

    def buy_back(
        self,
        caller: str,
        visibility_id: str,
        credits_amount: int,
        max_wei_amount: int,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _buy_back() -> dict[str, Any]:
            quote = self._escrow.buy_back(
                caller, visibility_id, credits_amount, max_wei_amount, now
            )
            return {
                "visibility_id": visibility_id,
                "credits_amount": credits_amount,
                "wei_amount": quote.buy_total,
                "pool_balance": self._escrow.get_buy_back_pool(visibility_id),
            }

        return self._execute("buy_back", _buy_back)

    # ------------------------------------------------------------------
    # Status and queries
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Return system-wide status summary."""
        ledger_state = self._ledger.state
        escrow_state = self._escrow.state
        return {
            "version": "0.1.0",
            "ledger": {
                "treasury": ledger_state.treasury,
                "entities": len(ledger_state.visibilities),
                "total_supply": sum(
                    r.total_supply for r in ledger_state.visibilities.values()
                ),
                "claimable_fees": sum(
                    r.claimable_fee_balance for r in ledger_state.visibilities.values()
                ),
            },
            "escrow": {
                "services": len(escrow_state.services),
                "enabled_services": sum(1 for s in escrow_state.services if s.enabled),
                "executions": self._count_executions_by_state(),
                "buy_back_pools": sum(escrow_state.buy_back_pools.values()),
            },
            "native": {"total_balance": self._rail.total_balance()},
            "events": self._runtime.event_log.count,
            "persistence_degraded": self._persistence_degraded,
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _execute(
        self,
        action: str,
        operation: Callable[[], dict[str, Any]],
    ) -> ServiceResult:
        """Run one core operation and translate its outcome.

        Core components raise VisibilityError for every rejected
        precondition; by then the runtime has already rolled back. An
        OSError means the event log could not be written, and the runtime
        has rolled that operation back too.
        """
        try:
            data = operation()
        except VisibilityError as e:
            logger.warning("%s rejected: %s", action, e)
            return ServiceResult(success=False, errors=[str(e)])
        except OSError as e:
            self._persistence_degraded = True
            logger.error("Event log write failed, %s rolled back: %s", action, e)
            return ServiceResult(success=False, errors=[f"Event log failure: {e}"])

        logger.info("%s committed", action)
        warning = self._safe_persist_post_audit()
        if warning:
            data["warning"] = warning
        return ServiceResult(success=True, data=data)

    def _execution_data(self, service_nonce: int, execution_nonce: int) -> dict[str, Any]:
        execution = self._escrow.get_service_execution(service_nonce, execution_nonce)
        return {
            "service_nonce": service_nonce,
            "execution_nonce": execution_nonce,
            "state": execution.state.value,
        }

    def _state_document(self) -> dict[str, Any]:
        return {
            "ledger": ledger_to_dict(self._ledger.state),
            "services": services_to_dict(self._escrow.state),
            "access": {
                "ledger": access_to_dict(self._ledger_access.state),
                "escrow": access_to_dict(self._escrow_access.state),
            },
            "native_balances": self._rail.balances(),
        }

    def _persist_state(self) -> None:
        """Persist current state to the state store (if wired).

        NOTE: This method can raise OSError.
        """
        if self._state_store is None:
            return
        self._state_store.save(self._state_document())

    def _safe_persist_post_audit(self) -> Optional[str]:
        """Persist state after events have been committed to the log.

        MUST NOT rollback in-memory state — the audit trail is already
        durable. If persist fails, in-memory state remains correct
        (aligned with the event log), but the StateStore is stale.
        """
        try:
            self._persist_state()
            return None
        except OSError as e:
            self._persistence_degraded = True
            logger.error("State store write failed: %s", e)
            return f"Persistence degraded: {e} — state committed in event log but StateStore is stale"

    def _load_state(self) -> None:
        doc = self._state_store.load()
        if doc is None:
            return
        if "ledger" in doc:
            self._ledger.load_state(ledger_from_dict(doc["ledger"]))
        if "services" in doc:
            self._escrow.load_state(services_from_dict(doc["services"]))
        access = doc.get("access", {})
        if "ledger" in access:
            self._ledger_access.load_state(access_from_dict(access["ledger"]))
        if "escrow" in access:
            self._escrow_access.load_state(access_from_dict(access["escrow"]))
        if "native_balances" in doc:
            self._rail.load_balances(doc["native_balances"])
        logger.info("Loaded state from %s", self._state_store.path)

    def _count_executions_by_state(self) -> dict[str, int]:
        counts: dict[str, int] = {s.value: 0 for s in ExecutionState if s != ExecutionState.UNINITIALIZED}
        for service in self._escrow.state.services:
            for execution in service.executions:
                counts[execution.state.value] = counts.get(execution.state.value, 0) + 1
        return counts
