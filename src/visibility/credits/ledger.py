"""Credit ledger — mints and burns visibility credits along the bonding curve.

The ledger owns, per entity: the creator link, the total supply, the
holder balances and the creator's claimable fee balance. It also owns the
referral tables (referrer → partner, user → last referrer) and the
protocol treasury address.

Every value-moving operation follows the same order:
1. Validate and price (curve + fee policy).
2. Commit ledger state (mint/burn, fee accrual, referral memory).
3. Emit the event.
4. Move currency out through the rail (protocol, referrer, partner,
   then the buyer refund or seller reimbursement).

Step 4 runs after all state is committed, so a recipient that re-enters
during a transfer sees the post-trade state. buy, sell and claim also
hold a non-reentrant guard: re-entering any of them raises ReentrantCall.

All amounts are integers. Currency flows to the ledger's own address on
buy and out of it on sell and claim.
"""

from __future__ import annotations

import copy
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional, Tuple

from visibility.access import AccessPolicy, Role
from visibility.credits.curve import buy_trade_cost, sell_trade_cost
from visibility.credits.fees import compute_fees, resolve_referral
from visibility.errors import (
    InvalidAmount,
    InvalidCreator,
    NotEnoughCreditsOwned,
    NotEnoughEthSent,
    ReentrantCall,
)
from visibility.identity import (
    normalize_address,
    optional_address,
    require_address,
    visibility_hash,
)
from visibility.models.credits import (
    CreditsTradeQuote,
    LedgerState,
    VisibilityRecord,
    VisibilityView,
)
from visibility.persistence.event_log import EventKind
from visibility.rails import ValueTransfer
from visibility.runtime import Runtime


class CreditLedger:
    """Bonding-curve credits ledger for every entity.

    Usage:
        ledger = CreditLedger(runtime, rail, access, treasury, ledger_address)
        total, quote = ledger.buy_cost_with_fees("x-123", 5, buyer)
        ledger.buy_credits(buyer, "x-123", 5, value=total)
    """

    def __init__(
        self,
        runtime: Runtime,
        rail: ValueTransfer,
        access: AccessPolicy,
        treasury: str,
        address: str,
    ) -> None:
        self._runtime = runtime
        self._rail = rail
        self._access = access
        self._address = require_address(address)
        self._state = LedgerState(treasury=require_address(treasury))
        self._entered = False
        runtime.register(self)

    @property
    def address(self) -> str:
        return self._address

    @property
    def access(self) -> AccessPolicy:
        return self._access

    @property
    def state(self) -> LedgerState:
        return self._state

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def get_visibility(self, visibility_id: str) -> VisibilityView:
        record = self._state.visibilities.get(visibility_hash(visibility_id))
        if record is None:
            return VisibilityView(creator=None, total_supply=0, claimable_fee_balance=0)
        return VisibilityView(
            creator=record.creator,
            total_supply=record.total_supply,
            claimable_fee_balance=record.claimable_fee_balance,
            metadata=record.metadata,
        )

    def get_visibility_credit_balance(self, visibility_id: str, account: str) -> int:
        record = self._state.visibilities.get(visibility_hash(visibility_id))
        if record is None:
            return 0
        return record.balance_of(normalize_address(account))

    def get_protocol_treasury(self) -> str:
        return self._state.treasury

    def get_referrer_partner(self, referrer: str) -> Optional[str]:
        return self._state.referrer_partners.get(normalize_address(referrer))

    def get_user_referrer(self, user: str) -> Optional[str]:
        return self._state.user_referrers.get(normalize_address(user))

    def buy_cost_with_fees(
        self,
        visibility_id: str,
        amount: int,
        user: str,
        referrer: Optional[str] = None,
    ) -> Tuple[int, CreditsTradeQuote]:
        """Quote a buy. Returns (total to send, fee breakdown)."""
        supply = self.get_visibility(visibility_id).total_supply
        trade_cost = buy_trade_cost(supply, amount)
        quote = self._quote(trade_cost, normalize_address(user), optional_address(referrer))
        return quote.buy_total, quote

    def sell_cost_with_fees(
        self,
        visibility_id: str,
        amount: int,
        user: str,
        referrer: Optional[str] = None,
    ) -> Tuple[int, CreditsTradeQuote]:
        """Quote a sell. Returns (reimbursement paid out, fee breakdown)."""
        user = normalize_address(user)
        supply = self.get_visibility(visibility_id).total_supply
        balance = self.get_visibility_credit_balance(visibility_id, user)
        trade_cost = sell_trade_cost(supply, balance, amount)
        quote = self._quote(trade_cost, user, optional_address(referrer))
        return quote.sell_reimbursement, quote

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    def buy_credits(
        self,
        caller: str,
        visibility_id: str,
        amount: int,
        referrer: Optional[str] = None,
        value: int = 0,
        now: Optional[datetime] = None,
    ) -> CreditsTradeQuote:
        """Mint `amount` credits to the caller against `value` wei.

        Any overpayment is refunded to the caller after fees are paid.
        """
        with self._non_reentrant(), self._runtime.transaction():
            caller = require_address(caller)
            referrer = optional_address(referrer)
            if value < 0:
                raise InvalidAmount("Attached value must be non-negative")

            record = self._get_or_create(visibility_id)
            trade_cost = buy_trade_cost(record.total_supply, amount)
            quote = self._quote(trade_cost, caller, referrer)
            if value < quote.buy_total:
                raise NotEnoughEthSent(value, quote.buy_total)

            self._rail.transfer(caller, self._address, value)

            record.credit(caller, amount)
            record.total_supply += amount
            record.claimable_fee_balance += quote.creator_fee
            self._remember_referrer(caller, referrer)

            self._emit_trade(caller, record, amount, True, quote, now)
            self._pay_fees(quote)
            self._rail.transfer(self._address, caller, value - quote.buy_total)
            return quote

    def sell_credits(
        self,
        caller: str,
        visibility_id: str,
        amount: int,
        referrer: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CreditsTradeQuote:
        """Burn `amount` of the caller's credits and pay out the reimbursement."""
        with self._non_reentrant(), self._runtime.transaction():
            caller = require_address(caller)
            referrer = optional_address(referrer)

            key = visibility_hash(visibility_id)
            record = self._state.visibilities.get(key)
            if record is None:
                if amount <= 0:
                    raise InvalidAmount("Amount must be positive")
                raise NotEnoughCreditsOwned(0, amount)
            trade_cost = sell_trade_cost(
                record.total_supply, record.balance_of(caller), amount
            )
            quote = self._quote(trade_cost, caller, referrer)

            record.debit(caller, amount)
            record.total_supply -= amount
            record.claimable_fee_balance += quote.creator_fee
            self._remember_referrer(caller, referrer)

            self._emit_trade(caller, record, amount, False, quote, now)
            self._pay_fees(quote)
            self._rail.transfer(self._address, caller, quote.sell_reimbursement)
            return quote

    def claim_creator_fee(
        self,
        caller: str,
        visibility_id: str,
        now: Optional[datetime] = None,
    ) -> int:
        """Pay the entity's accrued creator fees to its creator.

        Anyone may trigger the claim; the fees always go to the creator.
        """
        with self._non_reentrant(), self._runtime.transaction():
            caller = require_address(caller)
            record = self._state.visibilities.get(visibility_hash(visibility_id))
            if record is None or record.creator is None:
                raise InvalidCreator(f"No creator linked to {visibility_id}")
            claimable = record.claimable_fee_balance
            if claimable == 0:
                raise InvalidAmount(f"No creator fees to claim for {visibility_id}")

            record.claimable_fee_balance = 0
            self._runtime.emit(
                EventKind.CREATOR_FEE_CLAIMED,
                caller,
                {
                    "visibility_id": visibility_id,
                    "creator": record.creator,
                    "amount": claimable,
                },
                now,
            )
            self._rail.transfer(self._address, record.creator, claimable)
            return claimable

    def transfer_credits(
        self,
        caller: str,
        visibility_id: str,
        from_: str,
        to: str,
        amount: int,
        now: Optional[datetime] = None,
    ) -> None:
        """Move credits between holders. Requires CREDITS_TRANSFER.

        Supply and fees are untouched.
        """
        with self._runtime.transaction():
            self._access.require(Role.CREDITS_TRANSFER, caller)
            from_ = require_address(from_)
            to = require_address(to)
            if amount <= 0:
                raise InvalidAmount("Amount must be positive")

            record = self._get_or_create(visibility_id)
            owned = record.balance_of(from_)
            if owned < amount:
                raise NotEnoughCreditsOwned(owned, amount)
            record.debit(from_, amount)
            record.credit(to, amount)

            self._runtime.emit(
                EventKind.CREDITS_TRANSFER,
                normalize_address(caller),
                {
                    "visibility_id": visibility_id,
                    "from": from_,
                    "to": to,
                    "amount": amount,
                },
                now,
            )

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def set_creator_visibility(
        self,
        caller: str,
        visibility_id: str,
        creator: Optional[str],
        metadata: str = "",
        now: Optional[datetime] = None,
    ) -> None:
        """Link (or, with None / zero address, unlink) an entity's creator."""
        with self._runtime.transaction():
            self._access.require(Role.CREATORS_LINKER, caller)
            creator = optional_address(creator)
            record = self._get_or_create(visibility_id)
            record.creator = creator
            record.metadata = metadata
            self._runtime.emit(
                EventKind.CREATOR_VISIBILITY_SET,
                normalize_address(caller),
                {
                    "visibility_id": visibility_id,
                    "creator": creator,
                    "metadata": metadata,
                },
                now,
            )

    def set_referrer_partner(
        self,
        caller: str,
        referrer: str,
        partner: Optional[str],
        now: Optional[datetime] = None,
    ) -> None:
        with self._runtime.transaction():
            self._access.require(Role.PARTNERS_LINKER, caller)
            referrer = require_address(referrer)
            partner = optional_address(partner)
            if partner is None:
                self._state.referrer_partners.pop(referrer, None)
            else:
                self._state.referrer_partners[referrer] = partner
            self._runtime.emit(
                EventKind.REFERRER_PARTNER_SET,
                normalize_address(caller),
                {"referrer": referrer, "partner": partner},
                now,
            )

    def update_treasury(
        self,
        caller: str,
        treasury: str,
        now: Optional[datetime] = None,
    ) -> None:
        with self._runtime.transaction():
            self._access.require(Role.DEFAULT_ADMIN, caller)
            treasury = require_address(treasury)
            previous = self._state.treasury
            self._state.treasury = treasury
            self._runtime.emit(
                EventKind.TREASURY_UPDATED,
                normalize_address(caller),
                {"previous_treasury": previous, "treasury": treasury},
                now,
            )

    def grant_credits_transfer_role(
        self,
        caller: str,
        account: str,
        now: Optional[datetime] = None,
    ) -> bool:
        return self._access.grant_role(caller, Role.CREDITS_TRANSFER, account, now)

    # ------------------------------------------------------------------
    # Participant protocol
    # ------------------------------------------------------------------

    def snapshot(self) -> LedgerState:
        return copy.deepcopy(self._state)

    def restore(self, snapshot: LedgerState) -> None:
        self._state = snapshot

    def load_state(self, state: LedgerState) -> None:
        self._state = state

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @contextmanager
    def _non_reentrant(self) -> Iterator[None]:
        if self._entered:
            raise ReentrantCall("Ledger value operations cannot be re-entered")
        self._entered = True
        try:
            yield
        finally:
            self._entered = False

    def _get_or_create(self, visibility_id: str) -> VisibilityRecord:
        key = visibility_hash(visibility_id)
        record = self._state.visibilities.get(key)
        if record is None:
            record = VisibilityRecord(visibility_id=visibility_id)
            self._state.visibilities[key] = record
        return record

    def _quote(
        self,
        trade_cost: int,
        user: str,
        referrer: Optional[str],
    ) -> CreditsTradeQuote:
        effective, partner = resolve_referral(
            user,
            referrer,
            self._state.user_referrers,
            self._state.referrer_partners,
        )
        return compute_fees(trade_cost, effective, partner)

    def _remember_referrer(self, user: str, referrer: Optional[str]) -> None:
        if referrer is not None and self._state.user_referrers.get(user) != referrer:
            self._state.user_referrers[user] = referrer

    def _pay_fees(self, quote: CreditsTradeQuote) -> None:
        self._rail.transfer(self._address, self._state.treasury, quote.protocol_fee)
        if quote.referrer is not None:
            self._rail.transfer(self._address, quote.referrer, quote.referrer_fee)
        if quote.partner is not None:
            self._rail.transfer(self._address, quote.partner, quote.partner_fee)

    def _emit_trade(
        self,
        user: str,
        record: VisibilityRecord,
        amount: int,
        is_buy: bool,
        quote: CreditsTradeQuote,
        now: Optional[datetime],
    ) -> None:
        self._runtime.emit(
            EventKind.CREDITS_TRADE,
            user,
            {
                "visibility_id": record.visibility_id,
                "user": user,
                "amount": amount,
                "is_buy": is_buy,
                "new_total_supply": record.total_supply,
                "new_balance": record.balance_of(user),
                "trade_cost": quote.trade_cost,
                "creator_fee": quote.creator_fee,
                "protocol_fee": quote.protocol_fee,
                "referrer_fee": quote.referrer_fee,
                "partner_fee": quote.partner_fee,
                "referrer": quote.referrer,
                "partner": quote.partner,
            },
            now,
        )
