"""Access policy — role-gated capabilities with a delayed default admin.

Each component (ledger, escrow) owns one AccessPolicy mapping roles to
the identities that hold them. Operations ask the policy before acting;
the policy knows nothing about credits or services.

Rules:
- Ordinary roles are granted and revoked by the default admin and take
  effect immediately.
- The default admin role is never granted directly. It moves through a
  two-step transfer: the current admin begins it, and the new admin
  accepts it once the admin delay has elapsed.
- Changing the admin delay is itself delayed by the current delay.
"""

from __future__ import annotations

import copy
import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional, Set

from visibility.errors import (
    AdminTransferNotReady,
    AuthorizationError,
    InvalidAmount,
    Unauthorized,
)
from visibility.identity import normalize_address, require_address
from visibility.persistence.event_log import EventKind
from visibility.runtime import Runtime, utc_now


class Role(str, enum.Enum):
    DEFAULT_ADMIN = "default_admin"
    CREATORS_LINKER = "creators_linker"
    PARTNERS_LINKER = "partners_linker"
    CREDITS_TRANSFER = "credits_transfer"
    DISPUTE_RESOLVER = "dispute_resolver"


@dataclass
class PendingAdmin:
    new_admin: str
    schedule: datetime


@dataclass
class PendingDelay:
    new_delay: timedelta
    schedule: datetime


@dataclass
class AccessState:
    members: Dict[Role, Set[str]] = field(default_factory=dict)
    admin_delay: timedelta = timedelta(days=3)
    pending_admin: Optional[PendingAdmin] = None
    pending_delay: Optional[PendingDelay] = None


class AccessPolicy:
    """Role membership for one component.

    Usage:
        policy = AccessPolicy(runtime, "ledger", admin, timedelta(days=3))
        policy.grant_role(admin, Role.CREDITS_TRANSFER, escrow_address)
        policy.require(Role.CREDITS_TRANSFER, caller)
    """

    def __init__(
        self,
        runtime: Runtime,
        scope: str,
        admin: str,
        admin_delay: timedelta,
        grants: Optional[Dict[Role, Iterable[str]]] = None,
    ) -> None:
        if admin_delay < timedelta(0):
            raise InvalidAmount("Admin delay must be non-negative")
        self._runtime = runtime
        self._scope = scope
        self._state = AccessState(admin_delay=admin_delay)
        self._state.members[Role.DEFAULT_ADMIN] = {require_address(admin)}
        for role, accounts in (grants or {}).items():
            if role == Role.DEFAULT_ADMIN:
                raise AuthorizationError("Default admin is set by the admin argument")
            for account in accounts:
                self._state.members.setdefault(role, set()).add(require_address(account))
        runtime.register(self)

    @property
    def scope(self) -> str:
        return self._scope

    @property
    def state(self) -> AccessState:
        return self._state

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_role(self, role: Role, account: str) -> bool:
        account = normalize_address(account)
        return account in self._state.members.get(role, set())

    def require(self, role: Role, account: str) -> None:
        """Raise Unauthorized unless `account` holds `role`."""
        if not self.has_role(role, account):
            raise Unauthorized(normalize_address(account), role.value)

    def members(self, role: Role) -> Set[str]:
        return set(self._state.members.get(role, set()))

    def default_admin(self) -> str:
        admins = self._state.members.get(Role.DEFAULT_ADMIN, set())
        return next(iter(admins)) if admins else ""

    def admin_delay(self, now: Optional[datetime] = None) -> timedelta:
        """The delay in force at `now`, including an elapsed scheduled change."""
        now = utc_now(now)
        pending = self._state.pending_delay
        if pending is not None and now >= pending.schedule:
            return pending.new_delay
        return self._state.admin_delay

    def pending_default_admin(self) -> Optional[PendingAdmin]:
        return self._state.pending_admin

    # ------------------------------------------------------------------
    # Ordinary roles
    # ------------------------------------------------------------------

    def grant_role(
        self,
        caller: str,
        role: Role,
        account: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """Grant `role` to `account`. Returns False if it was already held."""
        with self._runtime.transaction():
            self.require(Role.DEFAULT_ADMIN, caller)
            if role == Role.DEFAULT_ADMIN:
                raise AuthorizationError(
                    "Default admin can only change through a delayed transfer"
                )
            account = require_address(account)
            holders = self._state.members.setdefault(role, set())
            if account in holders:
                return False
            holders.add(account)
            self._emit(EventKind.ROLE_GRANTED, caller, role, account, now)
            return True

    def revoke_role(
        self,
        caller: str,
        role: Role,
        account: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """Revoke `role` from `account`. Returns False if it was not held."""
        with self._runtime.transaction():
            self.require(Role.DEFAULT_ADMIN, caller)
            if role == Role.DEFAULT_ADMIN:
                raise AuthorizationError(
                    "Default admin can only change through a delayed transfer"
                )
            return self._remove(caller, role, require_address(account), now)

    def renounce_role(
        self,
        caller: str,
        role: Role,
        now: Optional[datetime] = None,
    ) -> bool:
        with self._runtime.transaction():
            if role == Role.DEFAULT_ADMIN:
                raise AuthorizationError(
                    "Default admin can only change through a delayed transfer"
                )
            return self._remove(caller, role, require_address(caller), now)

    # ------------------------------------------------------------------
    # Default admin transfer
    # ------------------------------------------------------------------

    def begin_default_admin_transfer(
        self,
        caller: str,
        new_admin: str,
        now: Optional[datetime] = None,
    ) -> PendingAdmin:
        now = utc_now(now)
        with self._runtime.transaction():
            self.require(Role.DEFAULT_ADMIN, caller)
            new_admin = require_address(new_admin)
            pending = PendingAdmin(
                new_admin=new_admin,
                schedule=now + self.admin_delay(now),
            )
            self._state.pending_admin = pending
            self._runtime.emit(
                EventKind.DEFAULT_ADMIN_TRANSFER_SCHEDULED,
                normalize_address(caller),
                {
                    "scope": self._scope,
                    "new_admin": new_admin,
                    "accept_schedule": pending.schedule.isoformat(),
                },
                now,
            )
            return pending

    def accept_default_admin_transfer(
        self,
        caller: str,
        now: Optional[datetime] = None,
    ) -> None:
        now = utc_now(now)
        with self._runtime.transaction():
            pending = self._state.pending_admin
            caller = normalize_address(caller)
            if pending is None or pending.new_admin != caller:
                raise Unauthorized(caller, "pending_default_admin")
            if now < pending.schedule:
                raise AdminTransferNotReady(
                    f"Admin transfer can be accepted from {pending.schedule.isoformat()}"
                )
            previous = self.default_admin()
            self._state.members[Role.DEFAULT_ADMIN] = {caller}
            self._state.pending_admin = None
            self._runtime.emit(
                EventKind.DEFAULT_ADMIN_TRANSFERRED,
                caller,
                {"scope": self._scope, "previous_admin": previous, "new_admin": caller},
                now,
            )

    def cancel_default_admin_transfer(
        self,
        caller: str,
        now: Optional[datetime] = None,
    ) -> None:
        with self._runtime.transaction():
            self.require(Role.DEFAULT_ADMIN, caller)
            if self._state.pending_admin is None:
                return
            cancelled = self._state.pending_admin.new_admin
            self._state.pending_admin = None
            self._runtime.emit(
                EventKind.DEFAULT_ADMIN_TRANSFER_CANCELED,
                normalize_address(caller),
                {"scope": self._scope, "cancelled_admin": cancelled},
                now,
            )

    def change_default_admin_delay(
        self,
        caller: str,
        new_delay: timedelta,
        now: Optional[datetime] = None,
    ) -> PendingDelay:
        now = utc_now(now)
        with self._runtime.transaction():
            self.require(Role.DEFAULT_ADMIN, caller)
            if new_delay < timedelta(0):
                raise InvalidAmount("Admin delay must be non-negative")
            current = self.admin_delay(now)
            self._state.admin_delay = current
            pending = PendingDelay(new_delay=new_delay, schedule=now + current)
            self._state.pending_delay = pending
            self._runtime.emit(
                EventKind.DEFAULT_ADMIN_DELAY_SCHEDULED,
                normalize_address(caller),
                {
                    "scope": self._scope,
                    "new_delay_seconds": int(new_delay.total_seconds()),
                    "effect_schedule": pending.schedule.isoformat(),
                },
                now,
            )
            return pending

    # ------------------------------------------------------------------
    # Participant protocol
    # ------------------------------------------------------------------

    def snapshot(self) -> AccessState:
        return copy.deepcopy(self._state)

    def restore(self, snapshot: AccessState) -> None:
        self._state = snapshot

    def load_state(self, state: AccessState) -> None:
        self._state = state

    # ------------------------------------------------------------------

    def _remove(
        self,
        caller: str,
        role: Role,
        account: str,
        now: Optional[datetime],
    ) -> bool:
        holders = self._state.members.get(role, set())
        if account not in holders:
            return False
        holders.discard(account)
        self._emit(EventKind.ROLE_REVOKED, caller, role, account, now)
        return True

    def _emit(
        self,
        kind: EventKind,
        caller: str,
        role: Role,
        account: str,
        now: Optional[datetime],
    ) -> None:
        self._runtime.emit(
            kind,
            normalize_address(caller),
            {"scope": self._scope, "role": role.value, "account": account},
            now,
        )
