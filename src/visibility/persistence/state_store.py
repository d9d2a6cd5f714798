"""State store — versioned JSON snapshot of ledger, escrow, access and rail.

The event log is the audit trail; the state store is the fast-restart
cache. A saved document looks like:

    {
      "version": 2,
      "ledger":   {...},
      "services": {...},
      "access":   {"ledger": {...}, "escrow": {...}},
      "native_balances": {address: wei}
    }

Version history:
    1 — services carry only a credits price.
    2 — services gain payment_type, wei_cost_amount and
        buy_back_credits_share; escrow gains per-entity buy-back pools.

migrate() upgrades older documents in place, one version at a time.
Writes go to a temporary file first and are then renamed over the
target, so a crash never leaves a half-written state file.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Optional

from visibility.access import AccessState, PendingAdmin, PendingDelay, Role
from visibility.models.credits import LedgerState, VisibilityRecord
from visibility.models.services import (
    Execution,
    ExecutionState,
    PaymentType,
    Service,
    ServicesState,
)

STATE_VERSION = 2


# ------------------------------------------------------------------
# Migrations
# ------------------------------------------------------------------


def _migrate_v1_to_v2(doc: dict[str, Any]) -> dict[str, Any]:
    services = doc.get("services", {})
    for service in services.get("services", []):
        service.setdefault("payment_type", PaymentType.CREDITS.value)
        service.setdefault("wei_cost_amount", 0)
        service.setdefault("buy_back_credits_share", 0)
    services.setdefault("buy_back_pools", {})
    doc["services"] = services
    doc["version"] = 2
    return doc


_MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {
    1: _migrate_v1_to_v2,
}


def migrate(doc: dict[str, Any]) -> dict[str, Any]:
    """Upgrade a state document to STATE_VERSION.

    Raises ValueError for documents newer than this code or with no
    migration path.
    """
    version = doc.get("version", 1)
    if version > STATE_VERSION:
        raise ValueError(
            f"State version {version} is newer than supported {STATE_VERSION}"
        )
    while version < STATE_VERSION:
        step = _MIGRATIONS.get(version)
        if step is None:
            raise ValueError(f"No migration from state version {version}")
        doc = step(doc)
        version = doc["version"]
    return doc


# ------------------------------------------------------------------
# Codecs
# ------------------------------------------------------------------


def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _str_to_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value is not None else None


def ledger_to_dict(state: LedgerState) -> dict[str, Any]:
    return {
        "treasury": state.treasury,
        "visibilities": {
            key: {
                "visibility_id": record.visibility_id,
                "creator": record.creator,
                "metadata": record.metadata,
                "total_supply": record.total_supply,
                "claimable_fee_balance": record.claimable_fee_balance,
                "balances": dict(record.balances),
            }
            for key, record in state.visibilities.items()
        },
        "referrer_partners": dict(state.referrer_partners),
        "user_referrers": dict(state.user_referrers),
    }


def ledger_from_dict(data: dict[str, Any]) -> LedgerState:
    return LedgerState(
        treasury=data["treasury"],
        visibilities={
            key: VisibilityRecord(
                visibility_id=rec["visibility_id"],
                creator=rec.get("creator"),
                metadata=rec.get("metadata", ""),
                total_supply=int(rec["total_supply"]),
                claimable_fee_balance=int(rec["claimable_fee_balance"]),
                balances={a: int(b) for a, b in rec.get("balances", {}).items()},
            )
            for key, rec in data.get("visibilities", {}).items()
        },
        referrer_partners=dict(data.get("referrer_partners", {})),
        user_referrers=dict(data.get("user_referrers", {})),
    )


def services_to_dict(state: ServicesState) -> dict[str, Any]:
    return {
        "services": [
            {
                "service_type": s.service_type,
                "visibility_id": s.visibility_id,
                "originator": s.originator,
                "payment_type": s.payment_type.value,
                "credits_cost_amount": s.credits_cost_amount,
                "wei_cost_amount": s.wei_cost_amount,
                "buy_back_credits_share": s.buy_back_credits_share,
                "enabled": s.enabled,
                "executions": [
                    {
                        "requester": e.requester,
                        "state": e.state.value,
                        "last_update_timestamp": _dt_to_str(e.last_update_timestamp),
                    }
                    for e in s.executions
                ],
            }
            for s in state.services
        ],
        "buy_back_pools": dict(state.buy_back_pools),
    }


def services_from_dict(data: dict[str, Any]) -> ServicesState:
    services = []
    for s in data.get("services", []):
        services.append(Service(
            service_type=s["service_type"],
            visibility_id=s["visibility_id"],
            originator=s["originator"],
            payment_type=PaymentType(s["payment_type"]),
            credits_cost_amount=int(s["credits_cost_amount"]),
            wei_cost_amount=int(s["wei_cost_amount"]),
            buy_back_credits_share=int(s["buy_back_credits_share"]),
            enabled=bool(s["enabled"]),
            executions=[
                Execution(
                    requester=e["requester"],
                    state=ExecutionState(e["state"]),
                    last_update_timestamp=_str_to_dt(e.get("last_update_timestamp")),
                )
                for e in s.get("executions", [])
            ],
        ))
    return ServicesState(
        services=services,
        buy_back_pools={k: int(v) for k, v in data.get("buy_back_pools", {}).items()},
    )


def access_to_dict(state: AccessState) -> dict[str, Any]:
    pending_admin = None
    if state.pending_admin is not None:
        pending_admin = {
            "new_admin": state.pending_admin.new_admin,
            "schedule": _dt_to_str(state.pending_admin.schedule),
        }
    pending_delay = None
    if state.pending_delay is not None:
        pending_delay = {
            "new_delay_seconds": int(state.pending_delay.new_delay.total_seconds()),
            "schedule": _dt_to_str(state.pending_delay.schedule),
        }
    return {
        "members": {
            role.value: sorted(accounts) for role, accounts in state.members.items()
        },
        "admin_delay_seconds": int(state.admin_delay.total_seconds()),
        "pending_admin": pending_admin,
        "pending_delay": pending_delay,
    }


def access_from_dict(data: dict[str, Any]) -> AccessState:
    pending_admin = None
    if data.get("pending_admin"):
        pending_admin = PendingAdmin(
            new_admin=data["pending_admin"]["new_admin"],
            schedule=_str_to_dt(data["pending_admin"]["schedule"]),
        )
    pending_delay = None
    if data.get("pending_delay"):
        pending_delay = PendingDelay(
            new_delay=timedelta(seconds=data["pending_delay"]["new_delay_seconds"]),
            schedule=_str_to_dt(data["pending_delay"]["schedule"]),
        )
    return AccessState(
        members={Role(r): set(accounts) for r, accounts in data.get("members", {}).items()},
        admin_delay=timedelta(seconds=data["admin_delay_seconds"]),
        pending_admin=pending_admin,
        pending_delay=pending_delay,
    )


# ------------------------------------------------------------------
# Store
# ------------------------------------------------------------------


class StateStore:
    """JSON file holding the latest committed state document.

    Usage:
        store = StateStore(Path("data/state.json"))
        store.save(doc)
        doc = store.load()      # None if no file yet
    """

    def __init__(self, storage_path: Path) -> None:
        self._path = storage_path

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def load(self) -> Optional[dict[str, Any]]:
        """Read and migrate the stored document. Returns None if absent."""
        if not self._path.exists():
            return None
        with self._path.open("r", encoding="utf-8") as f:
            doc = json.load(f)
        return migrate(doc)

    def save(self, doc: dict[str, Any]) -> None:
        """Write a document atomically. Raises OSError on failure."""
        doc = dict(doc)
        doc["version"] = STATE_VERSION
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(doc, f, indent=2, sort_keys=True)
        os.replace(tmp, self._path)
