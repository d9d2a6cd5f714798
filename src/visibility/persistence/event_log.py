"""Append-only event log — the observable record of every state transition.

Each committed operation appends one or more events. Events are immutable
once written. The log serves as:
1. The sole contract with off-chain indexers.
2. The audit trail for balances, fees and escrow settlements.
3. A replay source if the state store is lost or stale.
"""

from __future__ import annotations

import enum
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


class EventKind(str, enum.Enum):
    """Classification of ledger and escrow events."""
    # Credits ledger
    CREDITS_TRADE = "credits_trade"
    CREATOR_FEE_CLAIMED = "creator_fee_claimed"
    CREATOR_VISIBILITY_SET = "creator_visibility_set"
    REFERRER_PARTNER_SET = "referrer_partner_set"
    CREDITS_TRANSFER = "credits_transfer"
    TREASURY_UPDATED = "treasury_updated"
    # Services
    SERVICE_CREATED = "service_created"
    SERVICE_WITH_ETH_CREATED = "service_with_eth_created"
    SERVICE_UPDATED = "service_updated"
    SERVICE_BUY_BACK_SHARE_UPDATED = "service_buy_back_share_updated"
    # Executions
    SERVICE_EXECUTION_REQUESTED = "service_execution_requested"
    SERVICE_EXECUTION_ACCEPTED = "service_execution_accepted"
    SERVICE_EXECUTION_CANCELED = "service_execution_canceled"
    SERVICE_EXECUTION_VALIDATED = "service_execution_validated"
    SERVICE_EXECUTION_DISPUTED = "service_execution_disputed"
    SERVICE_EXECUTION_RESOLVED = "service_execution_resolved"
    SERVICE_EXECUTION_INFORMATION = "service_execution_information"
    SERVICE_EXECUTION_ETH_PAYMENT = "service_execution_eth_payment"
    # Buy-back
    BUY_BACK_POOL_UPDATED = "buy_back_pool_updated"
    BUY_BACK = "buy_back"
    # Access control
    ROLE_GRANTED = "role_granted"
    ROLE_REVOKED = "role_revoked"
    DEFAULT_ADMIN_TRANSFER_SCHEDULED = "default_admin_transfer_scheduled"
    DEFAULT_ADMIN_TRANSFER_CANCELED = "default_admin_transfer_canceled"
    DEFAULT_ADMIN_TRANSFERRED = "default_admin_transferred"
    DEFAULT_ADMIN_DELAY_SCHEDULED = "default_admin_delay_scheduled"
    # Native rail
    NATIVE_FUNDED = "native_funded"


def _canonical_hash(
    event_id: str,
    event_kind: str,
    timestamp_utc: str,
    actor_id: str,
    payload: dict[str, Any],
) -> str:
    canonical = json.dumps(
        {
                "event_id": event_id,
                "event_kind": event_kind,
                "timestamp_utc": timestamp_utc,
                "actor_id": actor_id,
                "payload": payload,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class EventRecord:
    """A single immutable event.

    The event_hash is computed at creation time over the canonical JSON
    form and is re-verified whenever the log is loaded from disk.
    """
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        """Create a new event record with computed hash."""
        ts = timestamp_utc or datetime.now(timezone.utc)
        ts_str = ts.strftime("%Y-%m-%dT%H:%M:%SZ")
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts_str,
            actor_id=actor_id,
            payload=payload,
            event_hash=_canonical_hash(
                event_id, event_kind.value, ts_str, actor_id, payload
            ),
        )


class EventLog:
    """Append-only event log with optional file persistence.

    Events can only be appended, never modified or deleted.
    The log can be persisted to a JSONL file (one JSON object per line)
    and loaded back for recovery.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[EventRecord] = []
        self._storage_path = storage_path
        self._event_ids: set[str] = set()

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def append(self, event: EventRecord) -> None:
        """Append an event to the log.

        Raises ValueError if event_id is a duplicate (replay protection).
        """
        self.extend([event])

    def extend(self, events: list[EventRecord]) -> None:
        """Append a batch of events as one write.

        The file is written before the in-memory log changes, so a failed
        write (OSError) leaves the log exactly as it was.
        """
        seen = set(self._event_ids)
        for event in events:
            if event.event_id in seen:
                raise ValueError(f"Duplicate event ID: {event.event_id}")
            seen.add(event.event_id)

        if self._storage_path and events:
            self._append_to_file(events)

        self._events.extend(events)
        self._event_ids = seen

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        """Return events, optionally filtered by kind."""
        if kind is None:
            return list(self._events)
        return [e for e in self._events if e.event_kind == kind]

    def events_for_actor(self, actor_id: str) -> list[EventRecord]:
        return [e for e in self._events if e.actor_id == actor_id]

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._events[-1] if self._events else None

    def _append_to_file(self, events: list[EventRecord]) -> None:
        lines = []
        for event in events:
            record = {
                "event_id": event.event_id,
                "event_kind": event.event_kind.value,
                "timestamp_utc": event.timestamp_utc,
                "actor_id": event.actor_id,
                "payload": event.payload,
                "event_hash": event.event_hash,
            }
            lines.append(json.dumps(record, sort_keys=True, ensure_ascii=False) + "\n")
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write("".join(lines))

    def _load_from_file(self, path: Path) -> None:
        """Load events from a JSONL file with integrity verification.

        Fail-closed: rejects tampered records (hash mismatch) and
        duplicate event IDs.
        """
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)

                event_id = data["event_id"]
                if event_id in self._event_ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): {event_id}"
                    )

                expected_hash = _canonical_hash(
                    data["event_id"],
                    data["event_kind"],
                    data["timestamp_utc"],
                    data["actor_id"],
                    data["payload"],
                )
                if data["event_hash"] != expected_hash:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): event {event_id} "
                        f"stored hash {data['event_hash']} != computed {expected_hash}"
                    )

                event = EventRecord(
                    event_id=data["event_id"],
                    event_kind=EventKind(data["event_kind"]),
                    timestamp_utc=data["timestamp_utc"],
                    actor_id=data["actor_id"],
                    payload=data["payload"],
                    event_hash=data["event_hash"],
                )
                self._events.append(event)
                self._event_ids.add(event.event_id)
