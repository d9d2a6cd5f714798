"""Transaction runtime — serialized, all-or-nothing operations.

Every state-changing operation on the ledger, the escrow, the access
policies and the native rail runs inside Runtime.transaction(). Each entry
takes a savepoint of every registered participant; if the block raises,
participants are restored to that savepoint and the events emitted since
are discarded, then the exception propagates. Events reach the event log
only when the outermost transaction commits, and that write is part of the
transaction: if the log cannot be written, every participant is restored.

Nested entries happen when one component calls another (escrow → ledger)
or when a recipient hook runs during a value transfer. A nested failure
that the caller catches rolls back only the nested work.

There is no concurrency here: operations are totally ordered by the
caller. The runtime provides atomicity, not locking.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, List, Optional, Protocol, Tuple

from visibility.persistence.event_log import EventKind, EventLog, EventRecord


def utc_now(now: Optional[datetime] = None) -> datetime:
    """Return `now`, or the current UTC time if absent."""
    if now is None:
        return datetime.now(timezone.utc)
    return now


class Participant(Protocol):
    """Anything whose state must roll back with a failed transaction."""

    def snapshot(self) -> Any:
        ...

    def restore(self, snapshot: Any) -> None:
        ...


class Runtime:
    """Savepoint-based transaction sequencer with buffered event emission.

    Usage:
        runtime = Runtime(EventLog())
        runtime.register(ledger)
        with runtime.transaction():
            ...                      # mutate participants, emit events
    """

    def __init__(self, event_log: Optional[EventLog] = None) -> None:
        self._event_log = event_log if event_log is not None else EventLog()
        self._participants: List[Participant] = []
        self._pending: List[Tuple[EventKind, str, dict, datetime]] = []
        self._depth = 0

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def register(self, participant: Participant) -> None:
        self._participants.append(participant)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        savepoint = [(p, p.snapshot()) for p in self._participants]
        pending_mark = len(self._pending)
        self._depth += 1
        try:
            yield
            if self._depth == 1:
                self._flush()
        except BaseException:
            for participant, snap in savepoint:
                participant.restore(snap)
            del self._pending[pending_mark:]
            raise
        finally:
            self._depth -= 1

        if self._depth == 0:
            self._flush()

    def emit(
        self,
        kind: EventKind,
        actor: str,
        payload: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> None:
        """Queue an event for the enclosing transaction."""
        if self._depth == 0:
            raise RuntimeError("Events can only be emitted inside a transaction")
        self._pending.append((kind, actor, payload, utc_now(now)))

    def _flush(self) -> None:
        base = self._event_log.count
        events = [
            EventRecord.create(
                event_id=f"evt-{base + i:08d}",
                event_kind=kind,
                actor_id=actor,
                payload=payload,
                timestamp_utc=ts,
            )
            for i, (kind, actor, payload, ts) in enumerate(self._pending, 1)
        ]
        self._event_log.extend(events)
        self._pending = []
