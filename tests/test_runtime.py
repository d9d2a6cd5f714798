"""Tests for the transaction runtime — savepoints and buffered events."""

from datetime import datetime, timezone
from pathlib import Path

import pytest

from visibility.persistence.event_log import EventKind, EventLog
from visibility.runtime import Runtime, utc_now

ACTOR = "0x90F79bf6EB2c4f870365E785982E1f101E93b906"


def _now() -> datetime:
    return datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


class Counter:
    def __init__(self) -> None:
        self.value = 0

    def snapshot(self) -> int:
        return self.value

    def restore(self, snapshot: int) -> None:
        self.value = snapshot


def _runtime() -> tuple[Runtime, Counter]:
    runtime = Runtime(EventLog())
    counter = Counter()
    runtime.register(counter)
    return runtime, counter


class TestCommit:
    def test_events_flushed_on_commit(self) -> None:
        runtime, counter = _runtime()
        with runtime.transaction():
            counter.value = 5
            runtime.emit(EventKind.NATIVE_FUNDED, ACTOR, {"amount": 5}, _now())
            assert runtime.event_log.count == 0
        assert counter.value == 5
        assert runtime.event_log.count == 1
        event = runtime.event_log.last_event
        assert event.event_id == "evt-00000001"
        assert event.timestamp_utc == "2026-03-02T09:00:00Z"

    def test_event_ids_are_sequential(self) -> None:
        runtime, _ = _runtime()
        for i in range(3):
            with runtime.transaction():
                runtime.emit(EventKind.NATIVE_FUNDED, ACTOR, {"i": i}, _now())
        ids = [e.event_id for e in runtime.event_log.events()]
        assert ids == ["evt-00000001", "evt-00000002", "evt-00000003"]

    def test_nested_events_wait_for_outermost(self) -> None:
        runtime, _ = _runtime()
        with runtime.transaction():
            with runtime.transaction():
                runtime.emit(EventKind.NATIVE_FUNDED, ACTOR, {}, _now())
            assert runtime.event_log.count == 0
            assert runtime.in_transaction
        assert runtime.event_log.count == 1
        assert not runtime.in_transaction


class TestRollback:
    def test_failure_restores_state_and_drops_events(self) -> None:
        runtime, counter = _runtime()
        with pytest.raises(ValueError):
            with runtime.transaction():
                counter.value = 9
                runtime.emit(EventKind.NATIVE_FUNDED, ACTOR, {}, _now())
                raise ValueError("rejected")
        assert counter.value == 0
        assert runtime.event_log.count == 0
        assert not runtime.in_transaction

    def test_caught_nested_failure_rolls_back_only_nested_work(self) -> None:
        runtime, counter = _runtime()
        with runtime.transaction():
            counter.value = 1
            runtime.emit(EventKind.NATIVE_FUNDED, ACTOR, {"step": "outer"}, _now())
            try:
                with runtime.transaction():
                    counter.value = 2
                    runtime.emit(EventKind.NATIVE_FUNDED, ACTOR, {"step": "inner"}, _now())
                    raise ValueError("inner rejected")
            except ValueError:
                assert counter.value == 1
        assert counter.value == 1
        payloads = [e.payload for e in runtime.event_log.events()]
        assert payloads == [{"step": "outer"}]

    def test_outer_failure_discards_committed_nested_work(self) -> None:
        runtime, counter = _runtime()
        with pytest.raises(RuntimeError):
            with runtime.transaction():
                with runtime.transaction():
                    counter.value = 3
                    runtime.emit(EventKind.NATIVE_FUNDED, ACTOR, {}, _now())
                raise RuntimeError("outer rejected")
        assert counter.value == 0
        assert runtime.event_log.count == 0


class TestEmit:
    def test_emit_outside_transaction_rejected(self) -> None:
        runtime, _ = _runtime()
        with pytest.raises(RuntimeError):
            runtime.emit(EventKind.NATIVE_FUNDED, ACTOR, {}, _now())

    def test_utc_now_passthrough(self) -> None:
        assert utc_now(_now()) == _now()
        assert utc_now().tzinfo is not None


class TestEventLogFailure:
    def test_unwritable_log_restores_state(self, tmp_path: Path) -> None:
        runtime = Runtime(EventLog(storage_path=tmp_path / "missing" / "events.jsonl"))
        counter = Counter()
        runtime.register(counter)
        with pytest.raises(OSError):
            with runtime.transaction():
                counter.value = 4
                runtime.emit(EventKind.NATIVE_FUNDED, ACTOR, {"amount": 4}, _now())
        assert counter.value == 0
        assert runtime.event_log.count == 0
        assert not runtime.in_transaction

    def test_next_commit_after_failure(self, tmp_path: Path) -> None:
        log_dir = tmp_path / "logs"
        runtime = Runtime(EventLog(storage_path=log_dir / "events.jsonl"))
        counter = Counter()
        runtime.register(counter)
        with pytest.raises(OSError):
            with runtime.transaction():
                counter.value = 1
                runtime.emit(EventKind.NATIVE_FUNDED, ACTOR, {}, _now())
        log_dir.mkdir()
        with runtime.transaction():
            counter.value = 2
            runtime.emit(EventKind.NATIVE_FUNDED, ACTOR, {}, _now())
        assert counter.value == 2
        assert [e.event_id for e in runtime.event_log.events()] == ["evt-00000001"]
