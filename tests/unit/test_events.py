"""
Unit tests for session events, the durable log and live fan-out.

Tests cover:
- Wire serialization of log and status events
- Durable append plus live delivery on emit
- Snapshot, replay and live ordering on subscribe
- Observers joining at different times see the same event sequence
- Failure isolation between observers
- Observers that stop reading are skipped after a delivery timeout
- Process-log mirroring of session lines
- EventStream termination
"""

import asyncio
import json
from typing import List

import pytest

from dbmigrator.core.events import (
    EventStream,
    LogBroadcaster,
    LogEvent,
    QueueSink,
    SessionLogger,
    StatusEvent,
    parse_line,
)
from dbmigrator.core.session import MigrationSession, SessionStore
from dbmigrator.logging import logger as migration_logger
from dbmigrator.utils.errors import SessionNotFoundError
from tests.fakes import StuckSink, read_log

# =============================================================================
# Test Sinks
# =============================================================================


class RecordingSink:
    """Observer handle that keeps every line it receives."""

    def __init__(self) -> None:
        self.lines: List[str] = []

    async def send(self, line: str) -> None:
        self.lines.append(line)


class BrokenSink:
    """Observer handle whose connection is gone."""

    def __init__(self) -> None:
        self.attempts = 0

    async def send(self, line: str) -> None:
        self.attempts += 1
        raise ConnectionResetError("client went away")


# =============================================================================
# Wire format
# =============================================================================


class TestWireFormat:
    """Tests for event serialization."""

    def test_log_event_line(self) -> None:
        event = LogEvent(level="WARN", message="Waiting...")
        data = json.loads(event.to_line())

        assert data["type"] == "log"
        assert data["level"] == "WARN"
        assert data["message"] == "Waiting..."
        assert data["timestamp"].endswith("Z")
        assert "extra" not in data

    def test_log_event_extra(self) -> None:
        event = LogEvent(level="ERROR", message="pgloader failed", extra={"code": 1})
        assert json.loads(event.to_line())["extra"] == {"code": 1}

    def test_log_event_rejects_unknown_level(self) -> None:
        with pytest.raises(ValueError):
            LogEvent(level="DEBUG", message="nope")

    @pytest.mark.asyncio
    async def test_status_event_line(self, session: MigrationSession) -> None:
        data = json.loads(StatusEvent.from_session(session).to_line())
        assert data == {"type": "status", "data": {"status": "ready", "progress": 0}}

    def test_parse_line_plain_text(self) -> None:
        assert parse_line("not json") == {"type": "log", "level": "INFO", "message": "not json"}


# =============================================================================
# Emit
# =============================================================================


class TestEmit:
    """Tests for LogBroadcaster.emit."""

    @pytest.mark.asyncio
    async def test_emit_appends_to_log(
        self, broadcaster: LogBroadcaster, session: MigrationSession
    ) -> None:
        line = await broadcaster.emit(session.id, LogEvent(level="INFO", message="hello"))

        assert read_log(session) == [line]

    @pytest.mark.asyncio
    async def test_emit_delivers_same_line_to_observers(
        self, broadcaster: LogBroadcaster, session: MigrationSession
    ) -> None:
        first, second = RecordingSink(), RecordingSink()
        await broadcaster.subscribe(session.id, first)
        await broadcaster.subscribe(session.id, second)

        line = await broadcaster.emit(session.id, LogEvent(level="INFO", message="hello"))

        assert first.lines[-1] == line
        assert second.lines[-1] == line

    @pytest.mark.asyncio
    async def test_emit_unknown_session(self, broadcaster: LogBroadcaster) -> None:
        with pytest.raises(SessionNotFoundError):
            await broadcaster.emit("missing", LogEvent(level="INFO", message="x"))


# =============================================================================
# Subscribe
# =============================================================================


class TestSubscribe:
    """Tests for snapshot, replay and live delivery."""

    @pytest.mark.asyncio
    async def test_snapshot_then_replay(
        self, broadcaster: LogBroadcaster, session: MigrationSession, session_log: SessionLogger
    ) -> None:
        await session_log.info("one")
        await session_log.warn("two")

        sink = RecordingSink()
        await broadcaster.subscribe(session.id, sink)

        assert json.loads(sink.lines[0]) == {
            "type": "status",
            "data": {"status": "ready", "progress": 0},
        }
        assert sink.lines[1:] == read_log(session)

    @pytest.mark.asyncio
    async def test_snapshot_is_not_written_to_log(
        self, broadcaster: LogBroadcaster, session: MigrationSession
    ) -> None:
        await broadcaster.subscribe(session.id, RecordingSink())
        assert read_log(session) == []

    @pytest.mark.asyncio
    async def test_late_and_early_observers_see_same_sequence(
        self, broadcaster: LogBroadcaster, session: MigrationSession, session_log: SessionLogger
    ) -> None:
        early = RecordingSink()
        await broadcaster.subscribe(session.id, early)

        for i in range(5):
            await session_log.info(f"step {i}")

        late = RecordingSink()
        await broadcaster.subscribe(session.id, late)

        for i in range(5, 10):
            await session_log.info(f"step {i}")

        log_lines = read_log(session)
        assert len(log_lines) == 10
        assert early.lines[1:] == log_lines
        assert late.lines[1:] == log_lines

    @pytest.mark.asyncio
    async def test_concurrent_emit_and_subscribe_has_no_gaps_or_duplicates(
        self, broadcaster: LogBroadcaster, session: MigrationSession, session_log: SessionLogger
    ) -> None:
        sinks = [RecordingSink() for _ in range(3)]

        async def produce() -> None:
            for i in range(30):
                await session_log.info(f"line {i}")

        async def join(sink: RecordingSink, delay: int) -> None:
            for _ in range(delay):
                await asyncio.sleep(0)
            await broadcaster.subscribe(session.id, sink)

        await asyncio.gather(produce(), *(join(s, d) for s, d in zip(sinks, (0, 7, 19))))

        log_lines = read_log(session)
        for sink in sinks:
            assert sink.lines[1:] == log_lines

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(
        self, broadcaster: LogBroadcaster, session: MigrationSession, session_log: SessionLogger
    ) -> None:
        sink = RecordingSink()
        observer = await broadcaster.subscribe(session.id, sink)
        await broadcaster.unsubscribe(session.id, observer)

        await session_log.info("after")

        assert len(sink.lines) == 1
        assert session.observers == []


# =============================================================================
# Failure isolation
# =============================================================================


class TestObserverFailures:
    """A broken observer must not affect the pipeline or its peers."""

    @pytest.mark.asyncio
    async def test_broken_observer_is_isolated(
        self, broadcaster: LogBroadcaster, session: MigrationSession, session_log: SessionLogger
    ) -> None:
        healthy, broken = RecordingSink(), BrokenSink()
        await broadcaster.subscribe(session.id, healthy)
        broken_observer = await broadcaster.subscribe(session.id, broken)

        await session_log.info("still flowing")

        assert json.loads(healthy.lines[-1])["message"] == "still flowing"
        assert broken_observer.failed_deliveries == 2
        assert read_log(session)

    @pytest.mark.asyncio
    async def test_prune_removes_failed_observers(
        self, broadcaster: LogBroadcaster, session: MigrationSession
    ) -> None:
        await broadcaster.subscribe(session.id, RecordingSink())
        await broadcaster.subscribe(session.id, BrokenSink())

        assert await broadcaster.prune(session.id) == 1
        assert len(session.observers) == 1

    @pytest.mark.asyncio
    async def test_closed_queue_sink_counts_as_failure(
        self, broadcaster: LogBroadcaster, session: MigrationSession, session_log: SessionLogger
    ) -> None:
        sink = QueueSink()
        observer = await broadcaster.subscribe(session.id, sink)
        sink.close()

        await session_log.info("after close")

        assert observer.failed_deliveries == 1

    @pytest.mark.asyncio
    async def test_stuck_observer_is_skipped_after_timeout(
        self, store: SessionStore, session: MigrationSession
    ) -> None:
        broadcaster = LogBroadcaster(store, delivery_timeout=0.05)
        log = SessionLogger(broadcaster, session.id)
        stuck, healthy = StuckSink(), RecordingSink()
        stuck_observer = await broadcaster.subscribe(session.id, stuck)
        await broadcaster.subscribe(session.id, healthy)

        await asyncio.wait_for(log.info("first"), timeout=2)
        await asyncio.wait_for(log.info("second"), timeout=2)

        assert [json.loads(line)["message"] for line in healthy.lines[1:]] == ["first", "second"]
        assert stuck_observer.stalled
        assert stuck_observer.failed_deliveries == 1
        assert stuck.calls == 1
        assert len(read_log(session)) == 2

    @pytest.mark.asyncio
    async def test_stuck_observer_does_not_block_new_subscribers(
        self, store: SessionStore, session: MigrationSession
    ) -> None:
        broadcaster = LogBroadcaster(store, delivery_timeout=0.05)
        await broadcaster.subscribe(session.id, StuckSink())
        await broadcaster.emit(session.id, LogEvent(level="INFO", message="hello"))

        late = RecordingSink()
        await asyncio.wait_for(broadcaster.subscribe(session.id, late), timeout=2)

        assert late.lines[1:] == read_log(session)
        assert await broadcaster.prune(session.id) == 1
        assert len(session.observers) == 1


# =============================================================================
# Process log mirror
# =============================================================================


class RecordingLogger:
    """Stands in for the structlog logger and records every call."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []

    def __getattr__(self, method: str):
        def record(*args: object, **kwargs: object) -> "RecordingLogger":
            self.calls.append((method, args[0] if args else None, kwargs))
            return self

        return record


class TestSessionEventMirror:
    """Session lines reach the process log only at debug level."""

    @pytest.mark.asyncio
    async def test_session_lines_are_mirrored_at_debug(
        self, session_log: SessionLogger, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        recorder = RecordingLogger()
        monkeypatch.setattr(migration_logger, "_logger", recorder)

        await session_log.info("starting")
        await session_log.warn("slow disk")
        await session_log.error("boom")

        mirrored = [call for call in recorder.calls if call[1] == "session_event"]
        assert [method for method, _, _ in mirrored] == ["debug", "debug", "debug"]
        assert [kwargs["session_level"] for _, _, kwargs in mirrored] == ["INFO", "WARN", "ERROR"]
        assert mirrored[2][2]["message"] == "boom"
        assert mirrored[2][2]["session_id"] == session_log.session_id


# =============================================================================
# EventStream
# =============================================================================


class TestEventStream:
    """Tests for the async iterator over a session's events."""

    @pytest.mark.asyncio
    async def test_stream_ends_after_terminal_status(
        self, broadcaster: LogBroadcaster, session: MigrationSession, session_log: SessionLogger
    ) -> None:
        stream = await EventStream(broadcaster, session.id).open()

        session.mark_running()
        await session_log.status()
        await session_log.info("working")
        session.mark_completed(session.log_path.parent / "out.sql")
        await session_log.status()

        lines = [line async for line in stream]

        assert lines[1:] == read_log(session)
        assert json.loads(lines[-1])["data"]["status"] == "completed"
        assert session.observers == []

    @pytest.mark.asyncio
    async def test_terminal_snapshot_alone_does_not_end_stream(
        self, broadcaster: LogBroadcaster, session: MigrationSession, session_log: SessionLogger
    ) -> None:
        session.mark_running()
        session.mark_failed("boom")

        async with EventStream(broadcaster, session.id) as stream:
            first = await stream.__anext__()
            assert json.loads(first)["data"]["status"] == "failed"

            await session_log.info("late line")
            second = await stream.__anext__()
            assert json.loads(second)["message"] == "late line"

    @pytest.mark.asyncio
    async def test_aclose_drains_buffered_lines(
        self, broadcaster: LogBroadcaster, session: MigrationSession, session_log: SessionLogger
    ) -> None:
        stream = await EventStream(broadcaster, session.id).open()
        await session_log.info("buffered")
        await stream.aclose()

        lines = [line async for line in stream]

        assert len(lines) == 2
        assert json.loads(lines[1])["message"] == "buffered"
