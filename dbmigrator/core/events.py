"""Session events: wire models, durable log and live fan-out.

Every event is serialized exactly once. The same line is appended to the
session's durable log and delivered to each connected observer, so replay
of the log and the live stream are byte-identical.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional, Union

import aiofiles
from pydantic import BaseModel, Field

from dbmigrator.core.session import (
    EventSink,
    MigrationSession,
    Observer,
    SessionStatus,
    SessionStore,
)
from dbmigrator.logging import get_logger, logger as migration_logger

LogLevelName = Literal["INFO", "WARN", "ERROR"]


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class LogEvent(BaseModel):
    """A log line produced by the pipeline."""

    type: Literal["log"] = "log"
    timestamp: str = Field(default_factory=_timestamp)
    level: LogLevelName
    message: str
    extra: Optional[Any] = None

    def to_line(self) -> str:
        return self.model_dump_json(exclude_none=True)


class StatusEvent(BaseModel):
    """A session status snapshot."""

    type: Literal["status"] = "status"
    data: Dict[str, Any]

    @classmethod
    def from_session(cls, session: MigrationSession) -> "StatusEvent":
        return cls(data=session.snapshot())

    def to_line(self) -> str:
        return self.model_dump_json()


Event = Union[LogEvent, StatusEvent]


def parse_line(line: str) -> Dict[str, Any]:
    """Decode one wire line.

    Lines that are not valid JSON are surfaced as INFO log events.
    """
    try:
        return json.loads(line)
    except json.JSONDecodeError:
        return {"type": "log", "level": "INFO", "message": line}


class LogBroadcaster:
    """Appends session events to the durable log and fans them out live."""

    def __init__(self, store: SessionStore, delivery_timeout: float = 5.0) -> None:
        """Initialize broadcaster.

        Args:
            store: Session registry
            delivery_timeout: Seconds an observer may block on one event
        """
        self.store = store
        self.delivery_timeout = delivery_timeout
        self.logger = get_logger("broadcaster")

    async def emit(self, session_id: str, event: Event) -> str:
        """Record an event and deliver it to every connected observer.

        Args:
            session_id: Target session
            event: Event to record

        Returns:
            The serialized line
        """
        session = self.store.require(session_id)
        line = event.to_line()

        async with session.lock:
            async with aiofiles.open(session.log_path, "a", encoding="utf-8") as f:
                await f.write(line + "\n")
            for observer in session.observers:
                await self._deliver(session, observer, line)

        return line

    async def subscribe(self, session_id: str, sink: EventSink) -> Observer:
        """Attach an observer: status snapshot, full replay, then live events.

        The session lock is held for the whole replay so no event emitted in
        the meantime can be duplicated or lost.

        Args:
            session_id: Session to observe
            sink: Receiver for serialized events

        Returns:
            The registered observer
        """
        session = self.store.require(session_id)
        observer = Observer(sink)

        async with session.lock:
            session.add_observer(observer)
            await self._deliver(session, observer, StatusEvent.from_session(session).to_line())

            if session.log_path.exists():
                async with aiofiles.open(session.log_path, "r", encoding="utf-8") as f:
                    async for raw in f:
                        line = raw.rstrip("\n")
                        if line.strip():
                            await self._deliver(session, observer, line)

        self.logger.debug(
            "observer_subscribed",
            session_id=session_id,
            observer_id=observer.id,
            observers=len(session.observers),
        )
        return observer

    async def unsubscribe(self, session_id: str, observer: Observer) -> None:
        session = self.store.get(session_id)
        if session is None:
            return
        async with session.lock:
            session.remove_observer(observer)

    async def prune(self, session_id: str) -> int:
        """Drop observers that failed at least one delivery.

        Returns:
            Number of observers removed
        """
        session = self.store.get(session_id)
        if session is None:
            return 0
        removed = 0
        async with session.lock:
            for observer in session.observers:
                if observer.failed_deliveries > 0:
                    session.remove_observer(observer)
                    removed += 1
        return removed

    async def _deliver(self, session: MigrationSession, observer: Observer, line: str) -> None:
        if observer.stalled:
            return
        try:
            await asyncio.wait_for(observer.handle.send(line), self.delivery_timeout)
        except asyncio.TimeoutError:
            # Stays registered until pruned but receives nothing more
            observer.stalled = True
            observer.failed_deliveries += 1
            self.logger.warning(
                "observer_stalled",
                session_id=session.id,
                observer_id=observer.id,
                timeout=self.delivery_timeout,
            )
        except Exception as e:
            # A broken observer must never affect the pipeline or its peers
            observer.failed_deliveries += 1
            self.logger.debug(
                "observer_delivery_failed",
                session_id=session.id,
                observer_id=observer.id,
                error=str(e),
            )


class SessionLogger:
    """Per-session logging facade used by pipeline stages."""

    def __init__(self, broadcaster: LogBroadcaster, session_id: str) -> None:
        self.broadcaster = broadcaster
        self.session_id = session_id

    async def log(self, level: LogLevelName, message: str, extra: Optional[Any] = None) -> None:
        await self.broadcaster.emit(
            self.session_id, LogEvent(level=level, message=message, extra=extra)
        )
        migration_logger.log_session_event(self.session_id, level, message)

    async def info(self, message: str, extra: Optional[Any] = None) -> None:
        await self.log("INFO", message, extra)

    async def warn(self, message: str, extra: Optional[Any] = None) -> None:
        await self.log("WARN", message, extra)

    async def error(self, message: str, extra: Optional[Any] = None) -> None:
        await self.log("ERROR", message, extra)

    async def status(self) -> None:
        """Broadcast the session's current status."""
        session = self.broadcaster.store.require(self.session_id)
        await self.broadcaster.emit(self.session_id, StatusEvent.from_session(session))


class QueueSink:
    """Queue-backed observer handle for in-process consumers."""

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self.closed = False

    async def send(self, line: str) -> None:
        if self.closed:
            raise ConnectionError("sink is closed")
        self._queue.put_nowait(line)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(None)

    async def get(self) -> Optional[str]:
        return await self._queue.get()


class EventStream:
    """Async iterator over a session's events (snapshot, replay, live).

    Iteration ends after a terminal status event from the session log, or
    when the stream is closed.

    Example:
        >>> async with EventStream(broadcaster, session_id) as stream:
        ...     async for line in stream:
        ...         print(line)
    """

    def __init__(self, broadcaster: LogBroadcaster, session_id: str) -> None:
        self.broadcaster = broadcaster
        self.session_id = session_id
        self.sink = QueueSink()
        self.observer: Optional[Observer] = None
        self._snapshot_seen = False
        self._finished = False

    async def open(self) -> "EventStream":
        self.observer = await self.broadcaster.subscribe(self.session_id, self.sink)
        return self

    async def aclose(self) -> None:
        if self.observer is not None:
            await self.broadcaster.unsubscribe(self.session_id, self.observer)
            self.observer = None
        self.sink.close()

    async def __aenter__(self) -> "EventStream":
        return await self.open()

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> str:
        if self._finished:
            raise StopAsyncIteration
        line = await self.sink.get()
        if line is None:
            self._finished = True
            raise StopAsyncIteration

        # The first line is the live snapshot, not part of the log
        if not self._snapshot_seen:
            self._snapshot_seen = True
            return line

        event = parse_line(line)
        if event.get("type") == "status":
            status = event.get("data", {}).get("status")
            if status in (SessionStatus.COMPLETED.value, SessionStatus.FAILED.value):
                await self.aclose()
        return line
