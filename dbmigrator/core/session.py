"""In-memory registry of migration sessions and their state machine."""

import asyncio
import shutil
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from dbmigrator.logging import get_logger
from dbmigrator.utils.errors import InvalidTransitionError, SessionNotFoundError


class SessionStatus(str, Enum):
    """Migration session status."""

    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)


ALLOWED_TRANSITIONS = {
    SessionStatus.READY: {SessionStatus.RUNNING},
    SessionStatus.RUNNING: {SessionStatus.COMPLETED, SessionStatus.FAILED},
    SessionStatus.COMPLETED: set(),
    SessionStatus.FAILED: set(),
}


class EventSink(Protocol):
    """Anything that can receive serialized events."""

    async def send(self, line: str) -> None:
        ...


class Observer:
    """A live subscriber attached to one session."""

    def __init__(self, handle: EventSink) -> None:
        self.id = uuid.uuid4().hex
        self.handle = handle
        self.joined_at = datetime.now(timezone.utc)
        self.failed_deliveries = 0
        self.stalled = False

    def __repr__(self) -> str:
        return (
            f"Observer(id={self.id!r}, failed_deliveries={self.failed_deliveries}, "
            f"stalled={self.stalled})"
        )


class MigrationSession(BaseModel):
    """One migration request and its lifecycle state."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(frozen=True)
    source_file: Path = Field(frozen=True)
    file_name: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: SessionStatus = SessionStatus.READY
    progress: int = Field(default=0, ge=0, le=100)
    log_path: Path
    output_file: Optional[Path] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    _observers: Dict[str, Observer] = PrivateAttr(default_factory=dict)
    _lock: asyncio.Lock = PrivateAttr(default_factory=asyncio.Lock)

    @property
    def lock(self) -> asyncio.Lock:
        """Serializes event emission and subscription for this session."""
        return self._lock

    @property
    def observers(self) -> List[Observer]:
        """Snapshot of the connected observers."""
        return list(self._observers.values())

    def add_observer(self, observer: Observer) -> None:
        self._observers[observer.id] = observer

    def remove_observer(self, observer: Observer) -> bool:
        return self._observers.pop(observer.id, None) is not None

    def _transition(self, new_status: SessionStatus) -> None:
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.id, self.status.value, new_status.value)
        self.status = new_status
        self.updated_at = datetime.now(timezone.utc)

    def mark_running(self) -> None:
        self._transition(SessionStatus.RUNNING)
        self.progress = 0

    def mark_completed(self, output_file: Path) -> None:
        self._transition(SessionStatus.COMPLETED)
        self.progress = 100
        self.output_file = output_file

    def mark_failed(self, error: str) -> None:
        self._transition(SessionStatus.FAILED)
        self.error = error

    def advance_progress(self, progress: int) -> bool:
        """Raise progress while running; lower values are ignored.

        Returns:
            True if the stored progress changed
        """
        if self.status != SessionStatus.RUNNING:
            return False
        progress = max(0, min(100, progress))
        if progress <= self.progress:
            return False
        self.progress = progress
        self.updated_at = datetime.now(timezone.utc)
        return True

    def snapshot(self) -> Dict[str, Any]:
        """Point-in-time status, in wire format."""
        data: Dict[str, Any] = {"status": self.status.value, "progress": self.progress}
        if self.output_file is not None:
            data["outputFile"] = self.output_file.name
        if self.error is not None:
            data["error"] = self.error
        return data


class SessionStore:
    """Registry mapping session ids to MigrationSession records.

    Sessions are created on upload, mutated only by the orchestrator while
    running, and removed by an external retention policy via ``purge`` or
    ``purge_idle``.
    """

    def __init__(self, logs_dir: Path) -> None:
        """Initialize session store.

        Args:
            logs_dir: Directory holding the durable per-session event logs
        """
        self.logs_dir = logs_dir
        self.logger = get_logger("session_store")
        self._sessions: Dict[str, MigrationSession] = {}
        self._lock = asyncio.Lock()

    @property
    def lock(self) -> asyncio.Lock:
        """Guards registry mutation and start admission."""
        return self._lock

    async def create(
        self,
        source_file: Path,
        file_name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MigrationSession:
        """Register a new session in the ``ready`` state.

        Args:
            source_file: Uploaded dump
            file_name: Original file name as given by the uploader
            metadata: Free-form caller metadata

        Returns:
            The new session
        """
        session_id = str(uuid.uuid4())
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.logs_dir / f"{session_id}.log"
        log_path.write_text("", encoding="utf-8")

        session = MigrationSession(
            id=session_id,
            source_file=Path(source_file),
            file_name=file_name or Path(source_file).name,
            log_path=log_path,
            metadata=metadata or {},
        )

        async with self._lock:
            self._sessions[session_id] = session

        self.logger.info("session_created", session_id=session_id, file_name=session.file_name)
        return session

    def get(self, session_id: str) -> Optional[MigrationSession]:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> MigrationSession:
        """Look up a session or raise SessionNotFoundError."""
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list(self) -> List[MigrationSession]:
        return list(self._sessions.values())

    async def remove(self, session_id: str) -> Optional[MigrationSession]:
        async with self._lock:
            return self._sessions.pop(session_id, None)

    async def purge(
        self, session_id: str, extra_paths: Optional[List[Path]] = None
    ) -> bool:
        """Remove a terminal session and delete its files.

        Args:
            session_id: Session to purge
            extra_paths: Workspace files or directories owned by the session

        Returns:
            True if a session was removed
        """
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            if session.status == SessionStatus.RUNNING:
                raise InvalidTransitionError(session_id, session.status.value, "purged")
            del self._sessions[session_id]

        paths = [session.log_path]
        if session.output_file is not None:
            paths.append(session.output_file)
        paths.extend(extra_paths or [])

        for path in paths:
            if path.is_dir():
                await asyncio.to_thread(shutil.rmtree, path, True)
            elif path.exists():
                path.unlink()

        self.logger.info("session_purged", session_id=session_id)
        return True

    async def purge_idle(self, max_idle: timedelta) -> List[str]:
        """Purge terminal sessions untouched for longer than ``max_idle``.

        Returns:
            Ids of the purged sessions
        """
        cutoff = datetime.now(timezone.utc) - max_idle
        stale = [
            s.id for s in self.list()
            if s.status.is_terminal and s.updated_at < cutoff
        ]
        purged = []
        for session_id in stale:
            if await self.purge(session_id):
                purged.append(session_id)
        return purged
