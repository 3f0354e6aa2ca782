"""Core module for the migration tool."""

from dbmigrator.core.events import EventStream, LogBroadcaster, SessionLogger
from dbmigrator.core.orchestrator import MigrationOrchestrator, StageResult, StartResult
from dbmigrator.core.session import MigrationSession, SessionStatus, SessionStore

__all__ = [
    "EventStream",
    "LogBroadcaster",
    "SessionLogger",
    "MigrationOrchestrator",
    "StageResult",
    "StartResult",
    "MigrationSession",
    "SessionStatus",
    "SessionStore",
]
