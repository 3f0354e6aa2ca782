"""Structured logging configuration for the migration tool."""

import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
from rich.console import Console
from rich.logging import RichHandler

from dbmigrator.config import LoggingConfig


class MigrationLogger:
    """Centralized logging manager for the migration tool."""

    _instance: Optional["MigrationLogger"] = None
    _logger: Optional[structlog.BoundLogger] = None

    def __new__(cls) -> "MigrationLogger":
        """Ensure singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        """Initialize the logger."""
        if self._logger is None:
            self._logger = structlog.get_logger()

    def configure(self, config: LoggingConfig) -> None:
        """Configure structured logging based on configuration.

        Args:
            config: Logging configuration
        """
        processors = [
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
        ]

        if config.format == "json":
            processors.append(structlog.processors.JSONRenderer())
        else:
            processors.append(structlog.dev.ConsoleRenderer())

        structlog.configure(
            processors=processors,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, config.level.value))

        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        if config.console:
            if config.format == "text":
                console_handler = RichHandler(
                    console=Console(stderr=True),
                    show_time=True,
                    show_path=False,
                    rich_tracebacks=True,
                )
            else:
                console_handler = logging.StreamHandler(sys.stderr)

            console_handler.setLevel(getattr(logging, config.level.value))
            root_logger.addHandler(console_handler)

        if config.file:
            file_path = Path(config.file)
            file_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = RotatingFileHandler(
                filename=str(file_path),
                maxBytes=config.rotation_size,
                backupCount=config.retention_days,
                encoding="utf-8",
            )
            file_handler.setLevel(getattr(logging, config.level.value))
            if config.format == "json":
                file_handler.setFormatter(logging.Formatter("%(message)s"))
            else:
                file_handler.setFormatter(
                    logging.Formatter(
                        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                        datefmt="%Y-%m-%d %H:%M:%S",
                    )
                )

            root_logger.addHandler(file_handler)

        self._logger = structlog.get_logger()

    def get_logger(self, name: Optional[str] = None) -> structlog.BoundLogger:
        """Get a logger instance.

        Args:
            name: Optional logger name

        Returns:
            Bound logger instance
        """
        if self._logger is None:
            self._logger = structlog.get_logger()

        if name:
            return self._logger.bind(component=name)
        return self._logger

    def log_migration_start(self, session_id: str, file_name: Optional[str]) -> None:
        """Log migration start event.

        Args:
            session_id: Migration session id
            file_name: Original name of the uploaded dump
        """
        self._logger.info(
            "migration_started",
            session_id=session_id,
            file_name=file_name,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    def log_migration_complete(
        self,
        session_id: str,
        status: str,
        duration_seconds: float,
        error: Optional[str] = None,
    ) -> None:
        """Log migration completion event.

        Args:
            session_id: Migration session id
            status: Terminal status
            duration_seconds: Total pipeline duration
            error: Failure message, if any
        """
        log_data: Dict[str, Any] = {
            "session_id": session_id,
            "status": status,
            "duration_seconds": round(duration_seconds, 3),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if error:
            log_data["error"] = error
            self._logger.error("migration_completed", **log_data)
        else:
            self._logger.info("migration_completed", **log_data)

    def log_stage(
        self,
        session_id: str,
        stage: str,
        ok: bool,
        duration_ms: float,
        error: Optional[str] = None,
    ) -> None:
        """Log the outcome of one pipeline stage.

        Args:
            session_id: Migration session id
            stage: Stage name
            ok: Whether the stage succeeded
            duration_ms: Stage duration in milliseconds
            error: Error message if the stage failed
        """
        if ok:
            self._logger.debug(
                "stage_completed",
                session_id=session_id,
                stage=stage,
                duration_ms=round(duration_ms, 1),
            )
        else:
            self._logger.warning(
                "stage_failed",
                session_id=session_id,
                stage=stage,
                duration_ms=round(duration_ms, 1),
                error=error,
            )

    def log_session_event(self, session_id: str, level: str, message: str) -> None:
        """Mirror a session log event to the process log.

        Session lines already reach observers, so the mirror is debug-level
        and keeps the session level as a field.

        Args:
            session_id: Migration session id
            level: INFO, WARN or ERROR
            message: Event message
        """
        self._logger.debug(
            "session_event", session_id=session_id, session_level=level, message=message
        )


# Global logger instance
logger = MigrationLogger()


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """Get a configured logger instance.

    Args:
        name: Optional logger name/component

    Returns:
        Bound logger instance
    """
    return logger.get_logger(name)
