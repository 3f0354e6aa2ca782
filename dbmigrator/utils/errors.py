"""Error taxonomy for the migration pipeline."""

from enum import Enum
from typing import Any, Dict, List, Optional


class Stage(str, Enum):
    """Pipeline stages, in execution order."""

    VALIDATE = "validate"
    PREPARE = "prepare"
    CONFIGURE = "configure"
    PROVISION = "provision"
    AWAIT_READY = "await_ready"
    TRANSFER = "transfer"
    VERIFY = "verify"
    EXPORT = "export"
    TEARDOWN = "teardown"


class MigrationError(Exception):
    """Base exception for migration errors."""

    stage: Optional[Stage] = None

    def __init__(
        self,
        message: str,
        stage: Optional[Stage] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize migration error.

        Args:
            message: Human readable error message
            stage: Stage that raised the error, defaults to the class stage
            context: Additional context
        """
        super().__init__(message)
        self.message = message
        if stage is not None:
            self.stage = stage
        self.context = context or {}


class ValidationError(MigrationError):
    """The dump does not let us resolve a database name."""

    stage = Stage.VALIDATE


class ConfigError(MigrationError):
    """Required settings are missing."""

    stage = Stage.CONFIGURE

    def __init__(self, missing: List[str], context: Optional[Dict[str, Any]] = None) -> None:
        """Initialize configuration error.

        Args:
            missing: Names of every missing setting
            context: Additional context
        """
        super().__init__(
            f"Missing required settings: {', '.join(missing)}",
            context=context,
        )
        self.missing = list(missing)


class ProvisionError(MigrationError):
    """The compose project failed to start."""

    stage = Stage.PROVISION


class TransferError(MigrationError):
    """pgloader failed, or its output matched a known failure signature."""

    stage = Stage.TRANSFER


class ExportError(MigrationError):
    """pg_dump failed."""

    stage = Stage.EXPORT


class SessionNotFoundError(MigrationError):
    """No session is registered under the given id."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Migration not found: {session_id}")
        self.session_id = session_id


class InvalidTransitionError(MigrationError):
    """A session status change that the state machine does not allow."""

    def __init__(self, session_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Cannot move migration {session_id} from {current} to {requested}"
        )
        self.session_id = session_id
        self.current = current
        self.requested = requested
