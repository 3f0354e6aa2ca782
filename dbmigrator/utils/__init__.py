"""Utility modules for the migration tool."""

from dbmigrator.utils.errors import MigrationError, Stage
from dbmigrator.utils.process import ProcessError, ProcessResult, ProcessRunner

__all__ = [
    "MigrationError",
    "Stage",
    "ProcessError",
    "ProcessResult",
    "ProcessRunner",
]
