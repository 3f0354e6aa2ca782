"""MySQL dump to PostgreSQL migration tool.

Runs each uploaded MySQL dump through a disposable docker compose stack and
pgloader, streaming a per-session event log, and exports a PostgreSQL dump.
"""

__version__ = "1.0.0"

from dbmigrator.config import Config, load_config
from dbmigrator.core.orchestrator import MigrationOrchestrator

__all__ = ["Config", "load_config", "MigrationOrchestrator", "__version__"]
