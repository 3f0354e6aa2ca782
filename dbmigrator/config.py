"""Configuration management for the migration tool."""

import json
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import dotenv_values
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


def _absolute(v: Path) -> Path:
    if not v.is_absolute():
        return Path.cwd() / v
    return v


class SourceDatabaseConfig(BaseModel):
    """Connection settings for the MySQL source inside the compose network."""

    model_config = ConfigDict(frozen=True)

    host: Optional[str] = Field(default=None, description="MySQL host as seen by pgloader")
    user: Optional[str] = Field(default=None, description="MySQL user")
    password: Optional[SecretStr] = Field(default=None, description="MySQL password")
    port: Optional[int] = Field(default=None, ge=1, le=65535, description="MySQL internal port")


class TargetDatabaseConfig(BaseModel):
    """Connection settings for the PostgreSQL target inside the compose network."""

    model_config = ConfigDict(frozen=True)

    host: Optional[str] = Field(default=None, description="PostgreSQL host as seen by pgloader")
    user: Optional[str] = Field(default=None, description="PostgreSQL user")
    password: Optional[SecretStr] = Field(default=None, description="PostgreSQL password")
    database: Optional[str] = Field(default=None, description="PostgreSQL database name")
    port: Optional[int] = Field(default=None, ge=1, le=65535, description="PostgreSQL internal port")


class DockerConfig(BaseModel):
    """Configuration for the docker compose resource group."""

    model_config = ConfigDict(frozen=True)

    compose_path: Path = Field(
        default=Path("containers"),
        description="Directory holding docker-compose.yml and its .env",
    )
    compose_command: Optional[List[str]] = Field(
        default=None,
        description="Explicit compose command, e.g. ['docker', 'compose']; autodetected when unset",
    )
    docker_command: str = Field(default="docker", description="Docker CLI executable")
    project_prefix: str = Field(default="migration", description="Compose project name prefix")
    source_service: str = Field(default="mysql-source", description="MySQL service name")
    target_service: str = Field(default="postgres-target", description="PostgreSQL service name")
    loader_service: str = Field(default="pgloader", description="pgloader service name")
    container_config_dir: str = Field(
        default="/migration",
        description="Mount point of the generated loader configs inside the pgloader container",
    )
    source_init_dir: str = Field(
        default="/docker-entrypoint-initdb.d",
        description="MySQL init script directory the dump is mounted into",
    )

    @field_validator("compose_path")
    @classmethod
    def validate_path(cls, v: Path) -> Path:
        """Ensure path is absolute."""
        return _absolute(v)

    def project_name(self, session_id: str) -> str:
        """Compose project name for a session."""
        return f"{self.project_prefix}-{session_id}"

    def container_name(self, session_id: str, service: str) -> str:
        """Container name compose v2 assigns to the first replica of a service."""
        return f"{self.project_name(session_id)}-{service}-1"


class ReadinessConfig(BaseModel):
    """Configuration for the database readiness poll."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=120, ge=1, description="Maximum health checks")
    interval: float = Field(default=2.0, ge=0, description="Seconds between health checks")
    grace_period: float = Field(
        default=10.0, ge=0, description="Seconds to wait for MySQL init scripts once healthy"
    )
    log_first: int = Field(default=3, ge=0, description="Log every attempt up to this one")
    log_every: int = Field(default=10, ge=1, description="Then log every Nth attempt")


DEFAULT_ERROR_PATTERNS = [
    r"ERROR\s+mysql:",
    r"Failed to connect",
    r"MySQL Error\s*\[\d+\]",
    r"FATAL",
    r"Unhandled",
    r"signal\s+\d+",
]

DEFAULT_NO_WORK_PATTERNS = [
    r"fetch meta data\s+0\s+0\s+0",
]


class TransferConfig(BaseModel):
    """Configuration for the pgloader transfer."""

    model_config = ConfigDict(frozen=True)

    workers: int = Field(default=8, ge=1, description="pgloader workers")
    concurrency: int = Field(default=1, ge=1, description="pgloader concurrency")
    exclude_pattern: str = Field(
        default="_*", description="Table names matching this are not migrated"
    )
    error_patterns: List[str] = Field(
        default_factory=lambda: list(DEFAULT_ERROR_PATTERNS),
        description="Regexes that mark pgloader output as failed despite exit code 0",
    )
    no_work_patterns: List[str] = Field(
        default_factory=lambda: list(DEFAULT_NO_WORK_PATTERNS),
        description="Regexes that mark a run which migrated nothing",
    )


class StorageConfig(BaseModel):
    """Configuration for session files."""

    model_config = ConfigDict(frozen=True)

    logs_dir: Path = Field(default=Path("logs"), description="Durable session event logs")

    @field_validator("logs_dir")
    @classmethod
    def validate_path(cls, v: Path) -> Path:
        """Ensure path is absolute."""
        return _absolute(v)


class EventsConfig(BaseModel):
    """Configuration for live session event delivery."""

    model_config = ConfigDict(frozen=True)

    delivery_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Seconds an observer may take to accept one event before it is skipped",
    )


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    model_config = ConfigDict(frozen=True)

    level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    console: bool = Field(default=True, description="Enable console logging")
    file: Optional[Path] = Field(default=None, description="Log file path")
    format: str = Field(
        default="text",
        pattern="^(json|text)$",
        description="Log format (json or text)",
    )
    rotation_size: int = Field(
        default=10 * 1024 * 1024,  # 10MB
        ge=1024 * 1024,  # 1MB minimum
        description="Log rotation size in bytes",
    )
    retention_days: int = Field(default=30, ge=1, description="Log retention in days")


# (section, field, env var) for every setting the loader config needs
REQUIRED_SETTINGS = [
    ("source", "host", "SOURCE__HOST"),
    ("source", "user", "SOURCE__USER"),
    ("source", "password", "SOURCE__PASSWORD"),
    ("source", "port", "SOURCE__PORT"),
    ("target", "host", "TARGET__HOST"),
    ("target", "user", "TARGET__USER"),
    ("target", "password", "TARGET__PASSWORD"),
    ("target", "database", "TARGET__DATABASE"),
    ("target", "port", "TARGET__PORT"),
]

# Variables the compose stack starts the databases with, per setting
CONTAINER_ENV_SETTINGS = [
    ("source", "host", "MYSQL_HOST"),
    ("source", "user", "MYSQL_ROOT"),
    ("source", "password", "MYSQL_ROOT_PASSWORD"),
    ("source", "port", "MYSQL_PORT_INTERNAL"),
    ("target", "host", "POSTGRES_HOST"),
    ("target", "user", "POSTGRES_USER"),
    ("target", "password", "POSTGRES_PASSWORD"),
    ("target", "database", "POSTGRES_DB"),
    ("target", "port", "POSTGRES_PORT_INTERNAL"),
]

CONTAINER_FALLBACK_NAMES = ["DATABASE_NAME", "MYSQL_DATABASE"]


def _is_unset(value: Any) -> bool:
    if isinstance(value, SecretStr):
        value = value.get_secret_value()
    return value is None or (isinstance(value, str) and not value.strip())


def read_container_env(env_file: Path) -> Dict[str, str]:
    """Compose stack variables: the process environment over ``env_file``.

    Variables already set in the process win over the file, and a missing
    file leaves only the process environment.

    Args:
        env_file: The compose directory's .env file

    Returns:
        Values for every known container variable that is set
    """
    names = [env_name for _, _, env_name in CONTAINER_ENV_SETTINGS] + CONTAINER_FALLBACK_NAMES
    file_values = dotenv_values(env_file) if env_file.exists() else {}

    values = {}
    for name in names:
        value = os.environ.get(name, file_values.get(name))
        if value is not None and value.strip():
            values[name] = value.strip()
    return values


class Config(BaseSettings):
    """Main configuration for the migration tool."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    source: SourceDatabaseConfig = Field(default_factory=SourceDatabaseConfig)
    target: TargetDatabaseConfig = Field(default_factory=TargetDatabaseConfig)
    fallback_database_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "fallback_database_name", "database_name", "mysql_database"
        ),
        description="Source database name used when the dump does not declare one",
    )
    docker: DockerConfig = Field(default_factory=DockerConfig)
    readiness: ReadinessConfig = Field(default_factory=ReadinessConfig)
    transfer: TransferConfig = Field(default_factory=TransferConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_file(cls, path: Path) -> "Config":
        """Load configuration from YAML or JSON file.

        Values from the environment and .env still fill in whatever the
        file leaves out.

        Args:
            path: Path to configuration file

        Returns:
            Config instance

        Raises:
            ValueError: If file format is not supported
        """
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, "r") as f:
            if path.suffix in [".yml", ".yaml"]:
                data = yaml.safe_load(f) or {}
            elif path.suffix == ".json":
                data = json.load(f)
            else:
                raise ValueError(f"Unsupported configuration file format: {path.suffix}")

        return cls(**data)

    def to_file(self, path: Path) -> None:
        """Save configuration to YAML or JSON file.

        Args:
            path: Path to save configuration file
        """
        data = self.model_dump(mode="json", exclude_none=True)

        for section in ("source", "target"):
            if data.get(section, {}).get("password"):
                data[section]["password"] = "***REDACTED***"

        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            if path.suffix in [".yml", ".yaml"]:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
            elif path.suffix == ".json":
                json.dump(data, f, indent=2)
            else:
                raise ValueError(f"Unsupported configuration file format: {path.suffix}")

    def missing_settings(self) -> List[str]:
        """Names of the required settings that are unset or empty.

        Returns:
            Environment variable names, in a stable order
        """
        return [
            env_name
            for section, field, env_name in REQUIRED_SETTINGS
            if _is_unset(getattr(getattr(self, section), field))
        ]

    def with_container_env(self, values: Mapping[str, str]) -> "Config":
        """Fill unset connection settings from compose stack variables.

        Settings given explicitly keep their value, so the loader only
        falls back to the credentials the containers are started with.

        Args:
            values: Container variables, see ``read_container_env``

        Returns:
            A new Config, or this one when nothing was filled in
        """
        updates: Dict[str, Dict[str, Any]] = {}
        for section, field, env_name in CONTAINER_ENV_SETTINGS:
            if env_name in values and _is_unset(getattr(getattr(self, section), field)):
                updates.setdefault(section, {})[field] = values[env_name]

        changes: Dict[str, Any] = {}
        for section, fields in updates.items():
            current = getattr(self, section)
            changes[section] = type(current).model_validate({**current.model_dump(), **fields})

        if _is_unset(self.fallback_database_name):
            for name in CONTAINER_FALLBACK_NAMES:
                if name in values:
                    changes["fallback_database_name"] = values[name]
                    break

        if not changes:
            return self
        return self.model_copy(update=changes)

    def redacted(self) -> Dict[str, Any]:
        """Configuration dump safe to log."""
        return self.model_dump(
            mode="json",
            exclude={"source": {"password"}, "target": {"password"}},
        )


def load_config(
    config_file: Optional[Path] = None,
    env_file: Optional[Path] = None,
) -> Config:
    """Load configuration from file and environment.

    Args:
        config_file: Optional path to configuration file
        env_file: Optional path to .env file

    Returns:
        Config instance
    """
    if env_file and env_file.exists():
        from dotenv import load_dotenv

        load_dotenv(env_file)

    if config_file and config_file.exists():
        return Config.from_file(config_file)

    return Config()
