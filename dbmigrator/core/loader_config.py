"""pgloader configuration generation."""

import re
from pathlib import Path
from typing import Optional, Tuple

import aiofiles
from pydantic import BaseModel, ConfigDict

from dbmigrator.config import Config
from dbmigrator.logging import get_logger
from dbmigrator.utils.errors import ConfigError, ValidationError

# mysqldump writes e.g. CREATE DATABASE /*!32312 IF NOT EXISTS*/ `sales` /*!40100 ... */;
CREATE_DATABASE_RE = re.compile(
    r"^\s*CREATE\s+(?:DATABASE|SCHEMA)\s+"
    r"(?:/\*!\d+\s*)?(?:IF\s+NOT\s+EXISTS\s*)?(?:\*/\s*)?"
    r"`?([^`;\s]+)`?",
    re.IGNORECASE,
)
USE_DATABASE_RE = re.compile(r"^\s*USE\s+`?([^`;\s]+)`?", re.IGNORECASE)

# Characters percent-encoded in the user:password@ part of a URI. Includes
# "%" itself so decoding always yields the raw value.
RESERVED_CREDENTIAL_CHARS = "%:'@/?#[]"


def escape_credential(value: Optional[str]) -> str:
    """Percent-encode URI-reserved characters in a username or password.

    Args:
        value: Raw credential

    Returns:
        Escaped credential, empty string for None
    """
    if not value:
        return ""
    return "".join(
        f"%{ord(c):02X}" if c in RESERVED_CREDENTIAL_CHARS else c for c in str(value)
    )


def _match_line(line: str) -> Tuple[Optional[str], bool]:
    stripped = line.lstrip()
    if not stripped or stripped.startswith("--"):
        return None, False
    match = CREATE_DATABASE_RE.match(line)
    if match:
        return match.group(1), True
    match = USE_DATABASE_RE.match(line)
    if match:
        return match.group(1), False
    return None, False


async def resolve_database_name(dump_path: Path, fallback: Optional[str] = None) -> str:
    """Resolve the source database name from a MySQL dump.

    The dump is streamed line by line; the first CREATE DATABASE declaration
    wins, then the first USE statement, then ``fallback``.

    Args:
        dump_path: MySQL dump file
        fallback: Name to use when the dump declares none

    Returns:
        Database name

    Raises:
        ValidationError: If the dump is missing or no name can be resolved
    """
    if not dump_path.is_file():
        raise ValidationError(f"Dump file not found: {dump_path}")

    use_name: Optional[str] = None
    async with aiofiles.open(dump_path, "r", encoding="utf-8", errors="replace") as f:
        async for line in f:
            name, is_create = _match_line(line)
            if is_create:
                return name  # type: ignore[return-value]
            if name and use_name is None:
                use_name = name

    name = use_name or (fallback.strip() if fallback else None)
    if not name:
        raise ValidationError(
            "Unable to determine MySQL database name from dump or configuration"
        )
    return name


class LoaderConfig(BaseModel):
    """A rendered pgloader command file for one session."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    database_name: str
    source_uri: str
    target_uri: str
    workers: int
    concurrency: int
    exclude_pattern: str
    masked_source_uri: str
    masked_target_uri: str

    def render(self, masked: bool = False) -> str:
        """Render the pgloader LOAD DATABASE command.

        Args:
            masked: Replace passwords with asterisks

        Returns:
            Command file text
        """
        source = self.masked_source_uri if masked else self.source_uri
        target = self.masked_target_uri if masked else self.target_uri
        exclude = self.exclude_pattern.replace("'", "''")
        return (
            "LOAD DATABASE\n"
            f"    FROM {source}\n"
            f"    INTO {target}\n"
            "\n"
            "WITH include drop,\n"
            "     create tables,\n"
            "     create indexes,\n"
            "     reset sequences,\n"
            f"     workers = {self.workers},\n"
            f"     concurrency = {self.concurrency}\n"
            "\n"
            f"EXCLUDING TABLE NAMES MATCHING '{exclude}'\n"
            ";"
        )

    async def write(self, path: Path) -> Path:
        """Write the command file, creating parent directories."""
        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            await f.write(self.render())
        return path


class ConfigGenerator:
    """Builds pgloader configurations from settings and a resolved db name."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self.logger = get_logger("config_generator")

    def generate(
        self, session_id: str, database_name: str, config: Optional[Config] = None
    ) -> LoaderConfig:
        """Build the loader configuration.

        Nothing is written and no resource is touched when settings are
        missing.

        Args:
            session_id: Session the config belongs to
            database_name: Source database name
            config: Settings for this run, defaults to the generator's own

        Returns:
            Loader configuration

        Raises:
            ConfigError: Naming every missing required setting
        """
        config = config or self.config
        missing = config.missing_settings()
        if missing:
            raise ConfigError(missing)

        source = config.source
        target = config.target
        source_password = source.password.get_secret_value()  # type: ignore[union-attr]
        target_password = target.password.get_secret_value()  # type: ignore[union-attr]

        def uri(scheme: str, user: str, password: str, host: str, port: int, db: str) -> str:
            return f"{scheme}://{escape_credential(user)}:{password}@{host}:{port}/{db}"

        loader_config = LoaderConfig(
            session_id=session_id,
            database_name=database_name,
            source_uri=uri(
                "mysql", source.user, escape_credential(source_password),
                source.host, source.port, database_name,
            ),
            target_uri=uri(
                "postgresql", target.user, escape_credential(target_password),
                target.host, target.port, target.database,
            ),
            masked_source_uri=uri(
                "mysql", source.user, "****", source.host, source.port, database_name
            ),
            masked_target_uri=uri(
                "postgresql", target.user, "****", target.host, target.port, target.database
            ),
            workers=config.transfer.workers,
            concurrency=config.transfer.concurrency,
            exclude_pattern=config.transfer.exclude_pattern,
        )

        self.logger.debug(
            "loader_config_generated",
            session_id=session_id,
            database_name=database_name,
            source=loader_config.masked_source_uri,
            target=loader_config.masked_target_uri,
        )
        return loader_config
