"""Bounded, non-fatal readiness polling for a session's databases."""

import asyncio
import time
from typing import Any, Optional

from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, wait_fixed

from dbmigrator.config import Config, SourceDatabaseConfig
from dbmigrator.core.compose import ComposeClient
from dbmigrator.core.events import SessionLogger
from dbmigrator.logging import get_logger
from dbmigrator.utils.process import ProcessError

HEALTHY = "healthy"


class HealthPoller:
    """Waits for the source and target containers to report healthy.

    Readiness is advisory: a timeout logs a warning and the pipeline goes on.
    Once both are healthy the poller checks, best effort, that the dump was
    mounted and loaded into MySQL.
    """

    def __init__(self, config: Config, compose: ComposeClient) -> None:
        """Initialize health poller.

        Args:
            config: Migration configuration
            compose: Compose client for the session's resource group
        """
        self.config = config
        self.readiness = config.readiness
        self.compose = compose
        self.logger = get_logger("health_poller")

    async def wait(
        self,
        session_id: str,
        database_name: str,
        log: SessionLogger,
        source: Optional[SourceDatabaseConfig] = None,
    ) -> bool:
        """Poll until both databases are healthy or attempts run out.

        Args:
            session_id: Session whose containers are polled
            database_name: Source database expected to hold the dump
            log: Session logger
            source: MySQL credentials for the table check, defaults to the configured ones

        Returns:
            True if both became healthy, False on timeout
        """
        await log.info("Waiting for databases to be ready...")

        docker = self.config.docker
        source_container = self.compose.container(session_id, docker.source_service)
        target_container = self.compose.container(session_id, docker.target_service)
        started_at = time.monotonic()
        attempts = 0

        async def check_health() -> bool:
            nonlocal attempts
            attempts += 1
            source_health = await self._health(source_container)
            target_health = await self._health(target_container)
            if source_health == HEALTHY and target_health == HEALTHY:
                return True
            if self._should_log(attempts):
                await log.info(
                    f"Waiting... ({attempts}/{self.readiness.max_attempts}) "
                    f"MySQL: {source_health or 'unknown'}, "
                    f"PostgreSQL: {target_health or 'unknown'}"
                )
            return False

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.readiness.max_attempts),
            wait=wait_fixed(self.readiness.interval),
            retry=retry_if_result(lambda ready: not ready),
            retry_error_callback=lambda retry_state: False,
            reraise=True,
        )
        ready = await retrying(check_health)

        elapsed = time.monotonic() - started_at
        if not ready:
            await log.warn(f"Database readiness timeout after {elapsed:.1f}s - proceeding anyway")
            self.logger.warning("readiness_timeout", session_id=session_id, attempts=attempts)
            return False

        await log.info(f"MySQL/PostgreSQL healthy after {attempts} checks ({elapsed:.1f}s)")
        await self._verify_dump_mounted(source_container, log)

        if self.readiness.grace_period > 0:
            await log.info(
                f"Waiting {self.readiness.grace_period:g} seconds for MySQL init scripts to complete..."
            )
            await asyncio.sleep(self.readiness.grace_period)

        await self._verify_source_tables(
            source_container, database_name, log, source or self.config.source
        )
        return True

    def _should_log(self, attempt: int) -> bool:
        return attempt <= self.readiness.log_first or attempt % self.readiness.log_every == 0

    async def _health(self, container: str) -> Optional[str]:
        try:
            return await self.compose.health(container)
        except ProcessError as e:
            self.logger.debug("health_check_failed", container=container, error=str(e))
            return None

    async def _verify_dump_mounted(self, container: str, log: SessionLogger) -> None:
        init_dir = self.config.docker.source_init_dir
        try:
            result = await self.compose.exec(container, ["sh", "-lc", f"ls -la {init_dir}"])
        except ProcessError as e:
            await log.warn(f"Unable to verify {init_dir} mount: {_reason(e)}")
            return

        await log.info(f"MySQL {init_dir} content:", {"content": result.stdout})
        if "dump.sql" not in result.stdout:
            await log.warn(
                f"dump.sql not visible inside {init_dir}. "
                "The volume mount may point to the wrong folder (MIGRATION_ID mismatch)."
            )

    async def _verify_source_tables(
        self,
        container: str,
        database_name: str,
        log: SessionLogger,
        source: SourceDatabaseConfig,
    ) -> None:
        args = ["mysql", "-u", source.user or "root"]
        if source.password is not None and source.password.get_secret_value():
            args.append(f"-p{source.password.get_secret_value()}")
        args += ["-e", f"SHOW DATABASES; USE `{database_name}`; SHOW TABLES;"]

        try:
            result = await self.compose.exec(container, args)
        except ProcessError as e:
            await log.warn(f"Could not verify MySQL DB/tables: {_reason(e)}")
            return

        await log.info(f"MySQL verification for DB {database_name}:", {"output": result.stdout})
        if not has_tables(result.stdout, database_name):
            await log.warn(
                f"Database {database_name} is present but has no tables. "
                "Most common cause: MySQL init scripts didn't run because "
                "the mysql-data volume already existed."
            )


def has_tables(output: str, database_name: str) -> bool:
    """Whether ``SHOW TABLES`` output lists at least one table.

    The mysql client prints one table per line under a ``Tables_in_<db>``
    header, after the ``SHOW DATABASES`` listing.
    """
    header = f"Tables_in_{database_name}"
    lines = [line.strip() for line in output.splitlines()]
    if header not in lines:
        return False
    return any(line for line in lines[lines.index(header) + 1:])


def _reason(error: Any) -> str:
    stderr = (getattr(error, "stderr", "") or "").strip()
    return stderr or str(error)
