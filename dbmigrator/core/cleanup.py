"""Teardown of a session's docker compose resource group."""

from dbmigrator.core.compose import ComposeClient
from dbmigrator.core.events import SessionLogger
from dbmigrator.logging import get_logger
from dbmigrator.utils.process import ProcessError


class CleanupManager:
    """Stops the compose project and drops its volumes.

    ``cleanup`` never raises. A project that does not exist (first run, or
    already removed) is an expected condition and only produces warnings.
    """

    def __init__(self, compose: ComposeClient) -> None:
        self.compose = compose
        self.logger = get_logger("cleanup")

    async def cleanup(self, session_id: str, log: SessionLogger) -> bool:
        """Tear down the resource group of one session.

        Args:
            session_id: Session whose project is removed
            log: Session logger

        Returns:
            True if compose reported a clean teardown
        """
        try:
            await self._teardown(session_id, log)
            self.logger.info("cleanup_completed", session_id=session_id)
            return True
        except ProcessError as e:
            self.logger.warning("cleanup_failed", session_id=session_id, error=str(e))
            await self._report_failure(e, log)
            return False
        except Exception as e:
            self.logger.warning(
                "cleanup_failed", session_id=session_id, error=str(e), exc_info=e
            )
            return False
        finally:
            await self._log_quietly(log, "INFO", "--- Docker cleanup end ---")

    async def _teardown(self, session_id: str, log: SessionLogger) -> None:
        project = self.compose.project_name(session_id)
        await log.info("--- Docker cleanup start ---")
        await log.info(f"Project name: {project}")
        await log.info(f"Compose working dir: {self.compose.compose_path}")

        command = await self.compose.compose_command()
        await log.info(f"Using compose command: {' '.join(command)}")
        await log.info(f"Running: {' '.join(command)} -p {project} down -v")

        result = await self.compose.down(session_id)

        await log.info(f"docker compose down exit code: {result.exit_code}")
        await log.info(f"docker compose down stdout:\n{result.stdout.strip() or '(empty)'}")
        await log.info("Docker cleanup completed successfully")

    async def _report_failure(self, error: ProcessError, log: SessionLogger) -> None:
        lines = ["Docker cleanup failed or skipped", f"Reason: {error}"]

        stdout = (getattr(error, "stdout", "") or "").strip()
        stderr = (getattr(error, "stderr", "") or "").strip()
        if stdout:
            lines.append(f"stdout:\n{stdout}")
        if stderr:
            lines.append(f"stderr:\n{stderr}")
        lines.append("Proceeding without cleanup (this is usually OK for first run)")

        for line in lines:
            await self._log_quietly(log, "WARN", line)

    async def _log_quietly(self, log: SessionLogger, level: str, message: str) -> None:
        try:
            await log.log(level, message)  # type: ignore[arg-type]
        except Exception as e:
            self.logger.warning("cleanup_log_failed", session_id=log.session_id, error=str(e))
