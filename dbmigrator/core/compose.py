"""docker / docker compose command surface for one session's resource group."""

from pathlib import Path
from typing import List, Optional, Sequence

from dbmigrator.config import DockerConfig
from dbmigrator.logging import get_logger
from dbmigrator.utils.process import (
    ProcessError,
    ProcessResult,
    ProcessRunner,
    child_environment,
)


class ComposeClient:
    """Thin wrapper over the docker and compose CLIs."""

    # Tried in order when no compose command is configured
    COMPOSE_CANDIDATES = (["docker", "compose"], ["docker-compose"])

    def __init__(self, config: DockerConfig, runner: ProcessRunner) -> None:
        """Initialize compose client.

        Args:
            config: Docker configuration
            runner: Process runner used for every command
        """
        self.config = config
        self.runner = runner
        self.logger = get_logger("compose")
        self._compose_command: Optional[List[str]] = (
            list(config.compose_command) if config.compose_command else None
        )

    @property
    def compose_path(self) -> Path:
        return self.config.compose_path

    def project_name(self, session_id: str) -> str:
        return self.config.project_name(session_id)

    def container(self, session_id: str, service: str) -> str:
        return self.config.container_name(session_id, service)

    async def compose_command(self) -> List[str]:
        """Detect the compose command, ``docker compose`` first.

        Returns:
            Command and base arguments

        Raises:
            ProcessError: If neither compose flavour is available
        """
        if self._compose_command is not None:
            return self._compose_command

        last_error: Optional[ProcessError] = None
        for candidate in self.COMPOSE_CANDIDATES:
            try:
                await self.runner.run(candidate[0], [*candidate[1:], "version"])
            except ProcessError as e:
                last_error = e
                continue
            self._compose_command = list(candidate)
            self.logger.debug("compose_command_detected", command=" ".join(candidate))
            return self._compose_command

        raise ProcessError(
            'Neither "docker compose" nor "docker-compose" is available'
        ) from last_error

    async def compose(self, session_id: str, *args: str) -> ProcessResult:
        """Run a compose subcommand against the session's project."""
        command = await self.compose_command()
        return await self.runner.run(
            command[0],
            [*command[1:], "-p", self.project_name(session_id), *args],
            env=child_environment(MIGRATION_ID=session_id),
            cwd=self.compose_path,
        )

    async def up(self, session_id: str) -> ProcessResult:
        return await self.compose(session_id, "up", "--build", "-d")

    async def down(self, session_id: str) -> ProcessResult:
        return await self.compose(session_id, "down", "-v")

    async def health(self, container: str) -> str:
        """Health status reported by docker, e.g. ``starting`` or ``healthy``."""
        result = await self.runner.run(
            self.config.docker_command,
            ["inspect", "--format", "{{.State.Health.Status}}", container],
        )
        return result.stdout.strip()

    async def exec(self, container: str, args: Sequence[str]) -> ProcessResult:
        """Run a command inside a container."""
        return await self.runner.run(
            self.config.docker_command, ["exec", container, *args]
        )
