"""
Unit tests for CleanupManager.
"""

import json
from pathlib import Path
from typing import List, Optional

import pytest

from dbmigrator.config import Config, DockerConfig
from dbmigrator.core.cleanup import CleanupManager
from dbmigrator.core.compose import ComposeClient
from dbmigrator.core.events import SessionLogger
from dbmigrator.core.session import MigrationSession
from tests.fakes import FakeRunner, read_log


def messages(session: MigrationSession, level: Optional[str] = None) -> List[str]:
    events = [json.loads(line) for line in read_log(session)]
    return [e["message"] for e in events if level is None or e["level"] == level]


class TestCleanup:
    """Tests for session teardown."""

    @pytest.mark.asyncio
    async def test_successful_teardown(
        self,
        config: Config,
        runner: FakeRunner,
        session: MigrationSession,
        session_log: SessionLogger,
    ) -> None:
        manager = CleanupManager(ComposeClient(config.docker, runner))

        assert await manager.cleanup(session.id, session_log) is True

        assert runner.calls == [
            ["docker", "compose", "-p", f"migration-{session.id}", "down", "-v"]
        ]
        logged = messages(session)
        assert logged[0] == "--- Docker cleanup start ---"
        assert "Docker cleanup completed successfully" in logged
        assert logged[-1] == "--- Docker cleanup end ---"

    @pytest.mark.asyncio
    async def test_failed_down_only_warns(
        self,
        config: Config,
        runner: FakeRunner,
        session: MigrationSession,
        session_log: SessionLogger,
    ) -> None:
        runner.script("down -v", exit_code=1, stderr="no such project")
        manager = CleanupManager(ComposeClient(config.docker, runner))

        assert await manager.cleanup(session.id, session_log) is False

        warnings = messages(session, "WARN")
        assert warnings[0] == "Docker cleanup failed or skipped"
        assert "stderr:\nno such project" in warnings
        assert warnings[-1] == "Proceeding without cleanup (this is usually OK for first run)"
        assert messages(session)[-1] == "--- Docker cleanup end ---"
        assert messages(session, "ERROR") == []

    @pytest.mark.asyncio
    async def test_missing_compose_never_raises(
        self,
        compose_path: Path,
        session: MigrationSession,
        session_log: SessionLogger,
    ) -> None:
        runner = FakeRunner()
        runner.script("version", spawn_error=True)
        manager = CleanupManager(ComposeClient(DockerConfig(compose_path=compose_path), runner))

        assert await manager.cleanup(session.id, session_log) is False
        assert not runner.commands("down")
        assert messages(session)[-1] == "--- Docker cleanup end ---"

    @pytest.mark.asyncio
    async def test_unknown_session_log_never_raises(self, config: Config, broadcaster) -> None:
        runner = FakeRunner()
        manager = CleanupManager(ComposeClient(config.docker, runner))

        assert await manager.cleanup("orphan", SessionLogger(broadcaster, "orphan")) is False
