"""Migration orchestrator for MySQL dump to PostgreSQL migrations."""

import asyncio
import shutil
import time
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiofiles

from dbmigrator.config import Config, read_container_env
from dbmigrator.core.cleanup import CleanupManager
from dbmigrator.core.compose import ComposeClient
from dbmigrator.core.events import EventStream, LogBroadcaster, SessionLogger
from dbmigrator.core.health import HealthPoller
from dbmigrator.core.loader_config import ConfigGenerator, resolve_database_name
from dbmigrator.core.session import MigrationSession, SessionStatus, SessionStore
from dbmigrator.core.transfer import TransferClassifier, TransferVerdict
from dbmigrator.logging import logger
from dbmigrator.utils.errors import (
    ExportError,
    InvalidTransitionError,
    MigrationError,
    ProvisionError,
    Stage,
    TransferError,
)
from dbmigrator.utils.process import ProcessError, ProcessRunner

# Coarse progress reached once each stage has finished
STAGE_PROGRESS = {
    Stage.VALIDATE: 5,
    Stage.PREPARE: 10,
    Stage.CONFIGURE: 15,
    Stage.PROVISION: 30,
    Stage.AWAIT_READY: 45,
    Stage.TRANSFER: 75,
    Stage.VERIFY: 85,
    Stage.EXPORT: 95,
}


class StartResult(str, Enum):
    """Outcome of a start request."""

    ACCEPTED = "accepted"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"


class StageResult:
    """Outcome of one pipeline stage: a value on success, a typed error otherwise."""

    def __init__(
        self,
        stage: Stage,
        ok: bool,
        value: Any = None,
        error: Optional[MigrationError] = None,
        duration: float = 0.0,
    ) -> None:
        """Initialize stage result.

        Args:
            stage: Stage that produced the result
            ok: Whether the stage succeeded
            value: Stage output on success
            error: Typed failure otherwise
            duration: Stage duration in seconds
        """
        self.stage = stage
        self.ok = ok
        self.value = value
        self.error = error
        self.duration = duration

    @property
    def failed(self) -> bool:
        return not self.ok

    @property
    def message(self) -> Optional[str]:
        return str(self.error) if self.error is not None else None

    def __repr__(self) -> str:
        return f"StageResult(stage={self.stage.value!r}, ok={self.ok}, error={self.message!r})"


class PipelineRun:
    """Per-run context; every path is namespaced by the session id."""

    def __init__(
        self, session: MigrationSession, log: SessionLogger, config: Config, compose_path: Path
    ) -> None:
        self.session = session
        self.session_id = session.id
        self.log = log
        self.config = config
        self.workspace_dir = compose_path / "sql-dump" / session.id
        self.dump_path = self.workspace_dir / "dump.sql"
        self.config_path = compose_path / "migration" / f"load-{session.id}.load"
        self.output_path = compose_path / "output" / f"postgres_dump_{session.id}.sql"


class MigrationOrchestrator:
    """Runs the fixed migration pipeline for any number of sessions."""

    def __init__(
        self,
        config: Config,
        store: Optional[SessionStore] = None,
        broadcaster: Optional[LogBroadcaster] = None,
        runner: Optional[ProcessRunner] = None,
        cleanup_manager: Optional[CleanupManager] = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Migration configuration
            store: Session registry, created from the storage config when omitted
            broadcaster: Event broadcaster bound to ``store``
            runner: Process runner for every external command
            cleanup_manager: Teardown component
        """
        self.config = config
        self.logger = logger.get_logger("orchestrator")

        self.store = store or SessionStore(config.storage.logs_dir)
        self.broadcaster = broadcaster or LogBroadcaster(
            self.store, config.events.delivery_timeout
        )
        self.runner = runner or ProcessRunner()
        self.compose = ComposeClient(config.docker, self.runner)
        self.config_generator = ConfigGenerator(config)
        self.health_poller = HealthPoller(config, self.compose)
        self.cleanup_manager = cleanup_manager or CleanupManager(self.compose)
        self.classifier = TransferClassifier(config.transfer)

        self._tasks: Dict[str, "asyncio.Task[None]"] = {}

    # Boundary operations

    async def create_session(
        self,
        source_file: Path,
        file_name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MigrationSession:
        """Register an uploaded dump as a new ``ready`` session."""
        return await self.store.create(source_file, file_name, metadata)

    async def start(self, session_id: str) -> StartResult:
        """Begin the pipeline in the background.

        Only a ``ready`` session can be started; anything else is a conflict
        and leaves the session untouched.

        Args:
            session_id: Session to start

        Returns:
            Start outcome
        """
        async with self.store.lock:
            session = self.store.get(session_id)
            if session is None:
                return StartResult.NOT_FOUND
            if session.status != SessionStatus.READY:
                self.logger.warning(
                    "start_rejected", session_id=session_id, status=session.status.value
                )
                return StartResult.CONFLICT
            session.mark_running()

        task = asyncio.create_task(self._run_pipeline(session))
        self._tasks[session_id] = task
        task.add_done_callback(lambda t, sid=session_id: self._on_task_done(sid, t))
        return StartResult.ACCEPTED

    async def run(self, session_id: str) -> MigrationSession:
        """Start a session and wait for its pipeline to finish.

        Raises:
            SessionNotFoundError: If the session does not exist
            InvalidTransitionError: If the session is not ``ready``
        """
        session = self.store.require(session_id)
        result = await self.start(session_id)
        if result == StartResult.CONFLICT:
            raise InvalidTransitionError(
                session_id, session.status.value, SessionStatus.RUNNING.value
            )
        await self.wait(session_id)
        return session

    async def wait(self, session_id: str) -> None:
        """Wait for a started pipeline to finish; returns at once otherwise."""
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.wait({task})

    def status(self, session_id: str) -> Dict[str, Any]:
        """Point-in-time status snapshot.

        Raises:
            SessionNotFoundError: If the session does not exist
        """
        session = self.store.require(session_id)
        return {"id": session.id, **session.snapshot()}

    def result(self, session_id: str) -> Optional[Path]:
        """Exported dump of a completed session, if it still exists."""
        session = self.store.get(session_id)
        if session is None or session.status != SessionStatus.COMPLETED:
            return None
        if session.output_file is None or not session.output_file.exists():
            return None
        return session.output_file

    async def subscribe(self, session_id: str) -> EventStream:
        """Open a replay-then-live event stream for a session."""
        return await EventStream(self.broadcaster, session_id).open()

    async def purge(self, session_id: str) -> bool:
        """Forget a finished session and delete every file it owns.

        A session that has just turned terminal may still be writing its
        final status event and teardown bookkeeping; purge waits for that.
        """
        session = self.store.get(session_id)
        if session is None:
            return False
        if session.status.is_terminal:
            await self.wait(session_id)
        log = SessionLogger(self.broadcaster, session_id)
        run = PipelineRun(session, log, self.config, self.compose.compose_path)
        return await self.store.purge(session_id, extra_paths=[run.workspace_dir, run.config_path])

    # Pipeline

    async def _run_pipeline(self, session: MigrationSession) -> None:
        log = SessionLogger(self.broadcaster, session.id)
        run = PipelineRun(session, log, self.config, self.compose.compose_path)
        start_time = time.monotonic()
        logger.log_migration_start(session.id, session.file_name)

        try:
            outcome = await self._execute_stages(run)
        except Exception as e:
            self.logger.error("pipeline_crashed", session_id=session.id, error=str(e), exc_info=e)
            outcome = StageResult(Stage.VALIDATE, ok=False, error=MigrationError(str(e)))

        try:
            if outcome.ok:
                await log.info("Migration completed successfully")
            else:
                await log.error(f"Migration failed: {outcome.message}")
        except OSError as e:
            self.logger.error("session_log_failed", session_id=session.id, error=str(e))

        await self._run_stage(run, Stage.TEARDOWN, self._teardown)

        if outcome.ok:
            session.mark_completed(outcome.value)
        else:
            session.mark_failed(outcome.message or "Migration failed")

        try:
            await log.status()
        except OSError as e:
            self.logger.error("session_log_failed", session_id=session.id, error=str(e))

        pruned = await self.broadcaster.prune(session.id)
        if pruned:
            self.logger.debug("observers_pruned", session_id=session.id, count=pruned)

        logger.log_migration_complete(
            session.id,
            session.status.value,
            time.monotonic() - start_time,
            session.error,
        )

    async def _execute_stages(self, run: PipelineRun) -> StageResult:
        """Run stages 1-8 in order, stopping at the first failure.

        Returns:
            The export result on success, the failing stage's result otherwise
        """
        await run.log.status()
        await run.log.info(f"Starting migration {run.session_id}")
        await run.log.info(f"File: {run.session.file_name}")
        run.config = await self._load_container_env(run)

        validated = await self._run_stage(run, Stage.VALIDATE, self._validate)
        if validated.failed:
            return validated

        prepared = await self._run_stage(run, Stage.PREPARE, self._prepare)
        if prepared.failed:
            return prepared

        configured = await self._run_stage(run, Stage.CONFIGURE, self._configure, validated.value)
        if configured.failed:
            return configured

        provisioned = await self._run_stage(run, Stage.PROVISION, self._provision)
        if provisioned.failed:
            return provisioned

        ready = await self._run_stage(run, Stage.AWAIT_READY, self._await_ready, validated.value)
        if ready.failed:
            return ready

        transferred = await self._run_stage(run, Stage.TRANSFER, self._transfer)
        if transferred.failed:
            return transferred

        verified = await self._run_stage(run, Stage.VERIFY, self._verify_target)
        if verified.failed:
            return verified

        return await self._run_stage(run, Stage.EXPORT, self._export)

    async def _run_stage(
        self,
        run: PipelineRun,
        stage: Stage,
        handler: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> StageResult:
        started = time.monotonic()
        try:
            value = await handler(run, *args)
            if stage in STAGE_PROGRESS:
                await self._advance(run, STAGE_PROGRESS[stage])
        except MigrationError as e:
            result = StageResult(stage, ok=False, error=e)
        except Exception as e:
            self.logger.error(
                "stage_crashed", session_id=run.session_id, stage=stage.value, exc_info=e
            )
            result = StageResult(
                stage, ok=False, error=MigrationError(f"{stage.value} failed: {e}", stage=stage)
            )
        else:
            result = StageResult(stage, ok=True, value=value)

        result.duration = time.monotonic() - started
        logger.log_stage(
            run.session_id, stage.value, result.ok, result.duration * 1000, result.message
        )
        return result

    async def _advance(self, run: PipelineRun, progress: int) -> None:
        if run.session.advance_progress(progress):
            await run.log.status()

    async def _load_container_env(self, run: PipelineRun) -> Config:
        """Settings completed with the variables the compose stack runs with."""
        env_file = self.compose.compose_path / ".env"
        if env_file.exists():
            await run.log.info(f"Loaded environment variables from {env_file}")
        else:
            await run.log.warn(f"No .env found at {env_file} - using current process.env only")
        return self.config.with_container_env(read_container_env(env_file))

    # Stages

    async def _validate(self, run: PipelineRun) -> str:
        database_name = await resolve_database_name(
            run.session.source_file, run.config.fallback_database_name
        )
        await run.log.info(f"Detected MySQL database name: {database_name}")
        return database_name

    async def _prepare(self, run: PipelineRun) -> Path:
        await run.log.info("Preparing MySQL dump file...")
        run.workspace_dir.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(shutil.copyfile, run.session.source_file, run.dump_path)
        await run.log.info(f"Dump file prepared at {run.dump_path}")
        return run.dump_path

    async def _configure(self, run: PipelineRun, database_name: str) -> Path:
        await run.log.info("Creating pgloader configuration...")
        loader_config = self.config_generator.generate(
            run.session_id, database_name, config=run.config
        )
        await loader_config.write(run.config_path)
        await run.log.info(f"Pgloader config created at {run.config_path}")
        return run.config_path

    async def _provision(self, run: PipelineRun) -> None:
        await run.log.info("Starting Docker containers...")
        await run.log.info(
            f"Using Docker Compose project: {self.compose.project_name(run.session_id)}"
        )

        try:
            result = await self.compose.up(run.session_id)
        except ProcessError as e:
            stdout = (getattr(e, "stdout", "") or "").strip()
            stderr = (getattr(e, "stderr", "") or "").strip()
            await run.log.error("Docker startup failed (details below)")
            await run.log.error(f"docker compose stdout:\n{stdout or '(empty)'}")
            await run.log.error(f"docker compose stderr:\n{stderr or '(empty)'}")
            await run.log.error(f"docker compose message: {e}")
            raise ProvisionError("Docker Compose failed to start", context={"error": str(e)}) from e

        for line in _lines(result.stdout) + _lines(result.stderr):
            await run.log.info(f"Docker: {line}")
        await run.log.info("Docker containers started successfully")

    async def _await_ready(self, run: PipelineRun, database_name: str) -> bool:
        return await self.health_poller.wait(
            run.session_id, database_name, run.log, source=run.config.source
        )

    async def _transfer(self, run: PipelineRun) -> TransferVerdict:
        await run.log.info("Starting pgloader migration...")
        docker = self.config.docker
        container = self.compose.container(run.session_id, docker.loader_service)
        config_file = f"{docker.container_config_dir.rstrip('/')}/{run.config_path.name}"

        try:
            result = await self.compose.exec(container, ["pgloader", config_file])
        except ProcessError as e:
            await run.log.error(
                "pgloader failed",
                {
                    "message": str(e),
                    "code": getattr(e, "exit_code", None),
                    "stdout": getattr(e, "stdout", ""),
                    "stderr": getattr(e, "stderr", ""),
                },
            )
            raise TransferError(f"pgloader migration failed: {e}") from e

        for line in _lines(result.stdout):
            await run.log.info(f"pgloader: {line}")
        for line in _lines(result.stderr):
            await run.log.warn(f"pgloader(stderr): {line}")

        verdict = self.classifier.classify(result.combined)
        if not verdict.ok:
            await run.log.error(
                "pgloader failed",
                {"message": verdict.reason, "matched": verdict.matched, "code": result.exit_code},
            )
            raise TransferError(f"pgloader migration failed: {verdict.reason}")

        await run.log.info("pgloader migration completed successfully")
        return verdict

    async def _verify_target(self, run: PipelineRun) -> bool:
        target = run.config.target
        container = self.compose.container(run.session_id, self.config.docker.target_service)
        try:
            result = await self.compose.exec(
                container,
                ["psql", "-U", target.user or "postgres", "-d", target.database or "postgres", "-c", "\\dt"],
            )
        except ProcessError as e:
            stderr = (getattr(e, "stderr", "") or "").strip()
            await run.log.warn(f"Could not verify Postgres tables: {stderr or e}")
            return False

        await run.log.info("Postgres \\dt output:", {"output": result.stdout})
        if "Did not find any relations" in result.stdout + result.stderr:
            await run.log.warn(
                "Postgres has no tables. The migration likely copied nothing "
                "(MySQL DB empty or pgloader excluded everything)."
            )
            return False
        return True

    async def _export(self, run: PipelineRun) -> Path:
        await run.log.info("Exporting PostgreSQL dump...")
        target = run.config.target
        user = target.user or "postgres"
        database = target.database or "postgres"
        container = self.compose.container(run.session_id, self.config.docker.target_service)
        run.output_path.parent.mkdir(parents=True, exist_ok=True)

        await run.log.info(f"pg_dump will use: user={user}, db={database}")

        try:
            result = await self.compose.exec(
                container,
                ["pg_dump", "-U", user, "-d", database, "--no-owner", "--no-privileges"],
            )
        except ProcessError as e:
            await run.log.error(
                "pg_dump failed",
                {"stderr": getattr(e, "stderr", ""), "stdout": getattr(e, "stdout", "")},
            )
            raise ExportError("PostgreSQL dump export failed") from e

        async with aiofiles.open(run.output_path, "w", encoding="utf-8") as f:
            await f.write(result.stdout)

        await run.log.info(f"PostgreSQL dump exported to {run.output_path}")
        return run.output_path

    async def _teardown(self, run: PipelineRun) -> bool:
        return await self.cleanup_manager.cleanup(run.session_id, run.log)

    def _on_task_done(self, session_id: str, task: "asyncio.Task[None]") -> None:
        self._tasks.pop(session_id, None)
        if not task.cancelled() and task.exception() is not None:
            self.logger.error(
                "pipeline_task_failed", session_id=session_id, exc_info=task.exception()
            )


def _lines(text: str) -> List[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]
