"""Command-line interface for the MySQL dump to PostgreSQL migration tool."""

import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import click
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from dbmigrator import __version__
from dbmigrator.config import (
    Config,
    SourceDatabaseConfig,
    TargetDatabaseConfig,
    load_config,
    read_container_env,
)
from dbmigrator.logging import logger
from dbmigrator.utils.errors import MigrationError
from dbmigrator.utils.process import ProcessError, ProcessRunner


console = Console()


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="MySQL to PostgreSQL Dump Migrator")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file (YAML or JSON)",
)
@click.option(
    "--env-file",
    "-e",
    type=click.Path(exists=True, path_type=Path),
    help="Path to .env file",
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[Path], env_file: Optional[Path]) -> None:
    """MySQL dump to PostgreSQL migration tool.

    Loads a MySQL dump into a disposable MySQL container, migrates it with
    pgloader and exports the resulting PostgreSQL dump.
    """
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        return

    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["env_file"] = env_file


@cli.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=Path("config.yaml"),
    help="Output path for configuration file",
)
@click.option(
    "--format",
    "-f",
    type=click.Choice(["yaml", "json"]),
    default="yaml",
    help="Configuration file format",
)
def init(output: Path, format: str) -> None:
    """Initialize a new configuration file with default values."""
    console.print(f"[bold blue]Creating configuration file: {output}[/bold blue]")

    console.print("\n[bold yellow]Source (MySQL) connection:[/bold yellow]")
    source_host = click.prompt("MySQL host", default="mysql-source")
    source_port = click.prompt("MySQL port", default=3306, type=int)
    source_user = click.prompt("MySQL user", default="root")

    console.print("\n[bold yellow]Target (PostgreSQL) connection:[/bold yellow]")
    target_host = click.prompt("PostgreSQL host", default="postgres-target")
    target_port = click.prompt("PostgreSQL port", default=5432, type=int)
    target_user = click.prompt("PostgreSQL user", default="postgres")
    target_database = click.prompt("PostgreSQL database", default="postgres")

    try:
        config = Config(
            source=SourceDatabaseConfig(host=source_host, port=source_port, user=source_user),
            target=TargetDatabaseConfig(
                host=target_host,
                port=target_port,
                user=target_user,
                database=target_database,
            ),
        )

        if format == "json" and not output.suffix:
            output = output.with_suffix(".json")
        elif format == "yaml" and not output.suffix:
            output = output.with_suffix(".yaml")

        config.to_file(output)
        console.print(f"\n[bold green]✓[/bold green] Configuration saved to: {output}")
        console.print("\n[yellow]Next steps:[/yellow]")
        console.print("1. Set SOURCE__PASSWORD and TARGET__PASSWORD in your .env file")
        console.print("2. Run 'db-migrate validate' to verify configuration")
        console.print("3. Run 'db-migrate migrate <dump.sql>' to start a migration")

    except Exception as e:
        console.print(f"[bold red]Error creating configuration:[/bold red] {e}")
        sys.exit(1)


@cli.command()
@click.pass_context
def validate(ctx: click.Context) -> None:
    """Validate configuration and detect the compose command."""
    config = _load(ctx)
    failed = False

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        task = progress.add_task("Checking required settings...", total=None)
        missing = config.missing_settings()
        if missing:
            progress.update(task, description="[red]✗[/red] Missing required settings")
            failed = True
        else:
            progress.update(task, description="[green]✓[/green] Required settings present")

        task = progress.add_task("Detecting docker compose...", total=None)
        try:
            command = asyncio.run(_detect_compose(config))
            progress.update(task, description=f"[green]✓[/green] Compose command: {' '.join(command)}")
        except ProcessError as e:
            progress.update(task, description=f"[red]✗[/red] {e}")
            failed = True

        compose_file = config.docker.compose_path / "docker-compose.yml"
        if not compose_file.exists():
            progress.add_task(f"[yellow]![/yellow] No docker-compose.yml in {config.docker.compose_path}")

    if missing:
        console.print("\n[bold red]Missing settings:[/bold red]")
        for name in missing:
            console.print(f"  • {name}")

    _display_config_summary(config)

    if failed:
        sys.exit(1)


@cli.command()
@click.argument("dump", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def inspect(ctx: click.Context, dump: Path) -> None:
    """Show the database name and loader config a dump would use."""
    config = _load(ctx)
    config = config.with_container_env(read_container_env(config.docker.compose_path / ".env"))

    from dbmigrator.core.loader_config import ConfigGenerator, resolve_database_name

    try:
        database_name = asyncio.run(
            resolve_database_name(dump, config.fallback_database_name)
        )
        console.print(f"[bold]Database name:[/bold] {database_name}")

        loader_config = ConfigGenerator(config).generate("inspect", database_name)
    except MigrationError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        sys.exit(1)

    console.print("\n[bold blue]pgloader configuration:[/bold blue]")
    console.print(loader_config.render(masked=True), markup=False, highlight=False)


@cli.command()
@click.argument("dump", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--quiet",
    "-q",
    is_flag=True,
    help="Only print warnings and errors from the migration log",
)
@click.pass_context
def migrate(ctx: click.Context, dump: Path, quiet: bool) -> None:
    """Migrate a MySQL dump to a PostgreSQL dump."""
    config = _load(ctx)

    logger.configure(config.logging)
    log = logger.get_logger("cli")

    console.print("\n[bold blue]Migration:[/bold blue]")
    console.print(f"  • Dump: {dump}")
    console.print(f"  • Compose path: {config.docker.compose_path}")
    console.print(f"  • Target: {config.target.user}@{config.target.host}/{config.target.database}")

    console.print("\n[bold green]Starting migration...[/bold green]")
    log.info("migration_requested", dump=str(dump), config=config.redacted())

    try:
        succeeded = asyncio.run(_run_migration(config, dump, verbose=not quiet))
    except KeyboardInterrupt:
        console.print("\n[yellow]Migration interrupted by user[/yellow]")
        log.warning("migration_interrupted")
        sys.exit(130)
    except MigrationError as e:
        console.print(f"\n[bold red]Migration failed:[/bold red] {e}")
        log.error("migration_failed", error=str(e), exc_info=e)
        sys.exit(1)

    if not succeeded:
        sys.exit(1)


@cli.command()
@click.argument("session_id")
@click.pass_context
def clean(ctx: click.Context, session_id: str) -> None:
    """Tear down the compose project a session left behind."""
    config = _load(ctx)
    logger.configure(config.logging)

    if not click.confirm(
        f"\nRemove compose project {config.docker.project_name(session_id)} and its volumes?"
    ):
        console.print("[yellow]Cleanup cancelled[/yellow]")
        return

    ok = asyncio.run(_run_cleanup(config, session_id))
    if ok:
        console.print("\n[bold green]Cleanup completed[/bold green]")
    else:
        console.print("\n[yellow]Cleanup failed or skipped (see log above)[/yellow]")


def _load(ctx: click.Context) -> Config:
    config_path = ctx.obj.get("config_path")
    env_file = ctx.obj.get("env_file")

    try:
        return load_config(config_path, env_file)
    except Exception as e:
        console.print(f"[bold red]Error loading configuration:[/bold red] {e}")
        sys.exit(1)


async def _detect_compose(config: Config) -> List[str]:
    from dbmigrator.core.compose import ComposeClient

    return await ComposeClient(config.docker, ProcessRunner()).compose_command()


async def _run_migration(config: Config, dump: Path, verbose: bool) -> bool:
    """Run one migration while rendering its event stream.

    Args:
        config: Configuration instance
        dump: MySQL dump to migrate
        verbose: Print INFO log lines

    Returns:
        True if the session completed
    """
    from dbmigrator.core.orchestrator import MigrationOrchestrator
    from dbmigrator.core.session import SessionStatus
    from dbmigrator.utils.progress import ProgressTracker

    orchestrator = MigrationOrchestrator(config)
    session = await orchestrator.create_session(dump)

    tracker = ProgressTracker(console, verbose=verbose)
    tracker.initialize(f"Migrating {dump.name}")
    stream = await orchestrator.subscribe(session.id)

    async def render() -> None:
        async for line in stream:
            tracker.handle(line)

    consumer = asyncio.create_task(render())
    try:
        await orchestrator.run(session.id)
        await consumer
    finally:
        await stream.aclose()
        await consumer
        summary = tracker.finish()

    console.print(tracker.render_summary(summary))

    if session.status == SessionStatus.COMPLETED:
        console.print(f"\n[bold green]Migration completed successfully![/bold green] {session.output_file}")
        return True

    console.print(f"\n[bold red]Migration failed:[/bold red] {session.error}")
    console.print(f"Session log: {session.log_path}")
    return False


async def _run_cleanup(config: Config, session_id: str) -> bool:
    """Run the teardown of a leftover compose project.

    The teardown log goes to a fresh session of its own, rendered on the
    console as it is written.
    """
    from dbmigrator.core.events import SessionLogger
    from dbmigrator.core.orchestrator import MigrationOrchestrator
    from dbmigrator.utils.progress import ProgressTracker

    orchestrator = MigrationOrchestrator(config)
    record = await orchestrator.create_session(
        Path(session_id),
        file_name=f"cleanup-{session_id}",
        metadata={"cleanup_of": session_id},
    )
    tracker = ProgressTracker(console)
    stream = await orchestrator.subscribe(record.id)

    async def render() -> None:
        async for line in stream:
            tracker.handle(line)

    consumer = asyncio.create_task(render())
    try:
        return await orchestrator.cleanup_manager.cleanup(
            session_id, SessionLogger(orchestrator.broadcaster, record.id)
        )
    finally:
        await stream.aclose()
        await consumer


def _display_config_summary(config: Config) -> None:
    """Display configuration summary.

    Args:
        config: Configuration instance
    """
    table = Table(title="Configuration Summary", show_header=True)
    table.add_column("Category", style="cyan")
    table.add_column("Setting", style="yellow")
    table.add_column("Value", style="green")

    table.add_row("Source", "Host", f"{config.source.host}:{config.source.port}")
    table.add_row("Source", "User", str(config.source.user))
    table.add_row("Source", "Fallback Database", str(config.fallback_database_name))

    table.add_row("Target", "Host", f"{config.target.host}:{config.target.port}")
    table.add_row("Target", "User", str(config.target.user))
    table.add_row("Target", "Database", str(config.target.database))

    table.add_row("Docker", "Compose Path", str(config.docker.compose_path))
    table.add_row("Docker", "Project Prefix", config.docker.project_prefix)

    table.add_row("Transfer", "Workers", str(config.transfer.workers))
    table.add_row("Transfer", "Concurrency", str(config.transfer.concurrency))
    table.add_row("Transfer", "Excluded Tables", config.transfer.exclude_pattern)

    table.add_row("Readiness", "Max Attempts", str(config.readiness.max_attempts))
    table.add_row("Readiness", "Interval", f"{config.readiness.interval:g}s")

    table.add_row("Storage", "Logs", str(config.storage.logs_dir))

    table.add_row("Logging", "Level", config.logging.level.value)
    if config.logging.file:
        table.add_row("Logging", "File", str(config.logging.file))

    console.print("\n")
    console.print(table)


def main() -> None:
    """Main entry point for the CLI."""
    try:
        cli(obj={})
    except Exception as e:
        console.print(f"[bold red]Unexpected error:[/bold red] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
