"""Console rendering of a migration's event stream."""

import time
from typing import Any, Dict, Optional

from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table
from rich.text import Text

from dbmigrator.core.events import parse_line
from dbmigrator.logging import get_logger

LEVEL_STYLES = {
    "INFO": "white",
    "WARN": "yellow",
    "ERROR": "bold red",
}


class ProgressTracker:
    """Prints session log events and drives a progress bar from status events."""

    def __init__(self, console: Optional[Console] = None, verbose: bool = True) -> None:
        """Initialize progress tracker.

        Args:
            console: Rich console for output
            verbose: Print INFO log lines, not just warnings and errors
        """
        self.console = console or Console()
        self.verbose = verbose
        self.logger = get_logger("progress_tracker")

        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>3.0f}%"),
            TimeElapsedColumn(),
            console=self.console,
        )
        self.main_task: Optional[TaskID] = None
        self.start_time: Optional[float] = None

        self.status: Optional[str] = None
        self.percent = 0
        self.output_file: Optional[str] = None
        self.error: Optional[str] = None
        self.level_counts: Dict[str, int] = {}

    def initialize(self, description: str) -> None:
        """Start the progress display.

        Args:
            description: Label shown next to the bar
        """
        self.start_time = time.monotonic()
        self.main_task = self.progress.add_task(description, total=100)
        self.progress.start()

    def handle(self, line: str) -> None:
        """Render one wire line."""
        event = parse_line(line)
        if event.get("type") == "status":
            self._handle_status(event.get("data", {}))
        else:
            self._handle_log(event)

    def _handle_status(self, data: Dict[str, Any]) -> None:
        self.status = data.get("status", self.status)
        self.percent = int(data.get("progress", self.percent))
        self.output_file = data.get("outputFile", self.output_file)
        self.error = data.get("error", self.error)

        if self.main_task is not None:
            self.progress.update(
                self.main_task,
                completed=self.percent,
                description=f"Migration {self.status}",
            )

    def _handle_log(self, event: Dict[str, Any]) -> None:
        level = event.get("level", "INFO")
        self.level_counts[level] = self.level_counts.get(level, 0) + 1
        if level == "INFO" and not self.verbose:
            return

        style = LEVEL_STYLES.get(level, "white")
        self.progress.console.print(
            Text.assemble((f"[{level}] ", style), str(event.get("message", ""))),
            highlight=False,
        )

    def finish(self) -> Dict[str, Any]:
        """Stop the display and return a summary.

        Returns:
            Final status, output, error and log level counts
        """
        self.progress.stop()
        elapsed = time.monotonic() - self.start_time if self.start_time else 0.0

        summary = {
            "status": self.status,
            "progress": self.percent,
            "output_file": self.output_file,
            "error": self.error,
            "warnings": self.level_counts.get("WARN", 0),
            "errors": self.level_counts.get("ERROR", 0),
            "elapsed_time": elapsed,
        }
        self.logger.debug("progress_finished", **summary)
        return summary

    def render_summary(self, summary: Dict[str, Any]) -> Table:
        """Summary table for the console."""
        table = Table(title="Migration Summary", show_header=False)
        table.add_column("Label", style="cyan")
        table.add_column("Value", style="green")

        table.add_row("Status", str(summary.get("status")))
        table.add_row("Progress", f"{summary.get('progress', 0)}%")
        if summary.get("output_file"):
            table.add_row("Output", str(summary["output_file"]))
        if summary.get("error"):
            table.add_row("Error", f"[red]{summary['error']}[/red]")
        table.add_row("Warnings", str(summary.get("warnings", 0)))
        table.add_row("Errors", str(summary.get("errors", 0)))
        table.add_row("Elapsed", f"{summary.get('elapsed_time', 0):.1f}s")
        return table
