"""Queue progress summaries rendered with rich."""

import asyncio
from dataclasses import dataclass
from typing import Optional

from rich.console import Console
from rich.live import Live
from rich.table import Table

from .models import JobState
from .queue import JobQueue


@dataclass
class QueueStats:
    """
    Job counts by state plus imported/duplicate totals of completed jobs.

    Attributes:
        total_jobs: Total number of known jobs
        pending: Jobs waiting for a worker
        running: Jobs being executed
        completed: Successfully completed jobs
        failed: Jobs that failed permanently
        imported: Records persisted by completed jobs
        duplicates: Duplicates reported by completed jobs
        stale: Running jobs whose last checkpoint is too old
    """
    total_jobs: int = 0
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    imported: int = 0
    duplicates: int = 0
    stale: int = 0

    def completion_percentage(self) -> float:
        if self.total_jobs == 0:
            return 0.0
        return (self.completed + self.failed) / self.total_jobs * 100


class ProgressTracker:
    """
    Summarize a job queue.

    Example:
        >>> tracker = ProgressTracker(queue)
        >>> tracker.print_summary()  # One-time summary
        >>> await tracker.watch()    # Live updates until the queue drains
    """

    def __init__(self, queue: JobQueue, console: Optional[Console] = None):
        self.queue = queue
        self.console = console or Console()

    def compute_stats(self) -> QueueStats:
        jobs = list(self.queue.jobs.values())
        completed = [j for j in jobs if j.state is JobState.COMPLETED]
        return QueueStats(
            total_jobs=len(jobs),
            pending=sum(1 for j in jobs if j.state is JobState.PENDING),
            running=sum(1 for j in jobs if j.state is JobState.RUNNING),
            completed=len(completed),
            failed=sum(1 for j in jobs if j.state is JobState.FAILED),
            imported=sum((j.result or {}).get("imported", 0) for j in completed),
            duplicates=sum((j.result or {}).get("duplicates", 0) for j in completed),
            stale=len(self.queue.find_stale()),
        )

    def build_table(self, stats: QueueStats) -> Table:
        table = Table(title="Ingestion Queue Summary", show_header=True)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="magenta", justify="right")

        table.add_row("Total Jobs", str(stats.total_jobs))
        table.add_row("Pending", str(stats.pending))
        table.add_row("Running", str(stats.running))
        table.add_row("Completed", str(stats.completed))
        table.add_row("Failed", str(stats.failed))
        if stats.stale:
            table.add_row("Stale", f"[red]{stats.stale}[/red]")
        table.add_row("", "")
        table.add_row("Records Imported", str(stats.imported))
        table.add_row("Duplicates", str(stats.duplicates))
        table.add_row("Progress", f"{stats.completion_percentage():.1f}%")
        return table

    def print_summary(self) -> None:
        self.console.print(self.build_table(self.compute_stats()))

    async def watch(self, interval: float = 1.0) -> None:
        """Render a live table until no job is pending or running."""
        with Live(console=self.console, refresh_per_second=2) as live:
            while True:
                stats = self.compute_stats()
                live.update(self.build_table(stats))
                if stats.pending == 0 and stats.running == 0:
                    break
                await asyncio.sleep(interval)
