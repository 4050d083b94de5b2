"""
Manages a Rich Live display for a running assembly job: overall item progress,
per-item segment bars and real-time fetch statistics.
"""

import asyncio
import logging
from datetime import datetime

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
)
from rich.table import Table
from rich.text import Text

log = logging.getLogger("hlsbook")


class ProgressManager:
    """
    Live progress for one job. All update methods are no-ops when quiet, so
    pipeline code can call them unconditionally.
    """

    def __init__(self, console: Console, quiet: bool = False):
        self.console = console
        self.quiet = quiet

        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}", justify="left"),
            BarColumn(bar_width=24),
            MofNCompleteColumn(),
            "•",
            TimeRemainingColumn(),
            console=console,
            transient=False,
        )

        self.overall_progress = Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(bar_width=40),
            "[progress.percentage]{task.percentage:>3.0f}%",
            console=console,
        )

        self._live: Live | None = None
        self._layout: Layout | None = None

        self._stats = {
            "total_items": 0,
            "completed": 0,
            "failed": 0,
            "active_items": 0,
            "start_time": None,
            "current_speed": 0.0,
            "peak_speed": 0.0,
            "phase": "Fetching segments",
        }
        self._overall_task_id: TaskID | None = None
        self._active_tasks: dict[TaskID, str] = {}

    def _create_layout(self) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="stats", size=7),
            Layout(name="progress", ratio=1),
        )
        return layout

    def _generate_header(self) -> Panel:
        if self._stats["start_time"]:
            elapsed = (datetime.now() - self._stats["start_time"]).total_seconds()
            elapsed_str = (
                f"{int(elapsed // 3600):02d}:"
                f"{int((elapsed % 3600) // 60):02d}:{int(elapsed % 60):02d}"
            )
        else:
            elapsed_str = "00:00:00"
        header_text = Text()
        header_text.append("hlsbook ", style="bold cyan")
        header_text.append("│ ", style="dim")
        header_text.append(self._stats["phase"], style="bold")
        header_text.append(" │ ", style="dim")
        header_text.append(f"Elapsed: {elapsed_str}", style="yellow")
        if self._stats["current_speed"] > 0:
            speed_mb = self._stats["current_speed"] / (1024 * 1024)
            header_text.append(" │ ", style="dim")
            header_text.append(f"{speed_mb:.1f} MB/s", style="magenta")
        return Panel(header_text, border_style="cyan")

    def _generate_stats_panel(self) -> Panel:
        stats_table = Table.grid(padding=(0, 2))
        stats_table.add_column(style="bold cyan", justify="right")
        stats_table.add_column(style="white")
        stats_table.add_column(style="bold cyan", justify="right")
        stats_table.add_column(style="white")
        remaining = (
            self._stats["total_items"] - self._stats["completed"] - self._stats["failed"]
        )
        stats_table.add_row(
            "Ready:",
            f"[green]{self._stats['completed']}[/green]",
            "Failed:",
            f"[red]{self._stats['failed']}[/red]",
        )
        stats_table.add_row(
            "Active:",
            f"[cyan]{self._stats['active_items']}[/cyan]",
            "Remaining:",
            f"[cyan]{remaining}[/cyan]",
        )
        combined = Table.grid()
        combined.add_row(stats_table)
        if self._overall_task_id is not None:
            combined.add_row(self.overall_progress)
        return Panel(combined, title="[bold]Job[/bold]", border_style="blue")

    def _generate_progress_panel(self) -> Panel:
        if not self._active_tasks:
            return Panel(
                Text("Waiting for segments...", style="dim italic", justify="center"),
                title="[bold]Active Items[/bold]",
                border_style="green",
            )
        return Panel(
            self.progress,
            title=f"[bold]Active Items ({len(self._active_tasks)})[/bold]",
            border_style="green",
        )

    def _update_display(self):
        """Updates all panels in the layout, letting the Live object handle refresh rate."""
        if self.quiet or not self._layout:
            return
        self._layout["header"].update(self._generate_header())
        self._layout["stats"].update(self._generate_stats_panel())
        self._layout["progress"].update(self._generate_progress_panel())

    def initialize_job(self, total_items: int):
        self._stats["total_items"] = total_items
        self._stats["start_time"] = datetime.now()
        if not self.quiet:
            self._overall_task_id = self.overall_progress.add_task(
                "Items", total=total_items, start=True
            )
        self._update_display()

    def set_phase(self, phase: str):
        self._stats["phase"] = phase
        self._update_display()

    def update_speed(self, bytes_per_second: float):
        self._stats["current_speed"] = bytes_per_second
        self._stats["peak_speed"] = max(self._stats["peak_speed"], bytes_per_second)
        self._update_display()

    def add_item_task(self, item_key: str, total: int) -> TaskID | None:
        if self.quiet:
            return None
        description = item_key if len(item_key) <= 40 else item_key[:38] + "…"
        task_id = self.progress.add_task(description, total=total, start=True)
        self._active_tasks[task_id] = item_key
        self._stats["active_items"] = len(self._active_tasks)
        self._update_display()
        return task_id

    def advance_item_task(self, task_id: TaskID | None, count: int = 1):
        if task_id is not None and not self.quiet:
            self.progress.advance(task_id, count)
            self._update_display()

    def finish_item_task(self, task_id: TaskID | None, success: bool = True):
        if task_id is None or self.quiet:
            return
        if task_id in self._active_tasks:
            self.progress.remove_task(task_id)
            del self._active_tasks[task_id]
        self._stats["active_items"] = len(self._active_tasks)
        if not success:
            log.debug(f"Segment fetch for task {task_id} ended with failures")
        self._update_display()

    def advance_overall(self, success: bool):
        if success:
            self._stats["completed"] += 1
        else:
            self._stats["failed"] += 1
        if self._overall_task_id is not None and not self.quiet:
            self.overall_progress.update(
                self._overall_task_id,
                completed=self._stats["completed"] + self._stats["failed"],
            )
        self._update_display()

    def get_statistics(self) -> dict:
        return self._stats.copy()

    async def __aenter__(self):
        if self.quiet:
            return self
        self._layout = self._create_layout()
        self._update_display()
        self._live = Live(
            self._layout,
            console=self.console,
            refresh_per_second=8,
            vertical_overflow="visible",
        )
        self._live.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._live and not self.quiet:
            await asyncio.sleep(0.2)
            self._live.stop()
