"""
Functions for formatting and displaying data in the console using Rich.
"""

from pathlib import Path
from typing import Any, Sequence

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from hlsbook.models.config import CODEC_MAP, JobConfig
from hlsbook.models.job import Chapter, ItemStatus, JobReport
from hlsbook.models.stats import FetchStats
from hlsbook.utils.formatting import format_duration, format_size, format_timestamp

STATUS_STYLES = {
    ItemStatus.COMPLETE: ("✓", "green"),
    ItemStatus.FAILED: ("✗", "red"),
    ItemStatus.CANCELLED: ("■", "yellow"),
}


def format_error_with_suggestions(
    error: Exception, context: dict | None = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    error_msg = str(error)

    suggestions_map = {
        "ConfigurationError": [
            "• Check the job file for typos in section or key names.",
            "• Run `hlsbook validate <job.ini>` to see every problem at once.",
        ],
        "MalformedPlaylistError": [
            "• The playlist URL may have expired; capture a fresh one.",
            "• Encrypted playlists (#EXT-X-KEY) are not supported.",
        ],
        "SourceItemBlockedError": [
            "• Some segments could not be fetched after all retries.",
            "• Re-run the same command; completed segments are reused.",
            "• Increase `--delay` or lower `--workers` if the server is throttling.",
        ],
        "DiscontinuityError": [
            "• The segment directory has gaps or extra files.",
            "• Delete the item's work directory and run again.",
        ],
        "EncodingError": [
            "• Make sure ffmpeg and ffprobe are installed and on your PATH.",
            "• Run with -vv to see the full encoder command and output.",
        ],
        "ChapterIntegrityError": [
            "• A measured duration disagrees with the written container.",
            "• Delete the work directory's `mux` folder and run again.",
        ],
        "MetadataValidationError": [
            "• Set `title` and `author` in the [book] section of the job file.",
        ],
        "JobCancelledError": [
            "• Re-run the same command to resume from where it stopped.",
        ],
        "PlaylistLoadError": [
            "• Check the playlist URL or path in the [sources] section.",
            "• The media server might be temporarily unavailable.",
        ],
        "OperationalError": [
            "• The resume ledger could not be written.",
            "• Check free disk space in the work directory.",
        ],
        "TimeoutError": [
            "• A request timed out, which may indicate network throttling.",
            "• Try reducing the number of workers with `--workers`.",
        ],
    }
    suggestions = suggestions_map.get(
        error_type,
        [
            "• An unexpected error occurred.",
            "• Run with `-vv` for a detailed traceback.",
        ],
    )

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(error_msg)

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(Text("\n".join(suggestions)))

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


def print_validation_table(config: JobConfig, job_file: Path):
    """Displays a summary of a validated job."""
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()

    meta = config.metadata
    encoding = config.encoding
    table.add_row("Title:", meta.title or "[red]missing[/red]")
    table.add_row("Author:", meta.author or "[red]missing[/red]")
    table.add_row("Sources:", str(len(config.sources)))
    table.add_row(
        "Encoding:",
        f"{CODEC_MAP[encoding.codec]['name']} {encoding.bitrate}, "
        f"{encoding.channels}, {encoding.sample_rate} Hz",
    )
    table.add_row(
        "Workers:",
        f"{config.fetch.max_workers} segments / {config.fetch.item_workers} items",
    )
    table.add_row("Cover Art:", str(config.cover_art_path) if config.cover_art_path else "✗ None")
    table.add_row("Output:", f"[dim]{config.output}[/dim]")
    table.add_row("Work Dir:", f"[dim]{config.work_dir}[/dim]")

    console.print(
        Panel(
            table,
            title=f"[bold green]✓ Validated Job[/bold green] [dim]{job_file.name}[/dim]",
            border_style="green",
        )
    )


def print_chapter_table(chapters: Sequence[Chapter], title: str = "Chapters"):
    console = Console()
    table = Table(title=title, box=box.SIMPLE_HEAVY)
    table.add_column("#", style="dim", justify="right")
    table.add_column("Start", style="cyan")
    table.add_column("End", style="cyan")
    table.add_column("Length", justify="right")
    table.add_column("Title", style="bold")
    for i, chapter in enumerate(chapters, 1):
        table.add_row(
            str(i),
            format_timestamp(chapter.start_ms),
            format_timestamp(chapter.end_ms),
            format_duration(chapter.duration_ms / 1000),
            chapter.title,
        )
    console.print(table)


def print_tags_panel(path: Path, tags: dict[str, Any], duration: float | None = None):
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()
    for key, value in tags.items():
        if key == "has_cover":
            value = "✓ Embedded" if value else "✗ None"
        table.add_row(f"{key}:", str(value) if value not in ("", None) else "[dim]-[/dim]")
    if duration is not None:
        table.add_row("duration:", format_duration(duration))
    console.print(Panel(table, title=f"[bold]{path.name}[/bold]", border_style="cyan"))


def print_report_table(report: JobReport):
    """Displays the terminal status of every source item."""
    console = Console()
    table = Table(box=box.SIMPLE, show_header=True)
    table.add_column("Item", style="cyan")
    table.add_column("Status")
    for key, status in report.statuses.items():
        symbol, style = STATUS_STYLES.get(status, ("○", "dim"))
        table.add_row(key, f"[{style}]{symbol} {status.value}[/{style}]")
    console.print(table)


def print_summary_panel(
    report: JobReport,
    stats: FetchStats,
    duration_s: float,
):
    """Displays the final summary of a build."""
    console = Console()

    stats_table = Table(show_header=False, box=None, padding=(0, 2))
    stats_table.add_column(style="bold cyan", justify="right", width=20)
    stats_table.add_column(style="white", justify="left")

    complete = sum(1 for s in report.statuses.values() if s is ItemStatus.COMPLETE)
    failed = sum(1 for s in report.statuses.values() if s is ItemStatus.FAILED)
    stats_table.add_row(
        "✓ Items Ready:", f"[bold green]{complete}/{len(report.statuses)}[/bold green]"
    )
    if failed:
        stats_table.add_row("✗ Items Failed:", f"[bold red]{failed}[/bold red]")
    if report.unprocessed:
        stats_table.add_row(
            "○ Unprocessed:", f"[yellow]{report.unprocessed}[/yellow]"
        )

    stats_table.add_row("", "")
    stats_table.add_row("Segments Fetched:", str(stats.segments_fetched))
    if stats.segments_skipped_existing:
        stats_table.add_row(
            "Segments Reused:", f"[yellow]{stats.segments_skipped_existing}[/yellow]"
        )
    if stats.retries:
        stats_table.add_row("Retries:", str(stats.retries))
    if stats.bytes_downloaded:
        stats_table.add_row("Downloaded:", format_size(stats.bytes_downloaded))
    if stats.peak_speed_bps:
        stats_table.add_row(
            "Peak Speed:", f"{stats.peak_speed_bps / (1024 * 1024):.1f} MB/s"
        )
    stats_table.add_row("Elapsed:", format_duration(duration_s))

    if report.output_path:
        stats_table.add_row("", "")
        stats_table.add_row("Chapters:", str(len(report.chapters)))
        if report.chapters:
            stats_table.add_row(
                "Length:", format_duration(report.chapters[-1].end_ms / 1000)
            )
        stats_table.add_row("Output:", f"[green]{report.output_path}[/green]")
    elif report.first_error is not None:
        stats_table.add_row("", "")
        stats_table.add_row(
            "First Error:", f"[red]{type(report.first_error).__name__}[/red]"
        )
        stats_table.add_row("", Text(str(report.first_error), style="red"))

    if report.succeeded:
        title, border = "[bold green]✓ Audiobook Complete[/bold green]", "green"
    else:
        title, border = "[bold red]✗ Build Incomplete[/bold red]", "red"
    console.print(Panel(stats_table, title=title, border_style=border, expand=False))
