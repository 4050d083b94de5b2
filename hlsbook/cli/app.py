"""
Defines the command-line interface for the application using Typer.
"""

import asyncio
import logging
import shutil
import signal
import time
from functools import partial
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from hlsbook import __version__
from hlsbook.core import AssemblyPipeline, SourceItemProcessor
from hlsbook.exceptions import HlsBookError
from hlsbook.media import (
    AudioExtractor,
    ChapterPlanner,
    ContainerMuxer,
    FFmpegEncoder,
    Mp4Tagger,
    PlaylistResolver,
    SegmentFetcher,
    StreamAssembler,
)
from hlsbook.media.playlist import load_playlist
from hlsbook.models.config import JobConfig
from hlsbook.models.stats import FetchStats
from hlsbook.net.session import close_connection_pool, get_connection_pool
from hlsbook.storage import ConfigManager, SegmentLedger
from hlsbook.utils.cancellation import CancellationToken

from .formatters import (
    print_chapter_table,
    print_report_table,
    print_summary_panel,
    print_tags_panel,
    print_validation_table,
)
from .progress_manager import ProgressManager

console = Console()

logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            show_level=False,
            markup=True,
        )
    ],
)
log = logging.getLogger("hlsbook")

app = typer.Typer(
    name="hlsbook",
    help=(
        "Build chaptered M4B audiobooks from HLS lecture playlists. Use 'hlsbook"
        " <command> --help' for more info."
    ),
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)

JOB_FILE_ARGUMENT = typer.Argument(
    ..., help="Path to the job file (INI).", metavar="JOB_FILE"
)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase logging verbosity (-vv for debug).",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", is_eager=True
    ),
):
    """HLS to M4B audiobook builder"""
    if version:
        console.print(f"[bold]hlsbook[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    log_level = "INFO"
    if verbose >= 2:
        log_level = "DEBUG"
    logging.getLogger("hlsbook").setLevel(log_level)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


def _parse_pairs(values: list[str] | None, what: str) -> dict[str, str]:
    pairs = {}
    for value in values or []:
        key, sep, rest = value.partition("=")
        if not sep or not key.strip() or not rest.strip():
            console.print(f"[red]✗ Invalid {what} '{value}'. Use KEY=VALUE.[/red]")
            raise typer.Exit(code=1)
        pairs[key.strip()] = rest.strip()
    return pairs


@app.command()
def init(
    job_file: Path = JOB_FILE_ARGUMENT,
    title: str = typer.Option("", "--title", "-t", help="Book title."),
    author: str = typer.Option("", "--author", "-a", help="Book author."),
    sources: list[str] | None = typer.Option(  # noqa: B008
        None,
        "--source",
        "-s",
        help="A source as KEY=PLAYLIST_URI; repeat in playback order.",
    ),
    cover: Path | None = typer.Option(None, "--cover", help="Cover art image (JPEG/PNG)."),
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite an existing job file without asking."
    ),
):
    """Create a job file template."""
    if (
        job_file.exists()
        and not force
        and not typer.confirm(f"'{job_file}' already exists. Overwrite it?")
    ):
        raise typer.Abort()

    settings = {
        "title": title,
        "author": author,
        "sources": _parse_pairs(sources, "source"),
    }
    if cover:
        settings["cover_art"] = cover
    ConfigManager(job_file).save_template(settings)
    console.print(f"\n[bold green]✓ Job file saved to '{job_file}'[/bold green]")
    if not settings["sources"]:
        console.print("[dim]Add your playlists under the \\[sources] section.[/dim]")
    console.print(f"Next: [cyan]hlsbook validate {job_file}[/cyan]")


@app.command()
def validate(job_file: Path = JOB_FILE_ARGUMENT):
    """Check a job file without fetching anything."""
    try:
        config = ConfigManager(job_file).load_job()
    except HlsBookError as e:
        console.print(f"[bold red]✗ {escape(str(e))}[/bold red]")
        raise typer.Exit(code=1) from e

    print_validation_table(config, job_file)
    missing = config.metadata.missing_required()
    if missing:
        console.print(
            f"[yellow]⚠️  Required metadata is empty: {', '.join(missing)}. "
            "The build will stop before fetching.[/yellow]"
        )
    for tool in ("ffmpeg", "ffprobe"):
        if shutil.which(tool) is None:
            console.print(f"[yellow]⚠️  '{tool}' was not found on PATH.[/yellow]")


async def _run_build(config: JobConfig, quiet: bool):
    """Wires the pipeline for one job and runs it to completion."""
    job = config.to_job()
    stats = FetchStats()
    cancel = CancellationToken()
    encoder = FFmpegEncoder()

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.cancel, "interrupted by user")
        handles_sigint = True
    except (NotImplementedError, RuntimeError):
        log.debug("Signal handlers are not supported here; Ctrl+C aborts immediately.")
        handles_sigint = False

    async with ProgressManager(console=console, quiet=quiet) as progress_manager:
        session = await get_connection_pool(config.fetch.max_workers)
        try:
            ledger = SegmentLedger(job.ledger_path)
            fetcher = SegmentFetcher(
                session=session,
                max_workers=config.fetch.max_workers,
                request_delay=config.fetch.request_delay,
                retry_budget=config.fetch.retry_budget,
                backoff_base=config.fetch.backoff_base,
                ledger=ledger,
                stats=stats,
                progress_manager=progress_manager,
            )
            processor = SourceItemProcessor(
                job,
                PlaylistResolver(config.fetch.min_bandwidth, config.fetch.min_height),
                fetcher,
                StreamAssembler(encoder),
                AudioExtractor(encoder),
                ledger=ledger,
                loader=partial(load_playlist, session=session),
            )
            pipeline = AssemblyPipeline(
                job,
                processor,
                ChapterPlanner(config.chapter_title_overrides),
                ContainerMuxer(encoder, Mp4Tagger(), cancel),
                item_workers=config.fetch.item_workers,
                cancel=cancel,
                progress=progress_manager,
            )
            report = await pipeline.run()
        finally:
            await close_connection_pool()
            if handles_sigint:
                loop.remove_signal_handler(signal.SIGINT)
    return report, stats


@app.command()
def build(
    job_file: Path = JOB_FILE_ARGUMENT,
    workers: int | None = typer.Option(
        None, "-w", "--workers", help="Concurrent segment downloads per item (default 8)."
    ),
    item_workers: int | None = typer.Option(
        None, "--item-workers", help="Source items processed at once (default 2)."
    ),
    delay: float | None = typer.Option(
        None, "--delay", help="Seconds between requests from one worker (default 0.25)."
    ),
    retries: int | None = typer.Option(
        None, "--retries", help="Attempts per segment before giving up (default 4)."
    ),
    output: Path | None = typer.Option(
        None, "-o", "--output", help="Override the output .m4b path."
    ),
    work_dir: Path | None = typer.Option(
        None, "--work-dir", help="Override the directory for intermediate files."
    ),
    quiet: bool = typer.Option(
        False, "--quiet", "-q", help="Disable the live progress display."
    ),
):
    """Fetch every source and build the audiobook."""
    cli_options = {
        "max_workers": workers,
        "item_workers": item_workers,
        "request_delay": delay,
        "retry_budget": retries,
        "output": output,
        "work_dir": work_dir,
    }
    try:
        config = ConfigManager(job_file).load_job(cli_options)
    except HlsBookError as e:
        console.print(f"[bold red]Error: {escape(str(e))}[/bold red]")
        raise typer.Exit(code=1) from e

    console.print(
        f"[bold cyan]Building '{config.metadata.title or config.output.name}' "
        f"from {len(config.sources)} sources...[/bold cyan]"
    )
    start_time = time.monotonic()
    report, stats = asyncio.run(_run_build(config, quiet))
    duration = time.monotonic() - start_time

    print_report_table(report)
    if report.chapters:
        print_chapter_table(report.chapters)
    print_summary_panel(report, stats, duration)
    if not report.succeeded:
        raise typer.Exit(code=1)


@app.command()
def inspect(
    path: Path = typer.Argument(..., help="An M4B/M4A file to inspect."),
):
    """Show the tags and chapter table of a built audiobook."""
    if not path.is_file():
        console.print(f"[red]✗ File not found: {path}[/red]")
        raise typer.Exit(code=1)

    encoder = FFmpegEncoder()
    try:
        tags = Mp4Tagger().read_tags(path)
        chapters = encoder.read_chapters(path)
        duration = encoder.probe_duration(path)
    except HlsBookError as e:
        console.print(f"[bold red]Error: {escape(str(e))}[/bold red]")
        raise typer.Exit(code=1) from e

    print_tags_panel(path, tags, duration)
    if chapters:
        print_chapter_table(chapters)
    else:
        console.print("[yellow]No chapters found.[/yellow]")
