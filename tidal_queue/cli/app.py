"""
Defines the command-line interface for the application using Typer.
Operators use it to submit and inspect jobs, run the worker, and push files
to the download server.
"""

import asyncio
import importlib
import logging
import os
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional

import aiofiles
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from tidal_queue import __version__
from tidal_queue.core.queue_manager import JobQueue
from tidal_queue.core.worker import QueueWorker
from tidal_queue.exceptions import ConfigurationError, TidalQueueError
from tidal_queue.models.config import QueueConfig
from tidal_queue.models.job import JobPriority, JobStatus
from tidal_queue.storage.config_manager import ConfigManager
from tidal_queue.storage.store import create_store
from tidal_queue.transport.http_client import RetryingHttpClient
from tidal_queue.transport.uploader import (
    ChunkedUploader,
    TrackUploadRequest,
    UploadProgress,
)
from tidal_queue.utils.formatting import format_eta, format_speed
from tidal_queue.utils.structured_logger import create_structured_logger

from .formatters import (
    describe_status,
    format_error_with_suggestions,
    print_config,
    print_job_details,
    print_jobs_table,
    print_snapshot_warning,
    print_stats_table,
    print_upload_result,
)

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
log = logging.getLogger("tidal_queue")

app = typer.Typer(
    name="tidal-queue",
    help=(
        "Server-side download queue and upload tool. Use 'tidal-queue"
        " <command> --help' for more info."
    ),
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)


def get_config_dir() -> Path:
    if os.name == "nt":
        base_dir = Path(os.getenv("APPDATA", "~\\AppData\\Roaming"))
    else:
        base_dir = Path(os.getenv("XDG_CONFIG_HOME", "~/.config"))
    return base_dir.expanduser() / "tidal-queue"


CONFIG_FILE = get_config_dir() / "config.ini"

# Set by the main callback for the command being run
state: dict[str, Any] = {"config_file": CONFIG_FILE}


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
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        envvar="TIDAL_QUEUE_CONFIG",
        help="Path to the configuration file.",
    ),
    show_config: bool = typer.Option(
        False, "--show-config", help="Display the effective configuration."
    ),
):
    """Tidal download queue CLI"""
    if version:
        console.print(f"[bold]tidal-queue[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    log_level = "INFO"
    if verbose >= 2:
        log_level = "DEBUG"
    logging.getLogger("tidal_queue").setLevel(log_level)

    state["config_file"] = config_file or CONFIG_FILE

    if show_config:
        config = _load_config()
        print_config(state["config_file"], config)
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


def _load_config(cli_options: Optional[dict[str, Any]] = None) -> QueueConfig:
    try:
        return ConfigManager(state["config_file"]).load_config(cli_options)
    except ConfigurationError as e:
        console.print(format_error_with_suggestions(e))
        raise typer.Exit(code=1) from e


def _run(coro) -> Any:
    """Runs a coroutine, rendering application errors as a panel."""
    try:
        return asyncio.run(coro)
    except TidalQueueError as e:
        console.print(format_error_with_suggestions(e))
        raise typer.Exit(code=1) from e


@asynccontextmanager
async def open_queue(config: QueueConfig) -> AsyncIterator[JobQueue]:
    """Builds the queue for one command and releases its store afterwards."""
    log_dir = Path(config.log_dir) if config.log_dir else None
    events_base, job_events, _ = create_structured_logger(
        log_dir=log_dir, enable_json=log_dir is not None
    )
    events_base.set_session_context(queue_key=config.queue_key)
    store = create_store(config)
    try:
        yield JobQueue(store, queue_key=config.queue_key, events=job_events)
    finally:
        await store.close()
        events_base.close()


@app.command()
def init(
    redis_url: str = typer.Option(
        "redis://localhost:6379", "--redis-url", help="Redis connection URL."
    ),
    redis_disabled: bool = typer.Option(
        False, "--no-redis", help="Keep the queue in process memory only."
    ),
    server_url: str = typer.Option(
        "http://localhost:5000", "--server-url", help="Base URL of the download server."
    ),
    max_concurrent: int = typer.Option(
        6, "--max-concurrent", "-w", help="Jobs the worker runs at once."
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite an existing configuration."
    ),
):
    """Write a configuration file."""
    config_file: Path = state["config_file"]
    if (
        config_file.exists()
        and not force
        and not typer.confirm("Configuration file already exists. Overwrite it?")
    ):
        raise typer.Abort()

    try:
        ConfigManager(config_file).save_new_config(
            {
                "redis_url": redis_url,
                "redis_disabled": redis_disabled,
                "server_url": server_url,
                "max_concurrent": max_concurrent,
            }
        )
    except ConfigurationError as e:
        console.print(format_error_with_suggestions(e))
        raise typer.Exit(code=1) from e
    console.print(f"[bold green]✓ Configuration saved to '{config_file}'[/bold green]")


@app.command(name="enqueue-track")
def enqueue_track(
    track_id: int = typer.Argument(..., help="Catalog id of the track."),
    quality: str = typer.Option(
        "LOSSLESS",
        "--quality",
        "-q",
        help="LOW, HIGH, LOSSLESS or HI_RES_LOSSLESS.",
    ),
    priority: JobPriority = typer.Option(
        JobPriority.NORMAL, "--priority", "-p", help="Scheduling priority."
    ),
    album_title: Optional[str] = typer.Option(None, "--album", help="Album title."),
    artist_name: Optional[str] = typer.Option(None, "--artist", help="Artist name."),
    track_title: Optional[str] = typer.Option(None, "--title", help="Track title."),
    track_number: Optional[int] = typer.Option(None, "--track-number"),
    cover_url: Optional[str] = typer.Option(None, "--cover-url"),
    max_retries: Optional[int] = typer.Option(
        None, "--max-retries", help="Automatic retries (default from config)."
    ),
    allow_duplicate: bool = typer.Option(
        False, "--allow-duplicate", help="Skip the duplicate-submission check."
    ),
):
    """Queue a single track for download."""
    config = _load_config()

    async def _enqueue():
        payload = {
            "type": "track",
            "track_id": track_id,
            "quality": quality.upper(),
            "album_title": album_title,
            "artist_name": artist_name,
            "track_title": track_title,
            "track_number": track_number,
            "cover_url": cover_url,
        }
        async with open_queue(config) as queue:
            return await queue.enqueue_job(
                payload,
                priority=priority,
                max_retries=config.default_max_retries
                if max_retries is None
                else max_retries,
                check_duplicate=not allow_duplicate,
            )

    job_id = _run(_enqueue())
    console.print(f"[green]✓ Queued track {track_id}[/green] as [cyan]{job_id}[/cyan]")


@app.command(name="enqueue-album")
def enqueue_album(
    album_id: int = typer.Argument(..., help="Catalog id of the album."),
    quality: str = typer.Option(
        "LOSSLESS",
        "--quality",
        "-q",
        help="LOW, HIGH, LOSSLESS or HI_RES_LOSSLESS.",
    ),
    priority: JobPriority = typer.Option(
        JobPriority.NORMAL, "--priority", "-p", help="Scheduling priority."
    ),
    album_title: Optional[str] = typer.Option(None, "--album", help="Album title."),
    artist_name: Optional[str] = typer.Option(None, "--artist", help="Artist name."),
    max_retries: Optional[int] = typer.Option(None, "--max-retries"),
    allow_duplicate: bool = typer.Option(False, "--allow-duplicate"),
):
    """Queue a whole album for download."""
    config = _load_config()

    async def _enqueue():
        payload = {
            "type": "album",
            "album_id": album_id,
            "quality": quality.upper(),
            "album_title": album_title,
            "artist_name": artist_name,
        }
        async with open_queue(config) as queue:
            return await queue.enqueue_job(
                payload,
                priority=priority,
                max_retries=config.default_max_retries
                if max_retries is None
                else max_retries,
                check_duplicate=not allow_duplicate,
            )

    job_id = _run(_enqueue())
    console.print(f"[green]✓ Queued album {album_id}[/green] as [cyan]{job_id}[/cyan]")


@app.command()
def jobs(
    status: Optional[JobStatus] = typer.Option(
        None, "--status", "-s", help="Only show jobs in this state."
    ),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum rows to show."),
):
    """List jobs in the queue, newest first."""
    config = _load_config()

    async def _list():
        async with open_queue(config) as queue:
            return await queue.get_queue_snapshot(), queue.now()

    snapshot, now_ms = _run(_list())
    print_snapshot_warning(snapshot)
    selected = [j for j in snapshot.jobs if status is None or j.status == status]
    selected.sort(key=lambda j: j.created_at, reverse=True)
    print_jobs_table(selected[:limit], now_ms, title=f"Download Queue ({snapshot.backend})")


@app.command()
def show(job_id: str = typer.Argument(..., help="The job to display.")):
    """Show the details of one job."""
    config = _load_config()

    async def _show():
        async with open_queue(config) as queue:
            return await queue.get_job(job_id)

    job = _run(_show())
    if job is None:
        console.print(f"[red]✗ Job '{job_id}' not found.[/red]")
        raise typer.Exit(code=1)
    print_job_details(job)


@app.command()
def cancel(job_id: str = typer.Argument(..., help="The job to cancel.")):
    """Cancel a queued job, or ask a running one to stop."""
    config = _load_config()

    async def _cancel():
        async with open_queue(config) as queue:
            return await queue.request_cancellation(job_id)

    if _run(_cancel()):
        console.print(f"[green]✓ Cancellation recorded for {job_id}.[/green]")
    else:
        console.print(
            f"[yellow]Job '{job_id}' was not found or has already finished.[/yellow]"
        )
        raise typer.Exit(code=1)


@app.command()
def retry(job_id: str = typer.Argument(..., help="The job to retry.")):
    """Re-queue a failed or cancelled job from scratch."""
    config = _load_config()

    async def _retry():
        async with open_queue(config) as queue:
            return await queue.request_retry(job_id)

    if _run(_retry()):
        console.print(f"[green]✓ Job {job_id} queued again.[/green]")
    else:
        console.print(
            f"[yellow]Job '{job_id}' was not found or is not failed or "
            "cancelled.[/yellow]"
        )
        raise typer.Exit(code=1)


@app.command()
def delete(
    job_id: str = typer.Argument(..., help="The job to delete."),
    force: bool = typer.Option(
        False, "--force", "-f", help="Bypass the confirmation prompt."
    ),
):
    """Delete a job record."""
    if not force and not typer.confirm(f"Delete job '{job_id}'?"):
        console.print("[yellow]Operation cancelled.[/yellow]")
        raise typer.Abort()
    config = _load_config()

    async def _delete():
        async with open_queue(config) as queue:
            return await queue.delete_job(job_id)

    if _run(_delete()):
        console.print(f"[green]✓ Job {job_id} deleted.[/green]")
    else:
        console.print(f"[yellow]Job '{job_id}' not found.[/yellow]")
        raise typer.Exit(code=1)


@app.command()
def stats(
    as_json: bool = typer.Option(
        False, "--json", help="Print machine-readable JSON instead of tables."
    ),
):
    """Show job counts and queue metrics."""
    config = _load_config()

    async def _stats():
        async with open_queue(config) as queue:
            snapshot = await queue.get_queue_snapshot()
            return (
                snapshot,
                await queue.get_queue_stats(),
                await queue.get_metrics(),
            )

    snapshot, queue_stats, metrics = _run(_stats())
    if as_json:
        console.print_json(
            data={
                "backend": snapshot.backend,
                "warning": snapshot.warning,
                "stats": queue_stats.to_dict(),
                "metrics": metrics.to_dict(),
            }
        )
        return
    print_snapshot_warning(snapshot)
    print_stats_table(queue_stats, metrics)


@app.command()
def cleanup(
    older_than_hours: float = typer.Option(
        24.0, "--older-than", help="Delete finished jobs older than this many hours."
    ),
    stuck_minutes: Optional[float] = typer.Option(
        None,
        "--stuck",
        help="Also fail jobs processing without updates for this many minutes.",
    ),
):
    """Delete old finished jobs and, optionally, fail stuck ones."""
    config = _load_config()

    async def _cleanup():
        async with open_queue(config) as queue:
            stuck = 0
            if stuck_minutes is not None:
                stuck = await queue.cleanup_stuck_jobs(int(stuck_minutes * 60_000))
            removed = await queue.cleanup_old_jobs(int(older_than_hours * 3_600_000))
            return removed, stuck

    removed, stuck = _run(_cleanup())
    console.print(f"[green]✓ Removed {removed} old job(s).[/green]")
    if stuck_minutes is not None:
        console.print(f"[green]✓ Failed {stuck} stuck job(s).[/green]")


@app.command()
def recover():
    """Fail jobs left processing by a crashed worker."""
    config = _load_config()

    async def _recover():
        async with open_queue(config) as queue:
            return await queue.initialize_queue()

    recovered = _run(_recover())
    console.print(f"[green]✓ Recovered {recovered} job(s).[/green]")


def load_executor(target: str, config: QueueConfig):
    """
    Resolves 'package.module:factory' and calls the factory with the config.

    Raises:
        ConfigurationError: If the factory cannot be imported.
    """
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(
            f"Executor must be given as 'module:factory', but got: {target!r}"
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import executor module '{module_name}': {e}") from e
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigurationError(f"'{attr}' in '{module_name}' is not callable.")
    return factory(config)


@app.command()
def worker(
    executor: str = typer.Option(
        ...,
        "--executor",
        "-e",
        envvar="TIDAL_QUEUE_EXECUTOR",
        help="Download executor factory as 'module:function'.",
    ),
    max_concurrent: Optional[int] = typer.Option(
        None, "--max-concurrent", "-w", help="Jobs processed at once."
    ),
):
    """Run the queue worker until interrupted."""
    config = _load_config({"max_concurrent": max_concurrent})

    async def _work():
        download_executor = load_executor(executor, config)
        async with open_queue(config) as queue:
            queue_worker = QueueWorker(
                queue,
                download_executor,
                max_concurrent=config.max_concurrent,
                album_concurrency=config.album_concurrency,
                poll_interval=config.poll_interval,
                processing_timeout_ms=config.processing_timeout_ms,
                cleanup_age_ms=config.cleanup_age_ms,
            )
            await queue_worker.start()
            console.print(describe_status(queue_worker.get_status()))
            try:
                await queue_worker.wait()
            finally:
                await queue_worker.stop()

    _run(_work())


@app.command()
def upload(
    file: Path = typer.Argument(
        ..., exists=True, dir_okay=False, readable=True, help="Audio file to upload."
    ),
    track_id: int = typer.Option(..., "--track-id", help="Catalog id of the track."),
    album_title: str = typer.Option(..., "--album", help="Album title."),
    artist_name: str = typer.Option(..., "--artist", help="Artist name."),
    track_title: Optional[str] = typer.Option(None, "--title", help="Track title."),
    quality: str = typer.Option("LOSSLESS", "--quality", "-q"),
    conflict: str = typer.Option(
        "overwrite_if_different",
        "--conflict",
        help="overwrite, skip, rename or overwrite_if_different.",
    ),
    chunks: Optional[bool] = typer.Option(
        None, "--chunks/--no-chunks", help="Force chunked or single-request upload."
    ),
    check_existing: bool = typer.Option(
        False, "--check-existing", help="Skip the upload if the server has the file."
    ),
    server_url: Optional[str] = typer.Option(None, "--server-url"),
):
    """Upload a track file to the download server."""
    config = _load_config({"server_url": server_url})

    async def _upload():
        async with aiofiles.open(file, "rb") as f:
            blob = await f.read()

        log_dir = Path(config.log_dir) if config.log_dir else None
        events_base, _, upload_events = create_structured_logger(
            log_dir=log_dir, enable_json=log_dir is not None
        )
        request = TrackUploadRequest(
            track_id=track_id,
            quality=quality.upper(),
            album_title=album_title,
            artist_name=artist_name,
            track_title=track_title or file.stem,
            conflict_resolution=conflict,
            check_existing=check_existing,
        )
        started = time.monotonic()
        with events_base:
            events_base.set_session_context(command="upload", server_url=config.server_url)
            async with RetryingHttpClient(timeout=config.upload_timeout) as http:
                uploader = ChunkedUploader(
                    http,
                    config.server_url,
                    chunk_size=config.chunk_size,
                    chunk_timeout=config.upload_timeout,
                    events=upload_events,
                )
                with Progress(
                    TextColumn("[bold cyan]{task.description}"),
                    BarColumn(),
                    DownloadColumn(),
                    TransferSpeedColumn(),
                    TimeRemainingColumn(),
                    console=console,
                ) as progress:
                    task_id = progress.add_task(file.name, total=len(blob))

                    def on_progress(p: UploadProgress) -> None:
                        progress.update(task_id, completed=p.uploaded)
                        log.debug(
                            f"{p.percent:.0f}% at {format_speed(p.speed)}, "
                            f"ETA {format_eta(p.eta)}"
                        )

                    result = await uploader.upload_track(
                        blob, request, use_chunks=chunks, on_progress=on_progress
                    )
                    if result.success:
                        progress.update(task_id, completed=len(blob))
        return result, len(blob), time.monotonic() - started

    result, size, duration = _run(_upload())
    print_upload_result(result, size, duration)
    if not result.success:
        raise typer.Exit(code=1)
