"""``snapshotctl``: run workers and inspect the snapshot pipeline from a shell."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import metrics
from .context import ServiceContext, build_context
from .errors import SnapshotServiceError
from .schemas import JobNotFound, JobView, SnapshotCreateRequest, SubmitResult
from .settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

console = Console()
err_console = Console(stderr=True)
cli = typer.Typer(help="Operate the snapshot screenshot pipeline.", no_args_is_help=True)

_JOB_STATES = ("waiting", "active", "delayed", "completed", "failed")


@dataclass
class CLIState:
    env_file: str = ".env"
    log_level: Optional[str] = None


_STATE = CLIState()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=False)],
    )


def _settings() -> Settings:
    return get_settings(_STATE.env_file)


def _run(action: Callable[[ServiceContext], Awaitable[T]]) -> T:
    """Build a context, run ``action`` on it, and always tear it down.

    Service errors are printed without a traceback and exit with status 1.
    """

    async def runner() -> T:
        context = build_context(_settings())
        try:
            return await action(context)
        finally:
            await context.close()

    try:
        return asyncio.run(runner())
    except (SnapshotServiceError, ValueError) as exc:
        err_console.print(f"[red]Error[/]: {exc}")
        raise typer.Exit(1) from exc


@cli.callback()
def main(
    env_file: str = typer.Option(".env", "--env-file", help="Env file with service settings."),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override LOG_LEVEL."),
) -> None:
    _STATE.env_file = env_file
    _STATE.log_level = log_level
    try:
        level = log_level or _settings().telemetry.log_level
    except ValueError as exc:
        err_console.print(f"[red]Invalid configuration[/]: {exc}")
        raise typer.Exit(1) from exc
    _configure_logging(level)


# ------------------------------------------------------------------ worker


@cli.command()
def worker(
    burst: bool = typer.Option(False, "--burst", help="Exit once the queue is drained."),
    metrics_port: Optional[int] = typer.Option(None, "--metrics-port", help="Override PROMETHEUS_PORT."),
    shutdown_timeout: float = typer.Option(30.0, "--shutdown-timeout", help="Seconds to drain in-flight jobs."),
) -> None:
    """Run queue consumers until SIGINT/SIGTERM (or until idle with --burst)."""

    async def action(context: ServiceContext) -> None:
        port = metrics_port if metrics_port is not None else context.settings.telemetry.prometheus_port
        metrics.start_exporter(port)
        await context.start()
        queue_worker = context.build_worker()
        loop = asyncio.get_running_loop()
        stopping: list[asyncio.Task[None]] = []

        def _request_stop(signame: str) -> None:
            if stopping:
                return
            LOGGER.info("Received %s, stopping worker", signame)
            stopping.append(loop.create_task(queue_worker.close(graceful=True, timeout=shutdown_timeout)))

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _request_stop, sig.name)
            except (NotImplementedError, RuntimeError):  # pragma: no cover - non-unix loops
                LOGGER.debug("Signal handler for %s unavailable", sig.name)
        try:
            await queue_worker.run(burst=burst)
            if stopping:
                await stopping[0]
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.remove_signal_handler(sig)
                except (NotImplementedError, RuntimeError):  # pragma: no cover - non-unix loops
                    pass
        console.print(
            f"[green]Worker stopped[/]: completed={queue_worker.jobs_complete} "
            f"failed={queue_worker.jobs_failed} retried={queue_worker.jobs_retried}"
        )

    _run(action)


# -------------------------------------------------------------- submission


def _read_text(path: Path) -> str:
    if str(path) == "-":
        return sys.stdin.read()
    return path.read_text(encoding="utf-8")


@cli.command()
def submit(
    html_file: Path = typer.Argument(..., help="Captured HTML file ('-' for stdin)."),
    css_file: Optional[Path] = typer.Option(None, "--css", help="Captured stylesheet file."),
    url: Optional[str] = typer.Option(None, "--url", help="Page URL at capture time."),
    width: Optional[int] = typer.Option(None, "--width", min=1, help="Viewport width in CSS px."),
    height: Optional[int] = typer.Option(None, "--height", min=1, help="Viewport height in CSS px."),
    priority: int = typer.Option(0, "--priority", help="Higher runs first."),
    delay_ms: int = typer.Option(0, "--delay-ms", min=0, help="Hold the job back for this long."),
    json_output: bool = typer.Option(False, "--json/--no-json", help="Emit JSON."),
) -> None:
    """Store a captured page and queue it for rendering."""

    html = _read_text(html_file)
    css = css_file.read_text(encoding="utf-8") if css_file else None

    async def action(context: ServiceContext) -> SubmitResult:
        viewport = None
        if width is not None or height is not None:
            viewport = context.pipeline.resolve_viewport(width, height)
        request = SnapshotCreateRequest(html=html, css=css, url=url, viewport=viewport)
        return await context.pipeline.submit(request, priority=priority, delay_ms=delay_ms)

    result = _run(action)
    if json_output:
        console.print_json(data=result.to_public())
        return
    console.print(f"[green]Queued snapshot {result.snapshot_id}[/] as job {result.job_id}")


@cli.command()
def replay(
    snapshot_id: str = typer.Argument(..., help="Snapshot identifier"),
    priority: int = typer.Option(0, "--priority", help="Higher runs first."),
    json_output: bool = typer.Option(False, "--json/--no-json", help="Emit JSON."),
) -> None:
    """Queue a fresh job for an existing snapshot."""

    result = _run(lambda context: context.pipeline.replay(snapshot_id, priority=priority))
    if json_output:
        console.print_json(data=result.to_public())
        return
    console.print(f"[green]Replaying snapshot {result.snapshot_id}[/] as job {result.job_id}")


# ------------------------------------------------------------- inspection


@cli.command()
def stats(json_output: bool = typer.Option(False, "--json/--no-json", help="Emit JSON.")) -> None:
    """Queue counts and storage totals."""

    async def action(context: ServiceContext) -> dict[str, Any]:
        counts = await context.stats.queue_counts()
        storage = await context.stats.storage_stats()
        return {"queue": counts.model_dump(), "storage": storage.model_dump(mode="json")}

    data = _run(action)
    if json_output:
        console.print_json(data=data)
        return
    queue_table = Table("State", "Jobs", title="Queue")
    for key, value in data["queue"].items():
        queue_table.add_row(key, str(value))
    console.print(queue_table)
    storage_table = Table("Field", "Value", title="Storage")
    for key, value in data["storage"].items():
        if isinstance(value, dict):
            value = json.dumps(value)
        storage_table.add_row(key, "-" if value is None else str(value))
    console.print(storage_table)


@cli.command()
def jobs(
    limit: int = typer.Option(20, "--limit", min=0, help="Maximum jobs per state."),
    json_output: bool = typer.Option(False, "--json/--no-json", help="Emit JSON."),
) -> None:
    """List jobs grouped by state."""

    listing = _run(lambda context: context.stats.list_jobs(limit))
    if json_output:
        console.print_json(data=listing.to_public())
        return
    table = Table("State", "Job", "Snapshot", "Progress", "Attempts", "Failed reason", title="Jobs")
    for state in _JOB_STATES:
        for job in getattr(listing, state):
            table.add_row(*_job_row(state, job))
    console.print(table)


def _job_row(state: str, job: JobView) -> tuple[str, ...]:
    return (
        state,
        job.id,
        str(job.data.get("snapshotId", "-")),
        f"{job.progress}%",
        str(job.attempts_made),
        job.failed_reason or "",
    )


@cli.command()
def job(
    job_id: str = typer.Argument(..., help="Job identifier"),
    json_output: bool = typer.Option(False, "--json/--no-json", help="Emit JSON."),
) -> None:
    """Show one job; unknown ids report ``not_found``."""

    status = _run(lambda context: context.stats.job_status(job_id))
    if json_output:
        console.print_json(data=status.to_public())
        return
    if isinstance(status, JobNotFound):
        console.print(f"[yellow]Job {job_id} not found[/]")
        return
    table = Table("Field", "Value", title=f"Job {job_id}")
    for key, value in status.to_public().items():
        if isinstance(value, (dict, list)):
            value = json.dumps(value, indent=2)
        table.add_row(key, "-" if value is None else str(value))
    console.print(table)


@cli.command()
def snapshot(
    snapshot_id: str = typer.Argument(..., help="Snapshot identifier"),
    json_output: bool = typer.Option(False, "--json/--no-json", help="Emit JSON."),
) -> None:
    """Processing status of a snapshot and its latest job."""

    status = _run(lambda context: context.stats.snapshot_status(snapshot_id))
    if isinstance(status, JobNotFound):
        if json_output:
            console.print_json(data=status.to_public())
        else:
            console.print(f"[yellow]Snapshot {snapshot_id} not found[/]")
        raise typer.Exit(1)
    if json_output:
        console.print_json(data=status)
        return
    table = Table("Field", "Value", title=f"Snapshot {snapshot_id}")
    for key, value in status.items():
        if isinstance(value, dict):
            value = value.get("status", "-")
        table.add_row(key, "-" if value is None else str(value))
    console.print(table)


@cli.command()
def recent(
    limit: int = typer.Option(20, "--limit", min=1, help="Number of snapshots to list."),
    json_output: bool = typer.Option(False, "--json/--no-json", help="Emit JSON."),
) -> None:
    """Most recently submitted snapshots."""

    summaries = _run(lambda context: context.stats.recent_snapshots(limit))
    if json_output:
        console.print_json(data=[summary.model_dump(mode="json") for summary in summaries])
        return
    table = Table("Snapshot", "Status", "Viewport", "HTML", "Screenshot", "Created", title="Recent snapshots")
    for summary in summaries:
        table.add_row(
            summary.id,
            summary.processing_status,
            f"{summary.viewport_width}x{summary.viewport_height}",
            f"{summary.html_size / 1024:.1f} KB",
            "yes" if summary.has_screenshot else "no",
            summary.created_at.isoformat(timespec="seconds"),
        )
    console.print(table)


@cli.command()
def screenshot(
    snapshot_id: str = typer.Argument(..., help="Snapshot identifier"),
    output: Path = typer.Option(..., "--output", "-o", help="Where to write the image."),
) -> None:
    """Write a snapshot's stored screenshot to a file."""

    async def action(context: ServiceContext):
        return await asyncio.to_thread(context.store.get_screenshot, snapshot_id)

    stored = _run(action)
    if stored is None:
        err_console.print(f"[red]No screenshot stored for snapshot {snapshot_id}[/]")
        raise typer.Exit(1)
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_bytes(stored.data)
    meta = stored.metadata
    console.print(f"[green]Wrote {output}[/] ({meta.width}x{meta.height} {meta.format}, {meta.size} bytes)")


@cli.command()
def render(
    snapshot_id: str = typer.Argument(..., help="Snapshot identifier"),
    output: Path = typer.Option(..., "--output", "-o", help="Where to write the HTML document."),
) -> None:
    """Write the standalone document a render of this snapshot loads, for offline viewing."""

    document = _run(lambda context: context.pipeline.replay_document(snapshot_id))
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(document, encoding="utf-8")
    console.print(f"[green]Wrote {output}[/] ({len(document.encode('utf-8')) / 1024:.1f} KB)")


@cli.command()
def export(
    snapshot_id: str = typer.Argument(..., help="Snapshot identifier"),
    output_dir: Optional[Path] = typer.Option(
        None, "--output-dir", "-d", help="Write <id>.html and <id>.css here instead of printing JSON."
    ),
) -> None:
    """Export the captured (decompressed) HTML and CSS of a snapshot."""

    stored = _run(lambda context: context.pipeline.load_content(snapshot_id))
    if output_dir is None:
        console.print_json(
            data={
                "snapshotId": stored.id,
                "url": stored.url,
                "viewport": {"width": stored.viewport_width, "height": stored.viewport_height},
                "html": stored.html,
                "css": stored.css,
            }
        )
        return
    output_dir.mkdir(parents=True, exist_ok=True)
    html_path = output_dir / f"{stored.id}.html"
    html_path.write_text(stored.html or "", encoding="utf-8")
    console.print(f"[green]Wrote {html_path}[/]")
    if stored.css is not None:
        css_path = output_dir / f"{stored.id}.css"
        css_path.write_text(stored.css, encoding="utf-8")
        console.print(f"[green]Wrote {css_path}[/]")


@cli.command()
def cleanup(
    max_age_hours: float = typer.Option(24.0, "--max-age-hours", min=0, help="Drop finished jobs older than this."),
) -> None:
    """Remove completed and failed jobs past their age limit."""

    removed = _run(lambda context: context.queue.cleanup(int(max_age_hours * 3600 * 1000)))
    console.print(f"Removed {removed} finished job(s)")


if __name__ == "__main__":  # pragma: no cover
    cli()
