from __future__ import annotations

import asyncio
import json
from pathlib import Path

import click

from lofi_pipeline.config import get_safe_config_report, get_settings
from lofi_pipeline.errors import InvalidArgument, StageTimeout
from lofi_pipeline.jobs.models import JobStatus, SourceKind
from lofi_pipeline.jobs.scheduler import build_scheduler
from lofi_pipeline.presets import DEFAULT_PRESET, PRESETS, preset_ids
from lofi_pipeline.sources.uploads import stage_upload
from lofi_pipeline.utils.log import logger, set_log_level


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL for this run.")
def cli(log_level: str | None) -> None:
    """Lo-fi audio conversion service."""
    if log_level:
        set_log_level(log_level)


@cli.command("serve")
def serve() -> None:
    """Run the HTTP API."""
    from lofi_pipeline.web.run import main

    main()


def _guess_kind(source: str) -> SourceKind:
    if source.startswith(("http://", "https://")) and "youtu" in source:
        return SourceKind.REMOTE_URL
    if Path(source).is_file():
        return SourceKind.UPLOAD
    return SourceKind.REMOTE_URL


async def _process(kind: SourceKind, ref: str, preset: str, timeout_s: float | None):
    # The attempt deadline bounds every stage subprocess, so the worker thread
    # winds down near --timeout instead of holding asyncio.run open.
    sched = build_scheduler(attempt_timeout_s=timeout_s)
    await sched.start()
    try:
        job_id = sched.submit(kind.value, ref, preset)
        click.echo(f"Job {job_id} submitted", err=True)
        try:
            return await sched.wait_for(job_id, timeout_s=timeout_s)
        except asyncio.TimeoutError:
            await sched.stop()
            job = sched.store.get(job_id)
            if job is not None and not job.is_terminal:
                sched.store.fail(
                    job_id, StageTimeout("attempt", f"gave up after {timeout_s}s").to_failure()
                )
            raise
    finally:
        await sched.stop()


@cli.command("process")
@click.argument("source", required=True, type=str)
@click.option(
    "--preset",
    type=click.Choice(preset_ids(), case_sensitive=True),
    default=DEFAULT_PRESET,
    show_default=True,
)
@click.option(
    "--kind",
    type=click.Choice([k.value for k in SourceKind], case_sensitive=False),
    default=None,
    help="Source kind (guessed from SOURCE when omitted).",
)
@click.option("--timeout", "timeout_s", type=float, default=None, help="Give up waiting after N seconds.")
@click.option("--json", "json_flag", is_flag=True, default=False, help="Print the final job snapshot as JSON.")
def process(source: str, preset: str, kind: str | None, timeout_s: float | None, json_flag: bool) -> None:
    """
    Convert SOURCE in-process and wait for the result.

    SOURCE can be:
    - a local audio file (staged as an upload), or
    - a YouTube URL.
    """
    s = get_settings()
    k = SourceKind(kind) if kind else _guess_kind(source)
    ref = source
    if k == SourceKind.UPLOAD and Path(source).is_file():
        try:
            with Path(source).open("rb") as f:
                staged = stage_upload(
                    f, uploads_root=s.public.uploads_root(), max_bytes=int(s.max_upload_bytes)
                )
        except InvalidArgument as ex:
            raise click.ClickException(ex.safe_message) from None
        ref = staged.upload_id
    try:
        snap = asyncio.run(_process(k, ref, preset, timeout_s))
    except InvalidArgument as ex:
        raise click.ClickException(f"{ex.safe_message} ({ex.detail})") from None
    except asyncio.TimeoutError as ex:
        raise click.ClickException(str(ex)) from None

    if json_flag:
        click.echo(json.dumps(snap.to_dict(), indent=2, sort_keys=True))
    elif snap.status == JobStatus.COMPLETED and snap.result is not None:
        click.echo(f"MP3: {snap.result.mp3_url}")
        click.echo(f"WAV: {snap.result.wav_url}")
    if snap.status != JobStatus.COMPLETED:
        err = snap.error
        msg = f"{err.code}: {err.message}" if err else "failed"
        logger.error("cli_job_failed", job_id=snap.job_id, error=msg)
        if not json_flag:
            click.echo(f"Job failed ({msg})", err=True)
        raise SystemExit(2)


@cli.command("presets")
def presets() -> None:
    """List available presets."""
    for p in PRESETS.values():
        click.echo(f"{p.id:10s} v{p.version}  {p.description}")


@cli.command("purge")
@click.option("--minutes", type=int, default=None, help="Retention window (default RETENTION_MINUTES).")
def purge(minutes: int | None) -> None:
    """Run one retention pass now."""
    from lofi_pipeline.jobs.store import JobStore
    from lofi_pipeline.ops.retention import run_once

    s = get_settings()
    res = run_once(
        store=JobStore(s.public.jobs_db_path()),
        uploads_root=s.public.uploads_root(),
        work_root=s.public.work_root(),
        retention_minutes=int(minutes if minutes is not None else s.retention_minutes),
    )
    click.echo(
        f"Removed jobs={res.jobs_removed} uploads={res.uploads_removed} workdirs={res.workdirs_removed}"
    )


@cli.command("config")
def config() -> None:
    """Print effective configuration (secrets masked)."""
    click.echo(json.dumps(get_safe_config_report(), indent=2, sort_keys=True, default=str))


if __name__ == "__main__":  # pragma: no cover
    cli()
