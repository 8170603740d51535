from __future__ import annotations

import asyncio
import shutil
import time
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from lofi_pipeline.jobs.models import TERMINAL_STATUSES, Job
from lofi_pipeline.jobs.store import JobStore
from lofi_pipeline.sources.uploads import resolve_upload
from lofi_pipeline.utils.log import logger


@dataclass(frozen=True, slots=True)
class RetentionResult:
    jobs_removed: int
    uploads_removed: int
    workdirs_removed: int


def _parse_iso_ts(ts: str) -> float | None:
    s = str(ts or "").strip()
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _safe_delete_path(path: Path, *, root: Path) -> bool:
    try:
        path.resolve().relative_to(root.resolve())
    except ValueError:
        return False
    try:
        if path.is_dir():
            shutil.rmtree(path, ignore_errors=True)
        else:
            path.unlink(missing_ok=True)
        return True
    except OSError as ex:
        logger.warning("retention_delete_failed", path=str(path), error=str(ex))
        return False


def _iter_children(root: Path) -> Iterable[Path]:
    if not root.is_dir():
        return
    yield from root.iterdir()


def purge_expired_jobs(*, store: JobStore, cutoff: float) -> int:
    removed = 0
    for job in store.list(limit=1_000_000):
        if job.status not in TERMINAL_STATUSES:
            continue
        ts = _parse_iso_ts(job.updated_at)
        if ts is None or ts >= cutoff:
            continue
        store.delete_job(job.id)
        removed += 1
    return removed


def _referenced_uploads(jobs: Iterable[Job], uploads_root: Path) -> set[Path]:
    """Staged files still needed by a job that has not finished."""
    out: set[Path] = set()
    for j in jobs:
        if j.status in TERMINAL_STATUSES:
            continue
        p = resolve_upload(j.source_ref, uploads_root=uploads_root)
        if p is not None:
            out.add(p.resolve())
    return out


def purge_stale_uploads(*, store: JobStore, uploads_root: Path, cutoff: float) -> int:
    keep = _referenced_uploads(store.list(limit=1_000_000), uploads_root)
    removed = 0
    for p in _iter_children(uploads_root):
        try:
            if p.resolve() in keep or p.stat().st_mtime >= cutoff:
                continue
        except OSError:
            continue
        if _safe_delete_path(p, root=uploads_root):
            removed += 1
    return removed


def purge_stale_workdirs(*, work_root: Path, cutoff: float) -> int:
    """
    Attempt workspaces clean up after themselves; anything old left here is
    from a crashed process.
    """
    removed = 0
    for d in _iter_children(work_root):
        try:
            if not d.is_dir() or d.stat().st_mtime >= cutoff:
                continue
        except OSError:
            continue
        if _safe_delete_path(d, root=work_root):
            removed += 1
    return removed


def run_once(
    *,
    store: JobStore,
    uploads_root: Path,
    work_root: Path,
    retention_minutes: int,
    now: float | None = None,
) -> RetentionResult:
    """
    One retention pass. Artifacts are not touched; they outlive job records.
    """
    cutoff = (time.time() if now is None else float(now)) - max(0, int(retention_minutes)) * 60.0
    jobs_removed = purge_expired_jobs(store=store, cutoff=cutoff)
    uploads_removed = purge_stale_uploads(store=store, uploads_root=uploads_root, cutoff=cutoff)
    workdirs_removed = purge_stale_workdirs(work_root=work_root, cutoff=cutoff)
    logger.info(
        "retention_done",
        jobs_removed=jobs_removed,
        uploads_removed=uploads_removed,
        workdirs_removed=workdirs_removed,
    )
    return RetentionResult(
        jobs_removed=jobs_removed,
        uploads_removed=uploads_removed,
        workdirs_removed=workdirs_removed,
    )


async def retention_loop(
    *,
    store: JobStore,
    uploads_root: Path,
    work_root: Path,
    retention_minutes: int,
    interval_s: float,
) -> None:
    try:
        while True:
            try:
                await asyncio.to_thread(
                    run_once,
                    store=store,
                    uploads_root=uploads_root,
                    work_root=work_root,
                    retention_minutes=retention_minutes,
                )
            except Exception as ex:
                logger.warning("retention_loop_failed", error=str(ex))
            await asyncio.sleep(float(interval_s))
    except asyncio.CancelledError:
        logger.info("task stopped", task="retention")
        return
