from __future__ import annotations

import asyncio
import hashlib
import json
from typing import Any

from fastapi import APIRouter, File, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse, RedirectResponse
from sse_starlette.sse import EventSourceResponse  # type: ignore

from lofi_pipeline.errors import InvalidArgument, JobNotFound
from lofi_pipeline.jobs.models import JobStatus
from lofi_pipeline.jobs.scheduler import JobScheduler, SchedulerClosed
from lofi_pipeline.presets import PRESETS
from lofi_pipeline.sources.uploads import UploadTooLarge, stage_upload
from lofi_pipeline.storage.artifacts import LocalArtifactStore
from lofi_pipeline.utils.log import logger

router = APIRouter()

_FORMATS = {"mp3": "audio/mpeg", "wav": "audio/wav"}
_MAX_IDEM_KEY = 200


def _get_scheduler(request: Request) -> JobScheduler:
    sched = getattr(request.app.state, "scheduler", None)
    if sched is None:
        raise HTTPException(status_code=500, detail="Scheduler not initialized")
    return sched


def _get_artifacts(request: Request) -> LocalArtifactStore:
    store = getattr(request.app.state, "artifacts", None)
    if store is None:
        raise HTTPException(status_code=500, detail="Artifact store not initialized")
    return store


def _job_id_for_key(key: str) -> str:
    # Idempotency keys are caller-chosen text; job ids must be filename-safe.
    return "idem-" + hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]


def _snapshot_or_404(sched: JobScheduler, job_id: str) -> dict[str, Any]:
    try:
        return sched.get_status(job_id).to_dict()
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found") from None


@router.post("/api/uploads")
async def upload_source(request: Request, file: UploadFile = File(...)) -> dict[str, Any]:
    s = request.app.state.settings
    try:
        staged = await asyncio.to_thread(
            stage_upload,
            file.file,
            uploads_root=s.public.uploads_root(),
            max_bytes=int(s.max_upload_bytes),
        )
    except UploadTooLarge:
        raise HTTPException(status_code=413, detail="Upload too large") from None
    except InvalidArgument as ex:
        raise HTTPException(status_code=400, detail=ex.safe_message) from None
    finally:
        await file.close()
    logger.info(
        "upload_staged", upload_id=staged.upload_id, format=staged.format, bytes=staged.size_bytes
    )
    return {"upload_id": staged.upload_id, "format": staged.format, "size_bytes": staged.size_bytes}


@router.post("/api/jobs")
async def create_job(request: Request) -> dict[str, Any]:
    sched = _get_scheduler(request)
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Body must be JSON") from None
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")

    idem_key = (request.headers.get("idempotency-key") or "").strip()
    if len(idem_key) > _MAX_IDEM_KEY:
        raise HTTPException(status_code=400, detail="Idempotency-Key too long")

    try:
        job_id = sched.submit(
            str(body.get("source_kind") or ""),
            str(body.get("source_ref") or ""),
            str(body.get("preset") or "default"),
            job_id=_job_id_for_key(idem_key) if idem_key else None,
        )
    except InvalidArgument as ex:
        logger.info("job_rejected", error=ex.detail)
        raise HTTPException(status_code=400, detail=ex.safe_message) from None
    except SchedulerClosed:
        raise HTTPException(status_code=503, detail="Server is shutting down") from None
    snap = sched.get_status(job_id)
    return {"job_id": job_id, "status": snap.status.value}


@router.get("/api/jobs/{job_id}")
async def get_job(request: Request, job_id: str) -> dict[str, Any]:
    return _snapshot_or_404(_get_scheduler(request), job_id)


@router.get("/api/jobs/{job_id}/events")
async def job_events(request: Request, job_id: str):
    sched = _get_scheduler(request)
    _snapshot_or_404(sched, job_id)

    async def gen():
        last = ""
        try:
            while True:
                if await request.is_disconnected():
                    return
                try:
                    snap = sched.get_status(job_id)
                except JobNotFound:
                    yield {"event": "gone", "data": json.dumps({"job_id": job_id})}
                    return
                key = f"{snap.status.value}:{snap.attempt}:{snap.progress}:{snap.message}"
                if key != last:
                    last = key
                    yield {"event": "job", "data": json.dumps(snap.to_dict())}
                if snap.status in {JobStatus.COMPLETED, JobStatus.FAILED}:
                    return
                await asyncio.sleep(0.75)
        except asyncio.CancelledError:
            return

    return EventSourceResponse(gen())


@router.get("/api/jobs/{job_id}/download/{fmt}")
async def download(request: Request, job_id: str, fmt: str):
    if fmt not in _FORMATS:
        raise HTTPException(status_code=400, detail="Format must be mp3 or wav")
    snap = _snapshot_or_404(_get_scheduler(request), job_id)
    if snap["status"] != JobStatus.COMPLETED.value or "result" not in snap:
        raise HTTPException(status_code=409, detail="Job is not completed")
    return RedirectResponse(url=snap["result"][f"{fmt}_url"], status_code=307)


@router.get("/artifacts/{name}")
async def artifact(request: Request, name: str):
    p = _get_artifacts(request).resolve(name)
    if p is None:
        raise HTTPException(status_code=404, detail="Not found")
    media_type = _FORMATS.get(p.suffix.lstrip(".").lower(), "application/octet-stream")
    return FileResponse(p, media_type=media_type, filename=p.name)


@router.get("/api/presets")
async def list_presets() -> dict[str, Any]:
    return {"presets": [p.to_dict() for p in PRESETS.values()]}
