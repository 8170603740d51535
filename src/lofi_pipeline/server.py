from __future__ import annotations

import asyncio
import secrets
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from lofi_pipeline.config import get_settings
from lofi_pipeline.jobs.scheduler import build_scheduler
from lofi_pipeline.ops.metrics import REGISTRY
from lofi_pipeline.ops.retention import retention_loop
from lofi_pipeline.storage.artifacts import LocalArtifactStore
from lofi_pipeline.utils.log import logger, set_request_id
from lofi_pipeline.web.routes_jobs import router as jobs_router

DRAIN_TIMEOUT_S = 30.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    s = get_settings()
    for d in (s.public.uploads_root(), s.public.work_root(), s.public.artifacts_root()):
        d.mkdir(parents=True, exist_ok=True)

    sched = build_scheduler(s)
    app.state.settings = s
    app.state.scheduler = sched
    app.state.artifacts = LocalArtifactStore(
        s.public.artifacts_root(), base_url=s.public_base_url
    )
    await sched.start()

    retention_task = asyncio.create_task(
        retention_loop(
            store=sched.store,
            uploads_root=s.public.uploads_root(),
            work_root=s.public.work_root(),
            retention_minutes=int(s.retention_minutes),
            interval_s=float(s.purge_interval_s),
        )
    )
    logger.info("server_started", host=str(s.host), port=int(s.port))
    try:
        yield
    finally:
        retention_task.cancel()
        with suppress(asyncio.CancelledError):
            await retention_task
        await sched.drain(timeout_s=DRAIN_TIMEOUT_S)
        logger.info("server_stopped")


app = FastAPI(title="lofi-pipeline", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origin_list(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Idempotency-Key", "X-Request-ID"],
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """
    Request-scoped context:
    - Inject X-Request-ID if absent
    - Put request_id into contextvars so all logs get the correlation field
    """
    rid = request.headers.get("x-request-id") or secrets.token_hex(8)
    set_request_id(rid)
    try:
        resp = await call_next(request)
        resp.headers.setdefault("x-request-id", rid)
        return resp
    finally:
        set_request_id(None)


app.include_router(jobs_router)


@app.get("/healthz")
async def healthz(request: Request) -> dict[str, object]:
    sched = getattr(request.app.state, "scheduler", None)
    return {
        "ok": True,
        "accepting": bool(sched is not None and sched.accepting),
    }


@app.get("/metrics")
async def metrics() -> Response:
    return Response(generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)
