from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from lofi_pipeline.audio.textures import discover_textures
from lofi_pipeline.config import Settings, get_settings
from lofi_pipeline.errors import (
    ErrorCode,
    InvalidArgument,
    JobNotFound,
    SAFE_MESSAGES,
    failure_from_exception,
    is_retryable,
)
from lofi_pipeline.jobs.models import (
    FailureReason,
    Job,
    JobSnapshot,
    JobStatus,
    SourceKind,
    new_id,
    now_utc,
)
from lofi_pipeline.jobs.progress import StoreProgressSink
from lofi_pipeline.jobs.store import JobStore
from lofi_pipeline.ops.metrics import (
    attempts_retried,
    job_failures,
    jobs_finished,
    jobs_submitted,
)
from lofi_pipeline.pipeline import PipelineConfig, TransformPipeline
from lofi_pipeline.presets import get_preset
from lofi_pipeline.sources.acquire import (
    AcquireConfig,
    SourceAcquirer,
    YtDlpCliStrategy,
    YtDlpLibraryStrategy,
)
from lofi_pipeline.sources.urls import canonical_url
from lofi_pipeline.storage.artifacts import LocalArtifactStore
from lofi_pipeline.utils.deadline import Deadline
from lofi_pipeline.utils.ffmpeg_safe import FFmpegRunner
from lofi_pipeline.utils.log import logger, set_job_id
from lofi_pipeline.utils.retry import backoff_delay


# Job ids end up in artifact and work-dir names.
_JOB_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$")


@dataclass(frozen=True, slots=True)
class SchedulerConfig:
    concurrency: int = 2
    max_attempts: int = 3
    retry_base_delay_s: float = 2.0
    retry_max_delay_s: float = 60.0
    attempt_timeout_s: float | None = 900.0


class SchedulerClosed(RuntimeError):
    pass


def validate_submission(source_kind: str, source_ref: str, preset: str) -> tuple[SourceKind, str]:
    """
    Check a submission against the closed preset / source-kind sets.
    Returns the parsed kind and the normalized reference.
    """
    try:
        kind = SourceKind(str(source_kind or ""))
    except ValueError as ex:
        raise InvalidArgument(f"unknown source kind {source_kind!r}") from ex
    get_preset(preset)
    ref = str(source_ref or "").strip()
    if not ref:
        raise InvalidArgument("source_ref is required")
    if kind == SourceKind.REMOTE_URL:
        ref = canonical_url(ref)
    return kind, ref


class JobScheduler:
    """
    Bounded worker pool over an asyncio queue.

    Constructed explicitly and passed to whoever needs it; nothing runs until
    `start()`. Each job id is processed by at most one worker at a time, and
    the pipeline itself runs in a thread so the event loop stays free for
    status reads.
    """

    def __init__(
        self,
        store: JobStore,
        pipeline: TransformPipeline,
        config: SchedulerConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.pipeline = pipeline
        self.config = config or SchedulerConfig()
        self.concurrency = max(1, int(self.config.concurrency))
        self._sleep = sleep
        self._q: asyncio.Queue[str] | None = None
        self._tasks: list[asyncio.Task] = []
        self._active: set[str] = set()
        self._queued: set[str] = set()
        self._accepting = False

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def accepting(self) -> bool:
        return self._accepting

    async def start(self) -> None:
        if self._tasks:
            return
        self._q = asyncio.Queue()
        self._accepting = True
        self._recover()
        for _ in range(self.concurrency):
            self._tasks.append(asyncio.create_task(self._worker()))
        logger.info("scheduler_started", concurrency=self.concurrency)

    def _recover(self) -> None:
        """Re-enqueue work left behind by a previous process."""
        for j in self.store.list(limit=1_000_000):
            if j.status == JobStatus.PENDING:
                self._enqueue(j.id)
            elif j.status == JobStatus.PROCESSING:
                if int(j.attempt) >= int(self.config.max_attempts):
                    self.store.fail(
                        j.id,
                        FailureReason(
                            code=ErrorCode.PROCESSING_FAILED.value,
                            message=SAFE_MESSAGES[ErrorCode.PROCESSING_FAILED],
                        ),
                    )
                    jobs_finished.labels(status=JobStatus.FAILED.value).inc()
                    logger.warning("job_recovery_failed", job_id=j.id, attempt=j.attempt)
                else:
                    self.store.set_message(j.id, "Recovered after restart")
                    self._enqueue(j.id)
                    logger.info("job_recovered", job_id=j.id, attempt=j.attempt)

    async def stop(self) -> None:
        self._accepting = False
        for t in self._tasks:
            t.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def drain(self, *, timeout_s: float = 120.0) -> bool:
        """
        Stop accepting submissions, wait for queued and in-flight work, then
        stop the workers. Returns False if the timeout cut the wait short.
        """
        self._accepting = False
        drained = True
        if self._q is not None and self._tasks:
            try:
                await asyncio.wait_for(self._q.join(), timeout=float(timeout_s))
            except asyncio.TimeoutError:
                drained = False
                logger.warning("scheduler_drain_timeout", timeout_s=float(timeout_s))
        await self.stop()
        return drained

    def _enqueue(self, job_id: str) -> None:
        if self._q is None:
            raise SchedulerClosed("scheduler not started")
        if job_id in self._queued or job_id in self._active:
            return
        self._queued.add(job_id)
        self._q.put_nowait(job_id)

    def submit(
        self,
        source_kind: str,
        source_ref: str,
        preset: str = "default",
        *,
        job_id: str | None = None,
    ) -> str:
        """
        Validate, persist a pending Job Record and schedule it.

        Invalid input raises `InvalidArgument` before anything is stored.
        Re-submitting an existing `job_id` returns it without scheduling again.
        """
        kind, ref = validate_submission(source_kind, source_ref, preset)
        if job_id is not None and not _JOB_ID_RE.match(str(job_id)):
            raise InvalidArgument("job id must be 1-128 chars of [A-Za-z0-9_-]")
        if not self._accepting:
            raise SchedulerClosed("scheduler is not accepting jobs")
        ts = now_utc()
        job = Job(
            id=str(job_id) if job_id else new_id(),
            source_kind=kind,
            source_ref=ref,
            preset=preset,
            status=JobStatus.PENDING,
            created_at=ts,
            updated_at=ts,
            message="Queued",
        )
        stored, created = self.store.create(job)
        if not created:
            logger.info("job_submit_duplicate", job_id=stored.id, status=stored.status.value)
            return stored.id
        jobs_submitted.inc()
        logger.info("job_submitted", job_id=job.id, preset=preset, source_kind=kind.value)
        self._enqueue(job.id)
        return job.id

    def get_status(self, job_id: str) -> JobSnapshot:
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job.snapshot()

    async def wait_for(
        self, job_id: str, *, timeout_s: float | None = None, poll_s: float = 0.2
    ) -> JobSnapshot:
        """Poll until the job is terminal (CLI / tests)."""
        loop = asyncio.get_running_loop()
        t_end = None if timeout_s is None else loop.time() + float(timeout_s)
        while True:
            snap = self.get_status(job_id)
            if snap.status in {JobStatus.COMPLETED, JobStatus.FAILED}:
                return snap
            if t_end is not None and loop.time() >= t_end:
                raise asyncio.TimeoutError(f"job {job_id} still {snap.status.value}")
            await asyncio.sleep(poll_s)

    async def _worker(self) -> None:
        assert self._q is not None
        while True:
            job_id = await self._q.get()
            self._queued.discard(job_id)
            try:
                if job_id in self._active:
                    continue
                self._active.add(job_id)
                try:
                    await self._run_job(job_id)
                finally:
                    self._active.discard(job_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("job_worker_error", job_id=job_id)
            finally:
                self._q.task_done()

    async def _run_job(self, job_id: str) -> None:
        job = self.store.get(job_id)
        if job is None or job.is_terminal:
            return
        set_job_id(job_id)
        try:
            while True:
                job = self.store.begin_attempt(job_id, message="Starting")
                logger.info("attempt_started", attempt=job.attempt, preset=job.preset)
                sink = StoreProgressSink(self.store, job_id, job.attempt)
                deadline = Deadline(self.config.attempt_timeout_s)
                try:
                    outcome = await asyncio.to_thread(
                        self.pipeline.run, job, progress=sink, deadline=deadline
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as ex:
                    reason = failure_from_exception(ex)
                    logger.warning(
                        "attempt_failed",
                        attempt=job.attempt,
                        code=reason.code,
                        stage=reason.stage,
                        error=str(ex),
                        exc_info=True,
                    )
                    if not is_retryable(ex) or int(job.attempt) >= int(self.config.max_attempts):
                        self.store.fail(job_id, reason)
                        jobs_finished.labels(status=JobStatus.FAILED.value).inc()
                        job_failures.labels(code=reason.code).inc()
                        logger.error(
                            "job_failed", attempt=job.attempt, code=reason.code, stage=reason.stage
                        )
                        return
                    delay = backoff_delay(
                        job.attempt,
                        base=self.config.retry_base_delay_s,
                        cap=self.config.retry_max_delay_s,
                    )
                    attempts_retried.inc()
                    self.store.set_message(job_id, f"Retrying in {delay:.0f}s")
                    logger.info("attempt_retry_scheduled", attempt=job.attempt, delay_s=delay)
                    await self._sleep(delay)
                    continue
                self.store.complete(job_id, outcome.result)
                jobs_finished.labels(status=JobStatus.COMPLETED.value).inc()
                logger.info(
                    "job_completed",
                    attempt=job.attempt,
                    final_db=round(outcome.final_loudness_db, 2),
                )
                return
        finally:
            set_job_id(None)


def build_scheduler(
    settings: Settings | None = None, *, attempt_timeout_s: float | None = None
) -> JobScheduler:
    """
    Wire store, acquirer, pipeline and scheduler from settings.
    The only place that reads global configuration. `attempt_timeout_s` can
    only tighten the configured per-attempt ceiling.
    """
    s = settings or get_settings()
    p = s.public
    state_root = p.state_root()
    state_root.mkdir(parents=True, exist_ok=True)

    cookies = s.secret.ytdlp_cookies_file.get_secret_value() if s.secret.ytdlp_cookies_file else None
    proxy = s.secret.ytdlp_proxy.get_secret_value() if s.secret.ytdlp_proxy else None

    runner = FFmpegRunner(ffmpeg_bin=p.ffmpeg_bin, ffprobe_bin=p.ffprobe_bin)
    acquirer = SourceAcquirer(
        AcquireConfig(
            uploads_root=p.uploads_root(),
            max_duration_s=float(p.max_source_duration_s),
            download_timeout_s=float(p.download_timeout_s),
            download_retries=int(p.download_retries),
            base_delay_s=float(p.download_base_delay_s),
            max_bytes=int(p.max_upload_bytes),
        ),
        runner=runner,
        primary=YtDlpLibraryStrategy(cookies_file=cookies or None, proxy=proxy or None),
        fallback=YtDlpCliStrategy(
            ytdlp_bin=p.ytdlp_bin, cookies_file=cookies or None, proxy=proxy or None
        ),
    )
    attempt_ceiling = float(p.attempt_timeout_s)
    if attempt_timeout_s is not None:
        attempt_ceiling = min(attempt_ceiling, float(attempt_timeout_s))
    textures_root: Path = p.textures_root()
    pipeline = TransformPipeline(
        acquirer=acquirer,
        runner=runner,
        artifacts=LocalArtifactStore(p.artifacts_root(), base_url=p.public_base_url),
        work_root=p.work_root(),
        config=PipelineConfig(
            stage_timeout_s=float(p.stage_timeout_s),
            loudness_threshold_db=float(p.loudness_threshold_db),
            final_loudness_threshold_db=float(p.final_loudness_threshold_db),
            repair_target_db=float(p.repair_target_db),
            max_repair_gain_db=float(p.max_repair_gain_db),
            mp3_bitrate_kbps=int(p.mp3_bitrate_kbps),
            sample_rate=int(p.output_sample_rate),
            channels=int(p.output_channels),
        ),
        textures=lambda: discover_textures(textures_root),
    )
    return JobScheduler(
        JobStore(p.jobs_db_path()),
        pipeline,
        SchedulerConfig(
            concurrency=int(p.worker_concurrency),
            max_attempts=int(p.max_attempts),
            retry_base_delay_s=float(p.retry_base_delay_s),
            attempt_timeout_s=attempt_ceiling,
        ),
    )
