from __future__ import annotations

import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

from lofi_pipeline.jobs.models import Job, JobResult, JobStatus, SourceKind, now_utc
from lofi_pipeline.pipeline import PipelineOutcome
from lofi_pipeline.utils.deadline import Deadline


def make_job(
    job_id: str = "job1",
    *,
    status: JobStatus = JobStatus.PROCESSING,
    attempt: int = 1,
    preset: str = "default",
    kind: SourceKind = SourceKind.UPLOAD,
    ref: str = "0123456789abcdef0123456789abcdef",
) -> Job:
    ts = now_utc()
    return Job(
        id=job_id,
        source_kind=kind,
        source_ref=ref,
        preset=preset,
        status=status,
        created_at=ts,
        updated_at=ts,
        attempt=attempt,
    )


class FakeRunner:
    """
    Stand-in for FFmpegRunner.

    `run` writes a few bytes to the output path (last argv element) so the
    pipeline's on-disk checks pass. `levels` maps an output filename to the
    loudness it measures at; a list is consumed one value per measurement.
    """

    def __init__(
        self,
        levels: dict[str, Any] | None = None,
        *,
        default_level: float = -14.0,
        fail: Callable[[list[str]], Exception | None] | None = None,
        write_outputs: bool = True,
        duration: float = 30.0,
    ) -> None:
        self.levels = dict(levels or {})
        self.default_level = default_level
        self.fail = fail
        self.write_outputs = write_outputs
        self.duration = duration
        self.calls: list[list[str]] = []
        self.measured: list[str] = []
        self._lock = threading.Lock()

    def run(self, args: list[str], *, timeout_s: float) -> None:
        with self._lock:
            self.calls.append(list(args))
        if self.fail is not None:
            ex = self.fail(args)
            if ex is not None:
                raise ex
        if self.write_outputs:
            Path(args[-1]).write_bytes(b"RIFF-fake-audio")

    def mean_volume_db(self, path: Path, *, timeout_s: float) -> float:
        name = Path(path).name
        self.measured.append(name)
        v = self.levels.get(name, self.default_level)
        if isinstance(v, list):
            return float(v.pop(0)) if len(v) > 1 else float(v[0])
        return float(v)

    def duration_s(self, path: Path, *, timeout_s: float = 20.0) -> float:
        return float(self.duration)

    def af_args(self) -> list[str]:
        out = []
        for c in self.calls:
            if "-af" in c:
                out.append(c[c.index("-af") + 1])
        return out


class FakeAcquirer:
    def __init__(self, errors: list[Exception | None] | None = None) -> None:
        self.errors = list(errors or [])
        self.calls = 0

    def acquire(self, kind, ref, work_dir: Path, *, deadline: Deadline | None = None) -> Path:
        self.calls += 1
        if self.errors:
            ex = self.errors.pop(0)
            if ex is not None:
                raise ex
        work_dir = Path(work_dir)
        work_dir.mkdir(parents=True, exist_ok=True)
        p = work_dir / "source.wav"
        p.write_bytes(b"RIFF-fake-source")
        return p


class ScriptedPipeline:
    """
    Pipeline stand-in for scheduler tests. Each call to `run` takes the next
    scripted outcome: an exception to raise, or None for success.
    """

    def __init__(
        self,
        script: list[Exception | None] | None = None,
        *,
        progress_steps: tuple[int, ...] = (10, 50),
        gate: threading.Event | None = None,
    ) -> None:
        self.script = list(script or [])
        self.progress_steps = progress_steps
        self.gate = gate
        self.calls: list[tuple[str, int]] = []
        self._lock = threading.Lock()

    def run(self, job: Job, *, progress, deadline: Deadline | None = None) -> PipelineOutcome:
        with self._lock:
            self.calls.append((job.id, int(job.attempt)))
            step = self.script.pop(0) if self.script else None
        if self.gate is not None:
            self.gate.wait(timeout=10)
        for pct in self.progress_steps:
            progress(pct, f"step {pct}")
        if step is not None:
            raise step
        progress(100, "Done")
        return PipelineOutcome(
            result=JobResult(
                mp3_url=f"/artifacts/lofi_{job.id}.mp3", wav_url=f"/artifacts/lofi_{job.id}.wav"
            ),
            final_loudness_db=-14.0,
        )
