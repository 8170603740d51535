"""
Transform pipeline: one attempt, strictly sequential stages.

    acquire -> transform -> verify (+repair) -> texture (optional)
            -> encode -> final guard (+single repair) -> publish

Each stage's output is confirmed on disk before the next stage starts. All
intermediates live in a `PipelineWorkspace` that is removed on every exit path.
Retries are not handled here; a failed attempt raises and the scheduler decides.
"""

from __future__ import annotations

import os
import secrets
import shutil
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from lofi_pipeline.audio.filters import effect_chain, gain_boost, repair_gain_db, texture_mix_graph
from lofi_pipeline.audio.textures import Texture
from lofi_pipeline.errors import LofiError, PublishFailure, StageFailure, StageTimeout
from lofi_pipeline.jobs.models import Job, JobResult
from lofi_pipeline.jobs.progress import ProgressSink
from lofi_pipeline.ops.metrics import loudness_repairs, stage_seconds, textures_skipped, time_hist
from lofi_pipeline.presets import PresetConfig, get_preset
from lofi_pipeline.sources.acquire import SourceAcquirer
from lofi_pipeline.storage.artifacts import ArtifactStore
from lofi_pipeline.utils.deadline import Deadline, unbounded
from lofi_pipeline.utils.ffmpeg_safe import FFmpegError, FFmpegRunner, FFmpegTimeout
from lofi_pipeline.utils.log import logger


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    stage_timeout_s: float = 300.0
    loudness_threshold_db: float = -20.0
    final_loudness_threshold_db: float = -30.0
    repair_target_db: float = -14.0
    max_repair_gain_db: float = 30.0
    # A texture mix measuring at or below this is treated as broken and dropped.
    texture_silence_db: float = -50.0
    mp3_bitrate_kbps: int = 320
    sample_rate: int = 44100
    channels: int = 2


@dataclass(frozen=True, slots=True)
class PipelineOutcome:
    result: JobResult
    final_loudness_db: float
    repairs: tuple[str, ...] = ()
    textures_used: int = 0


@dataclass(slots=True)
class PipelineWorkspace:
    """
    Transient working state owned by exactly one attempt.

    Use as a context manager; leaving the block removes the directory and
    every tracked intermediate, whether the attempt succeeded or not.
    """

    root: Path
    job_id: str
    attempt: int
    dir: Path | None = None
    source: Path | None = None
    transformed: Path | None = None
    textured: Path | None = None
    final_wav: Path | None = None
    final_mp3: Path | None = None
    cleanup_list: list[Path] = field(default_factory=list)

    def __enter__(self) -> PipelineWorkspace:
        self.root.mkdir(parents=True, exist_ok=True)
        self.dir = self.root / f"{self.job_id}_a{int(self.attempt)}_{secrets.token_hex(4)}"
        self.dir.mkdir(parents=True, exist_ok=False)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    def file(self, name: str) -> Path:
        if self.dir is None:
            raise RuntimeError("workspace is not open")
        p = self.dir / name
        self.cleanup_list.append(p)
        return p

    def cleanup(self) -> None:
        for p in reversed(self.cleanup_list):
            try:
                p.unlink(missing_ok=True)
            except OSError as ex:
                logger.warning("workspace_unlink_failed", path=str(p), error=str(ex))
        self.cleanup_list.clear()
        if self.dir is not None:
            shutil.rmtree(self.dir, ignore_errors=True)
            if self.dir.exists():
                logger.warning("workspace_cleanup_incomplete", path=str(self.dir))


TextureSource = Callable[[], Sequence[Texture]]


class TransformPipeline:
    def __init__(
        self,
        *,
        acquirer: SourceAcquirer,
        runner: FFmpegRunner,
        artifacts: ArtifactStore,
        work_root: Path,
        config: PipelineConfig | None = None,
        textures: TextureSource | None = None,
    ) -> None:
        self.acquirer = acquirer
        self.runner = runner
        self.artifacts = artifacts
        self.work_root = Path(work_root)
        self.config = config or PipelineConfig()
        self._textures = textures or (lambda: ())

    # --- stage helpers ---
    @contextmanager
    def _stage(self, name: str) -> Iterator[None]:
        with time_hist(stage_seconds.labels(stage=name)) as elapsed:
            yield
        logger.info("stage_done", stage=name, seconds=round(elapsed(), 3))

    def _ffmpeg(self, stage: str, args: list[str], deadline: Deadline) -> None:
        timeout_s = deadline.bound(stage, self.config.stage_timeout_s)
        try:
            self.runner.run(args, timeout_s=timeout_s)
        except FFmpegTimeout as ex:
            raise StageTimeout(stage, str(ex)) from ex
        except FFmpegError as ex:
            raise StageFailure(stage, str(ex)) from ex
        self._require_output(stage, Path(args[-1]))

    def _measure(self, stage: str, path: Path, deadline: Deadline) -> float:
        timeout_s = deadline.bound(stage, self.config.stage_timeout_s)
        try:
            return float(self.runner.mean_volume_db(path, timeout_s=timeout_s))
        except FFmpegTimeout as ex:
            raise StageTimeout(stage, str(ex)) from ex
        except FFmpegError as ex:
            raise StageFailure(stage, str(ex)) from ex

    @staticmethod
    def _require_output(stage: str, path: Path) -> None:
        try:
            ok = path.is_file() and path.stat().st_size > 0
        except OSError:
            ok = False
        if not ok:
            raise StageFailure(stage, f"expected output {path.name} is missing or empty")

    def _pcm_args(self) -> list[str]:
        return [
            "-ar",
            str(int(self.config.sample_rate)),
            "-ac",
            str(int(self.config.channels)),
            "-c:a",
            "pcm_s16le",
        ]

    def _boost(self, stage: str, src: Path, dst: Path, measured_db: float, deadline: Deadline) -> float:
        gain = repair_gain_db(
            measured_db,
            target_db=self.config.repair_target_db,
            max_gain_db=self.config.max_repair_gain_db,
        )
        logger.warning(
            "loudness_repair", stage=stage, measured_db=round(measured_db, 2), gain_db=round(gain, 2)
        )
        loudness_repairs.labels(stage=stage).inc()
        self._ffmpeg(stage, ["-i", str(src), "-af", gain_boost(gain), *self._pcm_args(), str(dst)], deadline)
        return gain

    # --- stages ---
    def _transform(self, ws: PipelineWorkspace, preset: PresetConfig, deadline: Deadline) -> Path:
        out = ws.file("transformed.wav")
        chain = effect_chain(preset, sample_rate=self.config.sample_rate)
        self._ffmpeg(
            "transform",
            ["-i", str(ws.source), "-vn", "-af", chain, *self._pcm_args(), str(out)],
            deadline,
        )
        ws.transformed = out
        return out

    def _verify(self, ws: PipelineWorkspace, src: Path, deadline: Deadline, repairs: list[str]) -> Path:
        level = self._measure("verify", src, deadline)
        logger.info("loudness_measured", stage="verify", mean_db=round(level, 2))
        if level >= self.config.loudness_threshold_db:
            return src
        out = ws.file("repaired.wav")
        self._boost("verify", src, out, level, deadline)
        repairs.append("verify")
        return out

    def _layer_textures(
        self, ws: PipelineWorkspace, src: Path, preset: PresetConfig, deadline: Deadline
    ) -> tuple[Path, int]:
        textures = list(self._textures())
        if not textures:
            textures_skipped.labels(reason="unavailable").inc()
            logger.info("texture_skipped", reason="unavailable")
            return src, 0
        out = ws.file("textured.wav")
        args = ["-i", str(src)]
        for t in textures:
            args += ["-stream_loop", "-1", "-i", str(t.path)]
        gains = [float(t.weight) * float(preset.texture_mix) for t in textures]
        args += ["-filter_complex", texture_mix_graph(gains), "-map", "[out]", *self._pcm_args(), str(out)]
        try:
            self._ffmpeg("texture", args, deadline)
            level = self._measure("texture", out, deadline)
        except StageTimeout as ex:
            if deadline.expired():
                raise
            textures_skipped.labels(reason="timeout").inc()
            logger.warning("texture_discarded", reason="timeout", error=ex.detail)
            return src, 0
        except StageFailure as ex:
            textures_skipped.labels(reason="error").inc()
            logger.warning("texture_discarded", reason="error", error=ex.detail)
            return src, 0
        if level <= self.config.texture_silence_db:
            textures_skipped.labels(reason="silent").inc()
            logger.warning("texture_discarded", reason="silent", mean_db=round(level, 2))
            return src, 0
        ws.textured = out
        return out, len(textures)

    def _encode(self, ws: PipelineWorkspace, src: Path, deadline: Deadline) -> None:
        wav = ws.final_wav or ws.file(f"lofi_{ws.job_id}.wav")
        if src != wav:
            self._ffmpeg("encode", ["-i", str(src), *self._pcm_args(), str(wav)], deadline)
        mp3 = ws.final_mp3 or ws.file(f"lofi_{ws.job_id}.mp3")
        self._ffmpeg(
            "encode",
            [
                "-i",
                str(wav),
                "-ar",
                str(int(self.config.sample_rate)),
                "-ac",
                str(int(self.config.channels)),
                "-c:a",
                "libmp3lame",
                "-b:a",
                f"{int(self.config.mp3_bitrate_kbps)}k",
                str(mp3),
            ],
            deadline,
        )
        ws.final_wav = wav
        ws.final_mp3 = mp3

    def _final_guard(self, ws: PipelineWorkspace, deadline: Deadline, repairs: list[str]) -> float:
        """
        Re-measure the encoded MP3; a level under the floor gets exactly one
        boost of the WAV plus a re-encode. Never loops.
        """
        assert ws.final_wav is not None and ws.final_mp3 is not None
        level = self._measure("final_guard", ws.final_mp3, deadline)
        if level >= self.config.final_loudness_threshold_db:
            return level
        boosted = ws.file("final_boosted.wav")
        self._boost("final_guard", ws.final_wav, boosted, level, deadline)
        os.replace(boosted, ws.final_wav)
        self._encode(ws, ws.final_wav, deadline)
        repairs.append("final_guard")
        return self._measure("final_guard", ws.final_mp3, deadline)

    def _publish(self, ws: PipelineWorkspace) -> JobResult:
        assert ws.final_wav is not None and ws.final_mp3 is not None
        try:
            mp3_url = self.artifacts.publish(
                ws.final_mp3, content_type="audio/mpeg", name=f"lofi_{ws.job_id}.mp3"
            )
            wav_url = self.artifacts.publish(
                ws.final_wav, content_type="audio/wav", name=f"lofi_{ws.job_id}.wav"
            )
        except LofiError:
            raise
        except Exception as ex:
            raise PublishFailure(f"artifact store error: {ex}") from ex
        return JobResult(mp3_url=mp3_url, wav_url=wav_url)

    # --- entrypoint ---
    def run(
        self, job: Job, *, progress: ProgressSink, deadline: Deadline | None = None
    ) -> PipelineOutcome:
        deadline = deadline or unbounded()
        preset = get_preset(job.preset)
        repairs: list[str] = []
        with PipelineWorkspace(self.work_root, job.id, job.attempt) as ws:
            progress(2, "Fetching source")
            with self._stage("acquire"):
                ws.source = self.acquirer.acquire(
                    job.source_kind, job.source_ref, ws.dir / "source", deadline=deadline
                )
                ws.cleanup_list.append(ws.source)
            progress(30, "Applying lo-fi effects")

            with self._stage("transform"):
                current = self._transform(ws, preset, deadline)
            progress(55, "Checking loudness")

            with self._stage("verify"):
                current = self._verify(ws, current, deadline, repairs)
            progress(60, "Layering ambient textures")

            with self._stage("texture"):
                current, textures_used = self._layer_textures(ws, current, preset, deadline)
            progress(80, "Encoding MP3 and WAV")

            with self._stage("encode"):
                self._encode(ws, current, deadline)
            progress(90, "Final loudness check")

            with self._stage("final_guard"):
                final_db = self._final_guard(ws, deadline, repairs)
            progress(95, "Publishing")

            with self._stage("publish"):
                result = self._publish(ws)
            progress(100, "Done")

        logger.info(
            "pipeline_done",
            preset=preset.id,
            preset_version=preset.version,
            final_db=round(final_db, 2),
            repairs=",".join(repairs) or "none",
            textures=textures_used,
        )
        return PipelineOutcome(
            result=result,
            final_loudness_db=final_db,
            repairs=tuple(repairs),
            textures_used=textures_used,
        )
