from __future__ import annotations

import re
import subprocess
from contextlib import suppress
from pathlib import Path

from lofi_pipeline.utils.log import logger

_FORBIDDEN_FLAGS = {
    "-filter_script",
    "-filter_script:a",
    "-filter_complex_script",
    "-stats_file",
}

# ffmpeg reports digital silence as -91 dB; files it cannot measure count as silence.
SILENCE_DB = -91.0

_MEAN_VOLUME_RE = re.compile(r"mean_volume:\s*(-?inf|-?\d+(?:\.\d+)?)\s*dB")


class FFmpegError(RuntimeError):
    pass


class FFmpegTimeout(FFmpegError):
    def __init__(self, message: str, *, timeout_s: float | None = None) -> None:
        super().__init__(message)
        self.timeout_s = timeout_s


def _validate_args(argv: list[str]) -> None:
    for a in argv:
        if a in _FORBIDDEN_FLAGS:
            raise FFmpegError(f"Forbidden ffmpeg/ffprobe flag: {a}")


def _tail(s: str, n: int = 4000) -> str:
    s = str(s or "")
    if len(s) <= n:
        return s
    return s[-n:]


def run_ffmpeg(
    argv: list[str],
    *,
    timeout_s: float | None = None,
    capture: bool = False,
) -> subprocess.CompletedProcess[str] | None:
    """
    Run an ffmpeg/ffprobe command line once.

    On timeout the child is killed (subprocess.run does this) before
    `FFmpegTimeout` is raised, so no process outlives its stage.
    """
    _validate_args(argv)
    try:
        if capture:
            return subprocess.run(
                argv,
                check=True,
                capture_output=True,
                text=True,
                timeout=timeout_s,
            )
        subprocess.run(
            argv,
            check=True,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout_s,
        )
        return None
    except subprocess.TimeoutExpired as ex:
        raise FFmpegTimeout(
            f"{Path(argv[0]).name} timed out after {timeout_s}s", timeout_s=timeout_s
        ) from ex
    except subprocess.CalledProcessError as ex:
        stderr = ""
        with suppress(Exception):
            if ex.stderr:
                if isinstance(ex.stderr, bytes):
                    stderr = ex.stderr.decode("utf-8", errors="replace")
                else:
                    stderr = str(ex.stderr)
        raise FFmpegError(
            f"{Path(argv[0]).name} failed "
            f"(exit={ex.returncode})\n"
            f"argv={argv}\n"
            f"stderr_tail={_tail(stderr)}"
        ) from ex
    except OSError as ex:
        raise FFmpegError(f"{argv[0]} could not be started: {ex}") from ex


def parse_mean_volume(stderr: str) -> float:
    m = _MEAN_VOLUME_RE.search(str(stderr or ""))
    if not m:
        return SILENCE_DB
    raw = m.group(1)
    if raw.endswith("inf"):
        return SILENCE_DB
    return max(SILENCE_DB, float(raw))


class FFmpegRunner:
    """
    The external transform stage executor.

    The pipeline only talks to this interface (run / mean_volume_db / duration_s),
    which keeps the orchestration testable with a scripted fake.
    """

    def __init__(self, *, ffmpeg_bin: str = "ffmpeg", ffprobe_bin: str = "ffprobe") -> None:
        self.ffmpeg_bin = str(ffmpeg_bin)
        self.ffprobe_bin = str(ffprobe_bin)

    def run(self, args: list[str], *, timeout_s: float) -> None:
        argv = [self.ffmpeg_bin, "-hide_banner", "-nostdin", "-y", *args]
        logger.debug("ffmpeg_run", argv=" ".join(argv), timeout_s=float(timeout_s))
        run_ffmpeg(argv, timeout_s=timeout_s)

    def mean_volume_db(self, path: Path, *, timeout_s: float) -> float:
        argv = [
            self.ffmpeg_bin,
            "-hide_banner",
            "-nostdin",
            "-i",
            str(path),
            "-af",
            "volumedetect",
            "-vn",
            "-f",
            "null",
            "-",
        ]
        p = run_ffmpeg(argv, timeout_s=timeout_s, capture=True)
        return parse_mean_volume(p.stderr if p is not None else "")

    def duration_s(self, path: Path, *, timeout_s: float = 20.0) -> float:
        argv = [
            self.ffprobe_bin,
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            str(path),
        ]
        p = run_ffmpeg(argv, timeout_s=timeout_s, capture=True)
        out = (p.stdout if p is not None else "").strip()
        try:
            return float(out)
        except ValueError as ex:
            raise FFmpegError(f"ffprobe returned no duration for {path.name}") from ex
