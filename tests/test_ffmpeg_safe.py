from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from lofi_pipeline.utils.ffmpeg_safe import (
    SILENCE_DB,
    FFmpegError,
    FFmpegRunner,
    FFmpegTimeout,
    parse_mean_volume,
    run_ffmpeg,
)
from tests._helpers.media import ensure_sine_wav


def test_parse_mean_volume() -> None:
    stderr = "[Parsed_volumedetect_0 @ 0x1] mean_volume: -23.4 dB\n[...] max_volume: -3.0 dB"
    assert parse_mean_volume(stderr) == pytest.approx(-23.4)
    assert parse_mean_volume("mean_volume: -inf dB") == SILENCE_DB
    assert parse_mean_volume("garbage") == SILENCE_DB
    assert parse_mean_volume("mean_volume: -120.0 dB") == SILENCE_DB


def test_forbidden_flags_rejected() -> None:
    with pytest.raises(FFmpegError):
        run_ffmpeg(["ffmpeg", "-filter_complex_script", "/tmp/x"], timeout_s=1)


def test_timeout_maps_to_ffmpeg_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(argv, **kw):
        raise subprocess.TimeoutExpired(argv, kw.get("timeout"))

    monkeypatch.setattr(subprocess, "run", fake_run)
    with pytest.raises(FFmpegTimeout) as ei:
        run_ffmpeg(["ffmpeg", "-i", "x.wav", "y.wav"], timeout_s=5)
    assert ei.value.timeout_s == 5


def test_nonzero_exit_carries_stderr_tail(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(argv, **kw):
        raise subprocess.CalledProcessError(1, argv, stderr="Invalid data found when processing input")

    monkeypatch.setattr(subprocess, "run", fake_run)
    with pytest.raises(FFmpegError) as ei:
        run_ffmpeg(["ffmpeg", "-i", "x.wav", "y.wav"], timeout_s=5)
    assert "Invalid data found" in str(ei.value)
    assert not isinstance(ei.value, FFmpegTimeout)


def test_failed_command_runs_exactly_once(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = []

    def fake_run(argv, **kw):
        calls.append(argv)
        raise subprocess.CalledProcessError(1, argv, stderr="boom")

    monkeypatch.setattr(subprocess, "run", fake_run)
    with pytest.raises(FFmpegError):
        run_ffmpeg(["ffmpeg", "-i", "x.wav", "y.wav"], timeout_s=5)
    assert len(calls) == 1


def test_missing_binary_is_ffmpeg_error() -> None:
    runner = FFmpegRunner(ffmpeg_bin="/nonexistent/ffmpeg-xyz")
    with pytest.raises(FFmpegError):
        runner.run(["-i", "a.wav", "b.wav"], timeout_s=5)


def test_real_measurement(tmp_path: Path) -> None:
    wav = ensure_sine_wav(tmp_path / "tone.wav", skip_message="ffmpeg not installed")
    if shutil.which("ffprobe") is None:
        pytest.skip("ffprobe not installed")
    runner = FFmpegRunner()
    level = runner.mean_volume_db(wav, timeout_s=30)
    assert -40.0 < level < 0.0
    assert runner.duration_s(wav) == pytest.approx(2.0, abs=0.1)
