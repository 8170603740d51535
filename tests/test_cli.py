from __future__ import annotations

import json
import time

from click.testing import CliRunner

from lofi_pipeline.cli import cli
from lofi_pipeline.config import get_settings
from lofi_pipeline.errors import StageTimeout
from lofi_pipeline.jobs.models import JobStatus
from lofi_pipeline.jobs.store import JobStore
from tests._helpers.media import tiny_wav_bytes


def test_presets_lists_catalog() -> None:
    res = CliRunner().invoke(cli, ["presets"])
    assert res.exit_code == 0, res.output
    for pid in ("default", "tape90s", "sleep"):
        assert pid in res.output


def test_config_masks_secrets(monkeypatch) -> None:
    monkeypatch.setenv("YTDLP_COOKIES_FILE", "/secret/cookies-file.txt")
    get_settings.cache_clear()
    res = CliRunner().invoke(cli, ["config"])
    assert res.exit_code == 0, res.output
    data = json.loads(res.output)
    assert data["secrets"]["ytdlp_cookies_file"] == "SET"
    assert "/secret/cookies-file.txt" not in res.output


def test_purge_runs() -> None:
    res = CliRunner().invoke(cli, ["purge", "--minutes", "5"])
    assert res.exit_code == 0, res.output
    assert "Removed jobs=0" in res.output


def test_process_rejects_bad_url() -> None:
    res = CliRunner().invoke(cli, ["process", "https://vimeo.com/123", "--kind", "remote_url"])
    assert res.exit_code != 0
    assert "invalid" in res.output.lower()


class _DeadlineBoundPipeline:
    def __init__(self) -> None:
        self.ceilings: list[float | None] = []

    def run(self, job, *, progress, deadline=None):
        self.ceilings.append(deadline.seconds)
        while not deadline.expired():
            time.sleep(0.01)
        raise StageTimeout("transform", "attempt deadline exceeded")


def test_process_timeout_returns_and_fails_job(tmp_path, monkeypatch) -> None:
    import lofi_pipeline.cli as cli_mod

    pipe = _DeadlineBoundPipeline()
    real_build = cli_mod.build_scheduler

    def _build(**kw):
        sched = real_build(**kw)
        sched.pipeline = pipe
        return sched

    monkeypatch.setattr(cli_mod, "build_scheduler", _build)
    src = tmp_path / "clip.wav"
    src.write_bytes(tiny_wav_bytes())

    t0 = time.monotonic()
    res = CliRunner().invoke(cli, ["process", str(src), "--kind", "upload", "--timeout", "0.3"])
    assert time.monotonic() - t0 < 5.0
    assert res.exit_code != 0
    assert pipe.ceilings and pipe.ceilings[0] == 0.3

    jobs = JobStore(get_settings().public.jobs_db_path()).list()
    assert len(jobs) == 1
    assert jobs[0].status == JobStatus.FAILED
    assert jobs[0].error is not None and jobs[0].error.code == "stage_timeout"
