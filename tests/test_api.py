from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi.testclient import TestClient

from lofi_pipeline.config import get_settings
from lofi_pipeline.server import app
from tests._helpers.fakes import ScriptedPipeline
from tests._helpers.media import tiny_wav_bytes


@contextmanager
def _client(pipeline: ScriptedPipeline | None = None) -> Iterator[TestClient]:
    with TestClient(app) as c:
        app.state.scheduler.pipeline = pipeline or ScriptedPipeline()
        yield c


def _wait_terminal(c: TestClient, job_id: str) -> dict:
    for _ in range(500):
        body = c.get(f"/api/jobs/{job_id}").json()
        if body["status"] in {"completed", "failed"}:
            return body
        time.sleep(0.02)
    raise AssertionError(f"job {job_id} did not finish")


def _upload(c: TestClient, payload: bytes | None = None):
    return c.post(
        "/api/uploads",
        files={"file": ("clip.wav", payload if payload is not None else tiny_wav_bytes(), "audio/wav")},
    )


def test_upload_submit_poll_download() -> None:
    with _client() as c:
        r = _upload(c)
        assert r.status_code == 200, r.text
        upload_id = r.json()["upload_id"]
        assert r.json()["format"] == "wav"

        r = c.post(
            "/api/jobs",
            json={"source_kind": "upload", "source_ref": upload_id, "preset": "tape90s"},
        )
        assert r.status_code == 200, r.text
        job_id = r.json()["job_id"]
        assert r.json()["status"] in {"pending", "processing", "completed"}

        body = _wait_terminal(c, job_id)
        assert body["status"] == "completed"
        assert body["progress"] == 100
        assert body["preset"] == "tape90s"
        assert "source_ref" not in body
        assert "error" not in body

        r = c.get(f"/api/jobs/{job_id}/download/mp3", follow_redirects=False)
        assert r.status_code == 307
        assert r.headers["location"] == body["result"]["mp3_url"]


def test_invalid_submissions_are_rejected_without_records() -> None:
    with _client() as c:
        bad = [
            {"source_kind": "upload", "source_ref": "0" * 32, "preset": "vaporwave"},
            {"source_kind": "remote_url", "source_ref": "https://vimeo.com/1"},
            {"source_kind": "carrier_pigeon", "source_ref": "x"},
            {"source_kind": "upload"},
        ]
        for payload in bad:
            r = c.post("/api/jobs", json=payload)
            assert r.status_code == 400, payload
        r = c.post("/api/jobs", content=b"not json", headers={"content-type": "application/json"})
        assert r.status_code == 400
        assert app.state.scheduler.store.list() == []


def test_idempotency_key_returns_same_job() -> None:
    with _client() as c:
        payload = {"source_kind": "remote_url", "source_ref": "https://youtu.be/dQw4w9WgXcQ"}
        h = {"Idempotency-Key": "client-retry-42"}
        a = c.post("/api/jobs", json=payload, headers=h).json()["job_id"]
        b = c.post("/api/jobs", json=payload, headers=h).json()["job_id"]
        other = c.post("/api/jobs", json=payload).json()["job_id"]
        assert a == b
        assert a != other
        assert a.startswith("idem-")


def test_unknown_job_and_bad_download_requests() -> None:
    gate = threading.Event()
    with _client(ScriptedPipeline(gate=gate)) as c:
        try:
            assert c.get("/api/jobs/nope").status_code == 404
            assert c.get("/api/jobs/nope/download/mp3").status_code == 404

            r = c.post("/api/jobs", json={"source_kind": "upload", "source_ref": "0" * 32})
            job_id = r.json()["job_id"]
            assert c.get(f"/api/jobs/{job_id}/download/flac").status_code == 400
            assert c.get(f"/api/jobs/{job_id}/download/wav").status_code == 409
            gate.set()
            assert _wait_terminal(c, job_id)["status"] == "completed"
        finally:
            gate.set()


def test_upload_rejections(monkeypatch) -> None:
    monkeypatch.setenv("MAX_UPLOAD_BYTES", "64")
    get_settings.cache_clear()
    with _client() as c:
        assert _upload(c, tiny_wav_bytes(256)).status_code == 413
        assert _upload(c, b"<?php echo 1; ?>").status_code == 400
        assert _upload(c, b"").status_code == 400
        uploads = get_settings().public.uploads_root()
        assert not uploads.exists() or list(uploads.iterdir()) == []


def test_failed_job_exposes_safe_error() -> None:
    from lofi_pipeline.errors import SourceRestricted

    pipe = ScriptedPipeline([SourceRestricted("Sign in to confirm your age (cookie=abc)")])
    with _client(pipe) as c:
        r = c.post("/api/jobs", json={"source_kind": "upload", "source_ref": "0" * 32})
        body = _wait_terminal(c, r.json()["job_id"])
        assert body["status"] == "failed"
        assert body["error"]["code"] == "source_restricted"
        assert "cookie" not in body["error"]["message"]
        assert "result" not in body


def test_events_stream_ends_on_terminal_status() -> None:
    with _client() as c:
        r = c.post("/api/jobs", json={"source_kind": "upload", "source_ref": "0" * 32})
        job_id = r.json()["job_id"]
        _wait_terminal(c, job_id)
        r = c.get(f"/api/jobs/{job_id}/events")
        assert r.status_code == 200
        assert "event: job" in r.text
        assert '"status": "completed"' in r.text
        assert c.get("/api/jobs/nope/events").status_code == 404


def test_artifacts_are_served() -> None:
    with _client() as c:
        root = get_settings().public.artifacts_root()
        (root / "lofi_x.mp3").write_bytes(b"ID3-fake")
        r = c.get("/artifacts/lofi_x.mp3")
        assert r.status_code == 200
        assert r.content == b"ID3-fake"
        assert r.headers["content-type"].startswith("audio/mpeg")
        assert c.get("/artifacts/missing.mp3").status_code == 404
        assert c.get("/artifacts/.lofi_x.mp3.tmp").status_code == 404


def test_presets_health_metrics_and_request_id() -> None:
    with _client() as c:
        ids = [p["id"] for p in c.get("/api/presets").json()["presets"]]
        assert ids == ["default", "tape90s", "sleep"]

        r = c.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert r.json() == {"ok": True, "accepting": True}
        assert r.headers["x-request-id"] == "req-123"
        assert c.get("/healthz").headers.get("x-request-id")

        c.post("/api/jobs", json={"source_kind": "upload", "source_ref": "0" * 32})
        text = c.get("/metrics").text
        assert "lofi_jobs_submitted_total" in text
        assert "lofi_stage_seconds" in text
