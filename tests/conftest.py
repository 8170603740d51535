from __future__ import annotations

import pytest

from lofi_pipeline.config import get_settings


@pytest.fixture(autouse=True)
def _test_env(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    root = tmp_path_factory.mktemp("lofi_test")
    (root / "logs").mkdir(parents=True, exist_ok=True)
    (root / "_state").mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("APP_ROOT", str(root))
    monkeypatch.setenv("LOFI_STATE_DIR", str(root / "_state"))
    monkeypatch.setenv("LOFI_LOG_DIR", str(root / "logs"))
    monkeypatch.setenv("LOFI_ARTIFACTS_DIR", str(root / "artifacts"))
    monkeypatch.setenv("LOFI_TEXTURES_DIR", str(root / "textures"))
    monkeypatch.setenv("RETRY_BASE_DELAY_S", "0")
    monkeypatch.setenv("DOWNLOAD_BASE_DELAY_S", "0")
    monkeypatch.setenv("PURGE_INTERVAL_S", "3600")
    monkeypatch.delenv("YTDLP_COOKIES_FILE", raising=False)
    monkeypatch.delenv("YTDLP_PROXY", raising=False)
    monkeypatch.delenv("CORS_ORIGINS", raising=False)
    get_settings.cache_clear()
