from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_app_root() -> Path:
    """
    Default application root.

    Docker images mount the app at /app; local runs use the current working directory.
    """
    env = os.environ.get("APP_ROOT")
    if env:
        return Path(env).resolve()
    if Path("/app").exists():
        return Path("/app").resolve()
    return Path.cwd().resolve()


class PublicConfig(BaseSettings):
    """
    Non-sensitive config with safe defaults.

    Loaded from (in order):
      - process env
      - optional `.env` file
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- core paths ---
    app_root: Path = Field(default_factory=_default_app_root, alias="APP_ROOT")
    # Runtime-only state (jobs DB, work dirs, staged uploads).
    # If unset, defaults to "<APP_ROOT>/_state".
    state_dir: Path | None = Field(default=None, alias="LOFI_STATE_DIR")
    work_dir: Path | None = Field(default=None, alias="LOFI_WORK_DIR")
    uploads_dir: Path | None = Field(default=None, alias="LOFI_UPLOADS_DIR")
    artifacts_dir: Path | None = Field(default=None, alias="LOFI_ARTIFACTS_DIR")
    textures_dir: Path | None = Field(default=None, alias="LOFI_TEXTURES_DIR")
    log_dir: Path | None = Field(default=None, alias="LOFI_LOG_DIR")
    jobs_db_name: str = Field(default="jobs.db", alias="LOFI_JOBS_DB_NAME")

    # --- tool binaries ---
    ffmpeg_bin: str = Field(default="ffmpeg", alias="FFMPEG_BIN")
    ffprobe_bin: str = Field(default="ffprobe", alias="FFPROBE_BIN")
    ytdlp_bin: str = Field(default="yt-dlp", alias="YTDLP_BIN")

    # --- scheduler ---
    worker_concurrency: int = Field(default=2, alias="WORKER_CONCURRENCY")
    max_attempts: int = Field(default=3, alias="MAX_ATTEMPTS")
    retry_base_delay_s: float = Field(default=2.0, alias="RETRY_BASE_DELAY_S")
    # Whole-attempt wall-clock ceiling; each ffmpeg call is also bounded by STAGE_TIMEOUT_S.
    attempt_timeout_s: float = Field(default=900.0, alias="ATTEMPT_TIMEOUT_S")
    stage_timeout_s: float = Field(default=300.0, alias="STAGE_TIMEOUT_S")

    # --- source acquisition ---
    max_source_duration_s: float = Field(default=600.0, alias="MAX_SOURCE_DURATION_S")
    download_timeout_s: float = Field(default=120.0, alias="DOWNLOAD_TIMEOUT_S")
    download_retries: int = Field(default=3, alias="DOWNLOAD_RETRIES")  # total attempts
    download_base_delay_s: float = Field(default=1.0, alias="DOWNLOAD_BASE_DELAY_S")

    # --- loudness contract (mean volume, dB) ---
    loudness_threshold_db: float = Field(default=-20.0, alias="LOUDNESS_THRESHOLD_DB")
    final_loudness_threshold_db: float = Field(default=-30.0, alias="FINAL_LOUDNESS_THRESHOLD_DB")
    repair_target_db: float = Field(default=-14.0, alias="REPAIR_TARGET_DB")
    max_repair_gain_db: float = Field(default=30.0, alias="MAX_REPAIR_GAIN_DB")

    # --- deliverables ---
    mp3_bitrate_kbps: int = Field(default=320, alias="MP3_BITRATE_KBPS")
    output_sample_rate: int = Field(default=44100, alias="OUTPUT_SAMPLE_RATE")
    output_channels: int = Field(default=2, alias="OUTPUT_CHANNELS")

    # --- retention ---
    retention_minutes: int = Field(default=60, alias="RETENTION_MINUTES")
    purge_interval_s: float = Field(default=300.0, alias="PURGE_INTERVAL_S")

    # --- uploads ---
    max_upload_bytes: int = Field(default=100 * 1024 * 1024, alias="MAX_UPLOAD_BYTES")

    # --- web server ---
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    # Prefix for artifact URLs handed to clients; empty keeps them relative ("/artifacts/...").
    public_base_url: str = Field(default="", alias="PUBLIC_BASE_URL")
    cors_origins: str = Field(default="", alias="CORS_ORIGINS")

    # --- logging ---
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_max_bytes: int = Field(default=5 * 1024 * 1024, alias="LOG_MAX_BYTES")
    log_backup_count: int = Field(default=3, alias="LOG_BACKUP_COUNT")

    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in (self.cors_origins or "").split(",") if o.strip()]

    # Resolved paths (all derived from APP_ROOT unless overridden)
    def state_root(self) -> Path:
        return Path(self.state_dir or (Path(self.app_root) / "_state")).resolve()

    def work_root(self) -> Path:
        return Path(self.work_dir or (self.state_root() / "work")).resolve()

    def uploads_root(self) -> Path:
        return Path(self.uploads_dir or (self.state_root() / "uploads")).resolve()

    def artifacts_root(self) -> Path:
        return Path(self.artifacts_dir or (Path(self.app_root) / "artifacts")).resolve()

    def textures_root(self) -> Path:
        return Path(self.textures_dir or (Path(self.app_root) / "textures")).resolve()

    def log_root(self) -> Path:
        return Path(self.log_dir or (Path(self.app_root) / "logs")).resolve()

    def jobs_db_path(self) -> Path:
        return self.state_root() / str(self.jobs_db_name or "jobs.db")
