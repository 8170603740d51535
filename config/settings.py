from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from pydantic import SecretStr

from .public_config import PublicConfig
from .secret_config import SecretConfig


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class Settings:
    """
    Merged settings view (dot-access).

    Precedence:
      - secrets override public when names overlap
    """

    public: PublicConfig
    secret: SecretConfig

    def __getattr__(self, name: str) -> Any:
        if hasattr(self.secret, name):
            return getattr(self.secret, name)
        return getattr(self.public, name)

    def cors_origin_list(self) -> list[str]:
        return self.public.cors_origin_list()


def _secret_value(secret: SecretStr | None) -> str:
    if secret is None:
        return ""
    return str(secret.get_secret_value() or "")


def validate_settings(s: Settings) -> None:
    """
    Reject values the scheduler/pipeline cannot run with.
    """
    p = s.public
    bad: list[str] = []
    if int(p.worker_concurrency) < 1:
        bad.append("WORKER_CONCURRENCY")
    if int(p.max_attempts) < 1:
        bad.append("MAX_ATTEMPTS")
    if int(p.download_retries) < 1:
        bad.append("DOWNLOAD_RETRIES")
    for name, v in (
        ("ATTEMPT_TIMEOUT_S", p.attempt_timeout_s),
        ("STAGE_TIMEOUT_S", p.stage_timeout_s),
        ("DOWNLOAD_TIMEOUT_S", p.download_timeout_s),
        ("MAX_SOURCE_DURATION_S", p.max_source_duration_s),
    ):
        if float(v) <= 0:
            bad.append(name)
    if float(p.retry_base_delay_s) < 0 or float(p.download_base_delay_s) < 0:
        bad.append("RETRY_BASE_DELAY_S/DOWNLOAD_BASE_DELAY_S")
    if int(p.mp3_bitrate_kbps) not in {32, 40, 48, 56, 64, 80, 96, 112, 128, 160, 192, 224, 256, 320}:
        bad.append("MP3_BITRATE_KBPS")
    if bad:
        raise ConfigError("Invalid configuration: " + ", ".join(bad))


def get_safe_config_report() -> dict[str, Any]:
    """
    Deterministic, non-sensitive config report.

    - Public values are included (paths are stringified)
    - Secret values are NEVER included; only SET/UNSET markers
    """
    s = get_settings()

    pub_s: dict[str, Any] = {}
    for k, v in s.public.model_dump().items():
        pub_s[k] = str(v) if hasattr(v, "__fspath__") else v

    sec: dict[str, str] = {}
    for k in sorted(s.secret.model_fields.keys()):
        v = getattr(s.secret, k, None)
        if isinstance(v, SecretStr):
            sec[k] = "SET" if _secret_value(v) else "UNSET"
        else:
            sec[k] = "SET" if str(v or "").strip() else "UNSET"
    return {"public": pub_s, "secrets": sec}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    s = Settings(public=PublicConfig(), secret=SecretConfig())
    validate_settings(s)
    return s
