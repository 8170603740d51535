from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class SecretConfig(BaseSettings):
    """
    Sensitive config.

    This module is safe to commit: it contains *no* secrets, only loading logic.
    Real secret values should come from:
      - environment variables (preferred in production)
      - optional local `.env.secrets` file (developer convenience)
    """

    model_config = SettingsConfigDict(
        env_file=".env.secrets",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Netscape cookie jar handed to yt-dlp (session cookies are credentials).
    ytdlp_cookies_file: SecretStr | None = Field(default=None, alias="YTDLP_COOKIES_FILE")
    # Proxy URL for remote fetches; may embed user:pass.
    ytdlp_proxy: SecretStr | None = Field(default=None, alias="YTDLP_PROXY")
