from __future__ import annotations

import re
from urllib.parse import parse_qs, urlsplit

from lofi_pipeline.errors import InvalidArgument

ALLOWED_HOSTS = frozenset(
    {
        "youtube.com",
        "www.youtube.com",
        "m.youtube.com",
        "music.youtube.com",
        "youtu.be",
    }
)

_VIDEO_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")
_PATH_PREFIXES = ("/shorts/", "/embed/", "/live/")


def _valid_id(v: str | None) -> str | None:
    v = str(v or "").strip()
    return v if _VIDEO_ID_RE.match(v) else None


def extract_video_id(url: str) -> str | None:
    """
    Canonical 11-char video id, or None when the URL is not an allowed
    host or carries no recognizable id.
    """
    raw = str(url or "").strip()
    if not raw:
        return None
    try:
        parts = urlsplit(raw)
    except ValueError:
        return None
    if parts.scheme.lower() not in {"http", "https"}:
        return None
    host = (parts.hostname or "").lower()
    if host not in ALLOWED_HOSTS:
        return None
    path = parts.path or "/"

    if host == "youtu.be":
        return _valid_id(path.lstrip("/").split("/", 1)[0])
    if path.rstrip("/") == "/watch":
        return _valid_id((parse_qs(parts.query).get("v") or [""])[0])
    for prefix in _PATH_PREFIXES:
        if path.startswith(prefix):
            return _valid_id(path[len(prefix) :].split("/", 1)[0])
    return None


def canonical_url(url: str) -> str:
    vid = extract_video_id(url)
    if vid is None:
        raise InvalidArgument(f"unsupported or malformed video URL: {str(url)[:200]!r}")
    return f"https://www.youtube.com/watch?v={vid}"


def is_allowed_url(url: str) -> bool:
    return extract_video_id(url) is not None
