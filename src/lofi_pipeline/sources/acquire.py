"""
Source acquisition.

Turns a job's (source_kind, source_ref) into one local audio file inside the
attempt's work directory:

  - upload: a staged upload id / path under the uploads root, or an http(s)
    blob URL, copied into the work dir
  - remote_url: an allow-listed video URL fetched with the yt-dlp library
    (retried with exponential backoff), then the yt-dlp CLI as a fallback

Every failure leaves here as a `SourceError` subclass (or `InvalidArgument`).
"""

from __future__ import annotations

import json
import shutil
import subprocess
import time
import urllib.error
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import urlsplit

import yt_dlp
from yt_dlp.utils import DownloadCancelled, DownloadError, ExtractorError

from lofi_pipeline.errors import (
    InvalidArgument,
    LofiError,
    SourceError,
    SourcePrivate,
    SourceRestricted,
    SourceTimeout,
    SourceTooLong,
    SourceUnavailable,
    is_retryable,
)
from lofi_pipeline.jobs.models import SourceKind
from lofi_pipeline.sources.uploads import resolve_upload
from lofi_pipeline.sources.urls import canonical_url
from lofi_pipeline.utils.deadline import Deadline, unbounded
from lofi_pipeline.utils.ffmpeg_safe import FFmpegError, FFmpegRunner
from lofi_pipeline.utils.log import logger
from lofi_pipeline.utils.retry import retry_call

_AUDIO_SUFFIXES = {".wav", ".mp3", ".flac", ".m4a", ".aac", ".ogg", ".opus", ".webm"}


@dataclass(frozen=True, slots=True)
class AcquireConfig:
    uploads_root: Path
    max_duration_s: float = 600.0
    download_timeout_s: float = 120.0
    download_retries: int = 3  # total primary attempts
    base_delay_s: float = 1.0
    max_delay_s: float = 8.0
    max_bytes: int = 100 * 1024 * 1024


@dataclass(frozen=True, slots=True)
class RemoteMetadata:
    video_id: str
    title: str = ""
    duration_s: float | None = None
    availability: str | None = None
    age_limit: int = 0
    needs_auth: bool = False

    @classmethod
    def from_info(cls, info: dict[str, Any]) -> RemoteMetadata:
        dur = info.get("duration")
        availability = info.get("availability")
        return cls(
            video_id=str(info.get("id") or ""),
            title=str(info.get("title") or ""),
            duration_s=float(dur) if dur else None,
            availability=str(availability) if availability else None,
            age_limit=int(info.get("age_limit") or 0),
            needs_auth=availability in {"needs_auth", "premium_only", "subscriber_only"},
        )


def check_metadata(meta: RemoteMetadata, *, max_duration_s: float) -> None:
    if meta.availability == "private":
        raise SourcePrivate(f"video {meta.video_id} is private")
    if meta.age_limit >= 18 or meta.needs_auth:
        raise SourceRestricted(
            f"video {meta.video_id} restricted (age_limit={meta.age_limit}, "
            f"availability={meta.availability})"
        )
    if meta.duration_s is not None and meta.duration_s > float(max_duration_s):
        raise SourceTooLong(
            f"video {meta.video_id} is {meta.duration_s:.0f}s (limit {float(max_duration_s):.0f}s)"
        )


def classify_download_error(text: str) -> SourceError:
    """
    Typed error for a provider failure, decided where the failure happens.
    """
    t = str(text or "").lower()
    if "private video" in t or "video is private" in t:
        return SourcePrivate(text)
    if any(
        k in t
        for k in (
            "confirm your age",
            "age-restricted",
            "age restricted",
            "inappropriate for some users",
            "members-only",
            "join this channel",
            "requires payment",
        )
    ):
        return SourceRestricted(text)
    if "timed out" in t or "timeout" in t:
        return SourceTimeout(text)
    return SourceUnavailable(text)


class FetchStrategy(Protocol):
    name: str

    def probe(self, url: str, *, timeout_s: float) -> RemoteMetadata: ...

    def fetch(self, url: str, dest_dir: Path, *, timeout_s: float) -> Path: ...


def _find_output(dest_dir: Path, stem: str) -> Path | None:
    for p in sorted(dest_dir.glob(f"{stem}.*")):
        if p.is_file() and p.suffix.lower() in _AUDIO_SUFFIXES:
            return p
    return None


class YtDlpLibraryStrategy:
    """Primary strategy: yt-dlp in-process (metadata probe, then bestaudio)."""

    name = "yt_dlp"

    def __init__(self, *, cookies_file: str | None = None, proxy: str | None = None) -> None:
        self.cookies_file = cookies_file
        self.proxy = proxy

    def _opts(self, *, timeout_s: float) -> dict[str, Any]:
        opts: dict[str, Any] = {
            "quiet": True,
            "no_warnings": True,
            "noplaylist": True,
            "noprogress": True,
            "socket_timeout": float(timeout_s),
            # Retries are owned by the acquirer's backoff loop.
            "retries": 0,
            "fragment_retries": 0,
        }
        if self.cookies_file:
            opts["cookiefile"] = self.cookies_file
        if self.proxy:
            opts["proxy"] = self.proxy
        return opts

    def probe(self, url: str, *, timeout_s: float) -> RemoteMetadata:
        try:
            with yt_dlp.YoutubeDL(self._opts(timeout_s=timeout_s)) as ydl:
                info = ydl.extract_info(url, download=False)
        except (DownloadError, ExtractorError) as ex:
            raise classify_download_error(str(ex)) from ex
        if not isinstance(info, dict):
            raise SourceUnavailable(f"no metadata for {url}")
        return RemoteMetadata.from_info(info)

    def fetch(self, url: str, dest_dir: Path, *, timeout_s: float) -> Path:
        t_end = time.monotonic() + float(timeout_s)

        def _hook(d: dict[str, Any]) -> None:
            if time.monotonic() > t_end:
                raise DownloadCancelled(f"download timed out after {timeout_s:.0f}s")

        opts = self._opts(timeout_s=timeout_s)
        opts.update(
            {
                "format": "bestaudio/best",
                "outtmpl": str(dest_dir / "primary.%(ext)s"),
                "progress_hooks": [_hook],
            }
        )
        try:
            with yt_dlp.YoutubeDL(opts) as ydl:
                ydl.download([url])
        except DownloadCancelled as ex:
            raise SourceTimeout(str(ex)) from ex
        except (DownloadError, ExtractorError) as ex:
            raise classify_download_error(str(ex)) from ex
        out = _find_output(dest_dir, "primary")
        if out is None:
            raise SourceUnavailable(f"yt-dlp reported success but wrote no audio for {url}")
        return out


class YtDlpCliStrategy:
    """Fallback strategy: the yt-dlp CLI, audio extracted to mp3."""

    name = "yt-dlp-cli"

    def __init__(
        self,
        *,
        ytdlp_bin: str = "yt-dlp",
        cookies_file: str | None = None,
        proxy: str | None = None,
    ) -> None:
        self.ytdlp_bin = str(ytdlp_bin)
        self.cookies_file = cookies_file
        self.proxy = proxy

    def _base(self) -> list[str]:
        argv = [self.ytdlp_bin, "--no-playlist", "--no-warnings", "--no-progress"]
        if self.cookies_file:
            argv += ["--cookies", self.cookies_file]
        if self.proxy:
            argv += ["--proxy", self.proxy]
        return argv

    def _run(self, argv: list[str], *, timeout_s: float) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(
                argv, check=True, capture_output=True, text=True, timeout=float(timeout_s)
            )
        except subprocess.TimeoutExpired as ex:
            raise SourceTimeout(f"yt-dlp timed out after {timeout_s:.0f}s") from ex
        except subprocess.CalledProcessError as ex:
            raise classify_download_error(str(ex.stderr or ex)) from ex
        except OSError as ex:
            raise SourceUnavailable(f"{self.ytdlp_bin} could not be started: {ex}") from ex

    def probe(self, url: str, *, timeout_s: float) -> RemoteMetadata:
        p = self._run([*self._base(), "-J", "--skip-download", url], timeout_s=timeout_s)
        try:
            info = json.loads(p.stdout or "{}")
        except json.JSONDecodeError as ex:
            raise SourceUnavailable("yt-dlp returned invalid metadata") from ex
        return RemoteMetadata.from_info(info if isinstance(info, dict) else {})

    def fetch(self, url: str, dest_dir: Path, *, timeout_s: float) -> Path:
        argv = [
            *self._base(),
            "-x",
            "--audio-format",
            "mp3",
            "--audio-quality",
            "0",
            "-o",
            str(dest_dir / "fallback.%(ext)s"),
            url,
        ]
        self._run(argv, timeout_s=timeout_s)
        out = _find_output(dest_dir, "fallback")
        if out is None:
            raise SourceUnavailable(f"yt-dlp CLI wrote no audio for {url}")
        return out


class SourceAcquirer:
    def __init__(
        self,
        config: AcquireConfig,
        *,
        runner: FFmpegRunner,
        primary: FetchStrategy | None = None,
        fallback: FetchStrategy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        urlopen: Callable[..., Any] = urllib.request.urlopen,
    ) -> None:
        self.config = config
        self.runner = runner
        self.primary = primary if primary is not None else YtDlpLibraryStrategy()
        self.fallback = fallback
        self._sleep = sleep
        self._urlopen = urlopen

    def acquire(
        self,
        kind: SourceKind | str,
        ref: str,
        work_dir: Path,
        *,
        deadline: Deadline | None = None,
    ) -> Path:
        deadline = deadline or unbounded()
        try:
            kind = SourceKind(kind)
        except ValueError as ex:
            raise InvalidArgument(f"unknown source kind {kind!r}") from ex
        work_dir = Path(work_dir)
        work_dir.mkdir(parents=True, exist_ok=True)
        if kind == SourceKind.UPLOAD:
            return self._acquire_upload(ref, work_dir, deadline)
        return self._acquire_remote(ref, work_dir, deadline)

    # --- uploads ---
    def _acquire_upload(self, ref: str, work_dir: Path, deadline: Deadline) -> Path:
        ref = str(ref or "").strip()
        if ref.lower().startswith(("http://", "https://")):
            return self._fetch_http(
                ref, work_dir, timeout_s=deadline.bound("acquire", self.config.download_timeout_s)
            )
        src = resolve_upload(ref, uploads_root=self.config.uploads_root)
        if src is None:
            raise SourceUnavailable(f"staged upload {ref[:80]!r} not found under uploads root")
        dst = work_dir / f"source{src.suffix.lower()}"
        try:
            shutil.copyfile(src, dst)
        except OSError as ex:
            raise SourceUnavailable(f"staged upload unreadable: {ex}") from ex
        logger.info("source_staged", kind="upload", bytes=dst.stat().st_size)
        return dst

    def _fetch_http(self, url: str, work_dir: Path, *, timeout_s: float) -> Path:
        suffix = Path(urlsplit(url).path).suffix.lower()
        dst = work_dir / f"source{suffix if suffix in _AUDIO_SUFFIXES else '.bin'}"
        req = urllib.request.Request(url, headers={"user-agent": "lofi-pipeline/acquire"})
        total = 0
        try:
            with self._urlopen(req, timeout=float(timeout_s)) as resp, dst.open("wb") as f:
                while True:
                    chunk = resp.read(1024 * 1024)
                    if not chunk:
                        break
                    total += len(chunk)
                    if total > int(self.config.max_bytes):
                        raise SourceUnavailable(f"staged blob exceeds {self.config.max_bytes} bytes")
                    f.write(chunk)
        except TimeoutError as ex:
            raise SourceTimeout(f"staged blob fetch timed out after {timeout_s:.0f}s") from ex
        except urllib.error.URLError as ex:
            if isinstance(ex.reason, TimeoutError):
                raise SourceTimeout(f"staged blob fetch timed out: {ex.reason}") from ex
            raise SourceUnavailable(f"staged blob fetch failed: {ex}") from ex
        except OSError as ex:
            raise SourceUnavailable(f"staged blob fetch failed: {ex}") from ex
        if total == 0:
            raise SourceUnavailable("staged blob is empty")
        logger.info("source_staged", kind="upload_url", bytes=total)
        return dst

    # --- remote video URLs ---
    def _attempt(self, strategy: FetchStrategy, url: str, dest: Path, deadline: Deadline) -> Path:
        try:
            meta = strategy.probe(
                url, timeout_s=deadline.bound("acquire", self.config.download_timeout_s)
            )
            check_metadata(meta, max_duration_s=self.config.max_duration_s)
            path = strategy.fetch(
                url, dest, timeout_s=deadline.bound("acquire", self.config.download_timeout_s)
            )
        except LofiError:
            raise
        except Exception as ex:
            # yt-dlp raises plenty outside its own hierarchy (cookie jars, sockets).
            raise SourceUnavailable(f"{strategy.name}: {type(ex).__name__}: {ex}") from ex
        if meta.duration_s is None:
            self._check_downloaded_duration(path, deadline)
        return path

    def _check_downloaded_duration(self, path: Path, deadline: Deadline) -> None:
        try:
            dur = self.runner.duration_s(path, timeout_s=deadline.bound("acquire", 30.0))
        except FFmpegError as ex:
            raise SourceUnavailable(f"downloaded file is not readable audio: {ex}") from ex
        if dur > float(self.config.max_duration_s):
            raise SourceTooLong(
                f"downloaded source is {dur:.0f}s (limit {self.config.max_duration_s:.0f}s)"
            )

    def _acquire_remote(self, ref: str, work_dir: Path, deadline: Deadline) -> Path:
        url = canonical_url(ref)
        dest = work_dir / "download"
        dest.mkdir(parents=True, exist_ok=True)

        def _on_retry(n: int, delay: float, ex: BaseException) -> None:
            logger.warning(
                "acquire_retry",
                strategy=self.primary.name,
                retry=n,
                delay_s=round(delay, 2),
                error=str(ex),
            )

        try:
            path = retry_call(
                lambda: self._attempt(self.primary, url, dest, deadline),
                retries=max(0, int(self.config.download_retries) - 1),
                base=float(self.config.base_delay_s),
                cap=float(self.config.max_delay_s),
                jitter=False,
                retry_on=lambda ex: is_retryable(ex) and not deadline.expired(),
                on_retry=_on_retry,
                sleep=self._sleep,
            )
            logger.info("source_fetched", strategy=self.primary.name, url=url)
            return path
        except SourceError as primary_err:
            if not primary_err.retryable or self.fallback is None:
                raise
            logger.warning(
                "acquire_fallback",
                primary=self.primary.name,
                fallback=self.fallback.name,
                error=str(primary_err),
            )
            try:
                path = self._attempt(self.fallback, url, dest, deadline)
            except SourceError as fb_err:
                logger.warning("acquire_fallback_failed", fallback=self.fallback.name, error=str(fb_err))
                raise primary_err from fb_err
            logger.info("source_fetched", strategy=self.fallback.name, url=url)
            return path
