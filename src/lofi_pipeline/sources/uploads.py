from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from lofi_pipeline.errors import InvalidArgument

_UPLOAD_ID_RE = re.compile(r"^[0-9a-f]{32}$")
_CHUNK = 1024 * 1024
_SNIFF_BYTES = 16


class UploadTooLarge(InvalidArgument):
    pass


@dataclass(frozen=True, slots=True)
class StagedUpload:
    upload_id: str
    path: Path
    size_bytes: int
    format: str


def sniff_audio_format(head: bytes) -> str | None:
    """
    Container type from the leading bytes, or None for anything unrecognized.
    """
    if len(head) >= 12 and head[:4] == b"RIFF" and head[8:12] == b"WAVE":
        return "wav"
    if head[:4] == b"fLaC":
        return "flac"
    if len(head) >= 8 and head[4:8] == b"ftyp":
        return "m4a"
    if head[:3] == b"ID3":
        return "mp3"
    # Bare MPEG audio frame sync (11 set bits).
    if len(head) >= 2 and head[0] == 0xFF and (head[1] & 0xE0) == 0xE0:
        return "mp3"
    return None


def new_upload_id() -> str:
    return secrets.token_hex(16)


def is_upload_id(ref: str) -> bool:
    return bool(_UPLOAD_ID_RE.match(str(ref or "")))


def stage_upload(fileobj: BinaryIO, *, uploads_root: Path, max_bytes: int) -> StagedUpload:
    """
    Stream an uploaded file into the uploads root.

    The type is sniffed from content (never the client's filename or header),
    and the size is enforced while streaming. Partial files are removed on
    every rejection.
    """
    uploads_root = Path(uploads_root)
    uploads_root.mkdir(parents=True, exist_ok=True)
    upload_id = new_upload_id()
    part = uploads_root / f"{upload_id}.part"
    size = 0
    head = b""
    try:
        with part.open("wb") as out:
            while True:
                chunk = fileobj.read(_CHUNK)
                if not chunk:
                    break
                size += len(chunk)
                if size > int(max_bytes):
                    raise UploadTooLarge(f"upload exceeds {int(max_bytes)} bytes")
                if len(head) < _SNIFF_BYTES:
                    head += chunk[: _SNIFF_BYTES - len(head)]
                out.write(chunk)
        if size == 0:
            raise InvalidArgument("empty upload")
        fmt = sniff_audio_format(head)
        if fmt is None:
            raise InvalidArgument("unsupported audio format")
        final = uploads_root / f"{upload_id}.{fmt}"
        part.replace(final)
    except BaseException:
        part.unlink(missing_ok=True)
        raise
    return StagedUpload(upload_id=upload_id, path=final, size_bytes=size, format=fmt)


def _under(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True


def resolve_upload(ref: str, *, uploads_root: Path) -> Path | None:
    """
    Local file for a staged reference: an upload id, or a path inside the
    uploads root. Anything outside the root resolves to None.
    """
    root = Path(uploads_root).resolve()
    ref = str(ref or "").strip()
    if not ref:
        return None
    if is_upload_id(ref):
        for p in sorted(root.glob(f"{ref}.*")):
            if p.suffix != ".part" and p.is_file():
                return p
        return None
    p = Path(ref)
    if not p.is_absolute():
        p = root / p
    p = p.resolve()
    if not _under(p, root) or not p.is_file():
        return None
    return p
