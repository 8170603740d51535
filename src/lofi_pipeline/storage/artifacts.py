from __future__ import annotations

import os
import re
import shutil
from pathlib import Path
from typing import Protocol

from lofi_pipeline.errors import PublishFailure
from lofi_pipeline.utils.log import logger

_SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]{0,200}$")


class ArtifactStore(Protocol):
    def publish(self, src: Path, *, content_type: str, name: str) -> str:
        """
        Store the file at `src` under `name` and return its addressable URL.
        Must not return until the object is retrievable.
        """
        ...


def is_safe_artifact_name(name: str) -> bool:
    return bool(_SAFE_NAME_RE.match(str(name or ""))) and ".." not in str(name)


class LocalArtifactStore:
    """
    Filesystem-backed artifact store served under `/artifacts/<name>`.

    Publishing copies to a temp name and renames into place, so a URL is
    never handed out for a half-written file.
    """

    def __init__(self, root: Path, *, base_url: str = "") -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.base_url = str(base_url or "").rstrip("/")

    def url_for(self, name: str) -> str:
        return f"{self.base_url}/artifacts/{name}"

    def publish(self, src: Path, *, content_type: str, name: str) -> str:
        if not is_safe_artifact_name(name):
            raise PublishFailure(f"unsafe artifact name {name!r}")
        src = Path(src)
        dst = self.root / name
        tmp = self.root / f".{name}.tmp"
        try:
            if not src.is_file() or src.stat().st_size == 0:
                raise PublishFailure(f"artifact source missing or empty: {src.name}")
            shutil.copyfile(src, tmp)
            with tmp.open("rb") as f:
                os.fsync(f.fileno())
            tmp.replace(dst)
        except OSError as ex:
            tmp.unlink(missing_ok=True)
            raise PublishFailure(f"could not store {name}: {ex}") from ex
        logger.info(
            "artifact_published", name=name, content_type=content_type, bytes=dst.stat().st_size
        )
        return self.url_for(name)

    def resolve(self, name: str) -> Path | None:
        """Local path for a published artifact; None for unknown or unsafe names."""
        if not is_safe_artifact_name(name) or name.startswith("."):
            return None
        p = (self.root / name).resolve()
        if p.parent != self.root or not p.is_file():
            return None
        return p
