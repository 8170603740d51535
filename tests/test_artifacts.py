from __future__ import annotations

from pathlib import Path

import pytest

from lofi_pipeline.errors import PublishFailure
from lofi_pipeline.storage.artifacts import LocalArtifactStore, is_safe_artifact_name


def test_publish_returns_url_for_complete_file(tmp_path: Path) -> None:
    src = tmp_path / "out.mp3"
    src.write_bytes(b"ID3" + b"\x00" * 100)
    store = LocalArtifactStore(tmp_path / "artifacts", base_url="https://cdn.example/")

    url = store.publish(src, content_type="audio/mpeg", name="lofi_j1.mp3")

    assert url == "https://cdn.example/artifacts/lofi_j1.mp3"
    p = store.resolve("lofi_j1.mp3")
    assert p is not None and p.read_bytes() == src.read_bytes()
    assert [x.name for x in (tmp_path / "artifacts").iterdir()] == ["lofi_j1.mp3"]


def test_publish_rejects_bad_input(tmp_path: Path) -> None:
    store = LocalArtifactStore(tmp_path / "artifacts")
    empty = tmp_path / "empty.wav"
    empty.write_bytes(b"")
    with pytest.raises(PublishFailure):
        store.publish(empty, content_type="audio/wav", name="x.wav")
    with pytest.raises(PublishFailure):
        store.publish(tmp_path / "missing.wav", content_type="audio/wav", name="x.wav")
    with pytest.raises(PublishFailure):
        store.publish(empty, content_type="audio/wav", name="../x.wav")
    assert list((tmp_path / "artifacts").iterdir()) == []


@pytest.mark.parametrize("name", ["../etc/passwd", ".hidden", "a/b.mp3", "", "x..y"])
def test_unsafe_names(tmp_path: Path, name: str) -> None:
    assert LocalArtifactStore(tmp_path).resolve(name) is None
    assert not is_safe_artifact_name(name)
