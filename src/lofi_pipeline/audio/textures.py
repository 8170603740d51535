from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

# Known ambient layers and their relative gain before the preset's texture_mix.
TEXTURE_WEIGHTS: dict[str, float] = {
    "vinyl_crackle.wav": 1.0,
    "tape_hiss.wav": 0.3,
    "rain_ambient.wav": 1.5,
}


@dataclass(frozen=True, slots=True)
class Texture:
    name: str
    path: Path
    weight: float


def discover_textures(root: Path) -> list[Texture]:
    """
    Texture assets present under `root`, in catalog order.

    Missing or empty files are skipped; an empty result means the texture
    stage is skipped, not failed.
    """
    out: list[Texture] = []
    root = Path(root)
    if not root.is_dir():
        return out
    for name, weight in TEXTURE_WEIGHTS.items():
        p = root / name
        try:
            if p.is_file() and p.stat().st_size > 0:
                out.append(Texture(name=name, path=p.resolve(), weight=float(weight)))
        except OSError:
            continue
    return out
