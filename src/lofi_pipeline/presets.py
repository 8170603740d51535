"""
Preset catalog.

Each preset is an immutable, versioned bundle of effect-chain parameters.
Bump `version` whenever a parameter changes so rendered outputs stay traceable.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from types import MappingProxyType
from typing import Any

from lofi_pipeline.errors import InvalidArgument


@dataclass(frozen=True, slots=True)
class PresetConfig:
    id: str
    version: int
    description: str
    # speed / pitch (ratios; pitch applied via asetrate so it also slows playback)
    tempo: float
    pitch: float
    # band limiting (Hz)
    highpass_hz: int
    lowpass_hz: int
    # shelving EQ
    bass_gain_db: float
    bass_freq_hz: int
    treble_gain_db: float
    treble_freq_hz: int
    # modulation
    phaser_speed: float
    phaser_decay: float
    vibrato_freq: float
    vibrato_depth: float
    # reverb (aecho)
    echo_in_gain: float
    echo_out_gain: float
    echo_delay_ms: int
    echo_decay: float
    # stereo image (stereotools slev)
    stereo_width: float
    # dynamics (threshold is linear amplitude, attack/release in ms)
    comp_threshold: float
    comp_ratio: float
    comp_attack_ms: float
    comp_release_ms: float
    makeup_gain: float
    # ambient texture level multiplier
    texture_mix: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


DEFAULT_PRESET = "default"

_CATALOG = {
    "default": PresetConfig(
        id="default",
        version=1,
        description="Warm, slightly slowed lo-fi with light vinyl texture.",
        tempo=0.93,
        pitch=0.98,
        highpass_hz=30,
        lowpass_hz=11000,
        bass_gain_db=3.0,
        bass_freq_hz=200,
        treble_gain_db=-2.0,
        treble_freq_hz=5000,
        phaser_speed=0.5,
        phaser_decay=0.4,
        vibrato_freq=0.5,
        vibrato_depth=0.02,
        echo_in_gain=0.8,
        echo_out_gain=0.88,
        echo_delay_ms=40,
        echo_decay=0.32,
        stereo_width=0.7,
        comp_threshold=0.125,
        comp_ratio=3.0,
        comp_attack_ms=5.0,
        comp_release_ms=100.0,
        makeup_gain=1.9,
        texture_mix=0.8,
    ),
    "tape90s": PresetConfig(
        id="tape90s",
        version=1,
        description="Worn cassette: darker top end, more wow and saturation.",
        tempo=0.91,
        pitch=0.97,
        highpass_hz=40,
        lowpass_hz=10000,
        bass_gain_db=4.0,
        bass_freq_hz=250,
        treble_gain_db=-3.0,
        treble_freq_hz=4500,
        phaser_speed=0.6,
        phaser_decay=0.45,
        vibrato_freq=0.8,
        vibrato_depth=0.04,
        echo_in_gain=0.8,
        echo_out_gain=0.88,
        echo_delay_ms=30,
        echo_decay=0.24,
        stereo_width=0.6,
        comp_threshold=0.1,
        comp_ratio=4.0,
        comp_attack_ms=5.0,
        comp_release_ms=120.0,
        makeup_gain=2.4,
        texture_mix=0.9,
    ),
    "sleep": PresetConfig(
        id="sleep",
        version=1,
        description="Slow, soft and wide with a long tail for background listening.",
        tempo=0.88,
        pitch=0.95,
        highpass_hz=20,
        lowpass_hz=9000,
        bass_gain_db=2.0,
        bass_freq_hz=150,
        treble_gain_db=-4.0,
        treble_freq_hz=4000,
        phaser_speed=0.3,
        phaser_decay=0.35,
        vibrato_freq=0.3,
        vibrato_depth=0.015,
        echo_in_gain=0.8,
        echo_out_gain=0.88,
        echo_delay_ms=60,
        echo_decay=0.48,
        stereo_width=0.8,
        comp_threshold=0.15,
        comp_ratio=2.0,
        comp_attack_ms=10.0,
        comp_release_ms=200.0,
        makeup_gain=1.6,
        texture_mix=1.0,
    ),
}

PRESETS = MappingProxyType(_CATALOG)


def preset_ids() -> list[str]:
    return list(PRESETS.keys())


def is_known_preset(preset_id: str) -> bool:
    return str(preset_id or "") in PRESETS


def get_preset(preset_id: str) -> PresetConfig:
    p = PRESETS.get(str(preset_id or ""))
    if p is None:
        raise InvalidArgument(f"unknown preset {preset_id!r}; expected one of {preset_ids()}")
    return p
