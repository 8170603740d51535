from __future__ import annotations

from collections.abc import Sequence

from lofi_pipeline.presets import PresetConfig

MAIN_MIX_GAIN = 0.85
LOUDNORM = "loudnorm=I=-16:TP=-1.5:LRA=11"


def _num(v: float) -> str:
    return f"{float(v):.4g}"


def effect_chain(preset: PresetConfig, *, sample_rate: int = 44100) -> str:
    """
    The preset's single-pass `-af` chain.

    Order: atempo, asetrate+aresample, highpass, lowpass, bass, treble,
    aphaser, vibrato, aecho, stereotools, acompressor, volume.
    """
    sr = int(sample_rate)
    parts = [
        f"atempo={_num(preset.tempo)}",
        f"asetrate={int(round(sr * float(preset.pitch)))}",
        f"aresample={sr}",
        f"highpass=f={int(preset.highpass_hz)}",
        f"lowpass=f={int(preset.lowpass_hz)}",
        f"bass=g={_num(preset.bass_gain_db)}:f={int(preset.bass_freq_hz)}",
        f"treble=g={_num(preset.treble_gain_db)}:f={int(preset.treble_freq_hz)}",
        f"aphaser=type=t:speed={_num(preset.phaser_speed)}:decay={_num(preset.phaser_decay)}",
        f"vibrato=f={_num(preset.vibrato_freq)}:d={_num(preset.vibrato_depth)}",
        "aecho="
        f"{_num(preset.echo_in_gain)}:{_num(preset.echo_out_gain)}:"
        f"{int(preset.echo_delay_ms)}:{_num(preset.echo_decay)}",
        f"stereotools=slev={_num(preset.stereo_width)}",
        "acompressor="
        f"threshold={_num(preset.comp_threshold)}:ratio={_num(preset.comp_ratio)}:"
        f"attack={_num(preset.comp_attack_ms)}:release={_num(preset.comp_release_ms)}",
        f"volume={_num(preset.makeup_gain)}",
    ]
    return ",".join(parts)


def texture_mix_graph(gains: Sequence[float], *, main_gain: float = MAIN_MIX_GAIN) -> str:
    """
    `-filter_complex` graph mixing input 0 (primary) with inputs 1..n (looped textures).

    The mix follows the primary's length and ends in a loudness-normalization pass.
    Output label: [out].
    """
    if not gains:
        raise ValueError("texture_mix_graph needs at least one texture gain")
    chains = [f"[0:a]volume={_num(main_gain)}[main]"]
    labels = ["[main]"]
    for i, g in enumerate(gains, start=1):
        chains.append(f"[{i}:a]volume={_num(g)}[tx{i}]")
        labels.append(f"[tx{i}]")
    chains.append(
        f"{''.join(labels)}amix=inputs={len(labels)}:duration=first:normalize=0,{LOUDNORM}[out]"
    )
    return ";".join(chains)


def gain_boost(gain_db: float) -> str:
    """Corrective boost followed by a peak limiter so repairs never clip."""
    return f"volume={float(gain_db):.2f}dB,alimiter=limit=0.95"


def repair_gain_db(measured_db: float, *, target_db: float, max_gain_db: float) -> float:
    return max(0.0, min(float(max_gain_db), float(target_db) - float(measured_db)))
