from __future__ import annotations

import dataclasses

import pytest

from lofi_pipeline.audio.filters import effect_chain
from lofi_pipeline.errors import ErrorCode, InvalidArgument
from lofi_pipeline.presets import DEFAULT_PRESET, PRESETS, get_preset, is_known_preset, preset_ids


def test_catalog_has_the_three_presets() -> None:
    assert set(preset_ids()) == {"default", "tape90s", "sleep"}
    assert DEFAULT_PRESET == "default"
    for pid in preset_ids():
        assert get_preset(pid).id == pid
        assert get_preset(pid).version >= 1


def test_unknown_preset_is_invalid_argument() -> None:
    assert not is_known_preset("vaporwave")
    with pytest.raises(InvalidArgument) as ei:
        get_preset("vaporwave")
    assert ei.value.code == ErrorCode.INVALID_ARGUMENT
    assert not ei.value.retryable


def test_presets_are_immutable() -> None:
    p = get_preset("default")
    with pytest.raises(dataclasses.FrozenInstanceError):
        p.tempo = 1.0  # type: ignore[misc]
    with pytest.raises(TypeError):
        PRESETS["new"] = p  # type: ignore[index]


def test_default_preset_values() -> None:
    p = get_preset("default")
    assert p.tempo == pytest.approx(0.93)
    assert p.pitch == pytest.approx(0.98)
    assert p.lowpass_hz == 11000
    assert p.texture_mix == pytest.approx(0.8)


def test_effect_chain_order_and_values() -> None:
    chain = effect_chain(get_preset("default"), sample_rate=44100)
    names = [part.split("=", 1)[0] for part in chain.split(",")]
    assert names == [
        "atempo",
        "asetrate",
        "aresample",
        "highpass",
        "lowpass",
        "bass",
        "treble",
        "aphaser",
        "vibrato",
        "aecho",
        "stereotools",
        "acompressor",
        "volume",
    ]
    assert "atempo=0.93" in chain
    assert f"asetrate={int(round(44100 * 0.98))}" in chain
    assert "aresample=44100" in chain


def test_effect_chain_differs_per_preset() -> None:
    chains = {pid: effect_chain(get_preset(pid)) for pid in preset_ids()}
    assert len(set(chains.values())) == len(chains)
