"""Tests for Assembler service."""

from unittest.mock import MagicMock

import pytest

from app.core.config import PipelineConfig
from app.models.schemas import OutputConfig, OverlayAsset, TimelineEntry
from app.services.assembler import (
    Assembler,
    auto_overlay_window,
    build_music_filter,
    build_overlay_filter,
    compute_final_master_size,
    final_fade,
    normalize_overlay_assets,
    overlay_position,
)


def _entry(index, start, end, cues=None):
    return TimelineEntry(
        index=index, text="x", start_sec=start, end_sec=end, audio_path="a.wav", overlay_cues=cues or []
    )


@pytest.fixture
def clips(tmp_path):
    paths = []
    for name in ("intro_norm.mp4", "seg_0_norm.mp4", "outro_norm.mp4"):
        path = tmp_path / name
        path.write_bytes(b"clip")
        paths.append(path)
    return paths


@pytest.fixture
def assembler(logger, fake_media):
    return Assembler(PipelineConfig(), logger, fake_media)


def _labels(media):
    return [c[0][1] for c in media.run.call_args_list]


@pytest.mark.parametrize(
    "ratio,expected",
    [
        ("16:9", (1920, 1080)),
        ("9:16", (720, 1280)),
        ("3840:2160", (3840, 2160)),
        ("7680:4320", (3840, 2160)),
    ],
)
def test_final_master_size(ratio, expected):
    assert compute_final_master_size(OutputConfig.from_request(ratio), PipelineConfig()) == expected


def test_overlay_position():
    assert overlay_position("bottomLeft", 28) == ("28", "H-h-28")
    assert overlay_position("nowhere", 10) == ("W-w-10", "10")


def test_normalize_overlay_assets_drops_and_clamps():
    assets = [
        OverlayAsset(start_sec=0, end_sec=2),
        OverlayAsset(url="https://x/a.png", start_sec=5, end_sec=4),
        OverlayAsset(url="https://x/b.png", start_sec=-1, end_sec=100, scale=2.0, type="gif"),
    ]
    out = normalize_overlay_assets(assets, 30.0)
    assert len(out) == 1
    assert (out[0].start_sec, out[0].end_sec) == (0.0, 30.0)
    assert out[0].scale == 0.6
    assert out[0].type == "image"


def test_auto_overlay_window():
    assert auto_overlay_window(_entry(0, 10.0, 18.0)) == (pytest.approx(11.6), pytest.approx(15.6))
    start, end = auto_overlay_window(_entry(1, 0.0, 2.0))
    assert start == pytest.approx(0.4)
    assert end == pytest.approx(1.8)


def test_overlay_filter_is_time_boxed():
    overlays = [OverlayAsset(local_path="a.png", start_sec=1.0, end_sec=3.0, position="topLeft")]
    graph = build_overlay_filter(overlays, PipelineConfig())
    assert "scale2ref" in graph
    assert "pad=iw+12:ih+12:6:6" in graph
    assert "overlay=28:28:enable='between(t,1.000,3.000)'" in graph
    assert graph.endswith("[vout]")


def test_music_filter_ducks_under_voice():
    graph = build_music_filter(PipelineConfig(), 60.0)
    assert "atrim=0:60.00" in graph
    assert "sidechaincompress=threshold=0.090:ratio=6.00:attack=25:release=260:makeup=1.60" in graph
    assert graph.endswith("[aout]")
    assert "atrim=0:9999" in build_music_filter(PipelineConfig(), None)


def test_final_fade():
    config = PipelineConfig()
    assert final_fade(0.3, config) == 0.0
    assert final_fade(0.6, config) == pytest.approx(0.3)
    assert final_fade(60.0, config) == 0.5


def test_concat_single_clip_is_copied(assembler, fake_media, clips, tmp_path):
    out = assembler.concat_clips(clips[:1], tmp_path / "concat.mp4", OutputConfig())
    assert out.read_bytes() == b"clip"
    fake_media.run.assert_not_called()


def test_finalize_masters_with_fixed_gop_and_fade(assembler, fake_media, tmp_path):
    fake_media.probe_duration.return_value = 60.0
    assembler.finalize(tmp_path / "in.mp4", tmp_path / "out" / "final.mp4", OutputConfig())

    args = fake_media.run.call_args[0][0]
    vf = args[args.index("-vf") + 1]
    assert "scale=1920:1080:force_original_aspect_ratio=decrease" in vf
    assert "fade=t=out:st=59.500:d=0.500" in vf
    assert args[args.index("-g") + 1] == "60"
    assert args[args.index("-crf") + 1] == "15"
    assert args[args.index("-colorspace") + 1] == "bt709"
    assert args[args.index("-color_range") + 1] == "tv"


def test_assemble_with_music_and_no_overlays(assembler, fake_media, clips, tmp_path):
    music = tmp_path / "music.mp3"
    final = assembler.assemble(clips, [_entry(0, 3.0, 9.0)], OutputConfig(), tmp_path, tmp_path / "final.mp4", music=music)

    assert final == tmp_path / "final.mp4"
    assert _labels(fake_media) == ["concat", "music_mix", "final_master"]


def test_assemble_applies_caller_overlays(assembler, fake_media, clips, tmp_path):
    image = tmp_path / "logo.png"
    image.write_bytes(b"png")
    overlays = [OverlayAsset(local_path=str(image), start_sec=1.0, end_sec=4.0)]

    assembler.assemble(clips, [], OutputConfig(), tmp_path, tmp_path / "final.mp4", overlays=overlays)

    assert _labels(fake_media) == ["concat", "overlay", "final_master"]


def test_auto_overlays_come_from_cues(logger, fake_media, tmp_path):
    search = MagicMock()
    search.fetch_images.return_value = [tmp_path / "cue.jpg"]
    assembler = Assembler(PipelineConfig(), logger, fake_media, image_search=search)
    entries = [_entry(0, 3.0, 11.0, cues=[{"query": "jezero crater"}]), _entry(1, 11.0, 19.0)]

    overlays = assembler.build_auto_overlays(entries, tmp_path)

    assert len(overlays) == 1
    assert overlays[0].local_path == str(tmp_path / "cue.jpg")
    search.fetch_images.assert_called_once_with("jezero crater", 1, tmp_path, "overlay_auto_0")
