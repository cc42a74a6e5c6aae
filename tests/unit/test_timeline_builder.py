"""Tests for Timeline Builder service."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from app.core.config import PipelineConfig
from app.models.schemas import CleanClip, Segment, TimelineEntry, Topic, VisualType
from app.services.timeline_builder import (
    TimelineBuilder,
    assign_visual_treatment,
    compute_segment_image_count,
    image_query_for,
    lay_out,
    pick_evenly_spaced_indices,
    presenter_count_for,
    timeline_drift,
)
from app.utils.error_handler import PipelineError


def _segments(n):
    return [Segment(index=i, topic_index=0, topic_label="Mars rover", text=f"Line {i}.") for i in range(n)]


def _clips(durations, tmp_path):
    return [CleanClip(index=i, path=str(tmp_path / f"clean_{i}.wav"), duration=d) for i, d in enumerate(durations)]


def _entry(index, start, end, **kwargs):
    return TimelineEntry(index=index, text="x", start_sec=start, end_sec=end, audio_path=f"a{index}.wav", **kwargs)


@pytest.fixture
def image_search():
    client = MagicMock()
    client.fetch_images.side_effect = lambda query, count, work_dir, prefix: [
        Path(work_dir) / f"{prefix}_{i}.jpg" for i in range(count)
    ]
    return client


@pytest.fixture
def builder(logger, fake_media, image_search):
    fitter = MagicMock()
    return TimelineBuilder(PipelineConfig(), logger, fitter, fake_media, image_search=image_search)


def test_pick_evenly_spaced_indices():
    assert pick_evenly_spaced_indices(8, 4) == [0, 2, 4, 6]
    assert pick_evenly_spaced_indices(5, 2) == [0, 2]
    assert pick_evenly_spaced_indices(3, 10) == [0, 1, 2]
    assert pick_evenly_spaced_indices(0, 3) == []


def test_presenter_count_leaves_both_kinds():
    assert presenter_count_for(8, 0.5) == 4
    assert presenter_count_for(5, 0.5) == 3
    assert presenter_count_for(4, 1.0) == 3
    assert presenter_count_for(4, 0.0) == 1
    assert presenter_count_for(1, 0.5) == 1


def test_segment_image_count():
    config = PipelineConfig()
    assert compute_segment_image_count(4.0, config) == 1
    assert compute_segment_image_count(6.0, config) == 2
    assert compute_segment_image_count(14.0, config) == 3
    assert compute_segment_image_count(60.0, config) == 4


def test_lay_out_is_continuous_from_intro(tmp_path):
    entries = lay_out(_segments(3), _clips([4.1234, 5.5, 3.3333], tmp_path), 3.2)

    assert entries[0].start_sec == 3.2
    for prev, nxt in zip(entries, entries[1:]):
        assert nxt.start_sec == prev.end_sec
    assert entries[-1].end_sec == pytest.approx(3.2 + 4.1234 + 5.5 + 3.3333, abs=0.001)


def test_lay_out_first_start_equals_rounded_intro(tmp_path):
    entries = lay_out(_segments(2), _clips([4.0, 5.0], tmp_path), 3.20133)

    assert entries[0].start_sec == 3.201
    assert entries[1].start_sec == entries[0].end_sec == 7.201


def test_timeline_drift():
    entries = [_entry(0, 3.0, 10.0), _entry(1, 10.0, 63.5)]
    assert timeline_drift(entries, 3.0, 60.0) == pytest.approx(0.5)
    assert timeline_drift([], 3.0, 60.0) == 0.0


def test_assign_visual_treatment():
    entries = [_entry(i, i, i + 1) for i in range(6)]
    planned = assign_visual_treatment(entries, 0.5)
    kinds = [e.visual_type for e in planned]
    assert kinds == [
        VisualType.PRESENTER,
        VisualType.IMAGE,
        VisualType.PRESENTER,
        VisualType.IMAGE,
        VisualType.PRESENTER,
        VisualType.IMAGE,
    ]


def test_image_query_prefers_overlay_cue():
    topics = [Topic(topic="Mars rover", keywords=["nasa", "perseverance", "jezero"])]
    cued = _entry(0, 0, 1, overlay_cues=[{"query": "jezero crater"}])
    plain = _entry(1, 1, 2, topic_label="Mars rover")
    assert image_query_for(cued, topics) == "jezero crater"
    assert image_query_for(plain, topics) == "Mars rover nasa perseverance"


def test_build_applies_one_tempo_and_measures(builder, fake_media, tmp_path):
    fake_media.probe_duration.side_effect = [7.0, 6.5, 8.0]
    entries = builder.build(_segments(3), _clips([7.2, 6.7, 8.3], tmp_path), 1.03, 3.2, 21.5, tmp_path)

    tempos = [c[0][2] for c in builder.fitter.apply_tempo.call_args_list]
    assert tempos == [1.03, 1.03, 1.03]
    assert entries[0].start_sec == 3.2
    assert entries[-1].end_sec == pytest.approx(24.7)
    assert entries[1].audio_path == str(tmp_path / "seg_audio_1.wav")


def test_build_rejects_empty_audio(builder, fake_media, tmp_path):
    fake_media.probe_duration.return_value = 0.0
    with pytest.raises(PipelineError):
        builder.build(_segments(2), _clips([3.0, 3.0], tmp_path), 1.0, 0.0, 6.0, tmp_path)


def test_plan_visuals_fetches_images_for_montage_segments(builder, image_search, tmp_path):
    entries = [_entry(i, i * 6.0, (i + 1) * 6.0, topic_label="Mars rover") for i in range(4)]
    planned = builder.plan_visuals(entries, [Topic(topic="Mars rover")], tmp_path)

    assert [e.visual_type for e in planned] == [
        VisualType.PRESENTER,
        VisualType.IMAGE,
        VisualType.PRESENTER,
        VisualType.IMAGE,
    ]
    assert len(planned[1].image_paths) == 2
    assert image_search.fetch_images.call_count == 2


def test_plan_visuals_falls_back_to_presenter(builder, image_search, tmp_path):
    image_search.fetch_images.side_effect = None
    image_search.fetch_images.return_value = []
    entries = [_entry(i, i * 6.0, (i + 1) * 6.0) for i in range(4)]

    planned = builder.plan_visuals(entries, [Topic(topic="Mars rover")], tmp_path)

    assert all(e.visual_type == VisualType.PRESENTER for e in planned)
