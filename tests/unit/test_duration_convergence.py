"""Tests for Duration Convergence Loop."""

from unittest.mock import MagicMock

import pytest

from app.core.config import PipelineConfig
from app.models.schemas import Expression, Segment, Topic
from app.services.duration_convergence import (
    DurationConvergenceLoop,
    compute_tolerance,
    decide_tempo,
    rewrite_instruction,
)
from app.services.script_planner import ScriptPlanner
from app.utils.error_handler import VoiceSynthesisError


@pytest.fixture
def segments():
    return [
        Segment(index=i, topic_index=0, topic_label="Mars rover", text=f"Segment {i} talks about the rover.",
                expression=Expression.THOUGHTFUL)
        for i in range(4)
    ]


@pytest.fixture
def topics():
    return [Topic(topic="Mars rover")]


@pytest.fixture
def generator(segments):
    gen = MagicMock()
    gen.rewrite.return_value = [{"index": s.index, "text": f"Shorter line {s.index} about the rover."} for s in segments]
    return gen


@pytest.fixture
def media():
    return MagicMock()


@pytest.fixture
def loop(logger, media, generator):
    config = PipelineConfig()
    tts = MagicMock()
    tts.build_voice_settings.return_value = {}
    planner = ScriptPlanner(config, logger, MagicMock())
    return DurationConvergenceLoop(config, logger, tts, MagicMock(), planner, generator, media)


def test_compute_tolerance():
    assert compute_tolerance(60, 4.5) == pytest.approx(4.2)
    assert compute_tolerance(200, 4.5) == 4.5
    assert compute_tolerance(10, 4.5) == 1.0


def test_small_drift_keeps_unit_tempo():
    decision = decide_tempo(61.0, 60.0, PipelineConfig())
    assert decision.tempo == 1.0
    assert decision.within_tolerance
    assert not decision.needs_rewrite


def test_large_drift_clamps_and_requests_rewrite():
    decision = decide_tempo(66.0, 60.0, PipelineConfig())
    assert decision.raw_tempo == pytest.approx(1.1)
    assert decision.tempo == 1.05
    assert decision.needs_rewrite


def test_speed_boost_stays_in_band():
    config = PipelineConfig(voice_speed_boost=1.1)
    decision = decide_tempo(60.0, 60.0, config)
    assert decision.tempo == 1.05


def test_no_stretch_for_external_voiceover():
    decision = decide_tempo(70.0, 60.0, PipelineConfig(), allow_stretch=False)
    assert decision.tempo == 1.0
    assert not decision.needs_rewrite


def test_rewrite_instruction():
    percent, direction, caps = rewrite_instruction(66.0, 60.0, [24, 23, 12])
    assert percent == 9
    assert direction == "SHORTER"
    assert caps == [22, 21, 12]

    percent, direction, _ = rewrite_instruction(20.0, 60.0, [20])
    assert percent == 50
    assert direction == "LONGER"


def test_one_rewrite_then_converges(loop, media, generator, segments, topics, tmp_path):
    media.probe_duration.side_effect = [16.5] * 4 + [15.25] * 4

    result = loop.run(segments, topics, [24, 23, 23, 22], 60.0, tmp_path)

    assert result.rewrites == 1
    assert result.passes == 2
    generator.rewrite.assert_called_once()
    args = generator.rewrite.call_args[0]
    assert args[2] == 9
    assert args[3] == "SHORTER"
    assert 0.97 <= result.global_tempo <= 1.05
    assert result.within_tolerance
    assert result.segments[0].text.startswith("Shorter line 0")
    assert all(s.expression == Expression.THOUGHTFUL for s in result.segments)
    assert [c.index for c in result.clips] == [0, 1, 2, 3]


def test_adversarial_durations_terminate(loop, media, generator, segments, topics, tmp_path):
    media.probe_duration.return_value = 22.5

    result = loop.run(segments, topics, [24, 23, 23, 22], 60.0, tmp_path)

    assert result.passes == PipelineConfig().max_rewrites + 1
    assert generator.rewrite.call_count == PipelineConfig().max_rewrites
    assert result.global_tempo == 1.05
    assert not result.within_tolerance


def test_voiceover_is_sliced_without_tempo_or_rewrite(loop, media, generator, segments, topics, tmp_path):
    media.probe_duration.side_effect = [58.4] + [14.6] * 4

    result = loop.run(segments, topics, [24, 23, 23, 22], 60.0, tmp_path, voiceover=str(tmp_path / "vo.mp3"))

    assert len(result.clips) == 4
    assert result.global_tempo == 1.0
    assert result.rewrites == 0
    generator.rewrite.assert_not_called()
    loop.tts.synthesize.assert_not_called()
    slice_calls = [c for c in media.run.call_args_list if c[0][1] == "split_voiceover"]
    assert len(slice_calls) == 4
    last_args = slice_calls[-1][0][0]
    assert last_args[last_args.index("-ss") + 1] == "43.800"


def test_too_little_audio_fails(loop, media, segments, topics, tmp_path):
    media.probe_duration.return_value = 0.5
    with pytest.raises(VoiceSynthesisError):
        loop.run(segments, topics, [24, 23, 23, 22], 60.0, tmp_path)
