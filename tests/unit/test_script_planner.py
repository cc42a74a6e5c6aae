"""Tests for Script Planner service."""

from unittest.mock import MagicMock

import pytest

from app.core.config import PipelineConfig
from app.models.schemas import Expression, Segment, Topic
from app.services.script_planner import (
    ScriptPlanner,
    allocate_topic_segments,
    build_intro_line,
    build_outro_line,
    build_word_caps,
    compute_segment_count,
    enforce_cta,
    enforce_segment_completeness,
    ensure_topic_transitions,
    normalize_expression,
    smooth_expression_plan,
)
from app.utils.text_utils import count_words


@pytest.fixture
def topics():
    return [Topic(topic="Mars rover"), Topic(topic="Markets")]


@pytest.fixture
def generator():
    gen = MagicMock()
    gen.generate.return_value = {
        "title": "Mars and Money",
        "segments": [
            {"text": " ".join(f"word{i}" for i in range(60)), "topicIndex": 0, "expression": "big smile"},
            {"text": "The rover found ancient clay.", "topicIndex": 0, "expression": "serious"},
        ],
    }
    return gen


@pytest.fixture
def planner(logger, generator):
    return ScriptPlanner(PipelineConfig(), logger, generator)


@pytest.mark.parametrize("target,expected", [(10, 2), (20, 3), (26, 4), (60, 8), (400, 45)])
def test_compute_segment_count(target, expected):
    assert compute_segment_count(target, PipelineConfig()) == expected


def test_word_caps_boost_hook_and_trim_wrap_up():
    caps = build_word_caps(8, 60, PipelineConfig())
    assert caps == [24, 23, 23, 23, 23, 23, 23, 22]


def test_word_caps_have_a_floor():
    caps = build_word_caps(4, 8, PipelineConfig())
    assert all(c == 14 for c in caps)


def test_allocate_topic_segments_is_contiguous():
    assert allocate_topic_segments(8, 3) == [(0, 0, 2), (1, 3, 5), (2, 6, 7)]
    assert allocate_topic_segments(5, 1) == [(0, 0, 4)]


def test_normalize_expression():
    assert normalize_expression("warm") == Expression.WARM
    assert normalize_expression("big smile") == Expression.WARM
    assert normalize_expression("pensive, thinking") == Expression.THOUGHTFUL
    assert normalize_expression("???", mood="serious") == Expression.SERIOUS
    assert normalize_expression(None) == Expression.NEUTRAL


def test_smooth_expression_plan_holds_incompatible_jumps():
    plan = smooth_expression_plan(["warm", "serious", "neutral", "excited", "thoughtful"])
    assert plan == [
        Expression.WARM,
        Expression.WARM,
        Expression.NEUTRAL,
        Expression.EXCITED,
        Expression.EXCITED,
    ]


def test_topic_transition_is_prefixed(topics):
    segments = [
        Segment(index=0, topic_index=0, text="Rovers roam."),
        Segment(index=1, topic_index=1, text="Prices rose."),
    ]
    out = ensure_topic_transitions(segments, topics)
    assert out[0].text == "Rovers roam."
    assert out[1].text == "Now pivoting to Markets. Here's what matters. Prices rose."
    assert out[1].topic_label == "Markets"


def test_completeness_repairs_dangling_conjunction():
    out = enforce_segment_completeness([Segment(index=0, text="We went to the store and")])
    assert out[0].text.endswith("That's the key takeaway right now.")
    assert " and " not in out[0].text


def test_completeness_repair_stays_within_word_cap():
    text = "Crews spent the whole week testing the new rover wheels in the desert and"
    out = enforce_segment_completeness([Segment(index=0, text=text)], caps=[12])

    assert out[0].text.endswith("That's the key takeaway right now.")
    assert count_words(out[0].text) <= 12
    assert out[0].text.startswith("Crews spent the whole week")


def test_completeness_adds_terminal_punctuation():
    out = enforce_segment_completeness([Segment(index=0, text="A fine day")])
    assert out[0].text == "A fine day."


def test_enforce_cta():
    assert enforce_cta("Great news.", "warm") == "Great news. What do you think, and will you subscribe for more?"
    assert enforce_cta("Right? Really?", "warm") == "Right. Really? Subscribe for more."
    assert enforce_cta("Subscribe now.", "serious") == "Subscribe now. What do you think?"


def test_intro_and_outro_lines(topics):
    assert build_intro_line(topics, "Mars Money") == "Hi there. Quick update on Mars Money."
    outro = build_outro_line(topics)
    assert outro.startswith("Which topic stood out to you most?")
    assert "Thanks for watching" in outro


def test_generate_pads_and_repairs(planner, generator, topics):
    script, caps = planner.generate(topics[:1], 60, mood="warm", include_outro=True)

    assert len(script.segments) == 8
    assert [s.index for s in script.segments] == list(range(8))
    assert caps[0] == 24
    assert count_words(script.segments[0].text) <= caps[0]
    assert script.segments[0].expression == Expression.WARM
    assert script.title == "Mars and Money"
    assert script.short_title == "Mars and Money"
    assert "subscribe" not in script.segments[-1].text.lower()
    assert script.segments[-1].text.endswith("?")
    generator.generate.assert_called_once()


def test_generate_without_outro_puts_cta_on_last_segment(planner, topics):
    script, _ = planner.generate(topics[:1], 60, include_outro=False)
    assert "subscribe" in script.segments[-1].text.lower()
