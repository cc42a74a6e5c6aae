"""Tests for output configuration and job schemas."""

import pytest

from app.models.schemas import (
    CreateJobRequest,
    Job,
    JobStatus,
    JobStatusResponse,
    OutputConfig,
    ScaleMode,
    Segment,
    make_even,
    parse_ratio,
)


@pytest.mark.parametrize(
    "ratio,expected",
    [
        ("16:9", (1280, 720)),
        ("9:16", (720, 1280)),
        ("1920:1080", (1920, 1080)),
        ("1080x1920", (1080, 1920)),
        ("2:1", (1440, 720)),
        ("1001:501", (1002, 502)),
        ("garbage", (1280, 720)),
        (None, (1280, 720)),
        ("0:9", (1280, 720)),
    ],
)
def test_parse_ratio(ratio, expected):
    assert parse_ratio(ratio) == expected


def test_make_even():
    assert make_even(719) == 720
    assert make_even(720.4) == 720
    assert make_even(721) == 722


def test_output_config_dimensions_are_even():
    config = OutputConfig(width=1279, height=719)
    assert config.width % 2 == 0
    assert config.height % 2 == 0


def test_from_request_defaults_and_modes():
    config = OutputConfig.from_request("9:16", fps=0, scale_mode="CONTAIN", image_scale_mode="bogus")
    assert (config.width, config.height) == (720, 1280)
    assert config.fps == 30
    assert config.ratio == "720:1280"
    assert config.scale_mode == ScaleMode.CONTAIN
    assert config.image_scale_mode == ScaleMode.BLUR


def test_segment_keeps_at_most_one_overlay_cue():
    seg = Segment(index=0, text="Hi.", overlay_cues=[{"query": "a"}, {"query": "b"}])
    assert seg.overlay_cues == [{"query": "a"}]


def test_topic_labels_fall_back_to_hint():
    assert CreateJobRequest(topics=[" Mars ", ""]).topic_labels() == ["Mars"]
    assert CreateJobRequest(preferred_topic_hint="Oceans").topic_labels() == ["Oceans"]
    assert CreateJobRequest().topic_labels() == []


def test_status_response_from_job():
    job = Job(job_id="job_1", status=JobStatus.RUNNING, progress_pct=40, meta={"rewrites": 1})
    response = JobStatusResponse.from_job(job)
    assert response.job_id == "job_1"
    assert response.progress_pct == 40
    assert response.meta == {"rewrites": 1}
