"""Pydantic models and schemas for the narrated video pipeline."""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


# ============================================================================
# Enums
# ============================================================================


class JobStatus(str, Enum):
    """Lifecycle status of a video job."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Expression(str, Enum):
    """Presenter expression vocabulary."""

    NEUTRAL = "neutral"
    WARM = "warm"
    SERIOUS = "serious"
    EXCITED = "excited"
    THOUGHTFUL = "thoughtful"


class VisualType(str, Enum):
    """Visual treatment of a content segment."""

    PRESENTER = "presenter"
    IMAGE = "image"


class ScaleMode(str, Enum):
    """How a clip or image is fitted into the output frame."""

    COVER = "cover"
    CONTAIN = "contain"
    BLUR = "blur"


TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED}


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


# ============================================================================
# Output Config
# ============================================================================


def make_even(value: float) -> int:
    """Round to the nearest integer and bump odd values to the next even number."""
    n = int(round(float(value)))
    return n + 1 if n % 2 else n


RATIO_PRESETS = {
    "16:9": (1280, 720),
    "9:16": (720, 1280),
    "1:1": (1080, 1080),
    "4:5": (1080, 1350),
    "4:3": (960, 720),
}


class OutputConfig(BaseModel):
    """Output frame geometry and fitting modes. Width and height are always even."""

    width: int = Field(default=1280, description="Frame width in pixels (even)")
    height: int = Field(default=720, description="Frame height in pixels (even)")
    fps: int = Field(default=30, description="Frame rate")
    ratio: str = Field(default="1280:720", description="Aspect label passed to generative engines")
    scale_mode: ScaleMode = Field(default=ScaleMode.COVER, description="Content clip scale mode")
    image_scale_mode: ScaleMode = Field(default=ScaleMode.BLUR, description="Montage image scale mode")

    @field_validator("width", "height", mode="before")
    @classmethod
    def _even_dimension(cls, value: Any) -> int:
        return max(2, make_even(value))

    @classmethod
    def from_request(
        cls,
        ratio: Optional[str] = None,
        fps: Optional[int] = None,
        scale_mode: Optional[str] = None,
        image_scale_mode: Optional[str] = None,
    ) -> "OutputConfig":
        """
        Parse a requested aspect ("16:9", "9:16", "1920:1080", "1080x1920") into an OutputConfig.

        Unknown or malformed ratios fall back to 1280x720.
        """
        width, height = parse_ratio(ratio)
        return cls(
            width=width,
            height=height,
            fps=int(fps) if fps and int(fps) > 0 else 30,
            ratio=f"{make_even(width)}:{make_even(height)}",
            scale_mode=_scale_mode(scale_mode, ScaleMode.COVER),
            image_scale_mode=_scale_mode(image_scale_mode, ScaleMode.BLUR),
        )


def _scale_mode(value: Optional[str], default: ScaleMode) -> ScaleMode:
    try:
        return ScaleMode(str(value or "").strip().lower())
    except ValueError:
        return default


def parse_ratio(ratio: Optional[str]) -> tuple[int, int]:
    """Resolve an aspect label or explicit W:H / WxH string to even pixel dimensions."""
    text = str(ratio or "").strip().lower()
    if text in RATIO_PRESETS:
        return RATIO_PRESETS[text]
    match = re.fullmatch(r"(\d+(?:\.\d+)?)\s*[:x]\s*(\d+(?:\.\d+)?)", text)
    if not match:
        return RATIO_PRESETS["16:9"]
    w, h = float(match.group(1)), float(match.group(2))
    if w <= 0 or h <= 0:
        return RATIO_PRESETS["16:9"]
    # Small numbers are an aspect, not pixels; scale to a 720p-class frame
    if max(w, h) < 100:
        if w >= h:
            w, h = 720 * w / h, 720
        else:
            w, h = 720, 720 * h / w
    return make_even(w), make_even(h)


# ============================================================================
# Script Models
# ============================================================================


class Topic(BaseModel):
    """A topic selected for a job. Immutable once selected."""

    model_config = {"frozen": True}

    topic: str = Field(..., description="Source label")
    display_topic: str = Field(default="", description="Display label")
    reason: str = Field(default="", description="Why this topic was selected")
    keywords: list[str] = Field(default_factory=list, description="Optional keywords for search")
    story: Optional[str] = Field(default=None, description="Optional provenance story")

    @property
    def label(self) -> str:
        return self.display_topic or self.topic


class Segment(BaseModel):
    """One narration segment of the content script."""

    index: int = Field(..., description="Stable ordinal")
    topic_index: int = Field(default=0, description="Index into the job's topics")
    topic_label: str = Field(default="", description="Topic display label")
    text: str = Field(..., description="Narration text")
    expression: Expression = Field(default=Expression.NEUTRAL, description="Target expression tag")
    overlay_cues: list[dict[str, Any]] = Field(default_factory=list, description="At most one overlay cue")
    visual_type: VisualType = Field(default=VisualType.PRESENTER, description="Visual treatment")
    audio_path: Optional[str] = Field(default=None, description="Assigned audio clip")
    start_sec: Optional[float] = Field(default=None, description="Start offset (set by the timeline)")
    end_sec: Optional[float] = Field(default=None, description="End offset (set by the timeline)")

    @field_validator("overlay_cues")
    @classmethod
    def _at_most_one_cue(cls, value: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return value[:1]


class Script(BaseModel):
    """A planned script: title plus ordered segments."""

    title: str = Field(default="", description="Video title")
    short_title: str = Field(default="", description="Short title used for intro/outro lines")
    segments: list[Segment] = Field(default_factory=list, description="Ordered segments")


# ============================================================================
# Audio & Timeline Models
# ============================================================================


class AudioFitResult(BaseModel):
    """Result of fitting a clean speech clip to a target duration."""

    path: str = Field(..., description="Fitted audio file")
    input_duration: float = Field(..., description="Duration before tempo change")
    duration: float = Field(..., description="Duration after tempo change (0 means unfittable)")
    tempo: float = Field(..., description="Applied tempo factor, always inside the safety band")
    raw_tempo: float = Field(..., description="Unclamped tempo ratio")

    @property
    def fittable(self) -> bool:
        return self.duration > 0


class CleanClip(BaseModel):
    """A cleaned per-segment narration clip."""

    index: int
    path: str
    duration: float


class TimelineEntry(BaseModel):
    """A segment bound to concrete start/end seconds and an audio file. Read-only."""

    model_config = {"frozen": True}

    index: int
    topic_index: int = 0
    topic_label: str = ""
    text: str
    expression: Expression = Expression.NEUTRAL
    overlay_cues: list[dict[str, Any]] = Field(default_factory=list)
    start_sec: float
    end_sec: float
    audio_path: str
    visual_type: VisualType = VisualType.PRESENTER
    image_paths: list[str] = Field(default_factory=list)

    @property
    def duration(self) -> float:
        return max(0.2, self.end_sec - self.start_sec)


class OverlayAsset(BaseModel):
    """A time-boxed overlay placed over the concatenated video."""

    url: Optional[str] = None
    local_path: Optional[str] = None
    type: str = Field(default="image", description="image or video")
    start_sec: float = 0.0
    end_sec: float = 0.0
    position: str = Field(default="topRight", description="topRight, topLeft, bottomRight, bottomLeft, center")
    scale: float = 0.4


# ============================================================================
# Job Models
# ============================================================================


class Job(BaseModel):
    """Ephemeral job record owned by the orchestrator."""

    job_id: str = Field(..., description="Job identifier")
    status: JobStatus = Field(default=JobStatus.QUEUED, description="Job status")
    progress_pct: int = Field(default=0, ge=0, le=100, description="Progress percentage (monotonic)")
    topic: str = Field(default="", description="Topic summary")
    final_output: Optional[str] = Field(default=None, description="Final output reference")
    error: Optional[str] = Field(default=None, description="Error message when failed")
    meta: dict[str, Any] = Field(default_factory=dict, description="Structured metadata")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class CreateJobRequest(BaseModel):
    """Request body for starting a video job."""

    topics: list[str] = Field(default_factory=list, description="Topic labels, in order")
    preferred_topic_hint: Optional[str] = Field(default=None, description="Single topic hint")
    target_duration_seconds: float = Field(default=60, gt=0, le=900, description="Narration target")
    language: str = Field(default="English", description="Narration language")
    mood: str = Field(default="warm", description="Overall tone")
    ratio: Optional[str] = Field(default="16:9", description="Aspect (16:9, 9:16, W:H)")
    fps: Optional[int] = Field(default=30, description="Frame rate")
    scale_mode: Optional[str] = Field(default="cover", description="cover, contain or blur")
    image_scale_mode: Optional[str] = Field(default="blur", description="cover, contain or blur")
    presenter_asset_path: Optional[str] = Field(default=None, description="Presenter still image")
    voiceover_path: Optional[str] = Field(default=None, description="Full external voice track (path or URL)")
    voice_id: Optional[str] = Field(default=None, description="ElevenLabs voice override")
    music_url: Optional[str] = Field(default=None, description="Explicit background track")
    disable_music: bool = Field(default=False, description="Skip background music")
    overlay_assets: list[OverlayAsset] = Field(default_factory=list, description="Custom overlays")
    dry_run: bool = Field(default=False, description="Complete immediately without rendering")

    def topic_labels(self) -> list[str]:
        labels = [t.strip() for t in self.topics if t and t.strip()]
        if not labels and self.preferred_topic_hint and self.preferred_topic_hint.strip():
            labels = [self.preferred_topic_hint.strip()]
        return labels


class JobStatusResponse(BaseModel):
    """Job status surface exposed upward."""

    job_id: str
    status: JobStatus
    progress_pct: int
    topic: str = ""
    final_output: Optional[str] = None
    error: Optional[str] = None
    meta: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_job(cls, job: Job) -> "JobStatusResponse":
        return cls(
            job_id=job.job_id,
            status=job.status,
            progress_pct=job.progress_pct,
            topic=job.topic,
            final_output=job.final_output,
            error=job.error,
            meta=job.meta,
        )
