"""Timeline Builder - lays out tempo-adjusted narration and picks each segment's visuals."""

import math
from pathlib import Path
from typing import Any, Optional

from app.core.config import PipelineConfig
from app.models.schemas import CleanClip, Segment, TimelineEntry, Topic, VisualType
from app.services.audio_fitter import AudioFitter
from app.services.image_search import ImageSearchClient
from app.utils.error_handler import PipelineError
from app.utils.media import MediaEngine


def pick_evenly_spaced_indices(total: int, count: int) -> list[int]:
    """count distinct indices spread evenly across range(total)."""
    if total <= 0 or count <= 0:
        return []
    count = min(count, total)
    return sorted({int(math.floor(i * total / count)) for i in range(count)})


def presenter_count_for(total: int, ratio: float) -> int:
    """round(total * ratio), leaving at least one segment of each kind when total > 1."""
    if total <= 1:
        return total
    count = int(math.floor(total * ratio + 0.5))
    return max(1, min(total - 1, count))


def compute_segment_image_count(duration: float, config: PipelineConfig) -> int:
    """1 image for short segments, otherwise one per ~4.6s within [min, max]."""
    if duration < config.single_image_under_seconds:
        return 1
    count = int(math.floor(duration / config.seconds_per_image + 0.5))
    return max(config.min_images_per_segment, min(config.max_images_per_segment, count))


def lay_out(
    segments: list[Segment], clips: list[CleanClip], intro_duration: float
) -> list[TimelineEntry]:
    """
    Place clips back to back starting at intro_duration.

    Offsets are kept to millisecond precision: intro_duration is rounded to 3
    decimals once, the first start equals that value and each later start is
    the previous entry's end.
    """
    intro = round(intro_duration, 3)
    by_index = {s.index: s for s in segments}
    entries = []
    cursor = 0.0
    for clip in sorted(clips, key=lambda c: c.index):
        seg = by_index[clip.index]
        start = round(intro + cursor, 3)
        cursor += clip.duration
        end = round(intro + cursor, 3)
        entries.append(
            TimelineEntry(
                index=seg.index,
                topic_index=seg.topic_index,
                topic_label=seg.topic_label,
                text=seg.text,
                expression=seg.expression,
                overlay_cues=seg.overlay_cues,
                start_sec=start,
                end_sec=end,
                audio_path=clip.path,
            )
        )
    return entries


def timeline_drift(entries: list[TimelineEntry], intro_duration: float, narration_target: float) -> float:
    """Difference between the final end offset and intro + narration target."""
    if not entries:
        return 0.0
    return entries[-1].end_sec - round(intro_duration + narration_target, 3)


def assign_visual_treatment(entries: list[TimelineEntry], presenter_ratio: float) -> list[TimelineEntry]:
    """Mark an evenly spaced subset as presenter segments and the rest as image montage."""
    total = len(entries)
    presenter = set(pick_evenly_spaced_indices(total, presenter_count_for(total, presenter_ratio)))
    return [
        e.model_copy(update={"visual_type": VisualType.PRESENTER if i in presenter else VisualType.IMAGE})
        for i, e in enumerate(entries)
    ]


def image_query_for(entry: TimelineEntry, topics: list[Topic]) -> str:
    """Overlay cue query if present, else the topic label plus keywords."""
    for cue in entry.overlay_cues:
        query = str(cue.get("query") or "").strip()
        if query:
            return query
    topic = topics[entry.topic_index] if 0 <= entry.topic_index < len(topics) else None
    parts = [entry.topic_label or (topic.label if topic else "")]
    if topic:
        parts += topic.keywords[:2]
    return " ".join(p for p in parts if p).strip()


class TimelineBuilder:
    """Applies the global tempo, builds offsets and resolves visual treatments."""

    def __init__(
        self,
        config: PipelineConfig,
        logger: Any,
        fitter: AudioFitter,
        media: MediaEngine,
        image_search: Optional[ImageSearchClient] = None,
    ):
        """
        Initialize timeline builder.

        Args:
            config: Pipeline configuration
            logger: Logger instance
            fitter: Audio fitter (tempo stage)
            media: Media engine (duration probing)
            image_search: Image acquisition collaborator for montage segments
        """
        self.config = config
        self.logger = logger
        self.fitter = fitter
        self.media = media
        self.image_search = image_search

    def apply_global_tempo(self, clips: list[CleanClip], tempo: float, work_dir: Path) -> list[CleanClip]:
        """Apply the same tempo to every clip and measure each result."""
        out = []
        for clip in sorted(clips, key=lambda c: c.index):
            target = work_dir / f"seg_audio_{clip.index}.wav"
            self.fitter.apply_tempo(Path(clip.path), target, tempo)
            duration = self.media.probe_duration(target)
            if duration <= 0:
                raise PipelineError(f"Segment {clip.index} audio is empty after tempo {tempo:.4f}")
            out.append(CleanClip(index=clip.index, path=str(target), duration=duration))
            if Path(clip.path) != target:
                Path(clip.path).unlink(missing_ok=True)
        return out

    def build(
        self,
        segments: list[Segment],
        clips: list[CleanClip],
        tempo: float,
        intro_duration: float,
        narration_target: float,
        work_dir: Path,
    ) -> list[TimelineEntry]:
        """
        Build timeline entries from real tempo-adjusted durations.

        Args:
            segments: Converged segments
            clips: Clean clips, one per segment
            tempo: Global tempo factor
            intro_duration: Offset of the first content segment
            narration_target: Narration target used for the drift check
            work_dir: Job working directory

        Returns:
            Ordered, continuous timeline entries (all presenter until visuals are assigned)
        """
        adjusted = self.apply_global_tempo(clips, tempo, work_dir)
        entries = lay_out(segments, adjusted, intro_duration)
        drift = timeline_drift(entries, intro_duration, narration_target)
        if abs(drift) > self.config.timeline_epsilon_seconds:
            self.logger.warning(
                f"Timeline end {entries[-1].end_sec:.3f}s differs from target "
                f"{intro_duration + narration_target:.3f}s by {drift:+.3f}s"
            )
        self.logger.info(f"✅ Timeline built: {len(entries)} segments, tempo={tempo:.4f}")
        return entries

    def plan_visuals(
        self, entries: list[TimelineEntry], topics: list[Topic], work_dir: Path
    ) -> list[TimelineEntry]:
        """
        Assign presenter/montage treatments and resolve montage images.

        A montage segment without usable images falls back to the presenter.
        """
        planned = assign_visual_treatment(entries, self.config.presenter_ratio)
        out = []
        for entry in planned:
            if entry.visual_type != VisualType.IMAGE:
                out.append(entry)
                continue
            paths: list[Path] = []
            if self.image_search is not None:
                count = compute_segment_image_count(entry.duration, self.config)
                query = image_query_for(entry, topics)
                try:
                    paths = self.image_search.fetch_images(query, count, work_dir, f"seg_{entry.index}_img")
                except Exception as e:
                    self.logger.warning(f"Image search failed for segment {entry.index}: {e}")
            if paths:
                out.append(entry.model_copy(update={"image_paths": [str(p) for p in paths]}))
            else:
                self.logger.info(f"Segment {entry.index}: no images resolved, using presenter")
                out.append(entry.model_copy(update={"visual_type": VisualType.PRESENTER}))

        self.logger.info(
            f"Visual plan: presenter={[e.index for e in out if e.visual_type == VisualType.PRESENTER]} "
            f"image={[e.index for e in out if e.visual_type == VisualType.IMAGE]}"
        )
        return out
