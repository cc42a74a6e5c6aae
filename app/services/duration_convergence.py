"""Duration Convergence Loop - fits synthesized narration to a target spoken duration."""

import math
from pathlib import Path
from typing import Any, Optional

import requests
from pydantic import BaseModel, Field

from app.core.config import PipelineConfig
from app.models.schemas import CleanClip, Segment, Topic
from app.services.audio_fitter import AudioFitter, clamp
from app.services.narration_generator import NarrationGenerator
from app.services.script_planner import ScriptPlanner
from app.services.tts_client import TTSClient
from app.utils.backoff import BackoffExecutor, raise_for_status
from app.utils.error_handler import VoiceSynthesisError
from app.utils.media import MediaEngine


class TempoDecision(BaseModel):
    """Outcome of measuring one synthesis pass against the narration target."""

    sum_clean: float
    raw_tempo: float
    tempo: float
    drift: float
    tolerance: float
    within_tolerance: bool
    needs_rewrite: bool


class ConvergenceResult(BaseModel):
    """Final state of the convergence loop."""

    segments: list[Segment]
    clips: list[CleanClip]
    global_tempo: float
    raw_tempo: float
    drift: float
    tolerance: float
    within_tolerance: bool
    passes: int = Field(..., description="Synthesis passes run (rewrites + 1)")
    rewrites: int = Field(..., description="Rewrite requests issued")


def compute_tolerance(target_seconds: float, ceiling: float) -> float:
    """min(ceiling, max(1s, 7% of target))."""
    return min(ceiling, max(1.0, target_seconds * 0.07))


def decide_tempo(
    sum_clean: float, target_seconds: float, config: PipelineConfig, allow_stretch: bool = True
) -> TempoDecision:
    """
    Choose the global tempo factor for one pass.

    Small drift is left alone (factor 1.0). The factor, including the optional
    speed boost, always lands inside [global_tempo_min, global_tempo_max].
    """
    raw = sum_clean / target_seconds
    drift = abs(sum_clean - target_seconds)
    tolerance = compute_tolerance(target_seconds, config.tolerance_ceiling_seconds)
    within = drift <= tolerance
    low, high = config.global_tempo_min, config.global_tempo_max

    stretch = allow_stretch and (abs(1.0 - raw) >= config.stretch_ratio_delta or not within)
    tempo = clamp(raw, low, high) if stretch else 1.0
    if allow_stretch and config.voice_speed_boost and config.voice_speed_boost != 1.0:
        tempo = tempo * config.voice_speed_boost
    tempo = clamp(tempo, low, high)

    needs_rewrite = allow_stretch and not within and (raw < low or raw > high)
    return TempoDecision(
        sum_clean=sum_clean,
        raw_tempo=raw,
        tempo=tempo,
        drift=drift,
        tolerance=tolerance,
        within_tolerance=within,
        needs_rewrite=needs_rewrite,
    )


def rewrite_instruction(
    sum_clean: float, target_seconds: float, caps: list[int]
) -> tuple[int, str, list[int]]:
    """
    Translate the ideal shrink/grow ratio into a rewrite request.

    Returns:
        (percent, "LONGER" | "SHORTER", rescaled word caps)
    """
    ratio = target_seconds / sum_clean
    percent = int(min(50, max(1, math.floor(abs(1.0 - ratio) * 100 + 0.5))))
    direction = "LONGER" if ratio > 1 else "SHORTER"
    adjusted = [max(12, int(math.floor(c * ratio + 0.5))) for c in caps]
    return percent, direction, adjusted


class DurationConvergenceLoop:
    """Synthesize, measure, rewrite: bounded iteration toward the narration target."""

    def __init__(
        self,
        config: PipelineConfig,
        logger: Any,
        tts: TTSClient,
        fitter: AudioFitter,
        planner: ScriptPlanner,
        generator: NarrationGenerator,
        media: MediaEngine,
        backoff: Optional[BackoffExecutor] = None,
    ):
        """
        Initialize convergence loop.

        Args:
            config: Pipeline configuration
            logger: Logger instance
            tts: Speech synthesizer
            fitter: Audio fitter (cleaning)
            planner: Script planner (structural repairs after a rewrite)
            generator: Narration generator (rewrites)
            media: Media engine (probing, slicing)
            backoff: Retry wrapper for downloads
        """
        self.config = config
        self.logger = logger
        self.tts = tts
        self.fitter = fitter
        self.planner = planner
        self.generator = generator
        self.media = media
        self.backoff = backoff or BackoffExecutor(logger)

    # ------------------------------------------------------------------
    # Audio acquisition
    # ------------------------------------------------------------------

    def synthesize_segments(
        self, segments: list[Segment], work_dir: Path, attempt: int, voice_id: Optional[str], mood: str
    ) -> list[CleanClip]:
        """Synthesize and clean every segment's narration."""
        clips = []
        for seg in segments:
            mp3 = work_dir / f"tts_{attempt}_{seg.index}.mp3"
            wav = work_dir / f"tts_clean_{attempt}_{seg.index}.wav"
            self.tts.synthesize(
                seg.text,
                mp3,
                voice_id=voice_id,
                voice_settings=self.tts.build_voice_settings(seg.expression, mood),
            )
            self.fitter.trim_and_normalize(mp3, wav)
            mp3.unlink(missing_ok=True)
            duration = self.media.probe_duration(wav)
            self.logger.debug(f"Segment {seg.index}: {duration:.3f}s clean")
            clips.append(CleanClip(index=seg.index, path=str(wav), duration=duration))
        return clips

    def _localize_voiceover(self, source: str, work_dir: Path) -> Path:
        if not source.lower().startswith(("http://", "https://")):
            return Path(source)

        def download() -> bytes:
            response = requests.get(source, timeout=45)
            raise_for_status(response, "voiceover download")
            return response.content

        local = work_dir / "voiceover_source"
        local.write_bytes(self.backoff.execute(download, label="voiceover_download"))
        return local

    def slice_voiceover(self, source: str, segment_count: int, work_dir: Path) -> list[CleanClip]:
        """Cut an externally supplied voice track into equal-length pieces."""
        local = self._localize_voiceover(source, work_dir)
        pcm = work_dir / "voiceover_pcm.wav"
        self.media.run(
            [
                "-i", str(local), "-vn",
                "-acodec", "pcm_s16le", "-ar", str(self.config.sample_rate), "-ac", "1",
                "-y", str(pcm),
            ],
            "voiceover_to_wav",
        )
        total = self.media.probe_duration(pcm)
        per = total / segment_count if segment_count else 0.0
        clips = []
        for i in range(segment_count):
            start = i * per
            length = total - start if i == segment_count - 1 else per
            out = work_dir / f"vo_clean_{i}.wav"
            self.media.run(
                [
                    "-i", str(pcm),
                    "-ss", f"{start:.3f}", "-t", f"{length:.3f}",
                    "-vn", "-acodec", "pcm_s16le", "-ar", str(self.config.sample_rate), "-ac", "1",
                    "-y", str(out),
                ],
                "split_voiceover",
            )
            clips.append(CleanClip(index=i, path=str(out), duration=self.media.probe_duration(out)))
        pcm.unlink(missing_ok=True)
        return clips

    # ------------------------------------------------------------------
    # Rewrite
    # ------------------------------------------------------------------

    def request_rewrite(
        self,
        segments: list[Segment],
        topics: list[Topic],
        caps: list[int],
        decision: TempoDecision,
        target_seconds: float,
        mood: str,
    ) -> list[Segment]:
        """Ask for one proportional rewrite and re-apply structural repairs."""
        percent, direction, adjusted = rewrite_instruction(decision.sum_clean, target_seconds, caps)
        self.logger.info(f"Requesting rewrite: {percent}% {direction} (caps={adjusted})")
        payload = [
            {
                "index": s.index,
                "text": s.text,
                "expression": s.expression.value,
                "topicIndex": s.topic_index,
                "topicLabel": s.topic_label,
            }
            for s in segments
        ]
        replies = self.generator.rewrite(payload, target_seconds, percent, direction, adjusted)

        by_index = {}
        for reply in replies:
            if not isinstance(reply, dict):
                continue
            try:
                idx = int(reply.get("index"))
            except (TypeError, ValueError):
                continue
            text = str(reply.get("text") or "").strip()
            if text:
                by_index[idx] = text

        # Expressions and topic assignment are carried over; only text changes
        updated = [s.model_copy(update={"text": by_index.get(s.index, s.text)}) for s in segments]
        repaired = self.planner.repair(updated, topics, adjusted, mood, include_cta=False)
        return [r.model_copy(update={"expression": s.expression}) for r, s in zip(repaired, segments)]

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run(
        self,
        segments: list[Segment],
        topics: list[Topic],
        caps: list[int],
        target_seconds: float,
        work_dir: Path,
        voice_id: Optional[str] = None,
        mood: str = "neutral",
        voiceover: Optional[str] = None,
    ) -> ConvergenceResult:
        """
        Converge narration audio onto target_seconds.

        Terminates after at most max_rewrites + 1 passes. With an external
        voiceover there is exactly one pass, no tempo scaling and no rewrite.

        Raises:
            VoiceSynthesisError: If a pass produces less than min_voice_seconds of audio
        """
        max_rewrites = 0 if voiceover else self.config.max_rewrites
        rewrites = 0
        clips: list[CleanClip] = []
        decision: Optional[TempoDecision] = None

        for attempt in range(max_rewrites + 1):
            if voiceover:
                clips = self.slice_voiceover(voiceover, len(segments), work_dir)
            else:
                clips = self.synthesize_segments(segments, work_dir, attempt, voice_id, mood)

            sum_clean = sum(c.duration for c in clips)
            if not math.isfinite(sum_clean) or sum_clean < self.config.min_voice_seconds:
                raise VoiceSynthesisError(f"Voice audio generation failed (total {sum_clean:.2f}s)")

            decision = decide_tempo(sum_clean, target_seconds, self.config, allow_stretch=not voiceover)
            self.logger.info(
                f"Convergence pass {attempt}: sum={decision.sum_clean:.3f}s target={target_seconds:.3f}s "
                f"raw={decision.raw_tempo:.4f} tempo={decision.tempo:.4f} drift={decision.drift:.3f}s "
                f"tolerance={decision.tolerance:.3f}s within={decision.within_tolerance}"
            )

            if not decision.needs_rewrite or attempt >= max_rewrites:
                break

            for clip in clips:
                Path(clip.path).unlink(missing_ok=True)
            segments = self.request_rewrite(segments, topics, caps, decision, target_seconds, mood)
            rewrites += 1

        assert decision is not None
        if not decision.within_tolerance:
            self.logger.warning(
                f"Narration drift {decision.drift:.2f}s still exceeds tolerance {decision.tolerance:.2f}s "
                f"after {rewrites} rewrites; continuing with tempo {decision.tempo:.4f}"
            )

        return ConvergenceResult(
            segments=segments,
            clips=sorted(clips, key=lambda c: c.index),
            global_tempo=decision.tempo,
            raw_tempo=decision.raw_tempo,
            drift=decision.drift,
            tolerance=decision.tolerance,
            within_tolerance=decision.within_tolerance,
            passes=rewrites + 1,
            rewrites=rewrites,
        )
