"""Audio Fitter - cleans speech clips and scales their tempo toward a target duration."""

import math
from pathlib import Path
from typing import Any

from app.core.config import PipelineConfig
from app.models.schemas import AudioFitResult
from app.utils.media import MediaEngine, build_atempo_chain


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class AudioFitter:
    """Edge-silence trimming, loudness normalization and bounded tempo scaling."""

    def __init__(self, config: PipelineConfig, logger: Any, media: MediaEngine):
        """
        Initialize audio fitter.

        Args:
            config: Pipeline configuration
            logger: Logger instance
            media: Media engine used for every transform
        """
        self.config = config
        self.logger = logger
        self.media = media

    def build_clean_filter(self) -> str:
        """
        Filter chain that strips leading and trailing silence only.

        Trailing silence is removed by reversing, trimming the (new) start and
        reversing back, so internal pauses are never touched.
        """
        trim_start = "silenceremove=start_periods=1:start_duration=0.12:start_threshold=-50dB"
        return ",".join(
            [
                f"aresample={self.config.sample_rate}",
                "aformat=channel_layouts=mono",
                trim_start,
                "areverse",
                trim_start,
                "areverse",
                self.config.voice_loudnorm,
            ]
        )

    def trim_and_normalize(self, raw_path: Path, output_path: Path) -> Path:
        """
        Convert raw synthesized audio into a clean mono wav.

        Args:
            raw_path: Raw audio (mp3/wav)
            output_path: Destination wav

        Returns:
            Path to the cleaned wav
        """
        self.media.run(
            [
                "-i", str(raw_path),
                "-af", self.build_clean_filter(),
                "-ar", str(self.config.sample_rate),
                "-ac", "1",
                "-acodec", "pcm_s16le",
                "-y", str(output_path),
            ],
            "clean_speech",
        )
        return Path(output_path)

    def apply_tempo(self, input_path: Path, output_path: Path, factor: float) -> Path:
        """
        Change tempo without changing pitch. A factor within epsilon of 1.0 is a plain copy.

        Args:
            input_path: Source wav
            output_path: Destination wav
            factor: Tempo factor (>1 speeds up, <1 slows down)

        Returns:
            Path to the output wav
        """
        args = ["-i", str(input_path)]
        if abs(factor - 1.0) >= self.config.tempo_epsilon:
            args += ["-af", build_atempo_chain(factor)]
        args += [
            "-ar", str(self.config.sample_rate),
            "-ac", "1",
            "-acodec", "pcm_s16le",
            "-y", str(output_path),
        ]
        self.media.run(args, "apply_tempo")
        return Path(output_path)

    def fit_to_duration(
        self,
        clean_path: Path,
        target_seconds: float,
        min_factor: float,
        max_factor: float,
        output_path: Path,
    ) -> AudioFitResult:
        """
        Scale a clean clip toward target_seconds within [min_factor, max_factor].

        Args:
            clean_path: Clean wav
            target_seconds: Desired duration
            min_factor: Lowest allowed tempo factor
            max_factor: Highest allowed tempo factor
            output_path: Destination wav

        Returns:
            AudioFitResult. duration == 0 marks the clip as unfittable.
        """
        measured = self.media.probe_duration(clean_path)
        if not math.isfinite(measured) or measured <= 0 or target_seconds <= 0:
            self.logger.warning(f"Cannot fit {Path(clean_path).name}: measured={measured} target={target_seconds}")
            return AudioFitResult(
                path=str(clean_path), input_duration=0.0, duration=0.0, tempo=1.0, raw_tempo=1.0
            )

        raw = measured / target_seconds
        tempo = clamp(raw, min_factor, max_factor)

        if abs(tempo - 1.0) < self.config.tempo_epsilon:
            return AudioFitResult(
                path=str(clean_path), input_duration=measured, duration=measured, tempo=1.0, raw_tempo=raw
            )

        self.apply_tempo(clean_path, output_path, tempo)
        fitted = self.media.probe_duration(output_path)
        self.logger.debug(
            f"Fitted {Path(clean_path).name}: {measured:.3f}s -> {fitted:.3f}s "
            f"(tempo={tempo:.4f}, raw={raw:.4f}, target={target_seconds:.3f}s)"
        )
        return AudioFitResult(
            path=str(output_path), input_duration=measured, duration=fitted, tempo=tempo, raw_tempo=raw
        )
