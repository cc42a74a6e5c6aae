"""Media engine - thin wrapper around ffmpeg/ffprobe subprocesses."""

import json
import math
import subprocess
from pathlib import Path
from typing import Any, Optional, Union

from app.core.config import Settings
from app.utils.error_handler import MediaProcessError

PathLike = Union[str, Path]


def build_atempo_chain(factor: float) -> str:
    """
    Build an atempo filter chain for an arbitrary tempo factor.

    A single atempo stage only accepts 0.5-2.0, so larger changes are split
    into chained stages whose product equals the factor.
    """
    f = float(factor)
    if not math.isfinite(f) or f <= 0:
        raise ValueError(f"Invalid tempo factor: {factor}")
    parts = []
    while f < 0.5:
        parts.append("atempo=0.5")
        f /= 0.5
    while f > 2.0:
        parts.append("atempo=2.0")
        f /= 2.0
    parts.append(f"atempo={f:.4f}")
    return ",".join(parts)


class MediaEngine:
    """Runs ffmpeg/ffprobe and reports non-zero exits as MediaProcessError."""

    def __init__(self, settings: Settings, logger: Any):
        """
        Initialize media engine.

        Args:
            settings: Application settings
            logger: Logger instance
        """
        self.settings = settings
        self.logger = logger
        self.ffmpeg = settings.ffmpeg_path
        self.ffprobe = settings.ffprobe_path

    def run(self, args: list[str], label: str, timeout: float = 600) -> None:
        """
        Run ffmpeg with the given arguments.

        Args:
            args: Arguments after the binary name
            label: Operation name for logs and errors
            timeout: Seconds before the process is killed

        Raises:
            MediaProcessError: On non-zero exit, timeout, or missing binary
        """
        cmd = [self.ffmpeg, "-hide_banner", "-loglevel", "error", *[str(a) for a in args]]
        self.logger.debug(f"ffmpeg [{label}]: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except FileNotFoundError as e:
            raise MediaProcessError(label, -1, f"ffmpeg not found: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise MediaProcessError(label, -1, f"timed out after {timeout}s") from e
        if result.returncode != 0:
            self.logger.error(f"❌ ffmpeg [{label}] exited {result.returncode}")
            raise MediaProcessError(label, result.returncode, result.stderr)

    def _probe(self, path: PathLike, args: list[str]) -> str:
        cmd = [self.ffprobe, "-v", "error", *args, str(path)]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=60)
        except FileNotFoundError as e:
            raise MediaProcessError("ffprobe", -1, f"ffprobe not found: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise MediaProcessError("ffprobe", -1, "timed out") from e
        if result.returncode != 0:
            raise MediaProcessError("ffprobe", result.returncode, result.stderr)
        return result.stdout

    def probe_duration(self, path: PathLike) -> float:
        """Container duration in seconds (0.0 when unknown)."""
        out = self._probe(
            path, ["-show_entries", "format=duration", "-of", "default=noprint_wrappers=1:nokey=1"]
        ).strip()
        try:
            value = float(out)
        except ValueError:
            return 0.0
        return value if math.isfinite(value) and value > 0 else 0.0

    def has_audio_stream(self, path: PathLike) -> bool:
        """True if ffprobe finds at least one audio stream."""
        try:
            out = self._probe(
                path,
                ["-select_streams", "a", "-show_entries", "stream=codec_type", "-of", "default=noprint_wrappers=1:nokey=1"],
            )
        except MediaProcessError:
            return False
        return "audio" in out

    def probe_video_size(self, path: PathLike) -> Optional[tuple[int, int]]:
        """(width, height) of the first video stream, or None."""
        out = self._probe(
            path, ["-select_streams", "v:0", "-show_entries", "stream=width,height", "-of", "json"]
        )
        try:
            streams = json.loads(out).get("streams") or []
            return int(streams[0]["width"]), int(streams[0]["height"])
        except (ValueError, KeyError, IndexError, TypeError):
            return None

    def create_silence(self, duration: float, output_path: PathLike, sample_rate: int = 48000) -> Path:
        """Write a mono silent wav of the given length."""
        self.run(
            [
                "-f", "lavfi",
                "-i", f"anullsrc=r={sample_rate}:cl=mono",
                "-t", f"{duration:.3f}",
                "-acodec", "pcm_s16le",
                "-y", str(output_path),
            ],
            "create_silence",
        )
        return Path(output_path)
