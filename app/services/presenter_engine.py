"""Presenter Engine - baseline motion clips of the presenter, one per expression."""

import base64
import mimetypes
import time
from pathlib import Path
from typing import Any, Callable, Optional

import requests

from app.core.config import PipelineConfig, Settings
from app.models.schemas import Expression, OutputConfig
from app.utils.backoff import BackoffExecutor, raise_for_status
from app.utils.error_handler import ConfigurationError, QualityRejectedError, TransientServiceError
from app.utils.media import MediaEngine

VIDEO_SUFFIXES = {".mp4", ".mov", ".webm", ".mkv", ".m4v"}

RUNWAY_RATIOS = {"1280:720", "720:1280", "1104:832", "832:1104", "960:960", "1584:672", "1280:768", "768:1280"}

EXPRESSION_LINES = {
    Expression.NEUTRAL: "calm and professional; mouth near-neutral with a very subtle smile.",
    Expression.WARM: "friendly and approachable with a very subtle, light smile.",
    Expression.EXCITED: "energized and engaged, minimal smile only, no exaggerated grin.",
    Expression.SERIOUS: "serious but calm, neutral mouth, soft eye contact.",
    Expression.THOUGHTFUL: "thoughtful and attentive, relaxed mouth, gentle eye focus.",
}


def runway_ratio(output: OutputConfig) -> str:
    """Nearest resolution string Runway accepts for the output frame."""
    candidate = f"{output.width}:{output.height}"
    if candidate in RUNWAY_RATIOS:
        return candidate
    if output.height > output.width:
        return "720:1280"
    if output.height == output.width:
        return "960:960"
    return "1280:720"


def build_baseline_prompt(expression: Expression) -> str:
    """Motion prompt for a silent talking-head baseline."""
    line = EXPRESSION_LINES.get(Expression(expression), EXPRESSION_LINES[Expression.NEUTRAL])
    return (
        "Photorealistic talking-head video of the SAME person as the reference image. "
        "Keep identity, background, lighting and wardrobe consistent. "
        "Framing: medium shot, upper torso, moderate headroom. "
        f"Expression: {line} "
        "Motion: gentle head nods, natural blink rate, small hand movements away from the face. "
        "No extra people, no text overlays, no camera shake, no mouth warping. Do NOT try to lip-sync."
    )


def is_remote_asset(source: str) -> bool:
    return source.lower().startswith(("http://", "https://"))


def is_video_asset(path: str) -> bool:
    return Path(path.split("?")[0]).suffix.lower() in VIDEO_SUFFIXES


class PresenterEngine:
    """Produces looping baseline clips used as lip-sync input."""

    def __init__(
        self,
        settings: Settings,
        config: PipelineConfig,
        logger: Any,
        media: MediaEngine,
        backoff: Optional[BackoffExecutor] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize presenter engine.

        Args:
            settings: Application settings (Runway credentials)
            config: Pipeline configuration
            logger: Logger instance
            media: Media engine
            backoff: Retry wrapper for HTTP calls
            sleep: Sleep function (injectable for tests)
        """
        self.settings = settings
        self.config = config
        self.logger = logger
        self.media = media
        self.backoff = backoff or BackoffExecutor(logger)
        self.sleep = sleep

    # ------------------------------------------------------------------
    # Runway
    # ------------------------------------------------------------------

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.settings.runway_api_key}",
            "X-Runway-Version": self.settings.runway_api_version,
            "Content-Type": "application/json",
        }

    def image_to_video(self, image_path: Path, prompt: str, duration_seconds: float, ratio: str) -> str:
        """
        Submit an image-to-video task and wait for its output URL.

        Raises:
            ConfigurationError: If no Runway key is configured
            QualityRejectedError: If the task fails
            TransientServiceError: If the task never finishes
        """
        if not self.settings.runway_api_key:
            raise ConfigurationError("Runway API key not configured")

        mime = mimetypes.guess_type(str(image_path))[0] or "image/png"
        with open(image_path, "rb") as f:
            data_uri = f"data:{mime};base64,{base64.b64encode(f.read()).decode('utf-8')}"

        body = {
            "model": self.settings.runway_model,
            "promptImage": data_uri,
            "promptText": prompt[:1000],
            "ratio": ratio,
            "duration": int(max(2, min(10, round(duration_seconds)))),
        }

        def submit() -> str:
            response = requests.post(
                f"{self.settings.runway_api_url}/v1/image_to_video",
                json=body,
                headers=self._headers(),
                timeout=60,
            )
            raise_for_status(response, "Runway")
            task_id = response.json().get("id")
            if not task_id:
                raise QualityRejectedError("Runway returned no task id")
            return task_id

        task_id = self.backoff.execute(submit, label="runway_submit")
        return self.poll_task(task_id)

    def poll_task(self, task_id: str) -> str:
        def call() -> dict:
            response = requests.get(
                f"{self.settings.runway_api_url}/v1/tasks/{task_id}", headers=self._headers(), timeout=20
            )
            raise_for_status(response, "Runway")
            return response.json()

        for _ in range(self.config.lipsync_max_polls):
            self.sleep(self.config.lipsync_poll_interval)
            data = self.backoff.execute(call, label="runway_poll")
            status = str(data.get("status") or "").upper()
            if status == "SUCCEEDED":
                output = data.get("output")
                if isinstance(output, list) and output:
                    return output[0]
                if isinstance(output, str):
                    return output
                raise QualityRejectedError("Runway task succeeded but returned no output")
            if status == "FAILED":
                raise QualityRejectedError(f"Runway task failed: {data.get('failureCode') or data.get('failure')}")
        raise TransientServiceError(f"Runway task {task_id} timed out")

    # ------------------------------------------------------------------
    # Local baseline preparation
    # ------------------------------------------------------------------

    def _frame_filter(self, output: OutputConfig) -> str:
        return (
            f"scale={output.width}:{output.height}:force_original_aspect_ratio=increase:flags=lanczos,"
            f"crop={output.width}:{output.height},fps={self.config.lipsync_input_fps},"
            "format=yuv420p,setpts=PTS-STARTPTS"
        )

    def prepare_baseline(self, source: Path, output: OutputConfig, output_path: Path) -> Path:
        """Loop a motion clip to the baseline length in the lip-sync input format."""
        self.media.run(
            [
                "-stream_loop", "-1", "-i", str(source),
                "-t", f"{self.config.baseline_seconds:.3f}",
                "-an", "-vf", self._frame_filter(output),
                "-c:v", "libx264", "-preset", "veryfast", "-crf", str(self.config.lipsync_input_crf),
                "-movflags", "+faststart",
                "-y", str(output_path),
            ],
            "prepare_baseline",
        )
        return output_path

    def still_baseline(self, image_path: Path, output: OutputConfig, output_path: Path) -> Path:
        """Encode the presenter still as a static baseline clip."""
        self.media.run(
            [
                "-loop", "1", "-i", str(image_path),
                "-t", f"{self.config.baseline_seconds:.3f}",
                "-an", "-vf", self._frame_filter(output),
                "-c:v", "libx264", "-preset", "veryfast", "-crf", str(self.config.lipsync_input_crf),
                "-movflags", "+faststart",
                "-y", str(output_path),
            ],
            "still_baseline",
        )
        return output_path

    def _localize(self, source: str, work_dir: Path) -> Path:
        source = (source or "").strip()
        if not source:
            raise ConfigurationError("Presenter asset not configured")
        if not is_remote_asset(source):
            path = Path(source)
            if not path.exists():
                raise ConfigurationError(f"Presenter asset not found: {source}")
            return path

        suffix = Path(source.split("?")[0]).suffix or ".png"

        def download() -> bytes:
            response = requests.get(source, timeout=60)
            raise_for_status(response, "presenter download")
            return response.content

        local = work_dir / f"presenter_source{suffix}"
        local.write_bytes(self.backoff.execute(download, label="presenter_download"))
        return local

    def build_baselines(
        self, expressions: list[Expression], presenter_source: str, output: OutputConfig, work_dir: Path
    ) -> dict[Expression, Path]:
        """
        Prepare one baseline clip per needed expression.

        A video presenter asset yields a single neutral baseline. A still image is
        animated through Runway per expression; without Runway, or when a Runway
        task fails, the still itself becomes the baseline.

        Returns:
            Mapping of expression to prepared baseline clip (always has NEUTRAL)
        """
        self.logger.info("=" * 60)
        self.logger.info("Preparing presenter baselines")
        self.logger.info("=" * 60)

        source = self._localize(presenter_source, work_dir)
        baselines: dict[Expression, Path] = {}

        if is_video_asset(str(source)):
            baselines[Expression.NEUTRAL] = self.prepare_baseline(source, output, work_dir / "baseline_neutral.mp4")
            self.logger.info("Presenter is a video; using it as the neutral baseline")
            return baselines

        needed = [Expression.NEUTRAL] + [e for e in dict.fromkeys(expressions) if e != Expression.NEUTRAL]
        still: Optional[Path] = None
        for expression in needed:
            target = work_dir / f"baseline_{expression.value}.mp4"
            if self.settings.runway_api_key:
                try:
                    url = self.image_to_video(
                        source, build_baseline_prompt(expression), self.config.baseline_seconds, runway_ratio(output)
                    )
                    raw = work_dir / f"baseline_raw_{expression.value}.mp4"
                    response = requests.get(url, timeout=120)
                    raise_for_status(response, "Runway download")
                    raw.write_bytes(response.content)
                    baselines[expression] = self.prepare_baseline(raw, output, target)
                    raw.unlink(missing_ok=True)
                    self.logger.info(f"✅ Runway baseline ready: {expression.value}")
                    continue
                except (QualityRejectedError, TransientServiceError, requests.RequestException) as e:
                    self.logger.warning(f"Runway baseline failed for {expression.value}: {e}; using still image")
            if still is None:
                still = self.still_baseline(source, output, work_dir / "baseline_still.mp4")
            baselines[expression] = still

        return baselines


def baseline_for(baselines: dict[Expression, Path], expression: Expression) -> Path:
    """Baseline for an expression, falling back to neutral."""
    return baselines.get(expression) or baselines[Expression.NEUTRAL]
