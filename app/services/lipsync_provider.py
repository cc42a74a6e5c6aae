"""Lip-Sync Provider - interface and Sync.so implementation for lip-synced presenter clips."""

import time
from pathlib import Path
from typing import Any, Callable, Optional

import requests

from app.core.config import PipelineConfig, Settings
from app.utils.backoff import BackoffExecutor, raise_for_status
from app.utils.error_handler import ConfigurationError, QualityRejectedError, TransientServiceError

SUCCESS_STATUSES = {"completed", "complete", "succeeded", "success", "done"}
FAILURE_STATUSES = {"failed", "error", "rejected", "cancelled", "canceled"}


def _first(data: Any, *paths: str) -> Optional[Any]:
    """First non-empty value found at one of the dotted paths."""
    for path in paths:
        node = data
        for key in path.split("."):
            if isinstance(node, list):
                node = node[0] if node else None
            if not isinstance(node, dict):
                node = None
                break
            node = node.get(key)
        if node not in (None, "", [], {}):
            return node
    return None


def extract_job_id(reply: Any) -> Optional[str]:
    """Job id from a submit reply, accepting several reply shapes."""
    value = _first(reply, "id", "job_id", "jobId", "data.id", "job.id", "generation.id")
    return str(value) if value is not None else None


def extract_status(reply: Any) -> str:
    value = _first(reply, "status", "state", "data.status", "job.status", "generation.status")
    return str(value or "").strip().lower()


def extract_output_url(reply: Any) -> Optional[str]:
    for path in (
        "outputUrl",
        "output_url",
        "url",
        "output.url",
        "output",
        "result.url",
        "data.outputUrl",
        "data.output_url",
        "outputs.url",
    ):
        value = _first(reply, path)
        if isinstance(value, str) and value.startswith("http"):
            return value
    return None


class LipSyncProvider:
    """Abstract provider for lip-sync video generation."""

    def __init__(self, settings: Settings, logger: Any):
        """
        Initialize lip-sync provider.

        Args:
            settings: Application settings
            logger: Logger instance
        """
        self.settings = settings
        self.logger = logger

    def submit(self, video_path: Path, audio_path: Path) -> str:
        """
        Submit a (video, audio) pair.

        Returns:
            Provider job handle

        Raises:
            NotImplementedError: Must be implemented by subclass
        """
        raise NotImplementedError("Subclass must implement submit()")

    def poll(self, job_id: str) -> tuple[str, Optional[str]]:
        """
        Read a job's state once.

        Returns:
            (status, output_url) where status is "succeeded", "failed" or "pending"

        Raises:
            NotImplementedError: Must be implemented by subclass
        """
        raise NotImplementedError("Subclass must implement poll()")

    def download(self, url: str, output_path: Path) -> Path:
        response = requests.get(url, timeout=120)
        raise_for_status(response, "lipsync download")
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "wb") as f:
            f.write(response.content)
        return output_path

    def generate(self, video_path: Path, audio_path: Path, output_path: Path) -> Path:
        """
        Submit, poll until terminal and download the lip-synced clip.

        Raises:
            QualityRejectedError: If the provider rejects or fails the job
            TransientServiceError: If polling times out
        """
        raise NotImplementedError("Subclass must implement generate()")


class SyncSoLipSyncProvider(LipSyncProvider):
    """Sync.so API provider."""

    def __init__(
        self,
        settings: Settings,
        logger: Any,
        config: Optional[PipelineConfig] = None,
        backoff: Optional[BackoffExecutor] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize Sync.so provider.

        Args:
            settings: Application settings
            logger: Logger instance
            config: Pipeline configuration (polling)
            backoff: Retry wrapper for status polls
            sleep: Sleep function (injectable for tests)
        """
        super().__init__(settings, logger)
        self.config = config or PipelineConfig.from_settings(settings)
        self.backoff = backoff or BackoffExecutor(logger)
        self.sleep = sleep
        self.api_key = settings.sync_so_api_key
        self.api_url = settings.sync_so_api_url.rstrip("/")

        if not self.api_key:
            self.logger.warning("Sync.so API key not configured. Lip-sync will not work.")

    def _headers(self) -> dict:
        return {"x-api-key": self.api_key or ""}

    def submit(self, video_path: Path, audio_path: Path) -> str:
        if not self.api_key:
            raise ConfigurationError("Sync.so API key not configured. Set SYNC_SO_API_KEY in .env")

        with open(video_path, "rb") as video_file, open(audio_path, "rb") as audio_file:
            response = requests.post(
                f"{self.api_url}/v2/generate",
                headers=self._headers(),
                data={"model": self.settings.sync_so_model},
                files={
                    "video": (video_path.name, video_file, "video/mp4"),
                    "audio": (audio_path.name, audio_file, "audio/wav"),
                },
                timeout=180,
            )
        raise_for_status(response, "Sync.so")
        job_id = extract_job_id(response.json())
        if not job_id:
            raise QualityRejectedError(f"Sync.so returned no job id: {response.text[:200]}")
        self.logger.debug(f"Sync.so job submitted: {job_id}")
        return job_id

    def poll(self, job_id: str) -> tuple[str, Optional[str]]:
        def call() -> dict:
            response = requests.get(f"{self.api_url}/v2/generate/{job_id}", headers=self._headers(), timeout=30)
            raise_for_status(response, "Sync.so")
            return response.json()

        reply = self.backoff.execute(call, label="syncso_poll")
        status = extract_status(reply)
        url = extract_output_url(reply)
        if status in SUCCESS_STATUSES and url:
            return "succeeded", url
        if status in FAILURE_STATUSES:
            error = _first(reply, "error", "error_message", "message", "data.error")
            self.logger.warning(f"Sync.so job {job_id} {status}: {error}")
            return "failed", None
        return "pending", None

    def generate(self, video_path: Path, audio_path: Path, output_path: Path) -> Path:
        job_id = self.submit(video_path, audio_path)
        for _ in range(self.config.lipsync_max_polls):
            self.sleep(self.config.lipsync_poll_interval)
            status, url = self.poll(job_id)
            if status == "succeeded" and url:
                self.download(url, output_path)
                self.logger.info(f"✅ Lip-sync complete: {output_path.name}")
                return output_path
            if status == "failed":
                raise QualityRejectedError(f"Sync.so job {job_id} failed")

        raise TransientServiceError(
            f"Sync.so job {job_id} timed out after "
            f"{self.config.lipsync_max_polls * self.config.lipsync_poll_interval:.0f}s"
        )


def get_lipsync_provider(
    settings: Settings,
    logger: Any,
    config: Optional[PipelineConfig] = None,
    backoff: Optional[BackoffExecutor] = None,
) -> Optional[LipSyncProvider]:
    """
    Factory for the configured lip-sync provider.

    Returns:
        Provider instance, or None when no provider credentials are configured
    """
    if settings.sync_so_api_key:
        logger.info("Using Sync.so for lip-sync")
        return SyncSoLipSyncProvider(settings, logger, config=config, backoff=backoff)

    logger.debug("No lip-sync provider configured")
    return None
