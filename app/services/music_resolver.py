"""Music Resolver - finds a valid background track: request, operator default, then Jamendo."""

from pathlib import Path
from typing import Any, Optional

import requests

from app.core.config import PipelineConfig, Settings
from app.utils.backoff import BackoffExecutor, raise_for_status
from app.utils.error_handler import MusicResolutionError, PipelineError
from app.utils.media import MediaEngine

JAMENDO_TRACKS_URL = "https://api.jamendo.com/v3.0/tracks/"
MAX_JAMENDO_CANDIDATES = 10
MIN_CATALOG_TRACK_SECONDS = 30

UNRESOLVED_MESSAGE = (
    "Background music is required but could not be resolved. "
    "Provide JAMENDO_CLIENT_ID or musicUrl or DEFAULT_MUSIC_PATH."
)


def is_url(value: str) -> bool:
    return value.lower().startswith(("http://", "https://"))


class MusicResolver:
    """Resolves background music through three ordered tiers."""

    def __init__(
        self,
        settings: Settings,
        config: PipelineConfig,
        logger: Any,
        media: MediaEngine,
        backoff: Optional[BackoffExecutor] = None,
    ):
        """
        Initialize music resolver.

        Args:
            settings: Application settings (default track, Jamendo client id)
            config: Pipeline configuration
            logger: Logger instance
            media: Media engine (validation probes)
            backoff: Retry wrapper for HTTP calls
        """
        self.settings = settings
        self.config = config
        self.logger = logger
        self.media = media
        self.backoff = backoff or BackoffExecutor(logger)

    def validate_music_file(self, path: Path) -> bool:
        """A track is usable if it has an audio stream and lasts long enough."""
        if not path.exists():
            return False
        if not self.media.has_audio_stream(path):
            return False
        try:
            return self.media.probe_duration(path) >= self.config.min_music_seconds
        except PipelineError:
            return False

    def download(self, url: str, output_path: Path) -> Path:
        def call() -> bytes:
            response = requests.get(url, timeout=35)
            raise_for_status(response, "music download")
            return response.content

        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(self.backoff.execute(call, label="music_download"))
        return output_path

    def search_jamendo(self, topic: str) -> list[dict]:
        """Instrumental catalog tracks for the topic, longest first."""
        if not self.settings.jamendo_client_id:
            return []
        params = {
            "client_id": self.settings.jamendo_client_id,
            "format": "json",
            "limit": 20,
            "fuzzytags": f"cinematic+upbeat+modern+instrumental+{topic[:40]}".replace(" ", "+"),
            "include": "licenses",
            "audioformat": "mp32",
            "speed": "medium+high",
            "order": "popularity_total",
            "vocalinstrumental": "instrumental",
        }

        def call() -> dict:
            response = requests.get(JAMENDO_TRACKS_URL, params=params, timeout=15)
            raise_for_status(response, "Jamendo")
            return response.json()

        data = self.backoff.execute(call, label="jamendo_search")
        tracks = [
            t for t in (data.get("results") or [])
            if t.get("audio") and float(t.get("duration") or 0) >= MIN_CATALOG_TRACK_SECONDS
        ]
        return sorted(tracks, key=lambda t: float(t.get("duration") or 0), reverse=True)

    def resolve(
        self,
        topic: str,
        work_dir: Path,
        music_url: Optional[str] = None,
        disable_music: bool = False,
    ) -> Optional[Path]:
        """
        Resolve a background track.

        Args:
            topic: Topic text for catalog search
            work_dir: Job working directory
            music_url: Explicitly requested track (URL or local path)
            disable_music: Skip music entirely

        Returns:
            Path to a validated track, or None when music is disabled

        Raises:
            MusicResolutionError: If the requested track is invalid or no tier yields a track
        """
        if disable_music:
            self.logger.info("Background music disabled for this job")
            return None

        requested = (music_url or "").strip()
        if requested:
            try:
                path = (
                    self.download(requested, work_dir / "music_requested.mp3") if is_url(requested) else Path(requested)
                )
            except (PipelineError, requests.RequestException) as e:
                raise MusicResolutionError(f"Requested music track could not be downloaded: {e}") from e
            if self.validate_music_file(path):
                self.logger.info(f"✅ Music ready (requested): {path.name}")
                return path
            raise MusicResolutionError("Requested music track is not valid audio")

        default = (self.settings.default_music_path or "").strip()
        if default:
            try:
                path = self.download(default, work_dir / "music_default.mp3") if is_url(default) else Path(default)
                if self.validate_music_file(path):
                    self.logger.info(f"✅ Music ready (default): {path.name}")
                    return path
                self.logger.warning(f"Default music track {default} is not valid audio")
            except (PipelineError, requests.RequestException) as e:
                self.logger.warning(f"Default music track unavailable: {e}")

        try:
            candidates = self.search_jamendo(topic)
        except (PipelineError, requests.RequestException) as e:
            self.logger.warning(f"Jamendo search failed: {e}")
            candidates = []

        for track in candidates[:MAX_JAMENDO_CANDIDATES]:
            out = work_dir / f"music_jamendo_{track.get('id')}.mp3"
            try:
                self.download(track["audio"], out)
            except (PipelineError, requests.RequestException) as e:
                self.logger.debug(f"Jamendo track {track.get('id')} download failed: {e}")
                continue
            if self.validate_music_file(out):
                self.logger.info(
                    f"✅ Music ready (Jamendo): {track.get('name')} by {track.get('artist_name')} "
                    f"({track.get('duration')}s)"
                )
                return out
            out.unlink(missing_ok=True)

        raise MusicResolutionError(UNRESOLVED_MESSAGE)
