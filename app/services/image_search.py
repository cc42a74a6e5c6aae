"""Image Search - Google Custom Search image lookup and validated downloads."""

import io
from pathlib import Path
from typing import Any, Optional

import requests
from PIL import Image, UnidentifiedImageError

from app.core.config import Settings
from app.utils.backoff import BackoffExecutor, raise_for_status

CSE_URL = "https://www.googleapis.com/customsearch/v1"
MIN_IMAGE_SHORT_EDGE = 720


class ImageSearchClient:
    """Finds and downloads still images for montage segments."""

    def __init__(self, settings: Settings, logger: Any, backoff: Optional[BackoffExecutor] = None):
        """
        Initialize image search client.

        Args:
            settings: Application settings
            logger: Logger instance
            backoff: Retry wrapper for HTTP calls
        """
        self.settings = settings
        self.logger = logger
        self.backoff = backoff or BackoffExecutor(logger)

    @property
    def enabled(self) -> bool:
        return bool(self.settings.google_cse_id and self.settings.google_cse_key)

    def search(self, query: str, max_results: int = 6) -> list[str]:
        """
        Search for large photos matching query.

        Args:
            query: Search query
            max_results: Maximum URLs returned (CSE caps one page at 10)

        Returns:
            Image URLs, best first. Empty when search is not configured.
        """
        if not self.enabled or not query.strip():
            return []

        params = {
            "key": self.settings.google_cse_key,
            "cx": self.settings.google_cse_id,
            "q": query,
            "searchType": "image",
            "imgSize": "xlarge",
            "imgType": "photo",
            "safe": "active",
            "num": min(10, max(1, max_results)),
        }

        def call() -> dict:
            response = requests.get(CSE_URL, params=params, timeout=20)
            raise_for_status(response, "Google CSE")
            return response.json()

        data = self.backoff.execute(call, label="cse_search")
        urls = []
        for item in data.get("items") or []:
            link = item.get("link")
            image = item.get("image") or {}
            width, height = image.get("width") or 0, image.get("height") or 0
            if width and height and min(width, height) < MIN_IMAGE_SHORT_EDGE:
                continue
            if link and link not in urls:
                urls.append(link)
        return urls[:max_results]

    def download_image(self, url: str, output_path: Path) -> Optional[Path]:
        """
        Download url and keep it only if Pillow recognises a large enough image.

        Returns:
            Saved path (re-encoded as JPEG) or None when the download is unusable
        """
        try:
            response = requests.get(url, timeout=25)
            response.raise_for_status()
            with Image.open(io.BytesIO(response.content)) as img:
                if min(img.size) < MIN_IMAGE_SHORT_EDGE // 2:
                    return None
                output_path.parent.mkdir(parents=True, exist_ok=True)
                img.convert("RGB").save(output_path, format="JPEG", quality=92)
        except (requests.RequestException, UnidentifiedImageError, OSError) as e:
            self.logger.debug(f"Skipping image {url}: {e}")
            return None
        return output_path

    def fetch_images(self, query: str, count: int, work_dir: Path, prefix: str) -> list[Path]:
        """Search and download up to count usable images."""
        paths: list[Path] = []
        for i, url in enumerate(self.search(query, max_results=count * 2 + 2)):
            if len(paths) >= count:
                break
            saved = self.download_image(url, work_dir / f"{prefix}_{i}.jpg")
            if saved:
                paths.append(saved)
        return paths
