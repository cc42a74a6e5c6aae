"""Shared pytest fixtures and configuration."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from app.core.config import PipelineConfig, Settings
from app.core.logging_config import get_logger


@pytest.fixture
def settings():
    """Create test settings instance (no .env, no credentials)."""
    return Settings(_env_file=None)


@pytest.fixture
def logger():
    """Create test logger instance."""
    return get_logger(__name__)


@pytest.fixture
def pipeline_config():
    """Default pipeline configuration."""
    return PipelineConfig()


@pytest.fixture
def fake_media():
    """Media engine double whose ffmpeg runs create the output file."""
    media = MagicMock()

    def run(args, label, timeout=600):
        out = Path(args[-1])
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_bytes(b"media")

    media.run.side_effect = run
    media.probe_duration.return_value = 5.0
    media.has_audio_stream.return_value = True
    media.probe_video_size.return_value = (1280, 720)
    return media
