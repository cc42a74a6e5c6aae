"""TTS (Text-to-Speech) client for ElevenLabs with ordered model fallback."""

from pathlib import Path
from typing import Any, Optional

import requests

from app.core.config import PipelineConfig, Settings
from app.models.schemas import Expression
from app.services.audio_fitter import clamp
from app.utils.backoff import BackoffExecutor, raise_for_status
from app.utils.error_handler import ConfigurationError, QualityRejectedError, VoiceSynthesisError
from app.utils.text_utils import clean_for_tts

EXPRESSION_OFFSETS = {
    Expression.WARM: (0.03, 0.06),
    Expression.EXCITED: (-0.08, 0.12),
    Expression.SERIOUS: (0.10, -0.08),
    Expression.THOUGHTFUL: (0.05, -0.03),
    Expression.NEUTRAL: (0.02, -0.02),
}


def is_model_not_found(error: Exception) -> bool:
    """True if ElevenLabs rejected the request because the model does not exist."""
    message = str(error).lower()
    if "model_not_found" in message:
        return True
    return "model id" in message and "does not exist" in message


class TTSClient:
    """ElevenLabs speech synthesizer."""

    def __init__(
        self,
        settings: Settings,
        logger: Any,
        config: Optional[PipelineConfig] = None,
        backoff: Optional[BackoffExecutor] = None,
    ):
        """
        Initialize TTS client.

        Args:
            settings: Application settings
            logger: Logger instance
            config: Pipeline configuration (retry tuning)
            backoff: Retry wrapper for HTTP calls
        """
        self.settings = settings
        self.logger = logger
        self.config = config or PipelineConfig.from_settings(settings)
        self.backoff = backoff or BackoffExecutor(logger)
        self.model_order = [
            m for m in [settings.elevenlabs_model, *settings.elevenlabs_model_fallbacks] if m
        ]
        self.locked_model: Optional[str] = None

    def build_voice_settings(
        self, expression: Expression = Expression.NEUTRAL, mood: str = "neutral", uniform: Optional[bool] = None
    ) -> dict:
        """
        Voice quality parameters for an expression tag.

        Uniform mode ignores the expression and locks one steady setting for
        every segment, nudged only by the overall mood.
        """
        uniform = self.settings.tts_uniform_voice_settings if uniform is None else uniform
        stability = max(self.settings.tts_stability, 0.72 if uniform else 0.6)
        style = min(self.settings.tts_style, 0.16 if uniform else 0.22)

        if uniform:
            if mood == "serious":
                stability += 0.04
            if mood == "excited":
                style += 0.04
        else:
            d_stability, d_style = EXPRESSION_OFFSETS.get(Expression(expression), EXPRESSION_OFFSETS[Expression.NEUTRAL])
            stability += d_stability
            style += d_style

        return {
            "stability": clamp(stability, 0.1, 1.0),
            "similarity_boost": clamp(self.settings.tts_similarity, 0.1, 1.0),
            "style": clamp(style, 0.0, 0.35),
            "use_speaker_boost": self.settings.tts_speaker_boost,
        }

    def _post(self, text: str, voice_id: str, model_id: str, voice_settings: dict) -> bytes:
        url = (
            f"{self.settings.elevenlabs_api_url}/v1/text-to-speech/{voice_id}/stream"
            "?output_format=mp3_44100_192"
        )
        headers = {
            "Accept": "audio/mpeg",
            "Content-Type": "application/json",
            "xi-api-key": self.settings.elevenlabs_api_key,
        }
        data = {"text": text, "model_id": model_id, "voice_settings": voice_settings}
        response = requests.post(url, json=data, headers=headers, timeout=120)
        raise_for_status(response, "ElevenLabs")
        if not response.content:
            raise QualityRejectedError("ElevenLabs returned an empty audio body")
        return response.content

    def synthesize(
        self,
        text: str,
        output_path: Path,
        voice_id: Optional[str] = None,
        voice_settings: Optional[dict] = None,
    ) -> str:
        """
        Synthesize speech to an mp3 file.

        The first model that works is locked for the rest of the client's life
        so every segment of a job shares one voice model.

        Args:
            text: Narration text
            output_path: Destination mp3
            voice_id: ElevenLabs voice (defaults to settings)
            voice_settings: Voice quality parameters (defaults to neutral)

        Returns:
            The model id that produced the audio

        Raises:
            ConfigurationError: If the key or voice is missing
            VoiceSynthesisError: If every model fails
        """
        if not self.settings.elevenlabs_api_key:
            raise ConfigurationError("ElevenLabs API key not configured")
        voice_id = voice_id or self.settings.elevenlabs_voice_id
        if not voice_id:
            raise ConfigurationError("ElevenLabs voice ID not configured")

        clean = clean_for_tts(text)
        if not clean:
            raise ValueError("Text cannot be empty")
        voice_settings = voice_settings or self.build_voice_settings()

        order = [self.locked_model] if self.locked_model else self.model_order
        last_error: Optional[Exception] = None
        for model_id in order:
            try:
                audio = self.backoff.execute(
                    lambda: self._post(clean, voice_id, model_id, voice_settings),
                    max_attempts=self.config.tts_retry_attempts,
                    base_delay=self.config.tts_retry_base_delay,
                    label=f"elevenlabs:{model_id}",
                )
            except Exception as e:
                last_error = e
                if is_model_not_found(e):
                    self.logger.warning(f"ElevenLabs model {model_id} not available, trying next")
                    continue
                raise
            output_path.parent.mkdir(parents=True, exist_ok=True)
            with open(output_path, "wb") as f:
                f.write(audio)
            self.locked_model = model_id
            self.logger.debug(f"Speech generated with {model_id}: {output_path.name} ({len(clean)} chars)")
            return model_id

        raise VoiceSynthesisError(f"No ElevenLabs model available (tried {order}): {last_error}")
