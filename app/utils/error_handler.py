"""Error Handler - pipeline error taxonomy and user-friendly error messages."""

from typing import Any, Optional


class PipelineError(Exception):
    """Base class for every error raised by the video pipeline."""


class ConfigurationError(PipelineError):
    """Missing or invalid credentials/settings. Fatal before a job starts running."""


class TransientServiceError(PipelineError):
    """An external call failed in a way that is worth retrying."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class QualityRejectedError(PipelineError):
    """An external service rejected a payload; the caller should try its fallback path."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TerminalPipelineError(PipelineError):
    """A failure that ends the job. Never retried."""


class MediaProcessError(TerminalPipelineError):
    """The media engine exited with a non-zero status."""

    def __init__(self, label: str, returncode: int, stderr: str = ""):
        tail = (stderr or "").strip()[-600:]
        super().__init__(f"{label} failed (exit {returncode}): {tail}")
        self.label = label
        self.returncode = returncode
        self.stderr = stderr


class MusicResolutionError(TerminalPipelineError):
    """Background music is required but no valid track could be resolved."""


class LipsyncRequiredError(TerminalPipelineError):
    """A presenter segment could not be lip-synced and lipsync is required."""


class VoiceSynthesisError(TerminalPipelineError):
    """Narration audio could not be produced."""


def format_error_message(
    operation: str,
    error: Exception,
    context: Optional[dict] = None,
    suggestion: Optional[str] = None,
) -> str:
    """
    Format a user-friendly error message.

    Args:
        operation: What operation was being performed (e.g., "Rendering segment 3")
        error: The exception that occurred
        context: Additional context (e.g., {"job_id": "a1b2", "segment": 3})
        suggestion: Optional suggestion for how to fix the issue

    Returns:
        Formatted error message
    """
    error_type = type(error).__name__
    error_msg = str(error)

    context_str = ""
    if context:
        context_parts = [f"{k}={v}" for k, v in context.items()]
        context_str = f" ({', '.join(context_parts)})"

    message = f"❌ {operation} failed{context_str}\n"
    message += f"   Error: {error_type}: {error_msg}"

    if suggestion:
        message += f"\n   💡 Suggestion: {suggestion}"

    return message


def get_fallback_suggestion(service: str, error: Exception) -> Optional[str]:
    """
    Get a suggestion for how to handle a service failure.

    Args:
        service: Service name (e.g., "TTS", "Lipsync", "Music", "LLM", "Media")
        error: The exception

    Returns:
        Suggestion string or None
    """
    error_msg = str(error).lower()

    if isinstance(error, ConfigurationError):
        return "Check your .env file. Required keys: OPENAI_API_KEY, ELEVENLABS_API_KEY, SYNC_SO_API_KEY, RUNWAY_API_KEY."

    if service == "TTS":
        if "api key" in error_msg or "not configured" in error_msg:
            return "Check ELEVENLABS_API_KEY and ELEVENLABS_VOICE_ID in .env file."
        elif "rate limit" in error_msg or "429" in error_msg:
            return "ElevenLabs rate limit exceeded. Wait a few minutes and try again."
        elif "model" in error_msg:
            return "No configured ElevenLabs model is available. Adjust ELEVENLABS_MODEL_FALLBACKS."
        else:
            return "Speech synthesis failed. Check the narration text and voice ID."

    elif service == "Lipsync":
        if "rate limit" in error_msg or "429" in error_msg:
            return "Sync.so rate limit exceeded. Wait and retry the job."
        elif "timeout" in error_msg or "did not complete" in error_msg:
            return "Sync.so generation timed out. Retry the job or shorten segments."
        else:
            return "Lip-sync failed. Set LIPSYNC_REQUIRED=false to fall back to un-synced presenter clips."

    elif service == "Music":
        return "Provide JAMENDO_CLIENT_ID, a musicUrl, or DEFAULT_MUSIC_PATH, or disable music for this job."

    elif service == "Media":
        if "not found" in error_msg or "no such file" in error_msg:
            return "ffmpeg/ffprobe not found. Install ffmpeg or set FFMPEG_PATH / FFPROBE_PATH."
        else:
            return "Media processing failed. Inspect the ffmpeg stderr above."

    elif service == "LLM":
        if "api key" in error_msg or "not configured" in error_msg:
            return "Check your OPENAI_API_KEY in .env file."
        elif "rate limit" in error_msg or "429" in error_msg:
            return "OpenAI rate limit exceeded. Wait a few minutes and try again."
        elif "parse" in error_msg or "json" in error_msg:
            return "The script reply was not valid JSON. Retry the job."
        else:
            return "Script generation failed. Retry the job."

    return None


def describe_failure(stage: str, error: Exception, context: Optional[dict[str, Any]] = None) -> str:
    """
    Build the message stored on a failed job.

    Args:
        stage: Pipeline stage / service name used for the suggestion lookup
        error: The exception that ended the job
        context: Optional context fields

    Returns:
        Human-readable failure message
    """
    return format_error_message(
        operation=stage,
        error=error,
        context=context,
        suggestion=get_fallback_suggestion(stage, error),
    )
