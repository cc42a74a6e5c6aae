"""Application configuration using pydantic-settings."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be configured via environment variables or a .env file.
    Pipeline tuning values are frozen into a PipelineConfig once per process.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================================================
    # Application Settings
    # ========================================================================
    app_name: str = Field(default="Narrated Video Factory", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")
    work_dir: str = Field(default="tmp/jobs", description="Root directory for per-job temporary files")
    output_dir: str = Field(default="outputs/videos", description="Directory where final masters are written")

    # ========================================================================
    # LLM (Narration Generator)
    # ========================================================================
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    openai_model: str = Field(default="gpt-4o-mini", description="OpenAI model used for scripts and rewrites")

    # ========================================================================
    # TTS (ElevenLabs)
    # ========================================================================
    elevenlabs_api_key: Optional[str] = Field(default=None, description="ElevenLabs API key")
    elevenlabs_voice_id: Optional[str] = Field(default=None, description="ElevenLabs voice ID")
    elevenlabs_api_url: str = Field(default="https://api.elevenlabs.io", description="ElevenLabs API URL")
    elevenlabs_model: str = Field(default="eleven_turbo_v2_5", description="Preferred ElevenLabs model")
    elevenlabs_model_fallbacks: list[str] = Field(
        default=["eleven_multilingual_v2", "eleven_monolingual_v1"],
        description="Models tried in order when the preferred model is unavailable",
    )
    tts_stability: float = Field(default=0.78, description="Base voice stability (0.0-1.0)")
    tts_similarity: float = Field(default=0.94, description="Base voice similarity boost (0.0-1.0)")
    tts_style: float = Field(default=0.12, description="Base voice style exaggeration (0.0-0.35)")
    tts_speaker_boost: bool = Field(default=True, description="Enable ElevenLabs speaker boost")
    tts_uniform_voice_settings: bool = Field(
        default=True, description="Use one locked voice setting for every segment instead of per-expression"
    )

    # ========================================================================
    # Lip-Sync Settings (Sync.so)
    # ========================================================================
    sync_so_api_key: Optional[str] = Field(default=None, description="Sync.so API key")
    sync_so_api_url: str = Field(default="https://api.sync.so", description="Sync.so API URL")
    sync_so_model: str = Field(default="lipsync-2", description="Sync.so lipsync model")
    lipsync_required: bool = Field(
        default=True, description="Fail the job when a presenter segment cannot be lip-synced"
    )

    # ========================================================================
    # Presenter Engine (Runway)
    # ========================================================================
    runway_api_key: Optional[str] = Field(default=None, description="Runway API key")
    runway_api_url: str = Field(default="https://api.dev.runwayml.com", description="Runway API URL")
    runway_api_version: str = Field(default="2024-11-06", description="Runway API version header")
    runway_model: str = Field(default="gen4_turbo", description="Runway image-to-video model")
    presenter_image_path: str = Field(
        default="assets/presenter.png", description="Default presenter still image"
    )

    # ========================================================================
    # Image Search (Google CSE) & Music Catalog (Jamendo)
    # ========================================================================
    google_cse_id: Optional[str] = Field(default=None, description="Google Custom Search engine ID")
    google_cse_key: Optional[str] = Field(default=None, description="Google Custom Search API key")
    jamendo_client_id: Optional[str] = Field(default=None, description="Jamendo API client ID")
    default_music_path: Optional[str] = Field(
        default=None, description="Operator default background track (local path or URL)"
    )

    # ========================================================================
    # Media Engine
    # ========================================================================
    ffmpeg_path: str = Field(default="ffmpeg", description="ffmpeg binary")
    ffprobe_path: str = Field(default="ffprobe", description="ffprobe binary")

    # ========================================================================
    # Script Planning
    # ========================================================================
    script_words_per_second: float = Field(default=2.75, description="Assumed narration speaking rate")
    script_pace_bias: float = Field(default=1.12, description="Multiplier applied to word budgets")
    segment_target_seconds: float = Field(default=8.0, description="Target spoken length of one segment")
    max_segments: int = Field(default=45, description="Hard maximum number of segments")
    min_words_per_segment: int = Field(default=14, description="Minimum per-segment word cap")

    # ========================================================================
    # Duration Convergence
    # ========================================================================
    script_tolerance_seconds: float = Field(default=4.5, description="Ceiling of the duration tolerance")
    max_script_rewrites: int = Field(default=4, description="Maximum duration-driven rewrite passes")
    global_tempo_min: float = Field(default=0.97, description="Lowest global tempo factor")
    global_tempo_max: float = Field(default=1.05, description="Highest global tempo factor")
    voice_speed_boost: float = Field(default=1.0, description="Fixed multiplier folded into the global tempo")

    # ========================================================================
    # Intro / Outro
    # ========================================================================
    intro_seconds: float = Field(default=3.2, description="Intro narration target")
    intro_min_seconds: float = Field(default=2.0, description="Intro window minimum")
    intro_max_seconds: float = Field(default=4.0, description="Intro window maximum")
    outro_seconds: float = Field(default=4.8, description="Outro narration target")
    outro_min_seconds: float = Field(default=3.0, description="Outro window minimum")
    outro_max_seconds: float = Field(default=6.0, description="Outro window maximum")
    intro_outro_tempo_min: float = Field(default=0.97, description="Lowest intro/outro tempo factor")
    intro_outro_tempo_max: float = Field(default=1.06, description="Highest intro/outro tempo factor")

    # ========================================================================
    # Rendering
    # ========================================================================
    presenter_ratio: float = Field(default=0.5, description="Share of content segments rendered with the presenter")
    camera_zoom_out: float = Field(default=0.9, description="Zoom-out factor over a blurred backdrop (1.0 disables)")
    enable_segment_fades: bool = Field(default=True, description="Apply short fades to every content segment")
    max_parallel_renders: int = Field(default=1, description="Parallel segment renders within one job")

    # ========================================================================
    # Assembly
    # ========================================================================
    enable_overlays: bool = Field(default=True, description="Apply time-boxed overlay images")
    music_volume: float = Field(default=0.18, description="Background music gain before ducking")

    # ========================================================================
    # Parallelism & Job Store
    # ========================================================================
    max_parallel_jobs: int = Field(default=3, description="Jobs processed concurrently by the API")
    max_jobs_to_keep: int = Field(default=250, description="Maximum retained job records")
    job_ttl_seconds: int = Field(default=6 * 60 * 60, description="Job record lifetime after last update")
    job_sweep_interval_seconds: int = Field(default=60, description="TTL sweep period")


class PipelineConfig(BaseModel):
    """Immutable pipeline tuning values, built once and passed down explicitly."""

    model_config = ConfigDict(frozen=True)

    # Planning
    words_per_second: float = 2.75
    pace_bias: float = 1.12
    segment_target_seconds: float = 8.0
    max_segments: int = 45
    min_words_per_segment: int = 14
    hook_boost: float = 1.05
    wrap_up_cut: float = 0.95

    # Convergence
    tolerance_ceiling_seconds: float = 4.5
    max_rewrites: int = 4
    global_tempo_min: float = 0.97
    global_tempo_max: float = 1.05
    stretch_ratio_delta: float = 0.04
    voice_speed_boost: float = 1.0
    min_voice_seconds: float = 3.0
    timeline_epsilon_seconds: float = 0.08

    # Intro / outro
    intro_seconds: float = 3.2
    intro_min_seconds: float = 2.0
    intro_max_seconds: float = 4.0
    outro_seconds: float = 4.8
    outro_min_seconds: float = 3.0
    outro_max_seconds: float = 6.0
    intro_outro_tempo_min: float = 0.97
    intro_outro_tempo_max: float = 1.06

    # Audio
    sample_rate: int = 48000
    tempo_epsilon: float = 0.01
    voice_loudnorm: str = "loudnorm=I=-16:TP=-1.5:LRA=11"

    # Retries
    retry_attempts: int = 2
    retry_base_delay: float = 0.6
    retry_jitter: float = 0.15
    tts_retry_attempts: int = 3
    tts_retry_base_delay: float = 0.7

    # Lipsync
    lipsync_poll_interval: float = 2.0
    lipsync_max_polls: int = 160
    lipsync_input_fps: int = 30
    lipsync_input_crf: int = 22
    lipsync_max_bytes: int = 19_900_000
    lipsync_prescale_max_edge: int = 960
    lipsync_prescale_size_pct: float = 0.85
    lipsync_prescale_min_seconds: float = 9.0
    lipsync_segment_retries: int = 2
    lipsync_retry_delay: float = 1.5
    lipsync_request_gap: float = 0.35
    lipsync_required: bool = True

    # Rendering
    baseline_seconds: float = 12.0
    presenter_ratio: float = 0.5
    camera_zoom_out: float = 0.9
    enable_segment_fades: bool = True
    video_fade_seconds: float = 0.06
    audio_fade_seconds: float = 0.04
    max_images_per_segment: int = 4
    min_images_per_segment: int = 2
    single_image_under_seconds: float = 5.5
    seconds_per_image: float = 4.6
    crossfade_min_image_seconds: float = 1.4
    max_parallel_renders: int = 1

    # Assembly
    enable_overlays: bool = True
    overlay_scale: float = 0.4
    overlay_max_width_pct: float = 0.45
    overlay_border_px: int = 6
    overlay_margin_px: int = 28
    max_auto_overlays: int = 10
    music_volume: float = 0.18
    duck_threshold: float = 0.09
    duck_ratio: float = 6.0
    duck_attack_ms: int = 25
    duck_release_ms: int = 260
    duck_makeup: float = 1.6
    min_music_seconds: float = 10.0
    final_loudnorm: str = "loudnorm=I=-16:TP=-1.0:LRA=11"
    master_min_height: int = 1080
    master_max_height: int = 2160
    final_crf: int = 15
    final_preset: str = "slow"
    intermediate_crf: int = 16
    intermediate_preset: str = "fast"
    audio_bitrate: str = "256k"
    final_fade_out_seconds: float = 0.5

    @classmethod
    def from_settings(cls, settings: Settings) -> "PipelineConfig":
        """
        Freeze the tunable subset of Settings into a PipelineConfig.

        Args:
            settings: Application settings

        Returns:
            Immutable pipeline configuration
        """
        return cls(
            words_per_second=settings.script_words_per_second,
            pace_bias=settings.script_pace_bias,
            segment_target_seconds=settings.segment_target_seconds,
            max_segments=settings.max_segments,
            min_words_per_segment=settings.min_words_per_segment,
            tolerance_ceiling_seconds=settings.script_tolerance_seconds,
            max_rewrites=settings.max_script_rewrites,
            global_tempo_min=settings.global_tempo_min,
            global_tempo_max=settings.global_tempo_max,
            voice_speed_boost=settings.voice_speed_boost,
            intro_seconds=settings.intro_seconds,
            intro_min_seconds=settings.intro_min_seconds,
            intro_max_seconds=settings.intro_max_seconds,
            outro_seconds=settings.outro_seconds,
            outro_min_seconds=settings.outro_min_seconds,
            outro_max_seconds=settings.outro_max_seconds,
            intro_outro_tempo_min=settings.intro_outro_tempo_min,
            intro_outro_tempo_max=settings.intro_outro_tempo_max,
            lipsync_required=settings.lipsync_required,
            presenter_ratio=settings.presenter_ratio,
            camera_zoom_out=settings.camera_zoom_out,
            enable_segment_fades=settings.enable_segment_fades,
            max_parallel_renders=settings.max_parallel_renders,
            enable_overlays=settings.enable_overlays,
            music_volume=settings.music_volume,
        )


# Global settings instance
settings = Settings()
