"""Job Orchestrator - runs the narrated video pipeline for one job and owns its record."""

import shutil
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Optional

from app.core.config import PipelineConfig, Settings
from app.core.logging_config import get_logger
from app.models.schemas import (
    TERMINAL_STATUSES,
    CreateJobRequest,
    Expression,
    Job,
    JobStatus,
    OutputConfig,
    Topic,
    VisualType,
)
from app.services.assembler import Assembler
from app.services.audio_fitter import AudioFitter, clamp
from app.services.duration_convergence import DurationConvergenceLoop
from app.services.image_search import ImageSearchClient
from app.services.lipsync_provider import get_lipsync_provider
from app.services.music_resolver import MusicResolver
from app.services.narration_generator import NarrationGenerator
from app.services.presenter_engine import PresenterEngine, baseline_for, is_remote_asset
from app.services.script_planner import ScriptPlanner, build_intro_line, build_outro_line
from app.services.segment_renderer import SegmentRenderer
from app.services.timeline_builder import TimelineBuilder
from app.services.tts_client import TTSClient
from app.storage.repository import InMemoryJobStore
from app.utils.backoff import BackoffExecutor
from app.utils.error_handler import ConfigurationError, VoiceSynthesisError, describe_failure
from app.utils.media import MediaEngine
from app.utils.parallel_executor import ParallelExecutor
from app.utils.text_utils import format_topic_list

# Stage name -> service name used for failure suggestions
STAGE_SERVICES = {
    "script": "LLM",
    "convergence": "TTS",
    "intro_outro": "TTS",
    "timeline": "Media",
    "baselines": "Media",
    "render": "Lipsync",
    "music": "Music",
    "assemble": "Media",
}


class JobCancelled(Exception):
    """Raised inside a job's worker once its record is already terminal."""


def get_services(settings: Settings, config: PipelineConfig, logger: Any) -> dict:
    """Build the per-job service graph."""
    backoff = BackoffExecutor(
        logger, max_attempts=config.retry_attempts, base_delay=config.retry_base_delay, jitter=config.retry_jitter
    )
    media = MediaEngine(settings, logger)
    fitter = AudioFitter(config, logger, media)
    generator = NarrationGenerator(settings, logger, backoff=backoff)
    planner = ScriptPlanner(config, logger, generator)
    tts = TTSClient(settings, logger, config=config, backoff=backoff)
    image_search = ImageSearchClient(settings, logger, backoff=backoff)
    return {
        "media": media,
        "fitter": fitter,
        "generator": generator,
        "planner": planner,
        "tts": tts,
        "convergence": DurationConvergenceLoop(config, logger, tts, fitter, planner, generator, media, backoff=backoff),
        "timeline": TimelineBuilder(config, logger, fitter, media, image_search=image_search),
        "presenter": PresenterEngine(settings, config, logger, media, backoff=backoff),
        "renderer": SegmentRenderer(
            config,
            logger,
            media,
            lipsync=get_lipsync_provider(settings, logger, config=config, backoff=backoff),
            parallel=ParallelExecutor(logger, config.max_parallel_renders),
        ),
        "music": MusicResolver(settings, config, logger, media, backoff=backoff),
        "assembler": Assembler(config, logger, media, image_search=image_search),
    }


def presenter_source(settings: Settings, request: CreateJobRequest) -> str:
    """Presenter asset for the job: the request override, else the configured image."""
    return (request.presenter_asset_path or settings.presenter_image_path or "").strip()


def missing_credentials(settings: Settings, config: PipelineConfig, request: CreateJobRequest) -> list[str]:
    """Names of credentials and assets the request needs but settings do not provide."""
    missing = []
    if not settings.openai_api_key:
        missing.append("OPENAI_API_KEY")
    if not request.voiceover_path:
        if not settings.elevenlabs_api_key:
            missing.append("ELEVENLABS_API_KEY")
        if not (request.voice_id or settings.elevenlabs_voice_id):
            missing.append("ELEVENLABS_VOICE_ID")
    if config.lipsync_required and not settings.sync_so_api_key:
        missing.append("SYNC_SO_API_KEY")
    source = presenter_source(settings, request)
    if not source or not (is_remote_asset(source) or Path(source).is_file()):
        missing.append("presenter_asset_path" if request.presenter_asset_path else "PRESENTER_IMAGE_PATH")
    return missing


class JobOrchestrator:
    """Accepts jobs, runs each on its own worker and records progress."""

    def __init__(
        self,
        settings: Settings,
        store: InMemoryJobStore,
        logger: Any,
        config: Optional[PipelineConfig] = None,
        services_factory: Callable[[Settings, PipelineConfig, Any], dict] = get_services,
        max_workers: Optional[int] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            settings: Application settings
            store: Job store (the only cross-job shared state)
            logger: Logger instance
            config: Pipeline configuration (built from settings when omitted)
            services_factory: Builds the service graph for one job
            max_workers: Concurrent jobs (defaults to settings.max_parallel_jobs)
        """
        self.settings = settings
        self.store = store
        self.logger = logger
        self.config = config or PipelineConfig.from_settings(settings)
        self.services_factory = services_factory
        self.executor = ThreadPoolExecutor(
            max_workers=max_workers or settings.max_parallel_jobs, thread_name_prefix="video-job"
        )
        self.futures: dict[str, Future] = {}

    # ------------------------------------------------------------------
    # Job record
    # ------------------------------------------------------------------

    def create_job(self, request: CreateJobRequest, job_id: Optional[str] = None) -> Job:
        job = Job(
            job_id=job_id or f"job_{uuid.uuid4().hex[:12]}",
            topic=format_topic_list(request.topic_labels()),
            meta={"targetDurationSeconds": request.target_duration_seconds, "dryRun": request.dry_run},
        )
        self.store.put(job)
        self.logger.info(f"Job created: {job.job_id} ({job.topic or 'no topic'})")
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        return self.store.get(job_id)

    def list_jobs(self) -> list[Job]:
        return self.store.list_jobs()

    def update_job(self, job_id: str, **patch: Any) -> Optional[Job]:
        """Merge a partial patch into the job record (serialized per job)."""
        return self.store.update(job_id, patch)

    def cancel_job(self, job_id: str, reason: str = "Cancelled") -> Optional[Job]:
        """Mark a job failed; its worker stops before the next stage."""
        return self.update_job(job_id, status=JobStatus.FAILED, error=reason)

    def _check_active(self, job_id: str) -> None:
        job = self.store.get(job_id)
        if job is None or job.status in TERMINAL_STATUSES:
            raise JobCancelled(job_id)

    def _progress(self, job_id: str, pct: int, **meta: Any) -> None:
        patch: dict[str, Any] = {"progress_pct": pct}
        if meta:
            patch["meta"] = meta
        self.update_job(job_id, **patch)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, request: CreateJobRequest) -> Job:
        """Create a job and run it on a worker thread."""
        job = self.create_job(request)
        self.futures[job.job_id] = self.executor.submit(self.run_job, job.job_id, request)
        return job

    def sweep(self) -> int:
        """Evict expired job records."""
        removed = self.store.sweep()
        for job_id in [j for j, f in self.futures.items() if f.done()]:
            self.futures.pop(job_id, None)
        return removed

    def shutdown(self, wait: bool = False) -> None:
        self.executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def run_job(self, job_id: str, request: CreateJobRequest) -> Job:
        """
        Run the full pipeline for one job synchronously.

        Never raises for pipeline failures: the outcome is the job's status.

        Returns:
            Final job record
        """
        logger = get_logger(__name__, job_id=job_id)

        if request.dry_run:
            logger.info("Dry run: completing without rendering")
            self.update_job(job_id, status=JobStatus.COMPLETED, progress_pct=100, meta={"dryRun": True})
            return self.store.get(job_id)

        missing = missing_credentials(self.settings, self.config, request)
        if not request.topic_labels():
            missing.append("topics")
        if missing:
            error = ConfigurationError(f"Missing required configuration: {', '.join(missing)}")
            logger.error(f"❌ {error}")
            self.update_job(job_id, status=JobStatus.FAILED, error=describe_failure("Configuration", error))
            return self.store.get(job_id)

        work_dir = Path(self.settings.work_dir) / job_id
        work_dir.mkdir(parents=True, exist_ok=True)
        stage = "script"
        try:
            self.update_job(job_id, status=JobStatus.RUNNING, progress_pct=2)
            services = self.services_factory(self.settings, self.config, logger)
            for stage, step in self._stages(job_id, request, services, work_dir, logger):
                self._check_active(job_id)
                step()
        except JobCancelled:
            logger.warning("Job became terminal while running; stopping")
        except Exception as e:
            logger.exception(f"❌ Job failed during {stage}: {e}")
            self.update_job(
                job_id,
                status=JobStatus.FAILED,
                error=describe_failure(STAGE_SERVICES.get(stage, "Media"), e, {"stage": stage}),
                meta={"failedStage": stage},
            )
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        return self.store.get(job_id)

    def _stages(
        self, job_id: str, request: CreateJobRequest, services: dict, work_dir: Path, logger: Any
    ) -> list[tuple[str, Callable[[], None]]]:
        """Ordered (stage, step) pairs sharing one state dict."""
        state: dict[str, Any] = {
            "topics": [Topic(topic=label) for label in request.topic_labels()],
            "output": OutputConfig.from_request(
                request.ratio, request.fps, request.scale_mode, request.image_scale_mode
            ),
            "with_outro": not request.voiceover_path,
        }

        def plan_script() -> None:
            logger.info("=" * 60)
            logger.info(f"Step 1: Planning script ({request.target_duration_seconds:.0f}s)")
            logger.info("=" * 60)
            script, caps = services["planner"].generate(
                state["topics"],
                request.target_duration_seconds,
                mood=request.mood,
                language=request.language,
                include_outro=state["with_outro"],
            )
            state.update(script=script, caps=caps)
            self._progress(job_id, 10, title=script.title, segmentCount=len(script.segments), wordCaps=caps)

        def converge() -> None:
            logger.info("Step 2: Converging narration duration")
            result = services["convergence"].run(
                state["script"].segments,
                state["topics"],
                state["caps"],
                request.target_duration_seconds,
                work_dir,
                voice_id=request.voice_id,
                mood=request.mood,
                voiceover=request.voiceover_path,
            )
            state["convergence"] = result
            self._progress(
                job_id,
                35,
                globalTempo=round(result.global_tempo, 4),
                rawTempo=round(result.raw_tempo, 4),
                drift=round(result.drift, 3),
                withinTolerance=result.within_tolerance,
                rewrites=result.rewrites,
            )

        def intro_outro() -> None:
            if not state["with_outro"]:
                state.update(intro=None, outro=None)
                return
            logger.info("Step 3: Intro and outro narration")
            short_title = state["script"].short_title
            state["intro"] = self._bookend_audio(
                services, build_intro_line(state["topics"], short_title), "intro",
                self.config.intro_seconds, self.config.intro_min_seconds, self.config.intro_max_seconds,
                request, work_dir,
            )
            state["outro"] = self._bookend_audio(
                services, build_outro_line(state["topics"], short_title), "outro",
                self.config.outro_seconds, self.config.outro_min_seconds, self.config.outro_max_seconds,
                request, work_dir,
            )
            self._progress(job_id, 40, introSeconds=state["intro"][1], outroSeconds=state["outro"][1])

        def build_timeline() -> None:
            logger.info("Step 4: Building timeline")
            intro_duration = state["intro"][1] if state["intro"] else 0.0
            result = state["convergence"]
            entries = services["timeline"].build(
                result.segments, result.clips, result.global_tempo, intro_duration,
                request.target_duration_seconds, work_dir,
            )
            entries = services["timeline"].plan_visuals(entries, state["topics"], work_dir)
            state["entries"] = entries
            self._progress(
                job_id,
                45,
                narrationSeconds=round(entries[-1].end_sec - intro_duration, 3) if entries else 0.0,
                presenterSegments=[e.index for e in entries if e.visual_type == VisualType.PRESENTER],
                imageSegments=[e.index for e in entries if e.visual_type == VisualType.IMAGE],
            )

        def prepare_baselines() -> None:
            logger.info("Step 5: Preparing presenter baselines")
            expressions = [e.expression for e in state["entries"] if e.visual_type == VisualType.PRESENTER]
            if state["with_outro"]:
                expressions.append(Expression.WARM)
            source = presenter_source(self.settings, request)
            state["baselines"] = services["presenter"].build_baselines(
                expressions, source, state["output"], work_dir
            )
            self._progress(job_id, 50, baselines=sorted(e.value for e in state["baselines"]))

        def render() -> None:
            logger.info("Step 6: Rendering segments")
            renderer: SegmentRenderer = services["renderer"]
            total_clips = len(state["entries"])

            def on_rendered(done: int, total: int) -> None:
                self._progress(job_id, 50 + int(35 * done / max(1, total)))

            clips = renderer.render_all(
                state["entries"], state["baselines"], state["output"], job_id, work_dir, on_rendered=on_rendered
            )
            if state["intro"]:
                clips.insert(0, self._render_bookend(renderer, "intro", 0, Expression.NEUTRAL, state, job_id, work_dir))
            if state["outro"]:
                clips.append(
                    self._render_bookend(renderer, "outro", total_clips + 1, Expression.WARM, state, job_id, work_dir)
                )
            state["clips"] = clips
            self._progress(job_id, 85, renderedClips=len(clips))

        def resolve_music() -> None:
            logger.info("Step 7: Resolving background music")
            state["music"] = services["music"].resolve(
                state["topics"][0].label, work_dir, music_url=request.music_url, disable_music=request.disable_music
            )
            self._progress(job_id, 90, music=state["music"].name if state["music"] else None)

        def assemble() -> None:
            logger.info("Step 8: Assembling final video")
            final_path = Path(self.settings.output_dir) / f"{job_id}.mp4"
            services["assembler"].assemble(
                state["clips"],
                state["entries"],
                state["output"],
                work_dir,
                final_path,
                music=state["music"],
                overlays=request.overlay_assets,
            )
            self.update_job(
                job_id,
                status=JobStatus.COMPLETED,
                progress_pct=100,
                final_output=str(final_path),
                meta={"outputWidth": state["output"].width, "outputHeight": state["output"].height},
            )
            logger.info(f"✅ Job complete: {final_path}")

        return [
            ("script", plan_script),
            ("convergence", converge),
            ("intro_outro", intro_outro),
            ("timeline", build_timeline),
            ("baselines", prepare_baselines),
            ("render", render),
            ("music", resolve_music),
            ("assemble", assemble),
        ]

    def _bookend_audio(
        self,
        services: dict,
        text: str,
        label: str,
        target: float,
        low: float,
        high: float,
        request: CreateJobRequest,
        work_dir: Path,
    ) -> tuple[Path, float]:
        """Synthesize, clean and fit an intro/outro line into its clamped window."""
        tts: TTSClient = services["tts"]
        fitter: AudioFitter = services["fitter"]
        mp3 = work_dir / f"{label}.mp3"
        clean = work_dir / f"{label}_clean.wav"
        expression = Expression.NEUTRAL if label == "intro" else Expression.WARM
        tts.synthesize(
            text, mp3, voice_id=request.voice_id,
            voice_settings=tts.build_voice_settings(expression, request.mood),
        )
        fitter.trim_and_normalize(mp3, clean)
        measured = services["media"].probe_duration(clean)
        window = clamp(measured if measured > 0 else target, low, high)
        result = fitter.fit_to_duration(
            clean, window, self.config.intro_outro_tempo_min, self.config.intro_outro_tempo_max,
            work_dir / f"{label}_fit.wav",
        )
        if not result.fittable:
            raise VoiceSynthesisError(f"{label.capitalize()} audio could not be produced")
        return Path(result.path), round(result.duration, 3)

    def _render_bookend(
        self,
        renderer: SegmentRenderer,
        label: str,
        ordinal: int,
        expression: Expression,
        state: dict,
        job_id: str,
        work_dir: Path,
    ) -> Path:
        audio, duration = state[label]
        return renderer.render_presenter(
            label=label,
            ordinal=ordinal,
            duration=duration,
            audio=audio,
            baseline=baseline_for(state["baselines"], expression),
            output=state["output"],
            job_id=job_id,
            work_dir=work_dir,
        )
