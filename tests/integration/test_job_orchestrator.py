"""Tests for the job orchestrator running the full stage sequence with stubbed services."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from app.core.config import PipelineConfig, Settings
from app.models.schemas import (
    AudioFitResult,
    CleanClip,
    CreateJobRequest,
    Expression,
    JobStatus,
    Script,
    Segment,
    TimelineEntry,
    VisualType,
)
from app.services.duration_convergence import ConvergenceResult
from app.services.job_orchestrator import JobOrchestrator, missing_credentials
from app.storage.repository import InMemoryJobStore
from app.utils.error_handler import MusicResolutionError
from app.utils.text_utils import format_topic_list


@pytest.fixture
def job_settings(tmp_path):
    presenter = tmp_path / "presenter.png"
    presenter.write_bytes(b"\x89PNG fake")
    return Settings(
        _env_file=None,
        openai_api_key="openai-key",
        elevenlabs_api_key="eleven-key",
        elevenlabs_voice_id="voice-1",
        sync_so_api_key="sync-key",
        work_dir=str(tmp_path / "work"),
        output_dir=str(tmp_path / "out"),
        presenter_image_path=str(presenter),
    )


@pytest.fixture
def services(tmp_path):
    segments = [Segment(index=i, topic_index=0, topic_label="Mars rover", text=f"Line {i}.") for i in range(3)]
    clips = [CleanClip(index=i, path=str(tmp_path / f"clean_{i}.wav"), duration=5.0) for i in range(3)]
    entries = [
        TimelineEntry(
            index=i,
            text=f"Line {i}.",
            start_sec=3.0 + i * 5.0,
            end_sec=3.0 + (i + 1) * 5.0,
            audio_path=str(tmp_path / f"seg_audio_{i}.wav"),
            visual_type=VisualType.IMAGE if i == 1 else VisualType.PRESENTER,
            expression=Expression.THOUGHTFUL,
        )
        for i in range(3)
    ]

    planner = MagicMock()
    planner.generate.return_value = (Script(title="Mars", short_title="Mars", segments=segments), [20, 20, 20])

    convergence = MagicMock()
    convergence.run.return_value = ConvergenceResult(
        segments=segments,
        clips=clips,
        global_tempo=1.02,
        raw_tempo=1.03,
        drift=0.6,
        tolerance=1.05,
        within_tolerance=True,
        passes=2,
        rewrites=1,
    )

    fitter = MagicMock()
    fitter.fit_to_duration.side_effect = lambda clean, target, lo, hi, out: AudioFitResult(
        path=str(out), input_duration=target, duration=target, tempo=1.0, raw_tempo=1.0
    )
    media = MagicMock()
    media.probe_duration.return_value = 3.0

    timeline = MagicMock()
    timeline.build.return_value = entries
    timeline.plan_visuals.side_effect = lambda e, topics, work_dir: e

    presenter = MagicMock()
    presenter.build_baselines.return_value = {Expression.NEUTRAL: tmp_path / "baseline_neutral.mp4"}

    renderer = MagicMock()
    renderer.render_all.return_value = [tmp_path / f"seg_{i}_norm.mp4" for i in range(3)]
    renderer.render_presenter.side_effect = lambda **kw: tmp_path / f"{kw['label']}_norm.mp4"

    music = MagicMock()
    music.resolve.return_value = tmp_path / "music.mp3"

    assembler = MagicMock()
    assembler.assemble.side_effect = lambda clips, entries, output, work_dir, final_path, **kw: final_path

    tts = MagicMock()
    tts.build_voice_settings.return_value = {}

    return {
        "media": media,
        "fitter": fitter,
        "generator": MagicMock(),
        "planner": planner,
        "tts": tts,
        "convergence": convergence,
        "timeline": timeline,
        "presenter": presenter,
        "renderer": renderer,
        "music": music,
        "assembler": assembler,
    }


@pytest.fixture
def store(logger):
    return InMemoryJobStore(logger)


@pytest.fixture
def orchestrator(job_settings, store, logger, services):
    orch = JobOrchestrator(job_settings, store, logger, services_factory=lambda s, c, l: services, max_workers=1)
    yield orch
    orch.shutdown(wait=True)


def _statuses(store):
    seen = []
    original = store.update

    def spy(job_id, patch):
        if "status" in patch:
            seen.append(patch["status"])
        return original(job_id, patch)

    store.update = spy
    return seen


def test_full_run_completes(orchestrator, services, store, job_settings, tmp_path):
    request = CreateJobRequest(topics=["Mars rover"], target_duration_seconds=15)
    job = orchestrator.create_job(request)

    result = orchestrator.run_job(job.job_id, request)

    assert result.status == JobStatus.COMPLETED
    assert result.progress_pct == 100
    assert result.final_output == str(Path(job_settings.output_dir) / f"{job.job_id}.mp4")
    assert result.meta["globalTempo"] == 1.02
    assert result.meta["rewrites"] == 1
    assert result.meta["introSeconds"] == 3.0
    assert result.meta["music"] == "music.mp3"
    assert result.topic == format_topic_list(["Mars rover"])

    ordinals = [c.kwargs["ordinal"] for c in services["renderer"].render_presenter.call_args_list]
    assert ordinals == [0, 4]
    clips = services["assembler"].assemble.call_args[0][0]
    assert [c.name for c in clips] == [
        "intro_norm.mp4",
        "seg_0_norm.mp4",
        "seg_1_norm.mp4",
        "seg_2_norm.mp4",
        "outro_norm.mp4",
    ]
    expressions = services["presenter"].build_baselines.call_args[0][0]
    assert Expression.WARM in expressions
    assert services["planner"].generate.call_args.kwargs["include_outro"] is True
    assert not (Path(job_settings.work_dir) / job.job_id).exists()


def test_music_failure_fails_job(orchestrator, services):
    services["music"].resolve.side_effect = MusicResolutionError(
        "Background music is required but could not be resolved."
    )
    request = CreateJobRequest(topics=["Mars rover"], target_duration_seconds=15)
    job = orchestrator.create_job(request)

    result = orchestrator.run_job(job.job_id, request)

    assert result.status == JobStatus.FAILED
    assert "Background music is required" in result.error
    assert result.meta["failedStage"] == "music"
    services["assembler"].assemble.assert_not_called()


def test_dry_run_completes_without_services(job_settings, store, logger):
    factory = MagicMock()
    orchestrator = JobOrchestrator(job_settings, store, logger, services_factory=factory, max_workers=1)
    request = CreateJobRequest(topics=["Mars rover"], dry_run=True)
    job = orchestrator.create_job(request)

    result = orchestrator.run_job(job.job_id, request)

    assert result.status == JobStatus.COMPLETED
    assert result.progress_pct == 100
    factory.assert_not_called()
    orchestrator.shutdown()


def test_missing_credentials_fail_before_running(tmp_path, store, logger, services):
    settings = Settings(
        _env_file=None,
        openai_api_key=None,
        elevenlabs_api_key=None,
        elevenlabs_voice_id=None,
        sync_so_api_key=None,
        work_dir=str(tmp_path / "work"),
    )
    orchestrator = JobOrchestrator(settings, store, logger, services_factory=lambda s, c, l: services, max_workers=1)
    seen = _statuses(store)
    request = CreateJobRequest(topics=["Mars rover"])
    job = orchestrator.create_job(request)

    result = orchestrator.run_job(job.job_id, request)

    assert result.status == JobStatus.FAILED
    assert "OPENAI_API_KEY" in result.error
    assert JobStatus.RUNNING not in seen
    services["planner"].generate.assert_not_called()
    orchestrator.shutdown()


def test_missing_credentials_listing(job_settings):
    request = CreateJobRequest(topics=["x"], voiceover_path="/tmp/vo.mp3")
    settings = job_settings.model_copy(update={"elevenlabs_api_key": None, "sync_so_api_key": None})
    assert missing_credentials(settings, PipelineConfig(lipsync_required=False), request) == []
    assert missing_credentials(settings, PipelineConfig(lipsync_required=True), request) == ["SYNC_SO_API_KEY"]


def test_cancelled_job_stops_before_next_stage(orchestrator, services):
    request = CreateJobRequest(topics=["Mars rover"], target_duration_seconds=15)
    job = orchestrator.create_job(request)
    script_result = services["planner"].generate.return_value

    def cancel_then_plan(*args, **kwargs):
        orchestrator.cancel_job(job.job_id)
        return script_result

    services["planner"].generate.side_effect = cancel_then_plan

    result = orchestrator.run_job(job.job_id, request)

    assert result.status == JobStatus.FAILED
    assert result.error == "Cancelled"
    services["convergence"].run.assert_not_called()


def test_voiceover_skips_intro_and_outro(orchestrator, services):
    request = CreateJobRequest(topics=["Mars rover"], target_duration_seconds=15, voiceover_path="/tmp/vo.mp3")
    job = orchestrator.create_job(request)

    result = orchestrator.run_job(job.job_id, request)

    assert result.status == JobStatus.COMPLETED
    services["tts"].synthesize.assert_not_called()
    services["renderer"].render_presenter.assert_not_called()
    assert services["planner"].generate.call_args.kwargs["include_outro"] is False
    assert services["timeline"].build.call_args[0][3] == 0.0


def test_submit_runs_in_background(orchestrator):
    job = orchestrator.submit(CreateJobRequest(topics=["Mars rover"], target_duration_seconds=15))

    orchestrator.futures[job.job_id].result(timeout=10)

    assert orchestrator.get_job(job.job_id).status == JobStatus.COMPLETED
    assert [j.job_id for j in orchestrator.list_jobs()] == [job.job_id]


@pytest.mark.parametrize("presenter", ["", "nope.png"])
def test_missing_presenter_fails_before_running(job_settings, store, logger, tmp_path, presenter):
    path = "" if not presenter else str(tmp_path / presenter)
    settings = job_settings.model_copy(update={"presenter_image_path": path})
    factory = MagicMock()
    orchestrator = JobOrchestrator(settings, store, logger, services_factory=factory, max_workers=1)
    seen = _statuses(store)
    request = CreateJobRequest(topics=["Mars rover"])
    job = orchestrator.create_job(request)

    result = orchestrator.run_job(job.job_id, request)

    assert result.status == JobStatus.FAILED
    assert "PRESENTER_IMAGE_PATH" in result.error
    assert JobStatus.RUNNING not in seen
    factory.assert_not_called()
    orchestrator.shutdown()


def test_presenter_sources_accepted_at_job_start(job_settings, tmp_path):
    config = PipelineConfig()
    missing_local = CreateJobRequest(topics=["x"], presenter_asset_path=str(tmp_path / "gone.png"))
    remote = CreateJobRequest(topics=["x"], presenter_asset_path="https://cdn/presenter.png")
    settings = job_settings.model_copy(update={"presenter_image_path": ""})

    assert missing_credentials(job_settings, config, missing_local) == ["presenter_asset_path"]
    assert missing_credentials(settings, config, remote) == []
    assert missing_credentials(job_settings, config, CreateJobRequest(topics=["x"])) == []


def test_intro_duration_is_rounded_for_the_timeline(orchestrator, services):
    services["media"].probe_duration.return_value = 3.20133
    request = CreateJobRequest(topics=["Mars rover"], target_duration_seconds=15)
    job = orchestrator.create_job(request)

    result = orchestrator.run_job(job.job_id, request)

    assert result.status == JobStatus.COMPLETED
    assert result.meta["introSeconds"] == 3.201
    assert services["timeline"].build.call_args[0][3] == 3.201
