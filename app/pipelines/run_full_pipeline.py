"""Full pipeline CLI - topics → script → narration → lip-synced segments → final master."""

import argparse
import sys
from pathlib import Path
from typing import Optional

from app.core.config import settings
from app.core.logging_config import get_logger, setup_logging
from app.models.schemas import CreateJobRequest, JobStatus
from app.services.job_orchestrator import JobOrchestrator
from app.storage.repository import InMemoryJobStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Narrated Video Factory - Full Pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--topic",
        action="append",
        default=[],
        help="Topic to cover (repeat for several topics, in order)",
    )
    parser.add_argument(
        "--duration-target-seconds",
        type=float,
        default=60,
        help="Narration target in seconds, excluding intro/outro (default: 60)",
    )
    parser.add_argument("--ratio", type=str, default="16:9", help="Output aspect, e.g. 16:9, 9:16, 1080:1350")
    parser.add_argument("--fps", type=int, default=30, help="Output frame rate (default: 30)")
    parser.add_argument("--mood", type=str, default="warm", help="Overall tone (default: warm)")
    parser.add_argument("--language", type=str, default="English", help="Narration language (default: English)")
    parser.add_argument("--presenter", type=str, default=None, help="Presenter still image or video")
    parser.add_argument("--voiceover", type=str, default=None, help="Use an external voice track instead of TTS")
    parser.add_argument("--voice-id", type=str, default=None, help="ElevenLabs voice override")
    parser.add_argument("--music-url", type=str, default=None, help="Explicit background track (URL or path)")
    parser.add_argument("--disable-music", action="store_true", help="Render without background music")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Dry-run mode: create and complete the job without any external calls",
    )
    parser.add_argument("--log-file", type=str, default=None, help="Also write logs to this file")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main entrypoint for full pipeline. Returns a process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    request = CreateJobRequest(
        topics=args.topic,
        target_duration_seconds=args.duration_target_seconds,
        ratio=args.ratio,
        fps=args.fps,
        mood=args.mood,
        language=args.language,
        presenter_asset_path=args.presenter,
        voiceover_path=args.voiceover,
        voice_id=args.voice_id,
        music_url=args.music_url,
        disable_music=args.disable_music,
        dry_run=args.dry_run,
    )
    if not request.topic_labels():
        parser.error("At least one --topic must be provided")

    setup_logging(log_level=settings.log_level, log_file=Path(args.log_file) if args.log_file else None)
    logger = get_logger(__name__)

    logger.info("=" * 60)
    logger.info("Narrated Video Factory - Full Pipeline")
    logger.info(f"Topics: {', '.join(request.topic_labels())}")
    logger.info(f"Duration: {request.target_duration_seconds}s")
    logger.info(f"Ratio: {request.ratio}")
    if request.dry_run:
        logger.info("Mode: DRY-RUN (no external calls, no rendering)")
    elif request.voiceover_path:
        logger.info("Mode: EXTERNAL VOICEOVER")
    logger.info("=" * 60)

    store = InMemoryJobStore(logger, max_jobs=settings.max_jobs_to_keep, ttl_seconds=settings.job_ttl_seconds)
    orchestrator = JobOrchestrator(settings, store, logger, max_workers=1)
    try:
        job = orchestrator.create_job(request)
        job = orchestrator.run_job(job.job_id, request)
    except KeyboardInterrupt:
        logger.warning("Pipeline interrupted by user")
        return 1
    finally:
        orchestrator.shutdown()

    logger.info("=" * 60)
    if job.status == JobStatus.COMPLETED:
        logger.info("✅ PIPELINE COMPLETE!")
        if job.final_output:
            logger.info(f"Video: {job.final_output}")
        for key in ("globalTempo", "rewrites", "withinTolerance", "music"):
            if key in job.meta:
                logger.info(f"{key}: {job.meta[key]}")
        logger.info("=" * 60)
        return 0

    logger.error(f"❌ Pipeline failed: {job.error}")
    logger.info("=" * 60)
    return 1


if __name__ == "__main__":
    sys.exit(main())
