"""Segment Renderer - turns timeline entries into normalized, audio-merged video clips."""

import hashlib
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional

from app.core.config import PipelineConfig
from app.models.schemas import Expression, OutputConfig, ScaleMode, TimelineEntry, VisualType
from app.services.lipsync_provider import LipSyncProvider
from app.services.presenter_engine import baseline_for
from app.utils.error_handler import (
    ConfigurationError,
    LipsyncRequiredError,
    PipelineError,
    QualityRejectedError,
)
from app.utils.media import MediaEngine
from app.utils.parallel_executor import ParallelExecutor, first_error

LADDER_STEPS = ("as_is", "reencode", "downscale")


def seed_from_job_id(job_id: str) -> int:
    """Deterministic 32-bit seed: first 4 bytes of SHA-256(job_id), big-endian."""
    return int.from_bytes(hashlib.sha256(str(job_id).encode("utf-8")).digest()[:4], "big")


def compute_offset(seed: int, baseline_seconds: float) -> float:
    """Start offset inside the looping baseline for a given seed."""
    return (seed * 1.37) % max(2.0, baseline_seconds - 0.5)


def max_edge_scale(max_edge: int) -> str:
    """Scale filter limiting the longer edge while keeping aspect."""
    return f"scale='if(gt(iw,ih),{max_edge},-2)':'if(gt(ih,iw),{max_edge},-2)'"


def fit_video_filter(target_seconds: float) -> str:
    """Clone the last frame if short, trim if long."""
    t = f"{max(0.2, target_seconds):.3f}"
    return f"setpts=PTS-STARTPTS,tpad=stop_mode=clone:stop_duration={t},trim=0:{t},setpts=PTS-STARTPTS"


def build_normalize_filters(
    output: OutputConfig,
    config: PipelineConfig,
    duration: float = 0.0,
    add_fades: bool = False,
) -> tuple[str, str]:
    """
    Video and audio filters that bring any clip to the output frame.

    Args:
        output: Output frame configuration
        config: Pipeline configuration (zoom and fade values)
        duration: Clip length, needed for fade-out start times
        add_fades: Apply short fade in/out

    Returns:
        (video filter, audio filter)
    """
    w, h = output.width, output.height
    if output.scale_mode == ScaleMode.CONTAIN:
        vf = f"scale={w}:{h}:force_original_aspect_ratio=decrease,pad={w}:{h}:(ow-iw)/2:(oh-ih)/2:color=black"
    elif output.scale_mode == ScaleMode.BLUR:
        vf = f"scale={w}:{h}:force_original_aspect_ratio=increase,boxblur=15:1,crop={w}:{h}"
    else:
        vf = f"scale={w}:{h}:force_original_aspect_ratio=increase,crop={w}:{h}"
    vf += f",fps={output.fps},format=yuv420p"

    zoom = config.camera_zoom_out
    if zoom and zoom != 1.0:
        zw = max(2, int(w * zoom) // 2 * 2)
        zh = max(2, int(h * zoom) // 2 * 2)
        vf += (
            ",split=2[base][z];[base]gblur=sigma=18[bg];"
            f"[z]scale={zw}:{zh}:flags=lanczos[fg];[bg][fg]overlay=(W-w)/2:(H-h)/2"
        )

    af = f"aresample={config.sample_rate},aformat=channel_layouts=stereo:sample_fmts=fltp"

    if add_fades:
        vd, ad = config.video_fade_seconds, config.audio_fade_seconds
        vf += f",fade=t=in:st=0:d={vd}"
        af += f",afade=t=in:st=0:d={ad}"
        # afade start must be a literal number
        if duration > 0.15:
            vf += f",fade=t=out:st={max(0.0, duration - vd):.3f}:d={vd}"
            af += f",afade=t=out:st={max(0.0, duration - ad):.3f}:d={ad}"

    return vf, af


def montage_plan(image_count: int, duration: float, label_index: int, config: PipelineConfig) -> tuple[float, float]:
    """
    Per-image duration and crossfade length for a montage.

    Crossfades are used on even-numbered segments when every image gets enough time.

    Returns:
        (per-image seconds, crossfade seconds or 0.0)
    """
    per = max(0.2, duration / max(1, image_count))
    if image_count > 1 and per >= config.crossfade_min_image_seconds and label_index % 2 == 0:
        return per, max(0.25, min(0.6, per * 0.2))
    return per, 0.0


def build_montage_filter(
    image_count: int, per_image: float, crossfade: float, output: OutputConfig
) -> str:
    """filter_complex graph for a pan/zoom still-image montage ending in [v]."""
    w, h, fps = output.width, output.height, output.fps
    mode = output.image_scale_mode
    trim = f"trim=0:{per_image:.3f},setpts=PTS-STARTPTS"
    parts = []
    for idx in range(image_count):
        if mode == ScaleMode.BLUR:
            parts.append(f"[{idx}:v]split=2[bg{idx}][fg{idx}]")
            parts.append(
                f"[bg{idx}]scale={w}:{h}:force_original_aspect_ratio=increase:flags=lanczos,"
                f"crop={w}:{h},gblur=sigma=18[bgb{idx}]"
            )
            parts.append(f"[fg{idx}]scale={w}:{h}:force_original_aspect_ratio=decrease:flags=lanczos[fgs{idx}]")
            parts.append(
                f"[bgb{idx}][fgs{idx}]overlay=(W-w)/2:(H-h)/2,fps={fps},{trim},setsar=1,format=yuv420p[v{idx}]"
            )
            continue

        if mode == ScaleMode.CONTAIN:
            scale = (
                f"scale={w}:{h}:force_original_aspect_ratio=decrease:flags=lanczos,"
                f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2:color=black"
            )
            motion = f"fps={fps}"
        else:
            scale = f"scale={w}:{h}:force_original_aspect_ratio=increase:flags=lanczos,crop={w}:{h}"
            pan_x = "0" if idx % 2 == 0 else "iw*0.03"
            pan_y = "0" if idx % 3 == 0 else "ih*0.02"
            if idx % 3 == 0:
                motion = f"zoompan=z='min(1.08,zoom+0.0007)':x='iw/2-(iw/zoom/2)':y='ih/2-(ih/zoom/2)':d=1:fps={fps}"
            elif idx % 3 == 1:
                motion = (
                    f"zoompan=z='min(1.06,zoom+0.0006)':x='iw/2-(iw/zoom/2)+{pan_x}':"
                    f"y='ih/2-(ih/zoom/2)+{pan_y}':d=1:fps={fps}"
                )
            else:
                motion = f"fps={fps}"
        parts.append(f"[{idx}:v]{scale},{motion},{trim},setsar=1,format=yuv420p[v{idx}]")

    if crossfade > 0 and image_count > 1:
        last, acc = "v0", per_image
        for i in range(1, image_count):
            offset = max(0.0, acc - crossfade)
            parts.append(f"[{last}][v{i}]xfade=transition=fade:duration={crossfade:.3f}:offset={offset:.3f}[xf{i}]")
            acc += per_image - crossfade
            last = f"xf{i}"
        parts.append(f"[{last}]setsar=1,format=yuv420p[v]")
    else:
        parts.append("".join(f"[v{i}]" for i in range(image_count)) + f"concat=n={image_count}:v=1:a=0[v]")
    return ";".join(parts)


class SegmentRenderer:
    """Renders presenter (lip-synced) and image-montage segments."""

    def __init__(
        self,
        config: PipelineConfig,
        logger: Any,
        media: MediaEngine,
        lipsync: Optional[LipSyncProvider] = None,
        parallel: Optional[ParallelExecutor] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize segment renderer.

        Args:
            config: Pipeline configuration
            logger: Logger instance
            media: Media engine
            lipsync: Lip-sync provider (None when not configured)
            parallel: Executor for per-segment parallelism
            sleep: Sleep function (injectable for tests)
        """
        self.config = config
        self.logger = logger
        self.media = media
        self.lipsync = lipsync
        self.parallel = parallel or ParallelExecutor(logger, config.max_parallel_renders)
        self.sleep = sleep

    # ------------------------------------------------------------------
    # ffmpeg building blocks
    # ------------------------------------------------------------------

    def _encode_sync_input(self, src: Path, out: Path, vf: str, crf: int, label: str, extra: Optional[list] = None) -> Path:
        self.media.run(
            [
                *(extra or []),
                "-i", str(src), "-an", "-vf", vf,
                "-c:v", "libx264", "-preset", "veryfast", "-crf", str(crf),
                "-pix_fmt", "yuv420p", "-movflags", "+faststart",
                "-y", str(out),
            ],
            label,
        )
        return out

    def _sync_vf(self, scale: Optional[str] = None) -> str:
        vf = f"fps={self.config.lipsync_input_fps},format=yuv420p,setpts=PTS-STARTPTS"
        return f"{scale},{vf}" if scale else vf

    def extract_base_clip(self, baseline: Path, offset: float, duration: float, out: Path) -> Path:
        """Cut duration seconds from the looping baseline starting at offset."""
        self.media.run(
            [
                "-stream_loop", "-1", "-i", str(baseline),
                "-ss", f"{offset:.3f}", "-t", f"{max(0.2, duration):.3f}",
                "-an", "-vf", self._sync_vf(),
                "-c:v", "libx264", "-preset", "veryfast", "-crf", str(self.config.lipsync_input_crf),
                "-pix_fmt", "yuv420p", "-movflags", "+faststart",
                "-y", str(out),
            ],
            "base_segment",
        )
        return out

    def prescale_if_needed(self, clip: Path, duration: float, work_dir: Path, label: str) -> Path:
        """Downscale large or long clips before they are sent for lip-sync."""
        threshold = int(self.config.lipsync_max_bytes * self.config.lipsync_prescale_size_pct)
        size = clip.stat().st_size if clip.exists() else 0
        if size <= threshold and duration < self.config.lipsync_prescale_min_seconds:
            return clip
        out = work_dir / f"{label}_prescale.mp4"
        self._encode_sync_input(
            clip, out, self._sync_vf(max_edge_scale(self.config.lipsync_prescale_max_edge)),
            self.config.lipsync_input_crf, "sync_prescale",
        )
        self.logger.debug(f"Prescaled {label}: {size} bytes, {duration:.2f}s")
        return out

    def ensure_under_bytes(self, clip: Path, work_dir: Path, label: str) -> Path:
        """Re-encode, then downscale, until the clip fits the lip-sync upload limit."""
        limit = self.config.lipsync_max_bytes
        if clip.stat().st_size <= limit:
            return clip
        crf = self.config.lipsync_input_crf
        smaller = self._encode_sync_input(
            clip, work_dir / f"{label}_small.mp4", self._sync_vf(), max(28, crf + 4), "shrink_sync_input"
        )
        if smaller.stat().st_size <= limit:
            return smaller
        return self._encode_sync_input(
            smaller,
            work_dir / f"{label}_down.mp4",
            self._sync_vf(max_edge_scale(self.config.lipsync_prescale_max_edge)),
            max(26, crf + 4),
            "shrink_sync_input_scale",
        )

    def ladder_input(self, clip: Path, step: int, work_dir: Path, label: str) -> Path:
        """Input for one rung of the lip-sync ladder: as-is, re-encoded, downscaled."""
        if step == 0:
            return clip
        crf = self.config.lipsync_input_crf
        if step == 1:
            out = self._encode_sync_input(
                clip, work_dir / f"{label}_reencode.mp4", self._sync_vf(), max(26, crf + 4), "sync_fallback_reencode"
            )
        else:
            out = self._encode_sync_input(
                clip,
                work_dir / f"{label}_downscale.mp4",
                self._sync_vf(max_edge_scale(self.config.lipsync_prescale_max_edge)),
                max(28, crf + 6),
                "sync_fallback_scale",
            )
        return self.ensure_under_bytes(out, work_dir, f"{label}_{LADDER_STEPS[step]}")

    def fit_video_to_duration(self, src: Path, target_seconds: float, out: Path) -> Path:
        """Force a video stream to exactly target_seconds (no audio)."""
        self.media.run(
            [
                "-fflags", "+genpts", "-i", str(src), "-an",
                "-vf", fit_video_filter(target_seconds),
                "-c:v", "libx264", "-preset", self.config.intermediate_preset,
                "-crf", str(self.config.intermediate_crf),
                "-pix_fmt", "yuv420p", "-movflags", "+faststart",
                "-y", str(out),
            ],
            "fit_video",
        )
        return out

    def merge_with_audio(self, video: Path, audio: Path, out: Path) -> Path:
        self.media.run(
            [
                "-fflags", "+genpts", "-i", str(video), "-i", str(audio),
                "-map", "0:v:0", "-map", "1:a:0",
                "-c:v", "copy", "-c:a", "aac", "-b:a", self.config.audio_bitrate,
                "-ar", str(self.config.sample_rate), "-ac", "2",
                "-shortest", "-movflags", "+faststart",
                "-y", str(out),
            ],
            "merge_audio",
        )
        return out

    def normalize_clip(self, src: Path, out: Path, output: OutputConfig, add_fades: Optional[bool] = None) -> Path:
        """Scale/crop to the output frame with zoom-out parallax and optional fades."""
        add_fades = self.config.enable_segment_fades if add_fades is None else add_fades
        duration = self.media.probe_duration(src) if add_fades else 0.0
        vf, af = build_normalize_filters(output, self.config, duration, add_fades)
        self.media.run(
            [
                "-i", str(src), "-vf", vf, "-af", af, "-r", str(output.fps),
                "-c:v", "libx264", "-preset", self.config.intermediate_preset,
                "-crf", str(self.config.intermediate_crf), "-pix_fmt", "yuv420p",
                "-c:a", "aac", "-b:a", self.config.audio_bitrate,
                "-movflags", "+faststart",
                "-y", str(out),
            ],
            "normalize_clip",
        )
        return out

    # ------------------------------------------------------------------
    # Presenter path
    # ------------------------------------------------------------------

    def run_lipsync_ladder(
        self, base: Path, audio: Path, duration: float, work_dir: Path, label: str
    ) -> tuple[Optional[Path], Optional[Exception]]:
        """
        Try each ladder rung in order, retrying each submission a bounded number of times.

        A rejected payload moves to the next rung; other failures are retried
        on the same rung with a delay growing with the attempt number.

        Returns:
            (lip-synced clip fitted to duration, None) or (None, last error)
        """
        if self.lipsync is None:
            return None, ConfigurationError("No lip-sync provider configured")

        last_error: Optional[Exception] = None
        for step in range(len(LADDER_STEPS)):
            try:
                sync_input = self.ladder_input(base, step, work_dir, label)
                fitted_input = self.fit_video_to_duration(
                    sync_input, duration, work_dir / f"{label}_sync_in_{step}.mp4"
                )
            except PipelineError as e:
                last_error = e
                self.logger.warning(f"[{label}] could not prepare {LADDER_STEPS[step]} input: {e}")
                continue

            for attempt in range(self.config.lipsync_segment_retries):
                try:
                    if self.config.lipsync_request_gap:
                        self.sleep(self.config.lipsync_request_gap)
                    raw = self.lipsync.generate(fitted_input, audio, work_dir / f"{label}_lip_raw.mp4")
                    fitted = self.fit_video_to_duration(raw, duration, work_dir / f"{label}_lip_fit.mp4")
                    raw.unlink(missing_ok=True)
                    return fitted, None
                except ConfigurationError:
                    raise
                except QualityRejectedError as e:
                    last_error = e
                    self.logger.warning(f"[{label}] lip-sync rejected ({LADDER_STEPS[step]}): {e}")
                    break
                except Exception as e:
                    last_error = e
                    self.logger.warning(
                        f"[{label}] lip-sync attempt {attempt + 1} ({LADDER_STEPS[step]}) failed: {e}"
                    )
                    if attempt + 1 < self.config.lipsync_segment_retries:
                        self.sleep(self.config.lipsync_retry_delay * (attempt + 1))

        return None, last_error

    def render_presenter(
        self,
        label: str,
        ordinal: int,
        duration: float,
        audio: Path,
        baseline: Path,
        output: OutputConfig,
        job_id: str,
        work_dir: Path,
        add_fades: Optional[bool] = None,
    ) -> Path:
        """
        Render one lip-synced presenter clip.

        Raises:
            LipsyncRequiredError: If lip-sync fails while required
        """
        duration = max(0.2, duration)
        offset = compute_offset(seed_from_job_id(job_id) + ordinal, self.config.baseline_seconds)
        base = self.extract_base_clip(baseline, offset, duration, work_dir / f"{label}_base.mp4")
        prepared = self.ensure_under_bytes(self.prescale_if_needed(base, duration, work_dir, label), work_dir, label)

        video, error = self.run_lipsync_ladder(prepared, audio, duration, work_dir, label)
        if video is None:
            if self.config.lipsync_required:
                raise LipsyncRequiredError(f"Lip-sync failed for {label}: {error}")
            self.logger.warning(f"[{label}] lip-sync unavailable, using un-synced base clip: {error}")
            video = self.fit_video_to_duration(prepared, duration, work_dir / f"{label}_base_fit.mp4")

        merged = self.merge_with_audio(video, audio, work_dir / f"{label}_audio.mp4")
        final = self.normalize_clip(merged, work_dir / f"{label}_norm.mp4", output, add_fades)
        merged.unlink(missing_ok=True)
        return final

    # ------------------------------------------------------------------
    # Montage path
    # ------------------------------------------------------------------

    def create_montage(self, entry: TimelineEntry, output: OutputConfig, work_dir: Path) -> Path:
        """Silent pan/zoom montage of the entry's images, exactly entry.duration long."""
        images = entry.image_paths
        if not images:
            raise PipelineError(f"No images for segment {entry.index}")
        per, crossfade = montage_plan(len(images), entry.duration, entry.index, self.config)
        inputs = []
        for path in images:
            inputs += ["-loop", "1", "-i", str(path)]
        raw = work_dir / f"seg_img_{entry.index}_raw.mp4"
        self.media.run(
            [
                *inputs,
                "-filter_complex", build_montage_filter(len(images), per, crossfade, output),
                "-map", "[v]", "-r", str(output.fps),
                "-c:v", "libx264", "-preset", self.config.intermediate_preset,
                "-crf", str(self.config.intermediate_crf),
                "-pix_fmt", "yuv420p", "-movflags", "+faststart",
                "-y", str(raw),
            ],
            "image_montage",
        )
        fitted = self.fit_video_to_duration(raw, entry.duration, work_dir / f"seg_img_{entry.index}_fit.mp4")
        raw.unlink(missing_ok=True)
        return fitted

    def render_montage(self, entry: TimelineEntry, output: OutputConfig, work_dir: Path) -> Path:
        montage = self.create_montage(entry, output, work_dir)
        merged = self.merge_with_audio(montage, Path(entry.audio_path), work_dir / f"seg_img_{entry.index}_audio.mp4")
        montage.unlink(missing_ok=True)
        final = self.normalize_clip(merged, work_dir / f"seg_img_{entry.index}_norm.mp4", output)
        merged.unlink(missing_ok=True)
        return final

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def render_entry(
        self,
        entry: TimelineEntry,
        baselines: dict[Expression, Path],
        output: OutputConfig,
        job_id: str,
        work_dir: Path,
    ) -> Path:
        if entry.visual_type == VisualType.IMAGE:
            return self.render_montage(entry, output, work_dir)
        return self.render_presenter(
            label=f"seg_{entry.index}",
            ordinal=entry.index + 1,
            duration=entry.duration,
            audio=Path(entry.audio_path),
            baseline=baseline_for(baselines, entry.expression),
            output=output,
            job_id=job_id,
            work_dir=work_dir,
        )

    def render_all(
        self,
        entries: list[TimelineEntry],
        baselines: dict[Expression, Path],
        output: OutputConfig,
        job_id: str,
        work_dir: Path,
        on_rendered: Optional[Callable[[int, int], None]] = None,
    ) -> list[Path]:
        """
        Render every entry and return clips ordered by segment index.

        Args:
            entries: Timeline entries
            baselines: Expression baselines for presenter segments
            output: Output frame configuration
            job_id: Job id (offset seed)
            work_dir: Job working directory
            on_rendered: Called with (done, total) after each clip

        Raises:
            The first failure by segment order
        """
        ordered = sorted(entries, key=lambda e: e.index)
        total = len(ordered)
        done = [0]
        lock = threading.Lock()

        def make_task(entry: TimelineEntry) -> Callable[[], Path]:
            def task() -> Path:
                clip = self.render_entry(entry, baselines, output, job_id, work_dir)
                with lock:
                    done[0] += 1
                    count = done[0]
                if on_rendered:
                    on_rendered(count, total)
                return clip

            return task

        results = self.parallel.execute_batch(
            [make_task(e) for e in ordered],
            task_names=[f"segment_{e.index}" for e in ordered],
            stop_on_error=True,
        )
        error = first_error(results)
        if error is not None:
            raise error
        return [clip for clip, _ in results]
