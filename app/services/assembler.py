"""Assembler - concatenates rendered clips, applies overlays, mixes music and masters the file."""

import io
import shutil
from pathlib import Path
from typing import Any, Optional

import requests
from PIL import Image, UnidentifiedImageError

from app.core.config import PipelineConfig
from app.models.schemas import OutputConfig, OverlayAsset, TimelineEntry, make_even
from app.services.image_search import ImageSearchClient
from app.utils.error_handler import PipelineError
from app.utils.media import MediaEngine


def compute_final_master_size(output: OutputConfig, config: PipelineConfig) -> tuple[int, int]:
    """
    Master frame size: the output height raised to the minimum master height
    (capped at the maximum), width following the output aspect.
    """
    ratio = output.width / output.height if output.height else 16 / 9
    height = min(config.master_max_height, max(config.master_min_height, output.height))
    return make_even(height * ratio), make_even(height)


def overlay_position(position: str, margin: int) -> tuple[str, str]:
    """overlay x/y expressions for a named corner."""
    positions = {
        "topRight": (f"W-w-{margin}", f"{margin}"),
        "topLeft": (f"{margin}", f"{margin}"),
        "bottomRight": (f"W-w-{margin}", f"H-h-{margin}"),
        "bottomLeft": (f"{margin}", f"H-h-{margin}"),
        "center": ("(W-w)/2", "(H-h)/2"),
    }
    return positions.get(position, positions["topRight"])


def normalize_overlay_assets(assets: list[OverlayAsset], total_duration: float) -> list[OverlayAsset]:
    """Drop malformed overlays and clamp the rest to the timeline."""
    limit = max(1.0, total_duration)
    out = []
    for asset in assets:
        if not (asset.url or asset.local_path):
            continue
        start = max(0.0, min(limit, asset.start_sec))
        end = max(0.0, min(limit, asset.end_sec))
        if end <= start:
            continue
        out.append(
            asset.model_copy(
                update={
                    "type": "video" if asset.type == "video" else "image",
                    "start_sec": start,
                    "end_sec": end,
                    "scale": max(0.14, min(0.6, asset.scale)),
                }
            )
        )
    return out


def auto_overlay_window(entry: TimelineEntry) -> tuple[float, float]:
    """On-screen window inside a segment: starts 20% in, lasts half the segment (2.2-4.2s)."""
    duration = max(0.6, entry.end_sec - entry.start_sec)
    window = max(2.2, min(4.2, duration * 0.5))
    start = entry.start_sec + max(0.2, duration * 0.2)
    return start, min(entry.end_sec - 0.2, start + window)


def build_overlay_filter(overlays: list[OverlayAsset], config: PipelineConfig) -> str:
    """filter_complex graph placing time-boxed overlays over input 0, ending in [vout]."""
    border = config.overlay_border_px
    parts = ["[0:v]format=yuv420p[base]"]
    last = "base"
    for idx, ov in enumerate(overlays):
        duration = max(0.1, ov.end_sec - ov.start_sec)
        x, y = overlay_position(ov.position, config.overlay_margin_px)
        parts.append(f"[{idx + 1}:v]format=rgba,trim=0:{duration:.3f},setpts=PTS-STARTPTS+{ov.start_sec:.3f}/TB[ovp{idx}]")
        parts.append(
            f"[ovp{idx}][{last}]scale2ref=w='min(iw*{ov.scale},main_w*{config.overlay_max_width_pct})':h='-1'"
            f"[ovs{idx}][ref{idx}]"
        )
        timed = f"ovs{idx}"
        if border > 0:
            parts.append(f"[ovs{idx}]pad=iw+{border * 2}:ih+{border * 2}:{border}:{border}:color=black@0.25[ovb{idx}]")
            timed = f"ovb{idx}"
        parts.append(
            f"[ref{idx}][{timed}]overlay={x}:{y}:enable='between(t,{ov.start_sec:.3f},{ov.end_sec:.3f})'[v{idx}]"
        )
        last = f"v{idx}"
    parts.append(f"[{last}]format=yuv420p[vout]")
    return ";".join(parts)


def build_music_filter(config: PipelineConfig, duration: Optional[float]) -> str:
    """Loop-trimmed music ducked under narration by sidechain compression, ending in [aout]."""
    fmt = f"aresample={config.sample_rate},aformat=channel_layouts=stereo:sample_fmts=fltp"
    trim = f"{duration:.2f}" if duration else "9999"
    return (
        f"[0:a]{fmt},asplit=2[vox][vox_sc];"
        f"[1:a]{fmt},volume={config.music_volume:.3f},atrim=0:{trim}[music];"
        f"[music][vox_sc]sidechaincompress=threshold={config.duck_threshold:.3f}:ratio={config.duck_ratio:.2f}:"
        f"attack={config.duck_attack_ms}:release={config.duck_release_ms}:makeup={config.duck_makeup:.2f}[ducked];"
        "[vox][ducked]amix=inputs=2:duration=first:dropout_transition=0:normalize=0[aout]"
    )


def final_fade(duration: float, config: PipelineConfig) -> float:
    """Fade-out length for the master; 0 when the file is too short to fade."""
    if duration < 0.4:
        return 0.0
    return max(0.0, min(config.final_fade_out_seconds, 1.2, duration / 2))


class Assembler:
    """Builds the final master from ordered segment clips."""

    def __init__(
        self,
        config: PipelineConfig,
        logger: Any,
        media: MediaEngine,
        image_search: Optional[ImageSearchClient] = None,
    ):
        """
        Initialize assembler.

        Args:
            config: Pipeline configuration
            logger: Logger instance
            media: Media engine
            image_search: Image source for automatic overlays
        """
        self.config = config
        self.logger = logger
        self.media = media
        self.image_search = image_search

    def concat_clips(self, clips: list[Path], output_path: Path, output: OutputConfig) -> Path:
        """Re-encode clips into one continuous file with a concat filter graph."""
        if not clips:
            raise PipelineError("No clips to concatenate")
        if len(clips) == 1:
            shutil.copyfile(clips[0], output_path)
            return output_path

        w, h = output.width, output.height
        inputs: list[str] = []
        pre = []
        for i, clip in enumerate(clips):
            inputs += ["-i", str(clip)]
            pre.append(
                f"[{i}:v:0]scale={w}:{h}:force_original_aspect_ratio=increase:flags=lanczos,crop={w}:{h},"
                f"setpts=PTS-STARTPTS,format=yuv420p,setsar=1[v{i}];"
                f"[{i}:a:0]asetpts=PTS-STARTPTS,aresample={self.config.sample_rate},"
                f"aformat=channel_layouts=stereo:sample_fmts=fltp[a{i}]"
            )
        pairs = "".join(f"[v{i}][a{i}]" for i in range(len(clips)))
        graph = ";".join(pre) + f";{pairs}concat=n={len(clips)}:v=1:a=1[v][a]"

        self.media.run(
            [
                *inputs,
                "-filter_complex", graph,
                "-map", "[v]", "-map", "[a]",
                "-c:v", "libx264", "-preset", self.config.intermediate_preset,
                "-crf", str(self.config.intermediate_crf), "-pix_fmt", "yuv420p",
                "-c:a", "aac", "-b:a", self.config.audio_bitrate,
                "-ar", str(self.config.sample_rate), "-ac", "2",
                "-movflags", "+faststart",
                "-y", str(output_path),
            ],
            "concat",
            timeout=900,
        )
        return output_path

    # ------------------------------------------------------------------
    # Overlays
    # ------------------------------------------------------------------

    def _download_overlay(self, asset: OverlayAsset, output_path: Path) -> Optional[Path]:
        try:
            response = requests.get(asset.url, timeout=30)
            response.raise_for_status()
            if asset.type == "image":
                with Image.open(io.BytesIO(response.content)) as img:
                    img.convert("RGBA").save(output_path.with_suffix(".png"), format="PNG")
                return output_path.with_suffix(".png")
            output_path.write_bytes(response.content)
            return output_path
        except (requests.RequestException, UnidentifiedImageError, OSError) as e:
            self.logger.warning(f"Overlay {asset.url} skipped: {e}")
            return None

    def localize_overlays(self, overlays: list[OverlayAsset], work_dir: Path) -> list[OverlayAsset]:
        """Ensure every overlay has a local file; unusable overlays are dropped."""
        out = []
        for idx, ov in enumerate(overlays):
            if ov.local_path and Path(ov.local_path).exists():
                out.append(ov)
                continue
            if not ov.url:
                continue
            local = self._download_overlay(ov, work_dir / f"overlay_{idx}.mp4")
            if local:
                out.append(ov.model_copy(update={"local_path": str(local)}))
        return out

    def build_auto_overlays(self, entries: list[TimelineEntry], work_dir: Path) -> list[OverlayAsset]:
        """Overlays from segment overlay cues, one image per cue, at most max_auto_overlays."""
        if self.image_search is None:
            return []
        overlays = []
        for entry in entries:
            if len(overlays) >= self.config.max_auto_overlays:
                break
            query = next((str(c.get("query") or "").strip() for c in entry.overlay_cues if c.get("query")), "")
            if not query:
                continue
            start, end = auto_overlay_window(entry)
            if end <= start:
                continue
            try:
                images = self.image_search.fetch_images(query, 1, work_dir, f"overlay_auto_{entry.index}")
            except Exception as e:
                self.logger.warning(f"Overlay image search failed for segment {entry.index}: {e}")
                continue
            if images:
                overlays.append(
                    OverlayAsset(
                        local_path=str(images[0]),
                        type="image",
                        start_sec=start,
                        end_sec=end,
                        scale=self.config.overlay_scale,
                    )
                )
        return overlays

    def apply_overlays(self, base: Path, overlays: list[OverlayAsset], output_path: Path) -> Path:
        if not overlays:
            shutil.copyfile(base, output_path)
            return output_path
        inputs = ["-i", str(base)]
        for ov in overlays:
            if ov.type == "image":
                inputs += ["-loop", "1"]
            inputs += ["-i", str(ov.local_path)]
        self.media.run(
            [
                *inputs,
                "-filter_complex", build_overlay_filter(overlays, self.config),
                "-map", "[vout]", "-map", "0:a?",
                "-c:v", "libx264", "-preset", self.config.intermediate_preset,
                "-crf", str(self.config.intermediate_crf), "-pix_fmt", "yuv420p",
                "-c:a", "aac", "-b:a", self.config.audio_bitrate,
                "-shortest", "-movflags", "+faststart",
                "-y", str(output_path),
            ],
            "overlay",
            timeout=900,
        )
        return output_path

    # ------------------------------------------------------------------
    # Music & master
    # ------------------------------------------------------------------

    def mix_music(self, base: Path, music: Path, output_path: Path) -> Path:
        """Mix looping background music under the narration with sidechain ducking."""
        duration = self.media.probe_duration(base)
        self.logger.info(
            f"Mixing music: volume={self.config.music_volume} threshold={self.config.duck_threshold} "
            f"ratio={self.config.duck_ratio} attack={self.config.duck_attack_ms}ms "
            f"release={self.config.duck_release_ms}ms makeup={self.config.duck_makeup}"
        )
        self.media.run(
            [
                "-i", str(base), "-stream_loop", "-1", "-i", str(music),
                "-filter_complex", build_music_filter(self.config, duration if duration > 1 else None),
                "-map", "0:v", "-map", "[aout]",
                "-c:v", "copy", "-c:a", "aac", "-b:a", self.config.audio_bitrate,
                "-shortest", "-movflags", "+faststart",
                "-y", str(output_path),
            ],
            "music_mix",
        )
        return output_path

    def finalize(self, source: Path, output_path: Path, output: OutputConfig) -> Path:
        """Master encode: loudness pass, padded master frame, fixed GOP, bt709 and a closing fade."""
        duration = self.media.probe_duration(source)
        fade = final_fade(duration, self.config)
        start = max(0.0, duration - fade)
        width, height = compute_final_master_size(output, self.config)
        gop = max(12, round(output.fps * 2))

        video_filters = [
            f"scale={width}:{height}:force_original_aspect_ratio=decrease:flags=lanczos",
            f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2:color=black",
            f"fps={output.fps}",
        ]
        audio_filters = [f"aresample={self.config.sample_rate}", "aformat=channel_layouts=stereo:sample_fmts=fltp"]
        if fade > 0:
            video_filters.append(f"fade=t=out:st={start:.3f}:d={fade:.3f}")
            audio_filters.append(f"afade=t=out:st={start:.3f}:d={fade:.3f}")
        video_filters.append("format=yuv420p")
        audio_filters.append(self.config.final_loudnorm)

        output_path.parent.mkdir(parents=True, exist_ok=True)
        self.media.run(
            [
                "-i", str(source),
                "-vf", ",".join(video_filters), "-af", ",".join(audio_filters),
                "-c:v", "libx264", "-preset", self.config.final_preset, "-crf", str(self.config.final_crf),
                "-pix_fmt", "yuv420p",
                "-g", str(gop), "-keyint_min", str(gop), "-sc_threshold", "0",
                "-c:a", "aac", "-b:a", self.config.audio_bitrate,
                "-ar", str(self.config.sample_rate), "-ac", "2",
                "-colorspace", "bt709", "-color_primaries", "bt709", "-color_trc", "bt709",
                "-color_range", "tv",
                "-movflags", "+faststart",
                "-y", str(output_path),
            ],
            "final_master",
            timeout=1200,
        )
        self.logger.info(f"✅ Master written: {output_path} ({width}x{height}, gop={gop}, fade={fade:.2f}s)")
        return output_path

    def assemble(
        self,
        clips: list[Path],
        entries: list[TimelineEntry],
        output: OutputConfig,
        work_dir: Path,
        final_path: Path,
        music: Optional[Path] = None,
        overlays: Optional[list[OverlayAsset]] = None,
    ) -> Path:
        """
        Concatenate, overlay, mix and master.

        Args:
            clips: Rendered clips in playback order (intro, content, outro)
            entries: Content timeline entries (automatic overlay placement)
            output: Output frame configuration
            work_dir: Job working directory
            final_path: Destination of the master file
            music: Resolved background track, or None
            overlays: Caller-supplied overlays (replace automatic ones)

        Returns:
            Path to the master file
        """
        self.logger.info("=" * 60)
        self.logger.info(f"Assembling {len(clips)} clips")
        self.logger.info("=" * 60)

        current = self.concat_clips(clips, work_dir / "concat.mp4", output)

        if self.config.enable_overlays:
            total = self.media.probe_duration(current)
            if overlays:
                planned = self.localize_overlays(normalize_overlay_assets(overlays, total), work_dir)
            else:
                planned = self.build_auto_overlays(entries, work_dir)
            if planned:
                self.logger.info(f"Applying {len(planned)} overlays")
                current = self.apply_overlays(current, planned, work_dir / "overlaid.mp4")

        if music is not None:
            current = self.mix_music(current, music, work_dir / "mixed.mp4")

        return self.finalize(current, final_path, output)
