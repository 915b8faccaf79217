from __future__ import annotations

import os
import shlex
import shutil
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from logging_utils import get_logger
from pipeline_errors import ConfigurationError
from render_job import PRORES_PROFILES, AssetReference, RenderJobConfig, codec_info

logger = get_logger(__name__)

AudioInput = Tuple[Path, AssetReference]


def find_ffmpeg(explicit: Optional[str] = None) -> str:
    """Return an ffmpeg executable path.

    Order:
      1) explicit path from the job config
      2) $FFMPEG environment var
      3) ffmpeg on PATH
    """
    for candidate in (explicit, os.environ.get("FFMPEG")):
        if not candidate:
            continue
        path = Path(candidate).expanduser()
        if path.exists():
            return str(path)
        found = shutil.which(candidate)
        if found:
            return found
        raise ConfigurationError(f"ffmpeg executable not found: {candidate}")
    found = shutil.which("ffmpeg")
    if not found:
        raise ConfigurationError("ffmpeg was not found on PATH; set $FFMPEG or render.ffmpeg_executable")
    return found


def pretty_command(cmd: Sequence[str]) -> str:
    return shlex.join(str(part) for part in cmd)


def _base_args(ffmpeg: str) -> List[str]:
    # Keep ffmpeg quiet: errors only on stderr, machine-readable progress on stdout
    return [ffmpeg, "-hide_banner", "-loglevel", "error", "-nostats", "-progress", "pipe:1"]


def _format_number(value: object) -> str:
    number = float(value)  # type: ignore[arg-type]
    return str(int(number)) if number.is_integer() else f"{number:g}"


def video_encoding_flags(config: RenderJobConfig) -> List[str]:
    info = codec_info(config.codec)
    flags = ["-c:v", info.encoder]
    if info.crf_range is not None:
        flags += ["-crf", _format_number(config.crf)]
    if config.codec in ("vp8", "vp9"):
        # libvpx only honours -crf as a constant-quality target with -b:v 0
        flags += ["-b:v", "0"]
    if config.codec == "prores":
        flags += ["-profile:v", PRORES_PROFILES[config.prores_profile or "hq"]]
    if config.codec != "gif":
        flags += ["-pix_fmt", config.pixel_format]
    return flags


def build_pre_encode_command(config: RenderJobConfig, ffmpeg: str, output: Path) -> List[str]:
    """Encode frames piped on stdin into a silent intermediate file."""
    input_codec = "mjpeg" if config.image_format == "jpeg" else "png"
    return (
        _base_args(ffmpeg)
        + [
            "-f",
            "image2pipe",
            "-framerate",
            _format_number(config.fps),
            "-c:v",
            input_codec,
            "-i",
            "-",
        ]
        + video_encoding_flags(config)
        + ["-an", "-y", str(output)]
    )


def build_audio_filter(config: RenderJobConfig, audio_inputs: Sequence[AudioInput], first_input: int) -> str:
    """Delay, scale and mix every audio input into ``[aout]``."""
    filters: List[str] = []
    labels: List[str] = []
    for offset, (_, asset) in enumerate(audio_inputs):
        input_index = first_input + offset
        label = f"[a{offset}]"
        start_ms = int(round((asset.start_frame - config.first_frame) / config.fps * 1000))
        chain = [f"[{input_index}:a]"]
        steps: List[str] = []
        if start_ms > 0:
            steps.append(f"adelay=delays={start_ms}:all=1")
        elif start_ms < 0:
            steps.append(f"atrim=start={-start_ms / 1000:.3f}")
            steps.append("asetpts=PTS-STARTPTS")
        steps.append(f"volume={asset.volume:g}")
        chain.append(",".join(steps))
        chain.append(label)
        filters.append("".join(chain))
        labels.append(label)

    if len(labels) == 1:
        filters.append(f"{labels[0]}anull[aout]")
    else:
        filters.append(f"{''.join(labels)}amix=inputs={len(labels)}:normalize=0[aout]")
    return ";".join(filters)


def build_stitch_command(
    config: RenderJobConfig,
    ffmpeg: str,
    *,
    pre_encoded: Optional[Path],
    audio_inputs: Sequence[AudioInput] = (),
) -> List[str]:
    """Produce the final container from the intermediate or the frame files."""
    cmd = _base_args(ffmpeg)
    if pre_encoded is not None:
        cmd += ["-i", str(pre_encoded)]
    else:
        cmd += [
            "-framerate",
            _format_number(config.fps),
            "-start_number",
            str(config.first_frame),
            "-i",
            str(config.frame_pattern),
        ]

    for path, _ in audio_inputs:
        cmd += ["-i", str(path)]

    if audio_inputs:
        cmd += [
            "-filter_complex",
            build_audio_filter(config, audio_inputs, first_input=1),
            "-map",
            "0:v:0",
            "-map",
            "[aout]",
        ]

    if pre_encoded is not None:
        cmd += ["-c:v", "copy"]
    else:
        cmd += video_encoding_flags(config)
        cmd += ["-frames:v", str(config.frame_count)]

    if audio_inputs:
        audio_codec = "libopus" if config.codec in ("vp8", "vp9") else "aac"
        cmd += ["-c:a", audio_codec, "-t", f"{config.frame_count / config.fps:.6f}"]

    if config.output_path.suffix.lower() in (".mp4", ".mov"):
        cmd += ["-movflags", "+faststart"]
    cmd += ["-y" if config.overwrite else "-n", str(config.output_path)]
    return cmd
