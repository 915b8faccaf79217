from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from logging_utils import get_logger
from pipeline_errors import STAGE_PRE_ENCODE, STAGE_STITCHING
from render_job import AssetReference, RenderJobConfig, codec_info
from .process import EncoderProcessHandle
from .runner import AudioInput, build_pre_encode_command, build_stitch_command, find_ffmpeg

logger = get_logger(__name__)


class FfmpegEncoderFactory:
    """Build (but do not start) encoder handles for one job.

    Handles are returned unstarted so the caller can register them for
    teardown before anything is spawned.
    """

    def __init__(self, ffmpeg_executable: Optional[str] = None) -> None:
        self.ffmpeg_executable = ffmpeg_executable
        self._ffmpeg: Optional[str] = None

    @property
    def ffmpeg(self) -> str:
        if self._ffmpeg is None:
            self._ffmpeg = find_ffmpeg(self.ffmpeg_executable)
        return self._ffmpeg

    def check_available(self) -> None:
        """Resolve the executable now so a missing binary fails before any work."""
        _ = self.ffmpeg

    def create_pre_encoder(
        self,
        config: RenderJobConfig,
        *,
        on_progress: Optional[Callable[[int], None]] = None,
        on_exit: Optional[Callable[[int], None]] = None,
    ) -> EncoderProcessHandle:
        output = config.pre_encoded_path
        output.parent.mkdir(parents=True, exist_ok=True)
        return EncoderProcessHandle(
            build_pre_encode_command(config, self.ffmpeg, output),
            stage=STAGE_PRE_ENCODE,
            label="pre-encoder",
            stream_input=True,
            intermediate_path=output,
            on_progress=on_progress,
            on_exit=on_exit,
        )

    def create_stitcher(
        self,
        config: RenderJobConfig,
        *,
        pre_encoded: Optional[Path],
        audio_inputs: Sequence[AudioInput],
        on_progress: Optional[Callable[[int], None]] = None,
    ) -> EncoderProcessHandle:
        return EncoderProcessHandle(
            build_stitch_command(config, self.ffmpeg, pre_encoded=pre_encoded, audio_inputs=audio_inputs),
            stage=STAGE_STITCHING,
            label="stitcher",
            stream_input=False,
            on_progress=on_progress,
        )


def select_audio_inputs(
    config: RenderJobConfig,
    assets: Sequence[AssetReference],
    resolved: Dict[str, Path],
) -> List[AudioInput]:
    """Pair resolved audio assets with their local files, in discovery order."""
    if not codec_info(config.codec).supports_audio:
        if any(asset.asset_type == "audio" for asset in assets):
            logger.warning("Codec %s carries no audio; skipping audio assets", config.codec)
        return []

    inputs: List[AudioInput] = []
    for asset in assets:
        if asset.asset_type != "audio":
            logger.debug("Asset %s (%s) is not muxed", asset.src, asset.asset_type)
            continue
        if asset.start_frame > config.last_frame:
            logger.debug("Asset %s starts after the rendered range", asset.src)
            continue
        path = resolved.get(asset.id)
        if path is None:
            continue
        inputs.append((path, asset))
    return inputs
