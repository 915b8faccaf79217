"""High-level orchestration: render frames, encode them, stitch the final file."""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Union

from asset_downloader import AssetDownloader
from encoder.process import EncoderProcessHandle
from encoder.stitcher import FfmpegEncoderFactory, select_audio_inputs
from frame_producer import FrameProducerSession, FrameReorderBuffer, RenderEngineSession
from logging_utils import get_logger
from pipeline_errors import (
    STAGE_CONFIGURATION,
    STAGE_DOWNLOADING,
    STAGE_PRE_ENCODE,
    STAGE_RENDERING,
    STAGE_STITCHING,
    EncoderProcessError,
    PipelineError,
)
from progress_aggregator import (
    STAGE_ENCODING,
    STAGE_MUXING,
    EncodingFinished,
    FramesEncoded,
    FramesRendered,
    PreEncodingFinished,
    ProgressAggregator,
    ProgressListener,
    ProgressSnapshot,
    RenderingFinished,
)
from render_job import AssetReference, Frame, RenderJobConfig
from resource_guard import GuardedResource, ResourceLifecycleGuard

logger = get_logger(__name__)


@dataclass(frozen=True)
class NoEncoder:
    """Frames stay on disk for the final stitch."""

    def deliver(self, frame: Frame) -> None:
        return None


@dataclass
class StreamingEncoder:
    """Frames are fed live, in index order, into a pre-encoder."""

    handle: EncoderProcessHandle
    buffer: FrameReorderBuffer
    started_at: float

    def deliver(self, frame: Frame) -> None:
        self.buffer.push(frame)


EncoderTopology = Union[NoEncoder, StreamingEncoder]


@dataclass
class RenderResult:
    output_path: Optional[Path]
    frames_dir: Path
    snapshot: ProgressSnapshot
    image_sequence: bool
    assets: List[AssetReference] = field(default_factory=list)


class _EncoderExited(Exception):
    """Raised into the frame loop when the streaming encoder dies."""

    def __init__(self, exit_code: int) -> None:
        super().__init__(f"pre-encoder exited with code {exit_code}")
        self.exit_code = exit_code


class RenderPipeline:
    """Sequence rendering, optional streamed pre-encoding and the final stitch.

    The engine session is borrowed: the caller opened it, the pipeline closes
    it exactly once on every exit path. Everything the pipeline spawns is
    owned by a ``ResourceLifecycleGuard`` scoped to ``run``.
    """

    def __init__(
        self,
        config: RenderJobConfig,
        session: RenderEngineSession,
        *,
        on_progress: Optional[ProgressListener] = None,
        encoder_factory: Optional[FfmpegEncoderFactory] = None,
        downloader: Optional[AssetDownloader] = None,
    ) -> None:
        self.config = config
        self.session = session
        self.on_progress = on_progress
        self.encoder_factory = encoder_factory or FfmpegEncoderFactory(config.ffmpeg_executable)
        self.downloader = downloader or AssetDownloader(config.resolved_download_dir)
        self.aggregator = ProgressAggregator(config.frame_count, on_progress)
        self.stage = STAGE_CONFIGURATION
        self._producer: Optional[FrameProducerSession] = None

    def run(self) -> RenderResult:
        with ResourceLifecycleGuard() as guard:
            session_resource = guard.register("render session", self.session.close)
            try:
                return self._run(guard, session_resource)
            except PipelineError as exc:
                logger.error("Render pipeline failed: %s", exc)
                raise
            except Exception as exc:
                logger.exception("Render pipeline failed during %s", self.stage)
                raise PipelineError(self.stage, f"{type(exc).__name__}: {exc}") from exc

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _run(self, guard: ResourceLifecycleGuard, session_resource: GuardedResource) -> RenderResult:
        config = self.config
        config.validate()
        if config.produces_video:
            self.encoder_factory.check_available()
        elif config.parallel_encoding:
            logger.info("Image sequence requested; streamed pre-encoding is skipped")
        config.output_dir.mkdir(parents=True, exist_ok=True)

        render_started = time.monotonic()
        topology = self._start_topology(guard)

        self.stage = STAGE_RENDERING
        self.aggregator.emit()
        assets = self._render_frames(topology)
        self.aggregator.publish(RenderingFinished(time.monotonic() - render_started))

        # Independent resources: the engine closes while the encoder drains
        closer = threading.Thread(
            target=session_resource.release,
            name="render-session-close",
            daemon=True,
        )
        closer.start()
        try:
            pre_encoded: Optional[Path] = None
            if isinstance(topology, StreamingEncoder):
                self.stage = STAGE_PRE_ENCODE
                topology.handle.wait()
                self.aggregator.publish(PreEncodingFinished(time.monotonic() - topology.started_at))
                pre_encoded = config.pre_encoded_path

            if not config.produces_video:
                logger.info("Image sequence written to %s", config.output_dir)
                return RenderResult(
                    output_path=None,
                    frames_dir=config.output_dir,
                    snapshot=self.aggregator.snapshot,
                    image_sequence=True,
                    assets=assets,
                )

            output = self._stitch(guard, assets, pre_encoded)
        finally:
            closer.join()

        logger.info("Video rendered: %s", output)
        return RenderResult(
            output_path=output,
            frames_dir=config.output_dir,
            snapshot=self.aggregator.snapshot,
            image_sequence=False,
            assets=assets,
        )

    def _start_topology(self, guard: ResourceLifecycleGuard) -> EncoderTopology:
        config = self.config
        if not (config.parallel_encoding and config.produces_video):
            return NoEncoder()

        self.stage = STAGE_PRE_ENCODE
        handle = self.encoder_factory.create_pre_encoder(
            config,
            on_progress=lambda frames: self.aggregator.publish(FramesEncoded(frames, STAGE_ENCODING)),
            on_exit=self._on_pre_encoder_exit,
        )
        guard.register("pre-encoder", handle.release)
        handle.start()
        self.aggregator.emit()
        return StreamingEncoder(
            handle=handle,
            buffer=FrameReorderBuffer(config.first_frame, handle.feed),
            started_at=time.monotonic(),
        )

    def _render_frames(self, topology: EncoderTopology) -> List[AssetReference]:
        producer = FrameProducerSession(
            self.session,
            self.config,
            on_frame=topology.deliver,
            on_rendered=lambda count: self.aggregator.publish(FramesRendered(count)),
            write_to_disk=isinstance(topology, NoEncoder),
        )
        self._producer = producer
        try:
            assets = producer.run()
        except _EncoderExited:
            assert isinstance(topology, StreamingEncoder)
            raise self._pre_encoder_failure(topology.handle) from None
        finally:
            self._producer = None

        if isinstance(topology, StreamingEncoder):
            topology.buffer.assert_drained(self.config.last_frame)
        return assets

    def _stitch(
        self,
        guard: ResourceLifecycleGuard,
        assets: List[AssetReference],
        pre_encoded: Optional[Path],
    ) -> Path:
        config = self.config

        self.stage = STAGE_DOWNLOADING
        resolved = self.downloader.resolve_all(assets, on_progress=self.aggregator.publish)
        audio_inputs = select_audio_inputs(config, assets, resolved)

        self.stage = STAGE_STITCHING
        config.output_path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.encoder_factory.create_stitcher(
            config,
            pre_encoded=pre_encoded,
            audio_inputs=audio_inputs,
            on_progress=lambda frames: self.aggregator.publish(FramesEncoded(frames, STAGE_MUXING)),
        )
        guard.register("stitcher", handle.release)

        stitch_started = time.monotonic()
        logger.info(
            "Stitching %s from %s with %d audio input(s)",
            config.output_path,
            "pre-encoded video" if pre_encoded else "frame files",
            len(audio_inputs),
        )
        handle.start()
        handle.wait()
        if not config.output_path.exists():
            raise PipelineError(STAGE_STITCHING, f"Encoder finished but {config.output_path} was not written")
        self.aggregator.publish(EncodingFinished(time.monotonic() - stitch_started))
        return config.output_path

    # ------------------------------------------------------------------
    # Encoder failure plumbing
    # ------------------------------------------------------------------

    def _on_pre_encoder_exit(self, exit_code: int) -> None:
        producer = self._producer
        if producer is not None:
            producer.cancel(_EncoderExited(exit_code))

    @staticmethod
    def _pre_encoder_failure(handle: EncoderProcessHandle) -> EncoderProcessError:
        try:
            code = handle.wait()
        except EncoderProcessError as failure:
            return failure
        return EncoderProcessError(
            STAGE_PRE_ENCODE,
            handle.label,
            code,
            handle.diagnostics + ["exited before all frames were fed"],
        )


def render_video(
    config: RenderJobConfig,
    session: RenderEngineSession,
    *,
    on_progress: Optional[Callable[[ProgressSnapshot], None]] = None,
    encoder_factory: Optional[FfmpegEncoderFactory] = None,
    downloader: Optional[AssetDownloader] = None,
) -> RenderResult:
    """Render ``config`` with ``session`` and return where the output landed."""
    pipeline = RenderPipeline(
        config,
        session,
        on_progress=on_progress,
        encoder_factory=encoder_factory,
        downloader=downloader,
    )
    return pipeline.run()
