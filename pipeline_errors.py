"""Structured failures raised by the render pipeline.

Every error that reaches the caller of the pipeline is a ``PipelineError``
carrying the name of the stage that failed. Teardown problems are never
raised; they are logged by the resource guard.
"""
from __future__ import annotations

from typing import Optional, Sequence

STAGE_CONFIGURATION = "configuration"
STAGE_PRE_ENCODE = "pre-encode"
STAGE_RENDERING = "rendering"
STAGE_DOWNLOADING = "downloading"
STAGE_STITCHING = "stitching"


class PipelineError(RuntimeError):
    """Base failure; ``stage`` names the pipeline stage that failed."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(message)
        self.stage = stage

    def __str__(self) -> str:
        return f"[{self.stage}] {super().__str__()}"


class ConfigurationError(PipelineError):
    def __init__(self, message: str) -> None:
        super().__init__(STAGE_CONFIGURATION, message)


class FrameRenderError(PipelineError):
    def __init__(self, frame_index: int, cause: BaseException) -> None:
        super().__init__(STAGE_RENDERING, f"Frame {frame_index} failed to render: {cause}")
        self.frame_index = frame_index
        self.cause = cause


class EncoderProcessError(PipelineError):
    """An encoder subprocess could not be spawned or exited unsuccessfully."""

    def __init__(
        self,
        stage: str,
        label: str,
        exit_code: Optional[int],
        diagnostics: Sequence[str] = (),
    ) -> None:
        if exit_code is None:
            message = f"{label} could not be started"
        else:
            message = f"{label} failed with exit code {exit_code}"
        tail = [line for line in diagnostics if line.strip()]
        if tail:
            message += ": " + tail[-1].strip()
        super().__init__(stage, message)
        self.label = label
        self.exit_code = exit_code
        self.diagnostics = list(diagnostics)


class EncoderStateError(RuntimeError):
    """Programming error: an encoder handle was used in the wrong state."""


class AssetDownloadError(PipelineError):
    def __init__(self, src: str, cause: BaseException) -> None:
        super().__init__(STAGE_DOWNLOADING, f"Could not resolve asset {src}: {cause}")
        self.src = src
        self.cause = cause
