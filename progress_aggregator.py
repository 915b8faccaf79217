"""Merge progress from rendering, encoding and downloads into one snapshot.

Each stage publishes small event objects; ``merge`` folds one event into the
current snapshot and ``ProgressAggregator`` republishes the result. Stages
never wait on one another: publishing only takes a short lock.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from typing import Callable, Optional, Tuple, Union

from logging_utils import get_logger

logger = get_logger(__name__)

STAGE_ENCODING = "encoding"
STAGE_MUXING = "muxing"


@dataclass(frozen=True)
class AssetDownloadProgress:
    id: str
    name: str
    progress: float
    done: bool = False


@dataclass(frozen=True)
class ProgressSnapshot:
    total_frames: int
    rendered_frames: int = 0
    encoded_frames: int = 0
    rendered_done_in: Optional[float] = None
    pre_encoded_done_in: Optional[float] = None
    encoded_done_in: Optional[float] = None
    stitch_stage: str = STAGE_ENCODING
    downloads: Tuple[AssetDownloadProgress, ...] = ()

    def to_dict(self) -> dict:
        return {
            "totalFrames": self.total_frames,
            "renderedFrames": self.rendered_frames,
            "encodedFrames": self.encoded_frames,
            "renderedDoneIn": self.rendered_done_in,
            "preEncodedDoneIn": self.pre_encoded_done_in,
            "encodedDoneIn": self.encoded_done_in,
            "stitchStage": self.stitch_stage,
            "downloads": [
                {"id": d.id, "name": d.name, "progress": d.progress, "done": d.done}
                for d in self.downloads
            ],
        }


# ----------------------------------------------------------------------
# Events
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class FramesRendered:
    count: int


@dataclass(frozen=True)
class FramesEncoded:
    count: int
    stage: str = STAGE_ENCODING


@dataclass(frozen=True)
class RenderingFinished:
    elapsed: float


@dataclass(frozen=True)
class PreEncodingFinished:
    elapsed: float


@dataclass(frozen=True)
class EncodingFinished:
    elapsed: float


@dataclass(frozen=True)
class DownloadProgressed:
    download: AssetDownloadProgress


ProgressEvent = Union[
    FramesRendered,
    FramesEncoded,
    RenderingFinished,
    PreEncodingFinished,
    EncodingFinished,
    DownloadProgressed,
]


def merge(snapshot: ProgressSnapshot, event: ProgressEvent) -> ProgressSnapshot:
    """Fold ``event`` into ``snapshot``; no field ever moves backwards."""
    if isinstance(event, FramesRendered):
        return replace(snapshot, rendered_frames=max(snapshot.rendered_frames, event.count))

    if isinstance(event, FramesEncoded):
        stage = snapshot.stitch_stage
        if event.stage == STAGE_MUXING:
            stage = STAGE_MUXING
        return replace(
            snapshot,
            encoded_frames=max(snapshot.encoded_frames, event.count),
            stitch_stage=stage,
        )

    if isinstance(event, RenderingFinished):
        if snapshot.rendered_done_in is not None:
            return snapshot
        return replace(snapshot, rendered_done_in=event.elapsed)

    if isinstance(event, PreEncodingFinished):
        if snapshot.pre_encoded_done_in is not None:
            return snapshot
        return replace(snapshot, pre_encoded_done_in=event.elapsed)

    if isinstance(event, EncodingFinished):
        if snapshot.encoded_done_in is not None:
            return snapshot
        return replace(snapshot, encoded_done_in=event.elapsed)

    if isinstance(event, DownloadProgressed):
        incoming = event.download
        downloads = list(snapshot.downloads)
        for position, existing in enumerate(downloads):
            if existing.id != incoming.id:
                continue
            if existing.done:
                return snapshot
            downloads[position] = replace(
                incoming,
                progress=max(existing.progress, incoming.progress),
            )
            return replace(snapshot, downloads=tuple(downloads))
        downloads.append(incoming)
        return replace(snapshot, downloads=tuple(downloads))

    raise TypeError(f"Unknown progress event: {event!r}")


ProgressListener = Callable[[ProgressSnapshot], None]


class ProgressAggregator:
    """Thread-safe holder of the latest snapshot."""

    def __init__(self, total_frames: int, listener: Optional[ProgressListener] = None) -> None:
        self._snapshot = ProgressSnapshot(total_frames=total_frames)
        self._listener = listener
        self._lock = threading.Lock()

    @property
    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return self._snapshot

    def publish(self, event: ProgressEvent) -> ProgressSnapshot:
        # The listener runs under the lock so consumers observe snapshots in merge order
        with self._lock:
            self._snapshot = merge(self._snapshot, event)
            snapshot = self._snapshot
            if self._listener is not None:
                try:
                    self._listener(snapshot)
                except Exception:
                    logger.exception("Progress listener raised; continuing")
        return snapshot

    def emit(self) -> ProgressSnapshot:
        """Republish the current snapshot unchanged (stage transitions)."""
        with self._lock:
            snapshot = self._snapshot
            if self._listener is not None:
                try:
                    self._listener(snapshot)
                except Exception:
                    logger.exception("Progress listener raised; continuing")
        return snapshot
