"""Drive a rendering engine across a frame range with bounded parallelism."""
from __future__ import annotations

import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Protocol

from logging_utils import get_logger
from pipeline_errors import FrameRenderError
from render_job import AssetReference, Frame, RenderedFrame, RenderJobConfig

logger = get_logger(__name__)


class RenderEngineSession(Protocol):
    """What the pipeline needs from a rendering engine.

    ``render_frame`` must be safe to call from several worker threads at once.
    When ``output_path`` is given the engine writes the image there and may
    return no bytes; otherwise it returns the encoded image bytes.
    """

    def render_frame(self, index: int, output_path: Optional[Path]) -> RenderedFrame:
        ...

    def close(self) -> None:
        ...


class FrameProducerCancelled(RuntimeError):
    """Raised inside workers that were told to stop before they started."""


class FrameProducerSession:
    """Request frames from the engine, at most ``parallelism`` at a time.

    Delivery callbacks run on the thread that called ``run``; frames arrive
    in completion order, each index exactly once. Look-ahead is capped at
    twice the parallelism past the lowest undelivered frame, which bounds how
    far ahead of an in-order consumer delivery can get.
    """

    def __init__(
        self,
        session: RenderEngineSession,
        config: RenderJobConfig,
        *,
        on_frame: Callable[[Frame], None],
        on_rendered: Optional[Callable[[int], None]] = None,
        write_to_disk: bool = True,
        poll_interval: float = 0.1,
    ) -> None:
        self.session = session
        self.config = config
        self.on_frame = on_frame
        self.on_rendered = on_rendered
        self.write_to_disk = write_to_disk
        self.poll_interval = poll_interval
        self.lookahead = 2 * config.parallelism

        self._cancel_event = threading.Event()
        self._cancel_lock = threading.Lock()
        self._cancel_reason: Optional[BaseException] = None
        self.delivered = 0

    def cancel(self, reason: BaseException) -> None:
        """Stop producing; ``run`` raises ``reason`` at its next wake-up."""
        with self._cancel_lock:
            if self._cancel_reason is None:
                self._cancel_reason = reason
        self._cancel_event.set()

    def run(self) -> List[AssetReference]:
        indices: Deque[int] = deque(self.config.frames())
        in_flight: Dict[Future, int] = {}
        assets_by_frame: Dict[int, List[AssetReference]] = {}
        parallelism = self.config.parallelism

        logger.info(
            "Rendering frames %d-%d (%d frames, parallelism %d)",
            self.config.first_frame,
            self.config.last_frame,
            self.config.frame_count,
            parallelism,
        )

        executor = ThreadPoolExecutor(max_workers=parallelism, thread_name_prefix="frame-render")
        try:
            while indices or in_flight:
                self._raise_if_cancelled()

                while indices and len(in_flight) < parallelism:
                    lowest = min(in_flight.values()) if in_flight else indices[0]
                    if indices[0] - lowest >= self.lookahead:
                        break
                    index = indices.popleft()
                    in_flight[executor.submit(self._render_one, index)] = index

                done, _ = wait(list(in_flight), timeout=self.poll_interval, return_when=FIRST_COMPLETED)
                for future in sorted(done, key=lambda f: in_flight[f]):
                    index = in_flight.pop(future)
                    frame, assets = future.result()
                    assets_by_frame[index] = assets
                    self.on_frame(frame)
                    self.delivered += 1
                    if self.on_rendered is not None:
                        self.on_rendered(self.delivered)
                    self._raise_if_cancelled()
        except BaseException:
            self._cancel_event.set()
            for future in in_flight:
                future.cancel()
            raise
        finally:
            # In-flight engine calls finish before the caller may close the session
            executor.shutdown(wait=True, cancel_futures=True)

        logger.info("Rendered %d frames", self.delivered)
        return _collect_assets(assets_by_frame)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _raise_if_cancelled(self) -> None:
        if not self._cancel_event.is_set():
            return
        with self._cancel_lock:
            reason = self._cancel_reason
        if reason is not None:
            raise reason

    def _render_one(self, index: int) -> tuple[Frame, List[AssetReference]]:
        if self._cancel_event.is_set():
            raise FrameProducerCancelled(f"frame {index} skipped")

        output_path = self.config.frame_path(index) if self.write_to_disk else None
        try:
            rendered = self.session.render_frame(index, output_path)
        except FrameRenderError:
            raise
        except Exception as exc:
            logger.error("Frame %d failed: %s", index, exc)
            raise FrameRenderError(index, exc) from exc

        if output_path is not None:
            if not output_path.exists():
                raise FrameRenderError(index, FileNotFoundError(f"engine did not write {output_path}"))
            frame = Frame(index=index, path=output_path)
        else:
            if not rendered.data:
                raise FrameRenderError(index, ValueError("engine returned no image data"))
            frame = Frame(index=index, data=rendered.data)
        return frame, list(rendered.assets)


def _collect_assets(assets_by_frame: Dict[int, List[AssetReference]]) -> List[AssetReference]:
    seen = set()
    collected: List[AssetReference] = []
    for index in sorted(assets_by_frame):
        for asset in assets_by_frame[index]:
            if asset.id in seen:
                continue
            seen.add(asset.id)
            collected.append(asset)
    return collected


class FrameReorderBuffer:
    """Hold out-of-order frames and release them to ``sink`` by index."""

    def __init__(self, first_index: int, sink: Callable[[Frame], None]) -> None:
        self.next_index = first_index
        self.sink = sink
        self._held: Dict[int, Frame] = {}

    @property
    def pending(self) -> int:
        return len(self._held)

    def push(self, frame: Frame) -> None:
        if frame.index < self.next_index or frame.index in self._held:
            raise ValueError(f"Frame {frame.index} delivered twice")
        self._held[frame.index] = frame
        while self.next_index in self._held:
            ready = self._held.pop(self.next_index)
            self.sink(ready)
            self.next_index += 1

    def assert_drained(self, last_index: int) -> None:
        if self._held or self.next_index != last_index + 1:
            missing = self.next_index
            raise RuntimeError(f"Frame stream incomplete: waiting for frame {missing}")
