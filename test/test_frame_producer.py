from __future__ import annotations

import sys
import threading
import time
from pathlib import Path
from typing import List, Optional

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from frame_producer import FrameProducerSession, FrameReorderBuffer  # noqa: E402
from pipeline_errors import FrameRenderError  # noqa: E402
from render_job import AssetReference, Frame, RenderedFrame, RenderJobConfig  # noqa: E402


class DummyEngine:
    """Engine whose frames finish out of order and which tracks concurrency."""

    def __init__(self, *, fail_at: Optional[int] = None, delay: float = 0.005) -> None:
        self.fail_at = fail_at
        self.delay = delay
        self.calls: List[int] = []
        self.active = 0
        self.max_active = 0
        self.closed = False
        self._lock = threading.Lock()

    def render_frame(self, index: int, output_path: Optional[Path]) -> RenderedFrame:
        with self._lock:
            self.calls.append(index)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            # Later frames in each group of three finish first
            time.sleep(self.delay * (3 - index % 3))
            if index == self.fail_at:
                raise ValueError("scene crashed")
            assets = [AssetReference(src="music.mp3")] if index in (2, 4) else []
            if output_path is not None:
                output_path.parent.mkdir(parents=True, exist_ok=True)
                output_path.write_bytes(bytes([index]))
                return RenderedFrame(assets=assets)
            return RenderedFrame(data=bytes([index]), assets=assets)
        finally:
            with self._lock:
                self.active -= 1

    def close(self) -> None:
        self.closed = True


def _job(tmp_path: Path, *, total: int = 10, parallelism: int = 3, **overrides) -> RenderJobConfig:
    return RenderJobConfig(
        width=64,
        height=36,
        fps=30,
        total_frames=total,
        parallelism=parallelism,
        output_dir=tmp_path / "frames",
        output_path=tmp_path / "out.mp4",
        crf=23,
        **overrides,
    )


@pytest.mark.parametrize("parallelism", [1, 2, 3, 7, 10])
def test_every_frame_delivered_exactly_once(tmp_path: Path, parallelism: int) -> None:
    engine = DummyEngine(delay=0.001)
    delivered: List[int] = []
    counts: List[int] = []
    producer = FrameProducerSession(
        engine,
        _job(tmp_path, parallelism=parallelism),
        on_frame=lambda frame: delivered.append(frame.index),
        on_rendered=counts.append,
        write_to_disk=False,
    )
    producer.run()

    assert sorted(delivered) == list(range(10))
    assert len(delivered) == len(set(delivered))
    assert counts == list(range(1, 11))
    assert engine.max_active <= parallelism


def test_frames_written_to_disk_when_requested(tmp_path: Path) -> None:
    engine = DummyEngine()
    job = _job(tmp_path, total=5)
    frames: List[Frame] = []
    FrameProducerSession(engine, job, on_frame=frames.append, write_to_disk=True).run()

    assert all(frame.path is not None and frame.data is None for frame in frames)
    assert job.frame_path(3).read_bytes() == bytes([3])


def test_assets_are_deduplicated_in_frame_order(tmp_path: Path) -> None:
    producer = FrameProducerSession(
        DummyEngine(),
        _job(tmp_path, total=6),
        on_frame=lambda frame: None,
        write_to_disk=False,
    )
    assets = producer.run()
    assert assets == [AssetReference(src="music.mp3")]


def test_only_the_requested_range_is_rendered(tmp_path: Path) -> None:
    engine = DummyEngine()
    job = _job(tmp_path, total=20, frame_range=(4, 9))
    FrameProducerSession(engine, job, on_frame=lambda frame: None, write_to_disk=False).run()
    assert sorted(engine.calls) == [4, 5, 6, 7, 8, 9]


def test_render_failure_identifies_frame_and_stops_submitting(tmp_path: Path) -> None:
    engine = DummyEngine(fail_at=5)
    delivered: List[int] = []
    producer = FrameProducerSession(
        engine,
        _job(tmp_path, parallelism=2),
        on_frame=lambda frame: delivered.append(frame.index),
        write_to_disk=False,
    )
    with pytest.raises(FrameRenderError) as excinfo:
        producer.run()

    assert excinfo.value.frame_index == 5
    assert excinfo.value.stage == "rendering"
    assert 5 not in delivered
    assert max(engine.calls) < 9
    # No engine call is still running once run() has returned
    assert engine.active == 0


def test_callback_failure_propagates(tmp_path: Path) -> None:
    def sink(frame: Frame) -> None:
        if frame.index == 3:
            raise BrokenPipeError("encoder gone")

    producer = FrameProducerSession(DummyEngine(), _job(tmp_path), on_frame=sink, write_to_disk=False)
    with pytest.raises(BrokenPipeError):
        producer.run()


def test_cancel_from_another_thread(tmp_path: Path) -> None:
    engine = DummyEngine(delay=0.02)
    producer = FrameProducerSession(
        engine,
        _job(tmp_path, total=50, parallelism=2),
        on_frame=lambda frame: None,
        write_to_disk=False,
    )
    timer = threading.Timer(0.1, producer.cancel, args=(RuntimeError("encoder died"),))
    timer.start()
    try:
        with pytest.raises(RuntimeError, match="encoder died"):
            producer.run()
    finally:
        timer.cancel()
    assert len(engine.calls) < 50


def test_lookahead_bounds_distance_from_lowest_pending(tmp_path: Path) -> None:
    release_first = threading.Event()
    calls: List[int] = []

    class StallingEngine(DummyEngine):
        def render_frame(self, index: int, output_path: Optional[Path]) -> RenderedFrame:
            calls.append(index)
            if index == 0:
                release_first.wait(timeout=5)
            return RenderedFrame(data=bytes([index]))

    producer = FrameProducerSession(
        StallingEngine(),
        _job(tmp_path, total=30, parallelism=2),
        on_frame=lambda frame: None,
        write_to_disk=False,
    )
    worker = threading.Thread(target=producer.run)
    worker.start()
    time.sleep(0.3)
    requested_while_stalled = max(calls)
    release_first.set()
    worker.join(timeout=5)

    assert requested_while_stalled < producer.lookahead
    assert sorted(calls) == list(range(30))


def test_reorder_buffer_releases_in_index_order() -> None:
    released: List[int] = []
    buffer = FrameReorderBuffer(3, lambda frame: released.append(frame.index))
    for index in (5, 3, 6, 4, 7):
        buffer.push(Frame(index=index, data=b"x"))
    assert released == [3, 4, 5, 6, 7]
    assert buffer.pending == 0
    buffer.assert_drained(7)


def test_reorder_buffer_rejects_duplicates() -> None:
    buffer = FrameReorderBuffer(0, lambda frame: None)
    buffer.push(Frame(index=0, data=b"x"))
    buffer.push(Frame(index=2, data=b"x"))
    with pytest.raises(ValueError):
        buffer.push(Frame(index=0, data=b"x"))
    with pytest.raises(ValueError):
        buffer.push(Frame(index=2, data=b"x"))
    with pytest.raises(RuntimeError):
        buffer.assert_drained(2)
