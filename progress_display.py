"""Console rendering of pipeline progress snapshots."""
from __future__ import annotations

import sys
import time
from dataclasses import dataclass, field
from typing import List, Optional, TextIO

from progress_aggregator import STAGE_MUXING, AssetDownloadProgress, ProgressSnapshot


def format_duration(seconds: Optional[float]) -> str:
    if seconds is None:
        return ""
    if seconds < 1:
        return f"{int(round(seconds * 1000))}ms"
    seconds_int = int(round(seconds))
    h, rem = divmod(seconds_int, 3600)
    m, s = divmod(rem, 60)
    if h > 0:
        return f"{h:02d}:{m:02d}:{s:02d}"
    if m > 0:
        return f"{m:02d}:{s:02d}"
    return f"{seconds:.1f}s"


def make_progress_bar(fraction: float, width: int = 20) -> str:
    fraction = min(max(fraction, 0.0), 1.0)
    filled = int(fraction * width)
    return "[" + ("=" * filled).ljust(width) + "]"


def rendering_line(snapshot: ProgressSnapshot, *, step: int, steps: int, parallelism: int) -> str:
    total = max(snapshot.total_frames, 1)
    done = snapshot.rendered_done_in is not None
    verb = "Rendered" if done else "Rendering"
    tail = format_duration(snapshot.rendered_done_in) if done else f"{snapshot.rendered_frames}/{total}"
    return " ".join(
        [
            f"({step}/{steps})",
            make_progress_bar(snapshot.rendered_frames / total),
            f"{verb} frames ({parallelism}x)",
            tail,
        ]
    )


def download_line(download: AssetDownloadProgress) -> str:
    verb = "Downloaded" if download.done else "Downloading"
    return " ".join(["(-/-)", make_progress_bar(download.progress), f"{verb} {download.name}"])


def stitching_line(snapshot: ProgressSnapshot, *, step: int, steps: int) -> str:
    total = max(snapshot.total_frames, 1)
    if snapshot.stitch_stage == STAGE_MUXING:
        done_in = snapshot.encoded_done_in
        label = "Muxed audio" if done_in is not None else "Muxing audio"
    else:
        done_in = snapshot.pre_encoded_done_in
        label = "Encoded video" if done_in is not None else "Encoding video"
    tail = format_duration(done_in) if done_in is not None else f"{snapshot.encoded_frames}/{total}"
    return " ".join([f"({step}/{steps})", make_progress_bar(snapshot.encoded_frames / total), label, tail])


@dataclass
class ConsoleProgress:
    """Redraw a multi-line progress block in place on a terminal."""

    parallelism: int
    show_stitching: bool = True
    stream: TextIO = sys.stderr
    min_interval: float = 0.1
    _last_draw: float = field(default=0.0, init=False)
    _lines_drawn: int = field(default=0, init=False)
    _latest: Optional[ProgressSnapshot] = field(default=None, init=False)

    def __call__(self, snapshot: ProgressSnapshot) -> None:
        self._latest = snapshot
        now = time.monotonic()
        finished = snapshot.encoded_done_in is not None or (
            not self.show_stitching and snapshot.rendered_done_in is not None
        )
        # Rate-limit updates to avoid flicker (10 fps max).
        if not finished and now - self._last_draw < self.min_interval:
            return
        self._last_draw = now
        self._draw(snapshot)

    def lines(self, snapshot: ProgressSnapshot) -> List[str]:
        steps = 2 if self.show_stitching else 1
        lines = [rendering_line(snapshot, step=1, steps=steps, parallelism=self.parallelism)]
        lines.extend(download_line(d) for d in snapshot.downloads)
        if self.show_stitching:
            lines.append(stitching_line(snapshot, step=2, steps=steps))
        return lines

    def finish(self) -> None:
        if self._latest is not None:
            self._draw(self._latest)
        self.stream.write("\n")
        self.stream.flush()

    def _draw(self, snapshot: ProgressSnapshot) -> None:
        lines = self.lines(snapshot)
        if self._lines_drawn > 1:
            self.stream.write(f"\x1b[{self._lines_drawn - 1}F")
        else:
            self.stream.write("\r")
        self.stream.write("\n".join("\x1b[2K" + line for line in lines))
        self.stream.flush()
        self._lines_drawn = len(lines)
