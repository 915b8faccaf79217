from __future__ import annotations

from typing import Callable, Optional


class ProgressParser:
    """Parse `-progress pipe:1` key=value pairs and report the frame counter.

    ffmpeg repeats ``frame=N`` once per progress block; the callback only
    fires when the counter actually advances.
    """

    def __init__(self, on_frame: Callable[[int], None]) -> None:
        self.on_frame = on_frame
        self.last_frame: Optional[int] = None
        self.finished = False

    def feed_line(self, line: str) -> None:
        line = line.strip()
        if not line or "=" not in line:
            return
        key, value = line.split("=", 1)
        if key == "frame":
            try:
                frame = int(value.strip())
            except ValueError:
                return
            if self.last_frame is None or frame > self.last_frame:
                self.last_frame = frame
                self.on_frame(frame)
        elif key == "progress" and value.strip() == "end":
            self.finished = True
