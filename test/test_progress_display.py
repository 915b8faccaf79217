from __future__ import annotations

import io
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from progress_aggregator import AssetDownloadProgress, ProgressSnapshot  # noqa: E402
from progress_display import (  # noqa: E402
    ConsoleProgress,
    format_duration,
    make_progress_bar,
    stitching_line,
)


def test_format_duration() -> None:
    assert format_duration(None) == ""
    assert format_duration(0.25) == "250ms"
    assert format_duration(4.0) == "4.0s"
    assert format_duration(75) == "01:15"
    assert format_duration(3725) == "01:02:05"


def test_progress_bar_is_clamped() -> None:
    assert make_progress_bar(0.5, width=4) == "[==  ]"
    assert make_progress_bar(2.0, width=4) == "[====]"
    assert make_progress_bar(-1.0, width=4) == "[    ]"


def test_stitching_line_follows_stage() -> None:
    encoding = ProgressSnapshot(total_frames=10, encoded_frames=4)
    assert "Encoding video 4/10" in stitching_line(encoding, step=2, steps=2)

    muxed = ProgressSnapshot(total_frames=10, encoded_frames=10, stitch_stage="muxing", encoded_done_in=2.0)
    assert stitching_line(muxed, step=2, steps=2).endswith("Muxed audio 2.0s")


def test_console_lists_downloads_between_stages() -> None:
    snapshot = ProgressSnapshot(
        total_frames=10,
        rendered_frames=10,
        rendered_done_in=1.5,
        downloads=(AssetDownloadProgress(id="audio:a@0", name="a.mp3", progress=0.5, done=False),),
    )
    display = ConsoleProgress(parallelism=4, stream=io.StringIO())
    lines = display.lines(snapshot)

    assert lines[0].startswith("(1/2)")
    assert "Rendered frames (4x) 1.5s" in lines[0]
    assert lines[1].endswith("Downloading a.mp3")
    assert lines[2].startswith("(2/2)")


def test_console_redraws_in_place() -> None:
    stream = io.StringIO()
    display = ConsoleProgress(parallelism=1, show_stitching=False, stream=stream, min_interval=0.0)
    display(ProgressSnapshot(total_frames=4, rendered_frames=1))
    display(ProgressSnapshot(total_frames=4, rendered_frames=4, rendered_done_in=0.5))
    display.finish()

    output = stream.getvalue()
    assert "Rendering frames (1x) 1/4" in output
    assert "Rendered frames (1x) 500ms" in output
    assert output.endswith("\n")
