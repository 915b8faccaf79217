from __future__ import annotations

import io
import sys
from pathlib import Path

import pytest
from PIL import Image

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from frame_producer import FrameProducerSession  # noqa: E402
from render_job import RenderJobConfig  # noqa: E402
from testcard_renderer import SceneSettings, TestCardRenderer  # noqa: E402


def _job(tmp_path: Path, **overrides) -> RenderJobConfig:
    values = dict(
        width=96,
        height=54,
        fps=24,
        total_frames=12,
        output_dir=tmp_path / "frames",
        output_path=tmp_path / "out.mp4",
        crf=23,
        parallelism=3,
    )
    values.update(overrides)
    return RenderJobConfig(**values)


def test_frames_returned_as_bytes_have_job_dimensions(tmp_path: Path) -> None:
    renderer = TestCardRenderer(_job(tmp_path, image_format="png"))
    rendered = renderer.render_frame(3, None)

    assert rendered.data is not None
    image = Image.open(io.BytesIO(rendered.data))
    assert image.format == "PNG"
    assert image.size == (96, 54)


def test_frames_written_to_disk_as_jpeg(tmp_path: Path) -> None:
    job = _job(tmp_path)
    renderer = TestCardRenderer(job)
    target = job.frame_path(0)
    rendered = renderer.render_frame(0, target)

    assert rendered.data is None
    with Image.open(target) as image:
        assert image.format == "JPEG"


def test_marker_moves_between_frames(tmp_path: Path) -> None:
    renderer = TestCardRenderer(_job(tmp_path, image_format="png"))
    first = renderer.render_frame(0, None).data
    last = renderer.render_frame(11, None).data
    assert first != last


def test_audio_assets_reported_on_start_frame(tmp_path: Path) -> None:
    scene = SceneSettings.from_dict(
        {
            "audio": [
                "intro.mp3",
                {"src": "https://example.com/bed.mp3", "start_frame": 4, "volume": 0.5, "optional": True},
            ]
        }
    )
    renderer = TestCardRenderer(_job(tmp_path), scene)

    assert [a.src for a in renderer.render_frame(0, None).assets] == ["intro.mp3"]
    assert renderer.render_frame(1, None).assets == []
    bed = renderer.render_frame(4, None).assets[0]
    assert bed.volume == 0.5 and bed.optional and bed.start_frame == 4


def test_scene_colours_are_parsed() -> None:
    scene = SceneSettings.from_dict({"colors": {"top": "#000", "accent": "ff0000"}, "title": "Demo"})
    assert scene.top_color == (0, 0, 0)
    assert scene.accent_color == (255, 0, 0)
    assert scene.title == "Demo"
    with pytest.raises(ValueError):
        SceneSettings.from_dict({"colors": {"top": "#12345"}})


def test_closed_renderer_refuses_frames(tmp_path: Path) -> None:
    renderer = TestCardRenderer(_job(tmp_path))
    renderer.close()
    renderer.close()
    with pytest.raises(RuntimeError):
        renderer.render_frame(0, None)


def test_renderer_drives_the_frame_producer(tmp_path: Path) -> None:
    job = _job(tmp_path)
    renderer = TestCardRenderer(job)
    indices = []
    FrameProducerSession(renderer, job, on_frame=lambda frame: indices.append(frame.index)).run()

    assert sorted(indices) == list(range(12))
    assert renderer.rendered == 12
    assert len(list(job.output_dir.glob("element-*.jpg"))) == 12
