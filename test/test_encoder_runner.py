from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from encoder import runner  # noqa: E402
from encoder.runner import (  # noqa: E402
    build_audio_filter,
    build_pre_encode_command,
    build_stitch_command,
    find_ffmpeg,
)
from encoder.stitcher import select_audio_inputs  # noqa: E402
from pipeline_errors import ConfigurationError  # noqa: E402
from render_job import AssetReference, RenderJobConfig  # noqa: E402


def _job(tmp_path: Path, **overrides) -> RenderJobConfig:
    values = dict(
        width=64,
        height=36,
        fps=25,
        total_frames=100,
        output_dir=tmp_path / "frames",
        output_path=tmp_path / "out.mp4",
        crf=23,
        image_format="png",
    )
    values.update(overrides)
    return RenderJobConfig(**values)


def _value_after(cmd, flag):
    return cmd[cmd.index(flag) + 1]


def test_pre_encode_reads_images_from_stdin(tmp_path: Path) -> None:
    job = _job(tmp_path)
    cmd = build_pre_encode_command(job, "ffmpeg", job.pre_encoded_path)
    assert _value_after(cmd, "-f") == "image2pipe"
    assert _value_after(cmd, "-i") == "-"
    assert _value_after(cmd, "-crf") == "23"
    assert _value_after(cmd, "-pix_fmt") == "yuv420p"
    assert "-an" in cmd
    assert cmd[-1] == str(job.pre_encoded_path)


def test_pre_encode_uses_mjpeg_decoder_for_jpeg_frames(tmp_path: Path) -> None:
    cmd = build_pre_encode_command(_job(tmp_path, image_format="jpeg"), "ffmpeg", tmp_path / "x.mp4")
    assert cmd[cmd.index("-i") - 1] == "mjpeg"


def test_stitch_from_frame_files(tmp_path: Path) -> None:
    job = _job(tmp_path, frame_range=(10, 19))
    cmd = build_stitch_command(job, "ffmpeg", pre_encoded=None)
    assert _value_after(cmd, "-start_number") == "10"
    assert _value_after(cmd, "-i") == str(job.frame_pattern)
    assert _value_after(cmd, "-frames:v") == "10"
    assert _value_after(cmd, "-c:v") == "libx264"
    assert cmd[-2:] == ["-n", str(job.output_path)]


def test_stitch_from_pre_encoded_copies_video(tmp_path: Path) -> None:
    job = _job(tmp_path, overwrite=True)
    audio = AssetReference(src="music.mp3", start_frame=50, volume=0.5)
    cmd = build_stitch_command(
        job,
        "ffmpeg",
        pre_encoded=job.pre_encoded_path,
        audio_inputs=[(tmp_path / "music.mp3", audio)],
    )
    assert _value_after(cmd, "-c:v") == "copy"
    assert "-crf" not in cmd
    assert _value_after(cmd, "-c:a") == "aac"
    assert "[aout]" in cmd
    assert cmd[-2] == "-y"


def test_audio_filter_delays_and_mixes(tmp_path: Path) -> None:
    job = _job(tmp_path, frame_range=(25, 99))
    inputs = [
        (tmp_path / "a.mp3", AssetReference(src="a.mp3", start_frame=50, volume=0.5)),
        (tmp_path / "b.mp3", AssetReference(src="b.mp3", start_frame=0)),
    ]
    graph = build_audio_filter(job, inputs, first_input=1)
    assert "[1:a]adelay=delays=1000:all=1,volume=0.5[a0]" in graph
    assert "[2:a]atrim=start=1.000,asetpts=PTS-STARTPTS,volume=1[a1]" in graph
    assert graph.endswith("[a0][a1]amix=inputs=2:normalize=0[aout]")


def test_prores_and_gif_skip_crf(tmp_path: Path) -> None:
    prores = build_stitch_command(
        _job(tmp_path, codec="prores", prores_profile="4444", output_path=tmp_path / "o.mov"),
        "ffmpeg",
        pre_encoded=None,
    )
    assert "-crf" not in prores
    assert _value_after(prores, "-profile:v") == "4"

    gif = build_stitch_command(_job(tmp_path, codec="gif"), "ffmpeg", pre_encoded=None)
    assert "-crf" not in gif
    assert "-pix_fmt" not in gif


def test_select_audio_inputs_keeps_resolved_audio_only(tmp_path: Path) -> None:
    job = _job(tmp_path, frame_range=(0, 49))
    music = AssetReference(src="music.mp3")
    late = AssetReference(src="late.mp3", start_frame=80)
    clip = AssetReference(src="clip.mp4", asset_type="video")
    missing = AssetReference(src="missing.mp3", optional=True)
    resolved = {
        music.id: tmp_path / "music.mp3",
        late.id: tmp_path / "late.mp3",
        clip.id: tmp_path / "clip.mp4",
    }
    inputs = select_audio_inputs(job, [music, late, clip, missing], resolved)
    assert inputs == [(tmp_path / "music.mp3", music)]

    assert select_audio_inputs(_job(tmp_path, codec="gif"), [music], resolved) == []


def test_find_ffmpeg_prefers_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    fake = tmp_path / "ffmpeg"
    fake.write_text("#!/bin/sh\n", encoding="utf-8")
    monkeypatch.setenv("FFMPEG", str(fake))
    assert find_ffmpeg() == str(fake)
    assert find_ffmpeg(str(fake)) == str(fake)


def test_find_ffmpeg_missing_is_a_configuration_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("FFMPEG", raising=False)
    monkeypatch.setattr(runner.shutil, "which", lambda name: None)
    with pytest.raises(ConfigurationError):
        find_ffmpeg()
    with pytest.raises(ConfigurationError):
        find_ffmpeg("/nowhere/ffmpeg")
