"""Command line entry for the frame render pipeline."""
from __future__ import annotations

import argparse
import dataclasses
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from config_loader import AppConfig, load_config
from logging_utils import configure_logging, get_logger
from pipeline_errors import ConfigurationError, PipelineError
from progress_display import ConsoleProgress
from render_job import RenderJobConfig, parse_frame_range
from render_pipeline import render_video
from testcard_renderer import SceneSettings, TestCardRenderer

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Render test-card frames into a video")
    parser.add_argument(
        "--config",
        help="Path to configuration file (default: $RENDER_CONFIG or config.yaml)",
    )
    parser.add_argument("--output", help="Override the final output file")
    parser.add_argument(
        "--frames",
        help="Frame range to render, e.g. 0-99, 50- or 12 (default: all frames)",
    )
    parser.add_argument("--parallelism", type=int, help="Frames rendered concurrently")
    parser.add_argument("--codec", help="Output codec (h264, h265, vp8, vp9, prores, gif)")
    parser.add_argument("--crf", type=float, help="Constant rate factor for the encoder")
    parser.add_argument(
        "--parallel-encoding",
        dest="parallel_encoding",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Encode frames while they are being rendered",
    )
    parser.add_argument(
        "--sequence",
        action="store_true",
        help="Only write the image sequence; skip encoding",
    )
    parser.add_argument("--overwrite", action="store_true", help="Replace an existing output file")
    parser.add_argument("--quiet", action="store_true", help="Do not draw progress bars")
    parser.add_argument(
        "--print-result",
        action="store_true",
        help="Print the final progress snapshot as JSON",
    )
    return parser


def apply_overrides(job: RenderJobConfig, args: argparse.Namespace) -> RenderJobConfig:
    overrides: Dict[str, Any] = {}
    if args.output:
        overrides["output_path"] = Path(args.output).expanduser().resolve()
    if args.frames:
        overrides["frame_range"] = parse_frame_range(args.frames, job.total_frames)
    if args.parallelism is not None:
        overrides["parallelism"] = args.parallelism
    if args.codec:
        overrides["codec"] = args.codec.lower()
    if args.crf is not None:
        overrides["crf"] = args.crf
    if args.parallel_encoding is not None:
        overrides["parallel_encoding"] = args.parallel_encoding
    if args.sequence:
        overrides["image_sequence"] = True
    if args.overwrite:
        overrides["overwrite"] = True
    return dataclasses.replace(job, **overrides) if overrides else job


def build_job(config: AppConfig, args: argparse.Namespace) -> RenderJobConfig:
    job = RenderJobConfig.from_dict(config.render_settings(codec=args.codec), base_dir=config.project_root)
    return apply_overrides(job, args)


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config, project_root=Path.cwd())
    except (FileNotFoundError, ConfigurationError) as exc:
        parser.error(str(exc))

    configure_logging(config.log_level, config.log_file, console=args.quiet)
    logger.debug("Loaded config: %s", config.describe())

    try:
        job = build_job(config, args)
        scene = SceneSettings.from_dict(config.scene_section)
    except (ConfigurationError, ValueError, KeyError) as exc:
        parser.error(str(exc))

    display = None if args.quiet else ConsoleProgress(
        parallelism=job.parallelism,
        show_stitching=job.produces_video,
    )
    session = TestCardRenderer(job, scene)
    try:
        result = render_video(job, session, on_progress=display)
    except PipelineError as exc:
        if display is not None:
            display.finish()
        logger.error("Render failed in %s stage: %s", exc.stage, exc)
        print(f"Render failed: {exc}", file=sys.stderr)
        return 1
    if display is not None:
        display.finish()

    if result.output_path is not None:
        print(f"Rendered {result.output_path}")
    else:
        print(f"Wrote image sequence to {result.frames_dir}")
    if args.print_result:
        print(json.dumps(result.snapshot.to_dict(), ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
