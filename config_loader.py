"""YAML configuration for render runs.

The file has four sections: ``output`` (where finished videos and scratch
files go), ``logging``, ``render`` (one ``RenderJobConfig``) and ``scene``
(settings for the test-card engine). Relative paths resolve against the
project root, which defaults to the directory holding the config file.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from pipeline_errors import ConfigurationError
from render_job import file_extension

CONFIG_ENV_VAR = "RENDER_CONFIG"


@dataclass
class AppConfig:
    raw: Dict[str, Any]
    config_path: Path
    project_root: Path
    output_dir: Path
    temp_dir: Path
    log_file: Path
    log_level: str = "INFO"

    def section(self, name: str) -> Dict[str, Any]:
        """Return a top-level mapping; a missing section is empty."""
        value = self.raw.get(name)
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ConfigurationError(f"Section '{name}' in {self.config_path} must be a mapping")
        return value

    @property
    def scene_section(self) -> Dict[str, Any]:
        return self.section("scene")

    def render_settings(self, codec: Optional[str] = None) -> Dict[str, Any]:
        """The ``render`` section with scratch and output paths filled in.

        ``codec`` replaces the configured codec, so a defaulted output file
        gets the matching extension.
        """
        settings = dict(self.section("render"))
        if codec:
            settings["codec"] = codec.lower()
        settings.setdefault("output_dir", str(self.temp_dir / "frames"))
        settings.setdefault("download_dir", str(self.temp_dir / "downloads"))
        if "output" not in settings:
            extension = file_extension(str(settings.get("codec", "h264")).lower())
            settings["output"] = str(self.output_dir / f"out.{extension}")
        return settings

    def describe(self) -> str:
        return json.dumps(
            {
                "config": str(self.config_path),
                "project_root": str(self.project_root),
                "output_dir": str(self.output_dir),
                "temp_dir": str(self.temp_dir),
                "log_file": str(self.log_file),
                "log_level": self.log_level,
            },
            ensure_ascii=False,
            indent=2,
        )


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config root must be a mapping: {path}")
    return data


def _under(root: Path, value: Any, default: str) -> Path:
    return (root / str(value or default)).expanduser().resolve()


def _log_level(raw: Dict[str, Any]) -> str:
    level = str(raw.get("level") or "INFO").upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ConfigurationError(f"Unknown logging level '{level}'")
    return level


def load_config(
    path: Optional[Union[str, Path]] = None,
    project_root: Optional[Path] = None,
) -> AppConfig:
    """Read ``path`` (or ``$RENDER_CONFIG``) and resolve its directories."""
    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR, "config.yaml")
    config_path = Path(path).expanduser().resolve()
    if not config_path.is_file():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    raw = _read_yaml(config_path)
    root = project_root.resolve() if project_root is not None else config_path.parent
    config = AppConfig(
        raw=raw,
        config_path=config_path,
        project_root=root,
        output_dir=root,
        temp_dir=root,
        log_file=root,
    )

    output = config.section("output")
    logging_section = config.section("logging")
    config.output_dir = _under(root, output.get("directory"), "output")
    config.temp_dir = _under(root, output.get("temp_directory"), "temp")
    config.log_file = _under(root, logging_section.get("file"), "logs/render.log")
    config.log_level = _log_level(logging_section)
    return config
