"""Reference rendering engine: animated test-card frames drawn with Pillow.

Stands in for a real scene renderer so the pipeline can be exercised end to
end. Each frame shows a gradient background, a marker sweeping across the
frame and the frame counter. Audio tracks configured under ``scene.audio``
are reported as assets on the frame where they start.
"""
from __future__ import annotations

import io
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from PIL import Image, ImageDraw, ImageFont

from logging_utils import get_logger
from render_job import AssetReference, RenderedFrame, RenderJobConfig

logger = get_logger(__name__)


def _hex_to_rgb(value: str) -> Tuple[int, int, int]:
    value = value.strip().lstrip("#")
    if len(value) == 3:
        value = "".join(ch * 2 for ch in value)
    if len(value) != 6:
        raise ValueError(f"Invalid colour: #{value}")
    return int(value[0:2], 16), int(value[2:4], 16), int(value[4:6], 16)


@dataclass
class SceneSettings:
    top_color: Tuple[int, int, int] = (16, 24, 32)
    bottom_color: Tuple[int, int, int] = (48, 72, 96)
    accent_color: Tuple[int, int, int] = (255, 196, 0)
    text_color: Tuple[int, int, int] = (255, 255, 255)
    title: str = ""
    font_path: Optional[str] = None
    font_size: int = 48
    audio: List[AssetReference] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "SceneSettings":
        colors = raw.get("colors", {}) if isinstance(raw.get("colors"), dict) else {}
        audio: List[AssetReference] = []
        for entry in raw.get("audio", []) or []:
            if isinstance(entry, str):
                audio.append(AssetReference(src=entry))
                continue
            audio.append(
                AssetReference(
                    src=str(entry["src"]),
                    asset_type="audio",
                    start_frame=int(entry.get("start_frame", 0)),
                    volume=float(entry.get("volume", 1.0)),
                    optional=bool(entry.get("optional", False)),
                )
            )
        return cls(
            top_color=_hex_to_rgb(colors.get("top", "#101820")),
            bottom_color=_hex_to_rgb(colors.get("bottom", "#304860")),
            accent_color=_hex_to_rgb(colors.get("accent", "#FFC400")),
            text_color=_hex_to_rgb(colors.get("text", "#FFFFFF")),
            title=str(raw.get("title", "")),
            font_path=raw.get("font_path"),
            font_size=int(raw.get("font_size", 48)),
            audio=audio,
        )


class TestCardRenderer:
    """Thread-safe ``RenderEngineSession`` producing synthetic frames."""

    __test__ = False  # not a pytest class

    def __init__(self, config: RenderJobConfig, scene: Optional[SceneSettings] = None) -> None:
        self.config = config
        self.scene = scene or SceneSettings()
        self._closed = False
        self._lock = threading.Lock()
        self._background = self._build_background()
        self._font = self._load_font()
        self.rendered = 0

    # ------------------------------------------------------------------
    # RenderEngineSession
    # ------------------------------------------------------------------

    def render_frame(self, index: int, output_path: Optional[Path]) -> RenderedFrame:
        if self._closed:
            raise RuntimeError("render session is closed")
        image = self._draw(index)

        if output_path is not None:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            self._save(image, output_path)
            data = None
        else:
            buffer = io.BytesIO()
            self._save(image, buffer)
            data = buffer.getvalue()

        with self._lock:
            self.rendered += 1
        assets = [asset for asset in self.scene.audio if asset.start_frame == index]
        return RenderedFrame(data=data, assets=assets)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.debug("Test-card renderer closed after %d frames", self.rendered)

    # ------------------------------------------------------------------
    # Drawing
    # ------------------------------------------------------------------

    def _build_background(self) -> Image.Image:
        height = self.config.height
        width = self.config.width
        top = np.array(self.scene.top_color, dtype=np.float32)
        bottom = np.array(self.scene.bottom_color, dtype=np.float32)
        ramp = np.linspace(0.0, 1.0, height, dtype=np.float32)[:, np.newaxis]
        column = top + (bottom - top) * ramp
        pixels = np.repeat(column[:, np.newaxis, :], width, axis=1)
        return Image.fromarray(pixels.astype(np.uint8))

    def _load_font(self) -> ImageFont.ImageFont:
        if self.scene.font_path:
            try:
                return ImageFont.truetype(self.scene.font_path, self.scene.font_size)
            except OSError:
                logger.warning("Font %s not found; using default font", self.scene.font_path)
        return ImageFont.load_default()

    def _draw(self, index: int) -> Image.Image:
        width, height = self.config.width, self.config.height
        image = self._background.copy()
        draw = ImageDraw.Draw(image)

        span = max(self.config.total_frames - 1, 1)
        travel = index / span
        marker = max(4, min(width, height) // 12)
        x = int((width - marker) * travel)
        y = (height - marker) // 2
        draw.rectangle((x, y, x + marker, y + marker), fill=self.scene.accent_color)

        label = f"{index:0{self.config.frame_digits}d} / {self.config.total_frames - 1}"
        if self.scene.title:
            label = f"{self.scene.title}  {label}"
        draw.text((marker // 2, marker // 2), label, font=self._font, fill=self.scene.text_color)
        return image

    def _save(self, image: Image.Image, target: Any) -> None:
        if self.config.image_format == "jpeg":
            image.save(target, format="JPEG", quality=self.config.jpeg_quality)
        else:
            image.save(target, format="PNG")
