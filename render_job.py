"""Job description and value types shared by every pipeline stage."""
from __future__ import annotations

import numbers
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pipeline_errors import ConfigurationError


@dataclass(frozen=True)
class CodecInfo:
    encoder: str
    extension: str
    crf_range: Optional[Tuple[int, int]]
    default_crf: Optional[int]
    supports_audio: bool = True


CODECS: Dict[str, CodecInfo] = {
    "h264": CodecInfo("libx264", "mp4", (1, 51), 18),
    "h265": CodecInfo("libx265", "mp4", (0, 51), 23),
    "vp8": CodecInfo("libvpx", "webm", (4, 63), 9),
    "vp9": CodecInfo("libvpx-vp9", "webm", (0, 63), 28),
    "prores": CodecInfo("prores_ks", "mov", None, None),
    "gif": CodecInfo("gif", "gif", None, None, supports_audio=False),
}

PRORES_PROFILES = {
    "proxy": "0",
    "light": "1",
    "standard": "2",
    "hq": "3",
    "4444": "4",
    "4444-xq": "5",
}

IMAGE_FORMATS = ("png", "jpeg")
ASSET_TYPES = ("audio", "video", "image")


def codec_info(codec: str) -> CodecInfo:
    try:
        return CODECS[codec]
    except KeyError:
        raise ConfigurationError(
            f"Unknown codec '{codec}'. Supported: {', '.join(sorted(CODECS))}"
        ) from None


def default_crf(codec: str) -> Optional[int]:
    return codec_info(codec).default_crf


def file_extension(codec: str) -> str:
    return codec_info(codec).extension


@dataclass(frozen=True)
class AssetReference:
    """An external resource a rendered frame depends on (e.g. an audio track)."""

    src: str
    asset_type: str = "audio"
    start_frame: int = 0
    volume: float = 1.0
    optional: bool = False

    @property
    def id(self) -> str:
        return f"{self.asset_type}:{self.src}@{self.start_frame}"

    @property
    def name(self) -> str:
        return self.src.rstrip("/").rsplit("/", 1)[-1] or self.src


@dataclass(frozen=True)
class Frame:
    """One produced frame: either in-memory image bytes or a file on disk."""

    index: int
    data: Optional[bytes] = None
    path: Optional[Path] = None

    def __post_init__(self) -> None:
        if (self.data is None) == (self.path is None):
            raise ValueError("Frame needs exactly one of data or path")

    def read_bytes(self) -> bytes:
        if self.data is not None:
            return self.data
        assert self.path is not None
        return self.path.read_bytes()


@dataclass
class RenderedFrame:
    """What the rendering engine hands back for one frame."""

    data: Optional[bytes] = None
    assets: List[AssetReference] = field(default_factory=list)


@dataclass(frozen=True)
class RenderJobConfig:
    """Immutable description of one render job."""

    width: int
    height: int
    fps: float
    total_frames: int
    output_dir: Path
    output_path: Path
    frame_range: Optional[Tuple[int, int]] = None
    codec: str = "h264"
    pixel_format: str = "yuv420p"
    crf: Optional[float] = None
    parallelism: int = 1
    parallel_encoding: bool = False
    image_sequence: bool = False
    image_format: str = "jpeg"
    jpeg_quality: int = 80
    prores_profile: Optional[str] = None
    overwrite: bool = False
    ffmpeg_executable: Optional[str] = None
    download_dir: Optional[Path] = None

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def first_frame(self) -> int:
        return self.frame_range[0] if self.frame_range else 0

    @property
    def last_frame(self) -> int:
        return self.frame_range[1] if self.frame_range else self.total_frames - 1

    @property
    def frame_count(self) -> int:
        return self.last_frame - self.first_frame + 1

    def frames(self) -> List[int]:
        return list(range(self.first_frame, self.last_frame + 1))

    @property
    def produces_video(self) -> bool:
        return not self.image_sequence

    @property
    def frame_digits(self) -> int:
        return max(len(str(max(self.total_frames - 1, 0))), 1)

    @property
    def frame_extension(self) -> str:
        return "jpg" if self.image_format == "jpeg" else "png"

    def frame_filename(self, index: int) -> str:
        return f"element-{index:0{self.frame_digits}d}.{self.frame_extension}"

    def frame_path(self, index: int) -> Path:
        return self.output_dir / self.frame_filename(index)

    @property
    def frame_pattern(self) -> Path:
        """printf-style pattern ffmpeg's image2 demuxer understands."""
        return self.output_dir / f"element-%0{self.frame_digits}d.{self.frame_extension}"

    @property
    def pre_encoded_path(self) -> Path:
        return self.output_dir / f"pre-encode.{file_extension(self.codec)}"

    @property
    def resolved_download_dir(self) -> Path:
        return self.download_dir or (self.output_dir / "downloads")

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> None:
        """Raise ``ConfigurationError`` for anything that would fail mid-pipeline."""
        if self.width <= 0 or self.height <= 0:
            raise ConfigurationError(f"Frame dimensions must be positive, got {self.width}x{self.height}")
        if self.fps <= 0:
            raise ConfigurationError(f"Frame rate must be positive, got {self.fps}")
        if self.total_frames <= 0:
            raise ConfigurationError(f"Total frame count must be positive, got {self.total_frames}")
        if self.frame_range is not None:
            first, last = self.frame_range
            if first < 0 or last >= self.total_frames or first > last:
                raise ConfigurationError(
                    f"Frame range {first}-{last} is outside 0-{self.total_frames - 1}"
                )
        if self.parallelism < 1:
            raise ConfigurationError(f"Parallelism must be at least 1, got {self.parallelism}")
        if self.image_format not in IMAGE_FORMATS:
            raise ConfigurationError(
                f"Image format must be one of {', '.join(IMAGE_FORMATS)}, got '{self.image_format}'"
            )
        if not 0 <= self.jpeg_quality <= 100:
            raise ConfigurationError(f"JPEG quality must be within 0-100, got {self.jpeg_quality}")

        if not self.produces_video:
            return

        info = codec_info(self.codec)
        if not _is_number(self.crf):
            raise ConfigurationError(
                f"A numeric CRF is required to encode {self.codec} video, got {self.crf!r}"
            )
        if info.crf_range is not None:
            low, high = info.crf_range
            if not low <= float(self.crf) <= high:  # type: ignore[arg-type]
                raise ConfigurationError(f"CRF for {self.codec} must be within {low}-{high}, got {self.crf}")
        if self.pixel_format == "yuv420p" and (self.width % 2 or self.height % 2):
            raise ConfigurationError(
                f"yuv420p requires even dimensions, got {self.width}x{self.height}"
            )
        if self.prores_profile is not None:
            if self.codec != "prores":
                raise ConfigurationError("A ProRes profile can only be set for the prores codec")
            if self.prores_profile not in PRORES_PROFILES:
                raise ConfigurationError(f"Unknown ProRes profile '{self.prores_profile}'")
        if self.output_path.exists() and not self.overwrite:
            raise ConfigurationError(
                f"Output {self.output_path} already exists; enable overwrite to replace it"
            )

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], *, base_dir: Path) -> "RenderJobConfig":
        """Build a job from the ``render:`` config section.

        Relative paths resolve against ``base_dir``. A missing ``crf`` falls
        back to the codec default; an explicit ``null`` is kept so validation
        can reject it.
        """
        try:
            codec = str(raw.get("codec", "h264")).lower()
            total_frames = int(raw["total_frames"])
            output_dir = (base_dir / str(raw.get("output_dir", "frames"))).resolve()
            output_path = (base_dir / str(raw.get("output", f"out.{file_extension(codec)}"))).resolve()

            frame_range_raw = raw.get("frame_range")
            frame_range: Optional[Tuple[int, int]] = None
            if frame_range_raw is not None:
                frame_range = parse_frame_range(frame_range_raw, total_frames)

            if "crf" in raw:
                crf = raw["crf"]
            elif codec in CODECS:
                # prores and gif take no -crf; any number satisfies validation
                crf = default_crf(codec)
                if crf is None:
                    crf = CODECS["h264"].default_crf
            else:
                crf = None

            download_dir = raw.get("download_dir")
            return cls(
                width=int(raw.get("width", 1280)),
                height=int(raw.get("height", 720)),
                fps=float(raw.get("fps", 30)),
                total_frames=total_frames,
                frame_range=frame_range,
                codec=codec,
                pixel_format=str(raw.get("pixel_format", "yuv420p")),
                crf=crf,
                parallelism=int(raw.get("parallelism", 1)),
                parallel_encoding=bool(raw.get("parallel_encoding", False)),
                image_sequence=bool(raw.get("image_sequence", False)),
                image_format=str(raw.get("image_format", "jpeg")).lower(),
                jpeg_quality=int(raw.get("jpeg_quality", 80)),
                prores_profile=raw.get("prores_profile"),
                overwrite=bool(raw.get("overwrite", False)),
                ffmpeg_executable=raw.get("ffmpeg_executable"),
                output_dir=output_dir,
                output_path=output_path,
                download_dir=(base_dir / str(download_dir)).resolve() if download_dir else None,
            )
        except KeyError as exc:
            raise ConfigurationError(f"Missing render setting: {exc.args[0]}") from exc
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid render setting: {exc}") from exc


def parse_frame_range(value: Any, total_frames: int) -> Tuple[int, int]:
    """Accept ``7``, ``"0-9"``, ``"10-"`` or a two-item list."""
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid frame range {value!r}")
    if isinstance(value, int):
        return value, value
    if isinstance(value, (list, tuple)) and len(value) == 2:
        return int(value[0]), int(value[1])
    if isinstance(value, str):
        text = value.strip()
        if "-" not in text:
            return int(text), int(text)
        start_text, end_text = text.split("-", 1)
        start = int(start_text) if start_text.strip() else 0
        end = int(end_text) if end_text.strip() else total_frames - 1
        return start, end
    raise ConfigurationError(f"Invalid frame range {value!r}")


def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)
