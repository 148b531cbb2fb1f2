from dataclasses import dataclass
from typing import Mapping, Optional

from lightbox.core.errors import InputInvalid
from lightbox.services.imaging.pipeline import DEFAULT_KERNEL, RESAMPLING_KERNELS

FORMATS = ("webp", "png", "jpg", "jpeg", "avif", "heif")
ROTATIONS = (0, 90, 180, 270)
FLIPS = ("horizontal", "vertical")
KERNELS = tuple(RESAMPLING_KERNELS)


class InvalidTransformParams(InputInvalid):
    pass


@dataclass(frozen=True)
class TransformParams:
    format: str = ""
    width: int = 0
    height: int = 0
    quality: int = 0
    rotate: int = 0
    flip: str = ""
    kernel: str = DEFAULT_KERNEL

    def is_original(self) -> bool:
        """True when nothing would change the original bytes."""
        return not self.format and not self.width and not self.height and not self.rotate and not self.flip

    def etag(self, checksum: str) -> str:
        return (
            f"{checksum}-{self.width}x{self.height}-{self.format}-{self.quality}"
            f"-{self.rotate}-{self.flip}-{self.kernel}"
        )

    def query(self) -> str:
        parts = []
        if self.format:
            parts.append(f"format={self.format}")
        if self.width:
            parts.append(f"w={self.width}")
        if self.height:
            parts.append(f"h={self.height}")
        if self.quality:
            parts.append(f"quality={self.quality}")
        if self.rotate:
            parts.append(f"rotate={self.rotate}")
        if self.flip:
            parts.append(f"flip={self.flip}")
        if self.kernel != DEFAULT_KERNEL:
            parts.append(f"kernel={self.kernel}")
        return "&".join(parts)


def _int_param(query: Mapping[str, str], name: str) -> int:
    raw: Optional[str] = query.get(name)
    if raw is None or raw == "":
        return 0
    try:
        value = int(raw)
    except ValueError:
        raise InvalidTransformParams(f"{name} must be an integer") from None
    if value < 0:
        raise InvalidTransformParams(f"{name} must not be negative")
    return value


def _choice(query: Mapping[str, str], name: str, allowed, default: str = "") -> str:
    raw = (query.get(name) or "").strip().lower()
    if not raw:
        return default
    if raw not in allowed:
        raise InvalidTransformParams(f"{name} must be one of: {', '.join(allowed)}")
    return raw


def parse_transform_params(query: Mapping[str, str]) -> TransformParams:
    """Validate transform query parameters; raises ``InvalidTransformParams`` (400)."""
    quality = _int_param(query, "quality")
    if quality > 100:
        raise InvalidTransformParams("quality must be between 0 and 100")
    rotate = _int_param(query, "rotate")
    if rotate not in ROTATIONS:
        raise InvalidTransformParams("rotate must be one of: 0, 90, 180, 270")
    return TransformParams(
        format=_choice(query, "format", FORMATS),
        width=_int_param(query, "w"),
        height=_int_param(query, "h"),
        quality=quality,
        rotate=rotate,
        flip=_choice(query, "flip", FLIPS),
        kernel=_choice(query, "kernel", KERNELS, DEFAULT_KERNEL),
    )
