"""Decode, orient, colour-normalize, scale and encode images.

These helpers are shared by the job handlers and the transform engine. They
operate on Pillow images; RAW camera files are rendered through rawpy when
Pillow cannot open them.
"""

from __future__ import annotations

import io
import logging
import mimetypes
from dataclasses import dataclass

import rawpy
from PIL import Image as PILImage, ImageCms, ImageOps, UnidentifiedImageError

logger = logging.getLogger(__name__)

RAW_FORMAT = "RAW"

RESAMPLING_KERNELS = {
    "nearest": PILImage.Resampling.NEAREST,
    "linear": PILImage.Resampling.BILINEAR,
    "cubic": PILImage.Resampling.BICUBIC,
    "mitchell": PILImage.Resampling.BICUBIC,
    "lanczos2": PILImage.Resampling.LANCZOS,
    "lanczos3": PILImage.Resampling.LANCZOS,
    "mks2013": PILImage.Resampling.LANCZOS,
    "mks2021": PILImage.Resampling.LANCZOS,
}
DEFAULT_KERNEL = "lanczos3"

ROTATIONS = {
    # Clockwise degrees to Pillow transposes (which rotate counter-clockwise)
    90: PILImage.Transpose.ROTATE_270,
    180: PILImage.Transpose.ROTATE_180,
    270: PILImage.Transpose.ROTATE_90,
}

FLIPS = {
    "horizontal": PILImage.Transpose.FLIP_LEFT_RIGHT,
    "vertical": PILImage.Transpose.FLIP_TOP_BOTTOM,
}


class DecodeError(Exception):
    pass


class EncodeError(Exception):
    pass


@dataclass(frozen=True)
class OutputFormat:
    name: str
    pil_format: str
    media_type: str
    extension: str


OUTPUT_FORMATS = {
    "webp": OutputFormat("webp", "WEBP", "image/webp", "webp"),
    "png": OutputFormat("png", "PNG", "image/png", "png"),
    "jpeg": OutputFormat("jpeg", "JPEG", "image/jpeg", "jpeg"),
    "jpg": OutputFormat("jpeg", "JPEG", "image/jpeg", "jpg"),
    "avif": OutputFormat("avif", "AVIF", "image/avif", "avif"),
    "heif": OutputFormat("heif", "HEIF", "image/heif", "heic"),
    "tiff": OutputFormat("tiff", "TIFF", "image/tiff", "tiff"),
    "gif": OutputFormat("gif", "GIF", "image/gif", "gif"),
}

# File extension -> output format used for passthrough encodes
_EXTENSION_FORMATS = {
    "jpg": "jpeg",
    "jpeg": "jpeg",
    "jpe": "jpeg",
    "png": "png",
    "webp": "webp",
    "avif": "avif",
    "heic": "heif",
    "heif": "heif",
    "tif": "tiff",
    "tiff": "tiff",
    "gif": "gif",
}

_DEFAULT_QUALITY = {"JPEG": 85, "WEBP": 80, "AVIF": 80, "HEIF": 80}
_PNG_DEFAULT_COMPRESSION = 6


@dataclass
class DecodedImage:
    image: PILImage.Image
    format: str

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height


def decode(data: bytes) -> DecodedImage:
    """Open any supported image, falling back to the RAW loader."""
    try:
        img = PILImage.open(io.BytesIO(data))
        img.load()
        return DecodedImage(image=img, format=img.format or "")
    except PILImage.DecompressionBombError as exc:
        raise DecodeError(str(exc)) from exc
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as exc:
        generic_error = exc

    try:
        return _decode_raw(data)
    except (rawpy.LibRawError, OSError, ValueError) as exc:
        logger.debug("RAW fallback failed", extra={"error": str(exc)})
        raise DecodeError(f"unsupported or corrupt image: {generic_error}") from generic_error


def _decode_raw(data: bytes) -> DecodedImage:
    with rawpy.imread(io.BytesIO(data)) as raw:
        rgb = raw.postprocess(use_camera_wb=True)
    return DecodedImage(image=PILImage.fromarray(rgb), format=RAW_FORMAT)


def autorotate(img: PILImage.Image) -> PILImage.Image:
    try:
        return ImageOps.exif_transpose(img)
    except Exception as exc:
        logger.warning("Autorotate failed, keeping original orientation", extra={"error": str(exc)})
        return img


def has_alpha(img: PILImage.Image) -> bool:
    return img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info)


_srgb_profile = None


def _srgb():
    global _srgb_profile
    if _srgb_profile is None:
        _srgb_profile = ImageCms.createProfile("sRGB")
    return _srgb_profile


def normalize_to_srgb(img: PILImage.Image) -> PILImage.Image:
    """Convert to sRGB (RGB or RGBA), honouring an embedded ICC profile."""
    icc = img.info.get("icc_profile")
    if icc:
        try:
            source = ImageCms.ImageCmsProfile(io.BytesIO(icc))
            output_mode = "RGBA" if has_alpha(img) else "RGB"
            if img.mode == "P":
                img = img.convert(output_mode)
            converted = ImageCms.profileToProfile(
                img,
                source,
                _srgb(),
                renderingIntent=ImageCms.Intent.PERCEPTUAL,
                outputMode=output_mode,
            )
            converted.info.pop("icc_profile", None)
            return converted
        except (ImageCms.PyCMSError, OSError, ValueError) as exc:
            logger.warning("ICC conversion failed, using plain conversion", extra={"error": str(exc)})

    if img.mode in ("RGB", "RGBA"):
        return img
    if img.mode.startswith("I;16") or img.mode == "I":
        # 16-bit greyscale: scale into 8 bits before widening to RGB
        return img.convert("I").point(lambda v: v * (1 / 256)).convert("L").convert("RGB")
    if has_alpha(img):
        return img.convert("RGBA")
    # Covers untagged CMYK, YCbCr, LAB, L and palette images
    return img.convert("RGB")


def color_space_label(img: PILImage.Image) -> str:
    mode = img.mode
    if mode in ("RGB", "RGBA", "P", "PA"):
        return "sRGB"
    if mode in ("L", "LA", "1"):
        return "B_W"
    if mode.startswith("I;16") or mode == "I":
        return "GREY16"
    return mode


def color_info(img: PILImage.Image) -> tuple[str, bool]:
    """(color space label, whether an ICC profile is embedded) for the decoded source."""
    return color_space_label(img), bool(img.info.get("icc_profile"))


def scale_proportionally(
    img: PILImage.Image,
    width: int,
    height: int,
    kernel: str = DEFAULT_KERNEL,
) -> PILImage.Image:
    """Fit inside ``width`` x ``height`` keeping aspect; a 0 dimension is unconstrained. Never enlarges."""
    if width < 0 or height < 0:
        raise ValueError("width and height must be non-negative")
    if width == 0 and height == 0:
        return img
    src_w, src_h = img.size
    if width == 0:
        scale = height / src_h
    elif height == 0:
        scale = width / src_w
    else:
        scale = min(width / src_w, height / src_h)
    scale = min(scale, 1.0)
    target = (max(1, round(src_w * scale)), max(1, round(src_h * scale)))
    if target == img.size:
        return img
    return img.resize(target, resample=RESAMPLING_KERNELS.get(kernel, RESAMPLING_KERNELS[DEFAULT_KERNEL]))


def rotate(img: PILImage.Image, degrees: int) -> PILImage.Image:
    if degrees == 0:
        return img
    if degrees not in ROTATIONS:
        raise ValueError(f"unsupported rotation: {degrees}")
    return img.transpose(ROTATIONS[degrees])


def flip(img: PILImage.Image, direction: str) -> PILImage.Image:
    if not direction:
        return img
    if direction not in FLIPS:
        raise ValueError(f"unsupported flip: {direction}")
    return img.transpose(FLIPS[direction])


def output_for_extension(extension: str) -> OutputFormat:
    """Encoder for a passthrough request; sources Pillow cannot write (RAW) become JPEG."""
    return OUTPUT_FORMATS[_EXTENSION_FORMATS.get(extension.lower().lstrip("."), "jpeg")]


def media_type_for_extension(extension: str) -> str:
    name = _EXTENSION_FORMATS.get(extension.lower().lstrip("."))
    if name is None:
        return mimetypes.guess_type(f"file.{extension}")[0] or "application/octet-stream"
    return OUTPUT_FORMATS[name].media_type


def png_compression(quality: int) -> int:
    """Map quality 0..100 onto the 0..10 compression scale, capped at zlib's 9."""
    if quality <= 0:
        return _PNG_DEFAULT_COMPRESSION
    return min(9, round(quality * 10 / 100))


def _flatten(img: PILImage.Image) -> PILImage.Image:
    if img.mode in ("RGB", "L"):
        return img
    if has_alpha(img):
        rgba = img.convert("RGBA")
        background = PILImage.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    return img.convert("RGB")


def encode(img: PILImage.Image, output: OutputFormat, quality: int = 0) -> bytes:
    params: dict = {}
    fmt = output.pil_format
    if fmt == "JPEG":
        img = _flatten(img)
        params = {"quality": quality or _DEFAULT_QUALITY[fmt], "optimize": True}
    elif fmt == "PNG":
        params = {"compress_level": png_compression(quality)}
    elif fmt in _DEFAULT_QUALITY:
        params = {"quality": quality or _DEFAULT_QUALITY[fmt]}
        if fmt == "WEBP":
            params["method"] = 4

    buf = io.BytesIO()
    try:
        img.save(buf, format=fmt, **params)
    except (KeyError, OSError, ValueError) as exc:
        raise EncodeError(f"failed to encode {output.name}: {exc}") from exc
    return buf.getvalue()


def prepare(decoded: DecodedImage) -> PILImage.Image:
    """Autorotate then normalize; the common head of every derived variant."""
    return normalize_to_srgb(autorotate(decoded.image))


def thumbnail_from_image(img: PILImage.Image, width: int, height: int = 0, quality: int = 85) -> bytes:
    scaled = scale_proportionally(img, width, height)
    return encode(scaled, OUTPUT_FORMATS["jpeg"], quality)


def create_thumbnail(data: bytes, width: int, height: int = 0, quality: int = 85) -> bytes:
    """JPEG thumbnail of ``data`` fitting ``width`` x ``height`` in sRGB."""
    return thumbnail_from_image(prepare(decode(data)), width, height, quality)
