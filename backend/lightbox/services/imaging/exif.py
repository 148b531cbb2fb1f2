from __future__ import annotations

import io
import logging
import re
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from PIL import ExifTags, Image as PILImage, UnidentifiedImageError
from PIL.TiffImagePlugin import IFDRational

from lightbox.core.clock import as_utc, utcnow
from lightbox.models.image import Image, ImageEXIF

logger = logging.getLogger(__name__)

_POINTER_TAGS = {ExifTags.IFD.Exif.value, ExifTags.IFD.GPSInfo.value, ExifTags.IFD.Interop.value}

_DATE_FORMATS = (
    "%Y:%m:%d %H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y:%m:%d %H:%M:%S%z",
    "%Y-%m-%d %H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%S%z",
)

_WHITE_BALANCE = {0: "Auto", 1: "Manual"}


def read_exif_tags(img: PILImage.Image) -> Dict[str, Any]:
    """Flatten IFD0, the Exif sub-IFD and GPS into one name -> raw value map."""
    try:
        exif = img.getexif()
    except Exception as exc:
        logger.debug("No readable EXIF", extra={"error": str(exc)})
        return {}

    tags: Dict[str, Any] = {}
    for tag_id, value in exif.items():
        if tag_id in _POINTER_TAGS:
            continue
        name = ExifTags.TAGS.get(tag_id)
        if name:
            tags[name] = value
    try:
        for tag_id, value in exif.get_ifd(ExifTags.IFD.Exif).items():
            name = ExifTags.TAGS.get(tag_id)
            if name:
                tags[name] = value
        for tag_id, value in exif.get_ifd(ExifTags.IFD.GPSInfo).items():
            name = ExifTags.GPSTAGS.get(tag_id)
            if name:
                tags[name] = value
    except (KeyError, OSError, ValueError) as exc:
        logger.debug("Failed reading EXIF sub-IFDs", extra={"error": str(exc)})
    return tags


def read_exif_tags_from_bytes(data: bytes) -> Dict[str, Any]:
    # Opening without load() is enough for the header; RAW files Pillow
    # cannot identify simply yield no tags.
    try:
        with PILImage.open(io.BytesIO(data)) as img:
            return read_exif_tags(img)
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError):
        return {}


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("ascii", errors="ignore")
    if isinstance(value, (tuple, list)):
        value = value[0] if len(value) == 1 else " ".join(str(v) for v in value)
    text = str(value).strip().strip("\x00").strip()
    return text or None


def _number(value: Any) -> Optional[float]:
    if isinstance(value, (tuple, list)) and value:
        value = value[0]
    if isinstance(value, IFDRational):
        if value.denominator == 0:
            return None
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value))
    except (TypeError, ValueError):
        return None


def _trim_float(value: float, digits: int = 1) -> str:
    text = f"{value:.{digits}f}"
    return text.rstrip("0").rstrip(".") if "." in text else text


def _exposure_time(value: Any) -> Optional[str]:
    seconds = _number(value)
    if seconds is None or seconds <= 0:
        return None
    if seconds < 1:
        return f"1/{round(1 / seconds)}"
    return _trim_float(seconds)


def _f_number(value: Any) -> Optional[str]:
    number = _number(value)
    if number is None or number <= 0:
        return None
    return f"f/{_trim_float(number)}"


def _aperture_from_apex(value: Any) -> Optional[str]:
    apex = _number(value)
    if apex is None:
        return None
    return f"f/{_trim_float(2 ** (apex / 2))}"


def _gps_coordinate(value: Any, ref: Any) -> Optional[str]:
    if not isinstance(value, (tuple, list)) or len(value) != 3:
        return None
    parts = [_number(v) for v in value]
    if any(p is None for p in parts):
        return None
    degrees = parts[0] + parts[1] / 60 + parts[2] / 3600
    if _text(ref) in ("S", "W"):
        degrees = -degrees
    return f"{degrees:.6f}"


def build_exif(tags: Dict[str, Any]) -> ImageEXIF:
    """Normalize raw EXIF tags into the string-valued record stored on the image."""
    if not tags:
        return ImageEXIF()

    def find(*names: str) -> Any:
        for name in names:
            if tags.get(name) not in (None, b"", ""):
                return tags[name]
        return None

    f_number = _f_number(find("FNumber"))
    aperture = _aperture_from_apex(find("ApertureValue")) or f_number

    exposure_value = None
    bias = _number(find("ExposureBiasValue"))
    if bias is not None:
        exposure_value = f"{_trim_float(bias, 2)} EV"

    focal_length = _number(find("FocalLength"))
    white_balance = find("WhiteBalance")

    resolution = None
    x_res, y_res = _number(find("XResolution")), _number(find("YResolution"))
    if x_res and y_res:
        resolution = f"{_trim_float(x_res)}x{_trim_float(y_res)} DPI"

    return ImageEXIF(
        make=_text(find("Make")),
        model=_text(find("Model")),
        lens_model=_text(find("LensModel")),
        iso=_text(find("ISOSpeedRatings", "PhotographicSensitivity")),
        f_number=f_number,
        aperture=aperture,
        exposure_time=_exposure_time(find("ExposureTime")),
        exposure_value=exposure_value,
        focal_length=f"{_trim_float(focal_length)} mm" if focal_length else None,
        flash=_text(find("Flash")),
        white_balance=_WHITE_BALANCE.get(white_balance, _text(white_balance)) if white_balance is not None else None,
        date_time=_text(find("DateTime")),
        date_time_original=_text(find("DateTimeOriginal")),
        modify_date=_text(find("DateTime", "DateTimeDigitized")),
        offset_time=_text(find("OffsetTimeOriginal", "OffsetTime")),
        rating=_text(find("Rating")),
        orientation=_text(find("Orientation")),
        software=_text(find("Software")),
        latitude=_gps_coordinate(find("GPSLatitude"), find("GPSLatitudeRef")),
        longitude=_gps_coordinate(find("GPSLongitude"), find("GPSLongitudeRef")),
        resolution=resolution,
        exif_version=_text(find("ExifVersion")),
    )


def parse_exif_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse common EXIF/ISO timestamps into aware UTC; values without an offset are taken as UTC."""
    if not value:
        return None
    text = value.strip()
    idx = text.find(" (")
    if idx > 0:
        text = text[:idx]
    if text.startswith("0000"):
        return None
    # "+01:00" style offsets are accepted by %z in Python 3.7+
    text = re.sub(r"Z$", "+00:00", text)
    for fmt in _DATE_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        return as_utc(parsed)
    return None


def file_dates(exif: ImageEXIF, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """(created, modified) from DateTimeOriginal and ModifyDate, each filling in for the other."""
    created = parse_exif_datetime(exif.date_time_original)
    modified = parse_exif_datetime(exif.modify_date)
    if created is None and modified is None:
        now = as_utc(now) if now else utcnow()
        return now, now
    if created is None:
        created = modified
    if modified is None:
        modified = created
    return created, modified


def taken_at(image: Image, exif: Optional[ImageEXIF]) -> datetime:
    if exif is not None:
        for candidate in (exif.date_time_original, exif.date_time, exif.modify_date):
            parsed = parse_exif_datetime(candidate)
            if parsed is not None:
                return parsed
    metadata = image.metadata_record
    if metadata is not None:
        if metadata.file_created_at is not None:
            return as_utc(metadata.file_created_at)
        if metadata.file_modified_at is not None:
            return as_utc(metadata.file_modified_at)
    return as_utc(image.created_at)


def extract_exif(data: bytes) -> ImageEXIF:
    return build_exif(read_exif_tags_from_bytes(data))


def _jsonable(value: Any) -> Any:
    if isinstance(value, IFDRational):
        return None if value.denominator == 0 else float(value)
    if isinstance(value, bytes):
        text = value.rstrip(b"\x00")
        try:
            return text.decode("ascii")
        except UnicodeDecodeError:
            return text.hex()
    if isinstance(value, (tuple, list)):
        return [_jsonable(item) for item in value]
    if isinstance(value, str):
        return value.rstrip("\x00")
    if isinstance(value, (int, float)) or value is None:
        return value
    return str(value)


def raw_exif(data: bytes) -> Dict[str, Any]:
    """Every readable tag of ``data`` converted to JSON-safe values."""
    return {name: _jsonable(value) for name, value in read_exif_tags_from_bytes(data).items()}
