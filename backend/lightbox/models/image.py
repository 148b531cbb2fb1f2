from enum import Enum
from typing import Optional, Dict, Any, List
from datetime import datetime
from pydantic import validator
from sqlmodel import Field, SQLModel
from sqlalchemy import JSON, Column

from lightbox.core.clock import utcnow


class ImageLabel(str, Enum):
    RED = "Red"
    ORANGE = "Orange"
    YELLOW = "Yellow"
    GREEN = "Green"
    BLUE = "Blue"
    PURPLE = "Purple"
    PINK = "Pink"
    GREY = "Grey"
    NONE = "None"


class ImageMetadata(SQLModel):
    """Nested record stored in the ``image_metadata`` JSON column."""

    file_name: str
    original_file_name: Optional[str] = None
    file_type: str
    color_space: Optional[str] = None
    has_icc_profile: Optional[bool] = None
    file_size: Optional[int] = None
    checksum: Optional[str] = None
    thumbhash: Optional[str] = None
    keywords: Optional[List[str]] = None
    label: Optional[ImageLabel] = None
    rating: Optional[int] = Field(default=None, ge=0, le=5)
    file_created_at: Optional[datetime] = None
    file_modified_at: Optional[datetime] = None

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_json(cls, data: Optional[Dict[str, Any]]) -> Optional["ImageMetadata"]:
        if not data:
            return None
        return cls.model_validate(data)


class ImageEXIF(SQLModel):
    """String-valued EXIF fields stored in the ``exif`` JSON column."""

    make: Optional[str] = None
    model: Optional[str] = None
    lens_model: Optional[str] = None
    iso: Optional[str] = None
    f_number: Optional[str] = None
    aperture: Optional[str] = None
    exposure_time: Optional[str] = None
    exposure_value: Optional[str] = None
    focal_length: Optional[str] = None
    flash: Optional[str] = None
    white_balance: Optional[str] = None
    date_time: Optional[str] = None
    date_time_original: Optional[str] = None
    modify_date: Optional[str] = None
    offset_time: Optional[str] = None
    rating: Optional[str] = None
    orientation: Optional[str] = None
    software: Optional[str] = None
    latitude: Optional[str] = None
    longitude: Optional[str] = None
    resolution: Optional[str] = None
    exif_version: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)

    @classmethod
    def from_json(cls, data: Optional[Dict[str, Any]]) -> Optional["ImageEXIF"]:
        if data is None:
            return None
        return cls.model_validate(data)


class ImageBase(SQLModel):
    name: str
    private: bool = Field(default=False)
    processed: bool = Field(default=False, index=True)
    owner_uid: Optional[str] = Field(default=None, index=True)
    width: int = 0
    height: int = 0
    description: Optional[str] = None
    taken_at: Optional[datetime] = Field(default=None, index=True)


class Image(ImageBase, table=True):
    uid: str = Field(primary_key=True, max_length=24)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = Field(default=None, index=True)  # Set while in trash
    image_metadata: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    exif: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    @property
    def metadata_record(self) -> Optional[ImageMetadata]:
        return ImageMetadata.from_json(self.image_metadata)

    @property
    def exif_record(self) -> Optional[ImageEXIF]:
        return ImageEXIF.from_json(self.exif)


class ImagePaths(SQLModel):
    original: str
    thumbnail: str
    preview: str


class ImageRead(ImageBase):
    uid: str
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None
    image_metadata: Optional[ImageMetadata] = None
    exif: Optional[ImageEXIF] = None
    paths: Optional[ImagePaths] = None


class ImageUpdate(SQLModel):
    name: Optional[str] = None
    description: Optional[str] = None
    private: Optional[bool] = None
    rating: Optional[int] = Field(default=None, ge=0, le=5)
    label: Optional[ImageLabel] = None
    keywords: Optional[List[str]] = None

    # Omit these to leave them unchanged; the columns are NOT NULL
    @validator("name", "private", pre=True)
    def not_null(cls, value):
        if value is None:
            raise ValueError("may be omitted but not null")
        return value


class ImageListResponse(SQLModel):
    items: List[ImageRead]
    total: int
    page: int
    limit: int
