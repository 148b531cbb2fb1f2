from typing import Optional, Dict, Any, List
from datetime import datetime
from sqlmodel import Field, SQLModel
from sqlalchemy import JSON, Column, UniqueConstraint

from lightbox.core.clock import utcnow


class CollectionBase(SQLModel):
    name: str = Field(index=True)
    description: Optional[str] = None
    private: bool = Field(default=False)


class Collection(CollectionBase, table=True):
    __table_args__ = (UniqueConstraint("owner_uid", "name", name="uq_collection_owner_name"),)

    uid: str = Field(primary_key=True, max_length=24)
    owner_uid: Optional[str] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    # Ordered [{image_uid, added_at, added_by}]
    images: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    image_count: int = 0
    thumbnail_uid: Optional[str] = None


class CollectionCreate(CollectionBase):
    thumbnail_uid: Optional[str] = None


class CollectionImage(SQLModel):
    image_uid: str
    added_at: datetime
    added_by: Optional[str] = None


class CollectionRead(CollectionBase):
    uid: str
    owner_uid: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    images: List[CollectionImage] = []
    image_count: int = 0
    thumbnail_uid: Optional[str] = None


class CollectionImagesRequest(SQLModel):
    uids: List[str]
