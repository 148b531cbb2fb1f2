from typing import Optional, List
from datetime import datetime
from sqlmodel import Field, SQLModel
from sqlalchemy import JSON, Column

from lightbox.core.clock import as_utc, utcnow


class DownloadTokenBase(SQLModel):
    allow_download: bool = True
    allow_embed: bool = False
    show_metadata: bool = True
    description: Optional[str] = None
    expires_at: Optional[datetime] = Field(default=None, index=True)


class DownloadToken(DownloadTokenBase, table=True):
    __tablename__ = "download_token"

    # The opaque token itself: 32 random bytes, hex encoded
    uid: str = Field(primary_key=True, max_length=64)
    image_uids: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    password: Optional[str] = None  # bcrypt hash
    owner_uid: Optional[str] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and as_utc(self.expires_at) <= as_utc(now or utcnow())


class DownloadTokenCreate(SQLModel):
    uids: List[str]
    expires_in: Optional[int] = Field(default=None, ge=0)  # seconds
    password: Optional[str] = None
    allow_download: Optional[bool] = None
    allow_embed: Optional[bool] = None
    show_metadata: Optional[bool] = None
    description: Optional[str] = None


class DownloadTokenRead(DownloadTokenBase):
    token: str
    uids: Optional[List[str]] = None
    has_password: bool = False
    created_at: datetime
    url: Optional[str] = None


class DownloadRequest(SQLModel):
    uids: List[str]
    filename: Optional[str] = None
