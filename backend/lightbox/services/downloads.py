"""Download tokens and streamed ZIP exports.

A token is an opaque 64-char hex capability naming a fixed set of image
uids plus a small policy (download, embed, metadata visibility, optional
password, optional expiry). Validation returns a tagged ``TokenCheck``; the
HTTP layer turns non-valid outcomes into errors in one place.
"""

import enum
import logging
import queue
import re
import secrets
import threading
import zipfile
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional
from urllib.parse import quote, urlparse

import bcrypt
from sqlalchemy import delete, func
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from lightbox.core.clock import as_utc, utcnow
from lightbox.core.config import Settings
from lightbox.core.errors import Exceeded, InputInvalid, PolicyDenied, Unauthenticated
from lightbox.models.download_token import DownloadToken, DownloadTokenCreate, DownloadTokenRead
from lightbox.models.image import Image
from lightbox.services.asset_store import AssetStore

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32
_TOKEN_RE = re.compile(r"^[0-9a-f]{64}$")
ZIP_CHUNK_SIZE = 64 * 1024


class TokenOutcome(str, enum.Enum):
    VALID = "valid"
    EXPIRED = "expired"
    MISSING = "missing"
    BAD_SIGNATURE = "bad_signature"
    BAD_PASSWORD = "bad_password"
    NOT_YET = "not_yet"
    INVALID_CLAIMS = "invalid_claims"
    UNSUPPORTED = "unsupported"


_OUTCOME_MESSAGES = {
    TokenOutcome.BAD_PASSWORD: "Invalid or missing password",
    TokenOutcome.NOT_YET: "Token is not valid yet",
}


@dataclass
class TokenCheck:
    outcome: TokenOutcome
    token: Optional[DownloadToken] = None

    @property
    def ok(self) -> bool:
        return self.outcome is TokenOutcome.VALID

    @property
    def uids(self) -> List[str]:
        return list(self.token.image_uids or []) if self.ok else []

    def raise_for_outcome(self) -> DownloadToken:
        """Return the token when valid, otherwise raise the matching 401."""
        if self.ok:
            return self.token
        raise Unauthenticated(_OUTCOME_MESSAGES.get(self.outcome, "Invalid or expired token"))


def token_url(token: str) -> str:
    return f"/download?token={token}"


def to_read(token: DownloadToken) -> DownloadTokenRead:
    return DownloadTokenRead(
        token=token.uid,
        uids=list(token.image_uids or []) if token.show_metadata else None,
        has_password=bool(token.password),
        allow_download=token.allow_download,
        allow_embed=token.allow_embed,
        show_metadata=token.show_metadata,
        description=token.description,
        expires_at=token.expires_at,
        created_at=token.created_at,
        url=token_url(token.uid),
    )


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


class DownloadService:
    def __init__(self, engine: Engine, assets: AssetStore, settings: Settings):
        self.engine = engine
        self.assets = assets
        self.settings = settings

    # Tokens

    def _live_token_count(self, session: Session, owner_uid: Optional[str]) -> int:
        now = utcnow()
        query = select(func.count()).select_from(DownloadToken).where(DownloadToken.owner_uid == owner_uid)
        query = query.where((DownloadToken.expires_at.is_(None)) | (DownloadToken.expires_at > now))
        return session.exec(query).one()

    def create_token(
        self,
        request: DownloadTokenCreate,
        owner_uid: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ) -> DownloadToken:
        uids = list(dict.fromkeys(uid.strip() for uid in request.uids if uid and uid.strip()))
        if not uids:
            raise InputInvalid("Image UIDs are required")

        if ttl_seconds is None:
            ttl_seconds = request.expires_in or self.settings.DOWNLOAD_TOKEN_DEFAULT_TTL_S
        now = utcnow()
        token = DownloadToken(
            uid=secrets.token_hex(TOKEN_BYTES),
            image_uids=uids,
            allow_download=True if request.allow_download is None else request.allow_download,
            allow_embed=bool(request.allow_embed),
            show_metadata=True if request.show_metadata is None else request.show_metadata,
            password=hash_password(request.password) if request.password else None,
            description=request.description or None,
            expires_at=now + timedelta(seconds=ttl_seconds) if ttl_seconds > 0 else None,
            owner_uid=owner_uid,
            created_at=now,
        )

        with Session(self.engine) as session:
            if self._live_token_count(session, owner_uid) >= self.settings.DOWNLOAD_TOKEN_QUOTA:
                raise Exceeded("Too many active download tokens")
            session.add(token)
            session.commit()
            session.refresh(token)

        logger.info(
            "Download token created",
            extra={"owner_uid": owner_uid, "uids": len(uids), "expires_at": str(token.expires_at)},
        )
        return token

    def get_token(self, token: str) -> Optional[DownloadToken]:
        with Session(self.engine) as session:
            return session.get(DownloadToken, token)

    def validate_token(self, token: str, password: Optional[str] = None, now: Optional[datetime] = None) -> TokenCheck:
        if not token or not _TOKEN_RE.match(token):
            return TokenCheck(TokenOutcome.UNSUPPORTED)
        now = as_utc(now) if now else utcnow()

        with Session(self.engine) as session:
            row = session.get(DownloadToken, token)
            if row is None:
                return TokenCheck(TokenOutcome.MISSING)
            if row.is_expired(now):
                session.delete(row)
                session.commit()
                logger.info("Expired download token removed", extra={"token_prefix": token[:8]})
                return TokenCheck(TokenOutcome.EXPIRED)

        if row.created_at is not None and as_utc(row.created_at) > now + timedelta(minutes=5):
            return TokenCheck(TokenOutcome.NOT_YET, row)
        if not row.image_uids:
            return TokenCheck(TokenOutcome.INVALID_CLAIMS, row)
        if row.password:
            if not password:
                return TokenCheck(TokenOutcome.BAD_PASSWORD, row)
            try:
                matched = bcrypt.checkpw(password.encode("utf-8"), row.password.encode("utf-8"))
            except ValueError:
                logger.error("Stored token password hash is malformed", extra={"token_prefix": token[:8]})
                return TokenCheck(TokenOutcome.BAD_SIGNATURE, row)
            if not matched:
                return TokenCheck(TokenOutcome.BAD_PASSWORD, row)
        return TokenCheck(TokenOutcome.VALID, row)

    def revoke(self, token: str) -> bool:
        with Session(self.engine) as session:
            row = session.get(DownloadToken, token)
            if row is None:
                return False
            session.delete(row)
            session.commit()
        logger.info("Download token revoked", extra={"token_prefix": token[:8]})
        return True

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = as_utc(now) if now else utcnow()
        with Session(self.engine) as session:
            result = session.execute(
                delete(DownloadToken).where(DownloadToken.expires_at.is_not(None), DownloadToken.expires_at <= now)
            )
            session.commit()
        if result.rowcount:
            logger.info("Purged expired download tokens", extra={"count": result.rowcount})
        return result.rowcount or 0

    # Zip export

    def zip_stream(self, uids: List[str]) -> Iterator[bytes]:
        images = self._images_in_order(uids)
        return stream_zip(self._zip_entries(images))

    def _images_in_order(self, uids: List[str]) -> List[Image]:
        with Session(self.engine) as session:
            rows = session.exec(select(Image).where(Image.uid.in_(uids), Image.deleted_at.is_(None))).all()
        by_uid = {row.uid: row for row in rows}
        ordered = []
        for uid in uids:
            image = by_uid.get(uid)
            if image is None:
                logger.warning("Image not found for export", extra={"uid": uid})
                continue
            ordered.append(image)
        return ordered

    def _zip_entries(self, images: Iterable[Image]) -> Iterator["ZipEntry"]:
        used: Dict[str, int] = {}
        for image in images:
            metadata = image.metadata_record
            if metadata is None:
                logger.warning("Image has no file metadata, skipping", extra={"uid": image.uid})
                continue
            name = unique_entry_name(Path(metadata.original_file_name or metadata.file_name).name, used)
            yield ZipEntry(name=name, path=self.assets.original_path(image), modified=image.updated_at)


# Policy checks


def embed_allowed(token: DownloadToken, host: Optional[str], referer: Optional[str], origin: Optional[str]) -> bool:
    """Third-party pages may only embed when the token allows it; direct navigation is always fine."""
    if token.allow_embed:
        return True
    if not referer and not origin:
        return True
    own_host = (host or "").lower()
    for value in (referer, origin):
        if not value:
            continue
        if (urlparse(value).netloc or "").lower() != own_host:
            return False
    return True


def check_embed(token: DownloadToken, host: Optional[str], referer: Optional[str], origin: Optional[str]) -> None:
    if not embed_allowed(token, host, referer, origin):
        raise PolicyDenied("Embedding not permitted for this token")


def check_subset(requested: Iterable[str], allowed: Iterable[str]) -> None:
    allowed_set = set(allowed)
    if any(uid not in allowed_set for uid in requested):
        raise Unauthenticated("Token does not authorize all requested UIDs")


def content_disposition(filename: str) -> str:
    base = Path(filename).name.replace('"', "")
    return f"attachment; filename=\"{base}\"; filename*=UTF-8''{quote(filename, safe='')}"


def default_archive_name(app_name: str, now: Optional[datetime] = None) -> str:
    stamp = (now or utcnow()).strftime("%Y%m%dT%H%M%S")
    return f"{app_name.lower()}_export_{stamp}.zip"


def unique_entry_name(name: str, used: Dict[str, int]) -> str:
    count = used.get(name, 0)
    used[name] = count + 1
    if count == 0:
        return name
    path = Path(name)
    return f"{path.stem} ({count + 1}){path.suffix}"


# Streaming


@dataclass
class ZipEntry:
    name: str
    path: Path
    modified: Optional[datetime] = None


class ZipPipe:
    """Single-producer, single-consumer byte pipe.

    The producer thread writes archive bytes; the consumer iterates chunks.
    Closing from the reader side makes the next producer write raise
    ``BrokenPipeError``. A producer failure is re-raised in the reader.
    """

    _EOF = object()

    def __init__(self, max_chunks: int = 16):
        self._queue: "queue.Queue" = queue.Queue(maxsize=max_chunks)
        self._reader_closed = threading.Event()
        self._error: Optional[BaseException] = None
        self._position = 0

    # File-like surface used by zipfile (unseekable stream)

    def writable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def tell(self) -> int:
        return self._position

    def flush(self) -> None:
        pass

    def write(self, data) -> int:
        if not data:
            return 0
        chunk = bytes(data)
        self._put(chunk)
        self._position += len(chunk)
        return len(chunk)

    def _put(self, item) -> None:
        while True:
            if self._reader_closed.is_set():
                raise BrokenPipeError("reader closed the pipe")
            try:
                self._queue.put(item, timeout=0.1)
                return
            except queue.Full:
                continue

    def close_writer(self, error: Optional[BaseException] = None) -> None:
        self._error = error
        try:
            self._put(self._EOF)
        except BrokenPipeError:
            pass

    def close_reader(self) -> None:
        self._reader_closed.set()

    def chunks(self) -> Iterator[bytes]:
        try:
            while True:
                item = self._queue.get()
                if item is self._EOF:
                    if self._error is not None:
                        raise self._error
                    return
                yield item
        finally:
            self.close_reader()


def write_zip(pipe, entries: Iterable[ZipEntry]) -> None:
    with zipfile.ZipFile(pipe, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
        for entry in entries:
            try:
                source = entry.path.open("rb")
            except OSError as exc:
                logger.error("Failed to open image file for export", extra={"path": str(entry.path), "error": str(exc)})
                continue
            info = zipfile.ZipInfo(entry.name, date_time=_zip_time(entry.modified))
            info.compress_type = zipfile.ZIP_DEFLATED
            with source, archive.open(info, mode="w") as target:
                try:
                    while True:
                        block = source.read(ZIP_CHUNK_SIZE)
                        if not block:
                            break
                        target.write(block)
                except BrokenPipeError:
                    raise
                except OSError as exc:
                    # The entry is closed short; the rest of the archive still goes out
                    logger.error("Failed to write image to zip", extra={"path": str(entry.path), "error": str(exc)})


def _zip_time(value: Optional[datetime]):
    value = value or utcnow()
    # ZIP timestamps cannot predate 1980
    if value.year < 1980:
        value = datetime(1980, 1, 1)
    return value.timetuple()[:6]


def stream_zip(entries: Iterable[ZipEntry]) -> Iterator[bytes]:
    """Yield archive chunks; the producer thread starts on the first pull."""
    pipe = ZipPipe()

    def produce():
        try:
            write_zip(pipe, entries)
        except BrokenPipeError:
            logger.info("Zip export cancelled by client")
            return
        except Exception as exc:
            logger.exception("Error while creating zip")
            pipe.close_writer(exc)
            return
        pipe.close_writer()

    threading.Thread(target=produce, name="zip-export", daemon=True).start()
    yield from pipe.chunks()
