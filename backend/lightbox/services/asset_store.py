"""Image rows plus their on-disk directories.

Each image owns ``<library>/<uid>/`` holding the original under its canonical
name, a ``-thumbnail.jpeg`` companion, an optional ``.xmp`` sidecar and a
``transforms/`` cache. Soft-deleted images live at ``<trash>/<uid>/`` with
``deleted_at`` set; the two always move together.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple

from sqlalchemy import String, cast, func, or_, update
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from lightbox.core.clock import utcnow
from lightbox.core.config import Settings
from lightbox.core.errors import Conflict, InputInvalid, NotFound
from lightbox.core.uid import new_uid
from lightbox.models.collection import Collection
from lightbox.models.download_token import DownloadToken
from lightbox.models.image import Image, ImageEXIF, ImageMetadata, ImageUpdate
from lightbox.services.imaging import pipeline

logger = logging.getLogger(__name__)

THUMBNAIL_SUFFIX = "-thumbnail.jpeg"
SIDECAR_SUFFIX = ".xmp"
TRANSFORMS_DIRNAME = "transforms"

_FORMAT_EXTENSIONS = {
    "JPEG": "jpeg",
    "MPO": "jpeg",
    "PNG": "png",
    "WEBP": "webp",
    "TIFF": "tiff",
    "GIF": "gif",
    "HEIF": "heic",
    "AVIF": "avif",
    "RAW": "raw",
}

_LOCK_STRIPES = 64


def atomic_write(path: Path, data: bytes, prefix: str = "tmp-") -> None:
    """Write through a temp file in the same directory, then rename into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=prefix)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def move_dir(src: Path, dst: Path) -> None:
    """Rename ``src`` to ``dst``, copying then deleting when the rename is refused."""
    dst.parent.mkdir(parents=True, exist_ok=True)
    if dst.exists():
        logger.warning("Replacing stale directory", extra={"path": str(dst)})
        shutil.rmtree(dst)
    try:
        os.rename(src, dst)
    except OSError as exc:
        logger.info(
            "Rename refused, falling back to copy",
            extra={"src": str(src), "dst": str(dst), "error": str(exc)},
        )
        shutil.copytree(src, dst)
        shutil.rmtree(src)


def canonical_file_name(uid: str, original_name: str, extension: str) -> str:
    digest = hashlib.md5(original_name.encode("utf-8")).hexdigest()[:12]
    return f"{uid}-{digest}.{extension}"


def _extension_for(filename: str, decoded_format: str) -> str:
    suffix = Path(filename).suffix.lower().lstrip(".")
    if suffix and suffix.isalnum():
        return suffix
    return _FORMAT_EXTENSIONS.get(decoded_format.upper(), "bin")


class AssetStore:
    def __init__(self, engine: Engine, settings: Settings):
        self.engine = engine
        self.settings = settings
        self._stripes = [threading.Lock() for _ in range(_LOCK_STRIPES)]

    @contextmanager
    def _row_lock(self, uid: str) -> Iterator[None]:
        # Serializes read-modify-write cycles on one image within this process
        lock = self._stripes[hash(uid) % _LOCK_STRIPES]
        with lock:
            yield

    # Paths

    def image_dir(self, uid: str, deleted: bool = False) -> Path:
        root = self.settings.trash_dir if deleted else self.settings.library_dir
        return root / uid

    def _dir_for(self, image: Image) -> Path:
        return self.image_dir(image.uid, deleted=image.deleted_at is not None)

    def original_path(self, image: Image) -> Path:
        return self._dir_for(image) / self._metadata(image).file_name

    def thumbnail_path(self, image: Image) -> Path:
        stem = Path(self._metadata(image).file_name).stem
        return self._dir_for(image) / f"{stem}{THUMBNAIL_SUFFIX}"

    def sidecar_path(self, image: Image) -> Path:
        stem = Path(self._metadata(image).file_name).stem
        return self._dir_for(image) / f"{stem}{SIDECAR_SUFFIX}"

    def transforms_dir(self, uid: str) -> Path:
        return self.image_dir(uid) / TRANSFORMS_DIRNAME

    @staticmethod
    def _metadata(image: Image) -> ImageMetadata:
        metadata = image.metadata_record
        if metadata is None:
            raise NotFound(f"image {image.uid} has no file metadata")
        return metadata

    # Create / read

    def create(
        self,
        data: bytes,
        filename: str,
        owner_uid: Optional[str] = None,
        *,
        private: bool = False,
        checksum: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Image:
        original_name = Path(filename or "").name.strip()
        if not data:
            raise InputInvalid("empty upload")
        if len(data) > self.settings.MAX_UPLOAD_BYTES:
            raise InputInvalid("file exceeds maximum upload size")
        if not original_name:
            raise InputInvalid("filename is required")

        try:
            decoded = pipeline.decode(data)
        except pipeline.DecodeError as exc:
            raise InputInvalid(f"unsupported image file: {original_name}") from exc

        digest = hashlib.sha1(data).hexdigest()
        if checksum and checksum.strip().lower() != digest:
            raise InputInvalid("checksum does not match uploaded data")

        uid = new_uid()
        extension = _extension_for(original_name, decoded.format)
        color_space, has_icc = pipeline.color_info(decoded.image)
        now = utcnow()
        metadata = ImageMetadata(
            file_name=canonical_file_name(uid, original_name, extension),
            original_file_name=original_name,
            file_type=extension,
            color_space=color_space,
            has_icc_profile=has_icc,
            file_size=len(data),
            checksum=digest,
            file_created_at=now,
            file_modified_at=now,
        )
        image = Image(
            uid=uid,
            name=name or Path(original_name).stem,
            private=private,
            processed=False,
            owner_uid=owner_uid,
            width=decoded.width,
            height=decoded.height,
            created_at=now,
            updated_at=now,
            image_metadata=metadata.to_json(),
        )

        image_dir = self.image_dir(uid)
        atomic_write(image_dir / metadata.file_name, data)
        try:
            with Session(self.engine) as session:
                session.add(image)
                session.commit()
                session.refresh(image)
        except Exception:
            logger.exception("Failed to persist image row, removing file", extra={"uid": uid})
            shutil.rmtree(image_dir, ignore_errors=True)
            raise

        logger.info(
            "Image created",
            extra={"uid": uid, "file_name": metadata.file_name, "size": len(data), "owner_uid": owner_uid},
        )
        return image

    def read_metadata(self, uid: str, include_deleted: bool = False) -> Image:
        with Session(self.engine) as session:
            image = session.get(Image, uid)
        if image is None or (image.deleted_at is not None and not include_deleted):
            raise NotFound("Image not found")
        return image

    def read(self, uid: str) -> bytes:
        image = self.read_metadata(uid)
        try:
            return self.original_path(image).read_bytes()
        except FileNotFoundError:
            logger.error("Original file missing", extra={"uid": uid})
            raise NotFound("Image file not found") from None

    # Targeted updates

    def patch(
        self,
        uid: str,
        mutate_metadata: Optional[Callable[[ImageMetadata], None]] = None,
        *,
        exif: Optional[ImageEXIF] = None,
        **columns,
    ) -> Image:
        """Re-read the row and update only the named columns.

        ``mutate_metadata`` receives the freshly loaded metadata record so
        callers merge into the current state instead of overwriting it.
        """
        with self._row_lock(uid), Session(self.engine) as session:
            image = session.get(Image, uid)
            if image is None or image.deleted_at is not None:
                raise NotFound("Image not found")

            values = dict(columns)
            if mutate_metadata is not None:
                metadata = image.metadata_record
                if metadata is None:
                    raise NotFound(f"image {uid} has no file metadata")
                mutate_metadata(metadata)
                values["image_metadata"] = ImageMetadata.model_validate(metadata.model_dump()).to_json()
            if exif is not None:
                values["exif"] = exif.to_json()
            if not values:
                return image
            values["updated_at"] = utcnow()

            session.execute(update(Image).where(Image.uid == uid).values(**values))
            session.commit()
            refreshed = session.get(Image, uid, populate_existing=True)
        return refreshed

    def update(self, uid: str, changes: ImageUpdate) -> Image:
        data = changes.model_dump(exclude_unset=True)
        columns = {key: data[key] for key in ("name", "description", "private") if key in data}
        if "name" in columns and not (columns["name"] or "").strip():
            raise InputInvalid("name cannot be empty")
        if "private" in columns and columns["private"] is None:
            raise InputInvalid("private cannot be null")
        meta_fields = {key: data[key] for key in ("rating", "label", "keywords") if key in data}

        def apply(metadata: ImageMetadata) -> None:
            for key, value in meta_fields.items():
                setattr(metadata, key, value)

        image = self.patch(uid, apply if meta_fields else None, **columns)
        logger.info("Image updated", extra={"uid": uid, "fields": sorted(data)})
        return image

    # Delete / restore

    def soft_delete(self, uid: str) -> Image:
        with self._row_lock(uid), Session(self.engine) as session:
            image = session.get(Image, uid)
            if image is None or image.deleted_at is not None:
                raise NotFound("Image not found")

            src, dst = self.image_dir(uid), self.image_dir(uid, deleted=True)
            moved = False
            if src.exists():
                move_dir(src, dst)
                moved = True
            else:
                logger.warning("Image directory missing on soft delete", extra={"uid": uid})

            try:
                now = utcnow()
                image.deleted_at = now
                image.updated_at = now
                session.add(image)
                session.commit()
                session.refresh(image)
            except Exception:
                session.rollback()
                if moved:
                    move_dir(dst, src)
                raise
        logger.info("Image moved to trash", extra={"uid": uid})
        return image

    def restore(self, uid: str) -> Image:
        with self._row_lock(uid), Session(self.engine) as session:
            image = session.get(Image, uid)
            if image is None or image.deleted_at is None:
                raise NotFound("Image not found in trash")

            src, dst = self.image_dir(uid, deleted=True), self.image_dir(uid)
            if dst.exists():
                raise Conflict("Image directory already exists in library")
            moved = False
            if src.exists():
                move_dir(src, dst)
                moved = True

            try:
                image.deleted_at = None
                image.updated_at = utcnow()
                session.add(image)
                session.commit()
                session.refresh(image)
            except Exception:
                session.rollback()
                if moved:
                    move_dir(dst, src)
                raise
        logger.info("Image restored", extra={"uid": uid})
        return image

    def hard_delete(self, uid: str) -> None:
        """Remove the row and both possible directories; irreversible."""
        with self._row_lock(uid), Session(self.engine) as session:
            image = session.get(Image, uid)
            if image is None:
                raise NotFound("Image not found")

            needle = f'%"{uid}"%'
            tokens = session.exec(
                select(DownloadToken).where(cast(DownloadToken.image_uids, String).like(needle))
            ).all()
            removed_tokens = 0
            for token in tokens:
                if token.image_uids == [uid]:
                    session.delete(token)
                    removed_tokens += 1

            collections = session.exec(
                select(Collection).where(cast(Collection.images, String).like(needle))
            ).all()
            for collection in collections:
                remaining = [entry for entry in collection.images if entry.get("image_uid") != uid]
                if len(remaining) != len(collection.images):
                    collection.images = remaining
                    collection.image_count = len(remaining)
                    if collection.thumbnail_uid == uid:
                        collection.thumbnail_uid = None
                    collection.updated_at = utcnow()
                    session.add(collection)

            session.delete(image)
            session.commit()

        for directory in (self.image_dir(uid), self.image_dir(uid, deleted=True)):
            if directory.exists():
                shutil.rmtree(directory, ignore_errors=True)
        logger.info("Image permanently deleted", extra={"uid": uid, "tokens_removed": removed_tokens})

    # Listing

    def list(
        self,
        page: int = 1,
        limit: int = 50,
        *,
        owner_uid: Optional[str] = None,
        viewer_uid: Optional[str] = None,
        include_private: bool = False,
        deleted: bool = False,
        processed: Optional[bool] = None,
    ) -> Tuple[List[Image], int]:
        """Newest first; private images of other owners are hidden unless ``include_private``."""
        if page < 1 or limit < 1:
            raise InputInvalid("page and limit must be positive")

        query = select(Image)
        query = query.where(Image.deleted_at.is_not(None) if deleted else Image.deleted_at.is_(None))
        if owner_uid:
            query = query.where(Image.owner_uid == owner_uid)
        if processed is not None:
            query = query.where(Image.processed == processed)
        if not include_private:
            query = query.where(or_(Image.private == False, Image.owner_uid == viewer_uid))  # noqa: E712

        with Session(self.engine) as session:
            total = session.exec(select(func.count()).select_from(query.subquery())).one()
            items = session.exec(
                query.order_by(Image.created_at.desc(), Image.uid).offset((page - 1) * limit).limit(limit)
            ).all()
        return list(items), total

    def live_images(self) -> List[Image]:
        with Session(self.engine) as session:
            return list(session.exec(select(Image).where(Image.deleted_at.is_(None)).order_by(Image.created_at)).all())
