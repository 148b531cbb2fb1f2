import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from lightbox.core.clock import utcnow
from lightbox.core.errors import Conflict, InputInvalid, NotFound, PolicyDenied
from lightbox.core.uid import new_uid
from lightbox.models.collection import Collection, CollectionCreate
from lightbox.models.image import Image

logger = logging.getLogger(__name__)


def _name_taken(session: Session, owner_uid: Optional[str], name: str, exclude_uid: Optional[str] = None) -> bool:
    query = select(Collection).where(Collection.owner_uid == owner_uid, Collection.name == name)
    if exclude_uid:
        query = query.where(Collection.uid != exclude_uid)
    return session.exec(query).first() is not None


def create_collection(session: Session, data: CollectionCreate, owner_uid: Optional[str]) -> Collection:
    name = (data.name or "").strip()
    if not name:
        raise InputInvalid("Collection name is required")
    if _name_taken(session, owner_uid, name):
        raise Conflict("Collection with this name already exists")

    now = utcnow()
    collection = Collection(
        uid=new_uid(),
        name=name,
        description=data.description,
        private=data.private,
        owner_uid=owner_uid,
        thumbnail_uid=data.thumbnail_uid,
        created_at=now,
        updated_at=now,
        images=[],
        image_count=0,
    )
    session.add(collection)
    try:
        session.commit()
    except IntegrityError:
        # Lost a race with a concurrent create of the same name
        session.rollback()
        raise Conflict("Collection with this name already exists") from None
    session.refresh(collection)
    logger.info("Collection created", extra={"uid": collection.uid, "owner_uid": owner_uid})
    return collection


def get_collection(session: Session, uid: str, viewer_uid: Optional[str] = None, is_admin: bool = False) -> Collection:
    collection = session.get(Collection, uid)
    if collection is None:
        raise NotFound("Collection not found")
    if collection.private and not is_admin and collection.owner_uid != viewer_uid:
        raise NotFound("Collection not found")
    return collection


def list_collections(session: Session, viewer_uid: Optional[str] = None, is_admin: bool = False) -> List[Collection]:
    query = select(Collection)
    if not is_admin:
        query = query.where((Collection.private == False) | (Collection.owner_uid == viewer_uid))  # noqa: E712
    return list(session.exec(query.order_by(Collection.name)).all())


def _require_owner(collection: Collection, principal_uid: Optional[str], is_admin: bool) -> None:
    if not is_admin and collection.owner_uid != principal_uid:
        raise PolicyDenied("Only the owner can modify this collection")


def add_images(
    session: Session,
    uid: str,
    image_uids: List[str],
    principal_uid: Optional[str] = None,
    is_admin: bool = False,
) -> Collection:
    collection = get_collection(session, uid, principal_uid, is_admin)
    _require_owner(collection, principal_uid, is_admin)

    wanted = list(dict.fromkeys(image_uids))
    query = select(Image.uid).where(Image.uid.in_(wanted), Image.deleted_at.is_(None))
    if not is_admin:
        # Other users' private images are reported as missing
        query = query.where((Image.private == False) | (Image.owner_uid == principal_uid))  # noqa: E712
    found = set(session.exec(query).all())
    missing = [image_uid for image_uid in wanted if image_uid not in found]
    if missing:
        raise NotFound(f"Images not found: {', '.join(missing)}")

    entries = list(collection.images or [])
    present = {entry.get("image_uid") for entry in entries}
    now = utcnow().isoformat()
    added = 0
    for image_uid in wanted:
        if image_uid in present:
            continue
        entries.append({"image_uid": image_uid, "added_at": now, "added_by": principal_uid})
        added += 1

    if added:
        collection.images = entries
        collection.image_count = len(entries)
        if collection.thumbnail_uid is None:
            collection.thumbnail_uid = entries[0]["image_uid"]
        collection.updated_at = utcnow()
        session.add(collection)
        session.commit()
        session.refresh(collection)
    logger.info("Images added to collection", extra={"uid": uid, "added": added})
    return collection


def remove_images(
    session: Session,
    uid: str,
    image_uids: List[str],
    principal_uid: Optional[str] = None,
    is_admin: bool = False,
) -> Collection:
    collection = get_collection(session, uid, principal_uid, is_admin)
    _require_owner(collection, principal_uid, is_admin)

    drop = set(image_uids)
    entries = [entry for entry in collection.images or [] if entry.get("image_uid") not in drop]
    if len(entries) != len(collection.images or []):
        collection.images = entries
        collection.image_count = len(entries)
        if collection.thumbnail_uid in drop:
            collection.thumbnail_uid = entries[0]["image_uid"] if entries else None
        collection.updated_at = utcnow()
        session.add(collection)
        session.commit()
        session.refresh(collection)
    return collection


def delete_collection(session: Session, uid: str, principal_uid: Optional[str] = None, is_admin: bool = False) -> None:
    collection = get_collection(session, uid, principal_uid, is_admin)
    _require_owner(collection, principal_uid, is_admin)
    session.delete(collection)
    session.commit()
    logger.info("Collection deleted", extra={"uid": uid})
