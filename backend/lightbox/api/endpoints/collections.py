from typing import List

from fastapi import APIRouter, Depends, Response
from sqlmodel import Session

from lightbox.api.deps import Principal, get_principal
from lightbox.db.database import get_session
from lightbox.models.collection import CollectionCreate, CollectionImagesRequest, CollectionRead
from lightbox.services import collections as collection_service

router = APIRouter()


@router.post("", response_model=CollectionRead, status_code=201)
def create_collection(
    collection: CollectionCreate,
    principal: Principal = Depends(get_principal),
    session: Session = Depends(get_session),
):
    return collection_service.create_collection(session, collection, principal.uid)


@router.get("", response_model=List[CollectionRead])
def read_collections(principal: Principal = Depends(get_principal), session: Session = Depends(get_session)):
    return collection_service.list_collections(session, principal.uid, principal.is_admin)


@router.get("/{uid}", response_model=CollectionRead)
def read_collection(uid: str, principal: Principal = Depends(get_principal), session: Session = Depends(get_session)):
    return collection_service.get_collection(session, uid, principal.uid, principal.is_admin)


@router.post("/{uid}/images", response_model=CollectionRead)
def add_collection_images(
    uid: str,
    body: CollectionImagesRequest,
    principal: Principal = Depends(get_principal),
    session: Session = Depends(get_session),
):
    return collection_service.add_images(session, uid, body.uids, principal.uid, principal.is_admin)


@router.delete("/{uid}/images", response_model=CollectionRead)
def remove_collection_images(
    uid: str,
    body: CollectionImagesRequest,
    principal: Principal = Depends(get_principal),
    session: Session = Depends(get_session),
):
    return collection_service.remove_images(session, uid, body.uids, principal.uid, principal.is_admin)


@router.delete("/{uid}", status_code=204)
def delete_collection(uid: str, principal: Principal = Depends(get_principal), session: Session = Depends(get_session)):
    collection_service.delete_collection(session, uid, principal.uid, principal.is_admin)
    return Response(status_code=204)
