from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from lightbox.api.deps import Principal, get_principal
from lightbox.api.endpoints.images import MAX_PAGE_SIZE, to_read
from lightbox.db.database import get_session
from lightbox.models.image import ImageListResponse
from lightbox.services import search as search_service

router = APIRouter()


@router.get("", response_model=ImageListResponse)
def search_images(
    q: Optional[str] = Query(None, description="Free text plus filters such as rating:>=4 make:fujifilm ext:png"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    principal: Principal = Depends(get_principal),
    session: Session = Depends(get_session),
):
    items, total = search_service.search_images(
        session, q, page, limit, viewer_uid=principal.uid, is_admin=principal.is_admin
    )
    return ImageListResponse(items=[to_read(image) for image in items], total=total, page=page, limit=limit)
