import logging
from email.utils import format_datetime
from datetime import timezone
from typing import List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse, RedirectResponse, Response
from pydantic import BaseModel

from lightbox.api.deps import Principal, get_optional_principal, get_principal, get_runtime
from lightbox.core.errors import LightboxError, NotFound
from lightbox.models.download_token import DownloadTokenCreate
from lightbox.models.image import Image, ImageListResponse, ImageRead, ImageUpdate
from lightbox.services import downloads as download_policy
from lightbox.services.imaging import exif as exif_reader
from lightbox.services.remote import fetch_image
from lightbox.services.runtime import Runtime
from lightbox.services.transforms.engine import TransformResult
from lightbox.services.transforms.params import parse_transform_params
from lightbox.services.transforms.permanent import image_paths

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_PAGE_SIZE = 100
_TRANSFORM_KEYS = ("format", "w", "h", "quality", "rotate", "flip", "kernel")


class UrlUploadRequest(BaseModel):
    url: str
    filename: Optional[str] = None
    private: bool = False


class ImageDeleteRequest(BaseModel):
    uids: List[str]
    force: bool = False


class DeleteFailure(BaseModel):
    uid: str
    error: str


class ImageDeleteResult(BaseModel):
    deleted: List[str] = []
    failed: List[DeleteFailure] = []
    force: bool = False


def to_read(image: Image) -> ImageRead:
    return ImageRead(
        **image.model_dump(exclude={"image_metadata", "exif"}),
        image_metadata=image.metadata_record,
        exif=image.exif_record,
        paths=image_paths(image),
    )


def _visible_image(runtime: Runtime, uid: str, principal: Principal, include_deleted: bool = False) -> Image:
    image = runtime.assets.read_metadata(uid, include_deleted=include_deleted)
    if not principal.can_see(image.owner_uid, image.private):
        # Private images of other users are indistinguishable from missing ones
        raise NotFound("Image not found")
    return image


def _owned_image(runtime: Runtime, uid: str, principal: Principal, include_deleted: bool = False) -> Image:
    image = _visible_image(runtime, uid, principal, include_deleted)
    if not principal.is_admin and image.owner_uid != principal.uid:
        raise HTTPException(status_code=403, detail="Only the owner can modify this image")
    return image


def _read_upload(data: UploadFile, max_bytes: int) -> bytes:
    chunks = []
    received = 0
    try:
        while True:
            chunk = data.file.read(1024 * 1024)
            if not chunk:
                break
            received += len(chunk)
            if received > max_bytes:
                raise HTTPException(status_code=400, detail="File exceeds the maximum upload size.")
            chunks.append(chunk)
    finally:
        data.file.close()
    return b"".join(chunks)


@router.get("", response_model=ImageListResponse)
def list_images(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    deleted: bool = False,
    processed: Optional[bool] = None,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    items, total = runtime.assets.list(
        page,
        limit,
        # The trash is personal unless you are an admin
        owner_uid=principal.uid if deleted and not principal.is_admin else None,
        viewer_uid=principal.uid,
        include_private=principal.is_admin,
        deleted=deleted,
        processed=processed,
    )
    return ImageListResponse(items=[to_read(image) for image in items], total=total, page=page, limit=limit)


@router.post("", response_model=ImageRead, status_code=201)
def upload_image(
    data: UploadFile = File(...),
    filename: Optional[str] = Form(None),
    checksum: Optional[str] = Form(None),
    private: bool = Form(False),
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    body = _read_upload(data, runtime.settings.MAX_UPLOAD_BYTES)
    image = runtime.assets.create(
        body,
        filename or data.filename or "",
        principal.uid,
        private=private,
        checksum=checksum,
    )
    runtime.enqueue_processing(image.uid)
    return to_read(image)


@router.post("/url", response_model=ImageRead, status_code=201)
def upload_from_url(
    body: UrlUploadRequest,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    settings = runtime.settings
    if not settings.ENABLE_URL_UPLOAD:
        raise HTTPException(status_code=403, detail="URL uploads are disabled")

    data, remote_name = fetch_image(body.url, settings.URL_UPLOAD_TIMEOUT_S, settings.MAX_UPLOAD_BYTES)
    image = runtime.assets.create(data, body.filename or remote_name or "", principal.uid, private=body.private)
    runtime.enqueue_processing(image.uid)
    logger.info("Image uploaded from URL", extra={"uid": image.uid, "url": body.url})
    return to_read(image)


@router.delete("", response_model=ImageDeleteResult)
def delete_images(
    body: ImageDeleteRequest,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    if not body.uids:
        raise HTTPException(status_code=400, detail="Image UIDs are required")

    result = ImageDeleteResult(force=body.force)
    not_found = 0
    for uid in dict.fromkeys(body.uids):
        try:
            _owned_image(runtime, uid, principal, include_deleted=body.force)
            if body.force:
                runtime.assets.hard_delete(uid)
            else:
                runtime.assets.soft_delete(uid)
            result.deleted.append(uid)
        except NotFound as exc:
            not_found += 1
            result.failed.append(DeleteFailure(uid=uid, error=exc.message))
        except HTTPException as exc:
            result.failed.append(DeleteFailure(uid=uid, error=str(exc.detail)))
        except LightboxError as exc:
            result.failed.append(DeleteFailure(uid=uid, error=exc.message))

    if not result.failed:
        return result
    if not result.deleted:
        status = 404 if not_found == len(result.failed) else 403
        return JSONResponse(status_code=status, content=result.model_dump())
    return JSONResponse(status_code=207, content=result.model_dump())


@router.get("/{uid}", response_model=ImageRead)
def read_image(
    uid: str,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    return to_read(_visible_image(runtime, uid, principal))


@router.patch("/{uid}", response_model=ImageRead)
def update_image(
    uid: str,
    changes: ImageUpdate,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    _owned_image(runtime, uid, principal)
    return to_read(runtime.assets.update(uid, changes))


@router.post("/{uid}/restore", response_model=ImageRead)
def restore_image(
    uid: str,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    _owned_image(runtime, uid, principal, include_deleted=True)
    return to_read(runtime.assets.restore(uid))


def _http_date(value) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return format_datetime(value, usegmt=True)


def _file_response(result: TransformResult, attachment_name: Optional[str]) -> Response:
    headers = {"ETag": f'"{result.etag}"', "Cache-Control": result.cache_control}
    if result.last_modified is not None:
        headers["Last-Modified"] = _http_date(result.last_modified)
    if result.not_modified:
        return Response(status_code=304, headers=headers)
    if attachment_name:
        headers["Content-Disposition"] = download_policy.content_disposition(attachment_name)
    headers["X-Transform-Cache"] = "hit" if result.cache_hit else "miss"
    return Response(content=result.body, media_type=result.media_type, headers=headers)


@router.get("/{uid}/file")
def serve_image_file(
    uid: str,
    request: Request,
    download: bool = False,
    token: Optional[str] = None,
    password: Optional[str] = None,
    principal: Optional[Principal] = Depends(get_optional_principal),
    runtime: Runtime = Depends(get_runtime),
):
    params = parse_transform_params(request.query_params)

    if token:
        check = runtime.downloads.validate_token(token, password)
        grant = check.raise_for_outcome()
        download_policy.check_subset([uid], grant.image_uids)
        download_policy.check_embed(
            grant,
            request.headers.get("host"),
            request.headers.get("referer"),
            request.headers.get("origin"),
        )
        if download and not grant.allow_download:
            raise HTTPException(status_code=403, detail="Downloads not permitted for this token")
        image = runtime.assets.read_metadata(uid)
    elif principal is not None:
        image = _visible_image(runtime, uid, principal)
    else:
        raise HTTPException(status_code=401, detail="Authentication required")

    result = runtime.transforms.serve(uid, params, request.headers.get("if-none-match"))

    attachment = None
    if download:
        metadata = image.metadata_record
        attachment = (metadata.original_file_name or metadata.file_name) if metadata else uid
        if not params.is_original():
            stem = attachment.rsplit(".", 1)[0]
            extension = runtime.transforms.output_for(params, metadata.file_type if metadata else "").extension
            attachment = f"{stem}.{extension}"
    return _file_response(result, attachment)


@router.get("/{uid}/exif")
def read_image_exif(
    uid: str,
    simple: bool = False,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    image = _visible_image(runtime, uid, principal)
    if simple:
        exif = image.exif_record
        return exif.to_json() if exif is not None else {}
    data = runtime.assets.read(uid)
    return {"exif": exif_reader.extract_exif(data).to_json(), "tags": exif_reader.raw_exif(data)}


@router.get("/{uid}/download")
def download_image(
    uid: str,
    request: Request,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    _visible_image(runtime, uid, principal)
    token = runtime.downloads.create_token(
        DownloadTokenCreate(uids=[uid], allow_download=True, description="single image download"),
        owner_uid=principal.uid,
        ttl_seconds=runtime.settings.DOWNLOAD_REDIRECT_TTL_S,
    )
    query = {"download": "1", "token": token.uid}
    # Carry transform parameters through to the file URL
    for key in _TRANSFORM_KEYS:
        value = request.query_params.get(key)
        if value:
            query[key] = value
    return RedirectResponse(url=f"/images/{uid}/file?{urlencode(query)}", status_code=302)
