from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import StreamingResponse

from lightbox.api.deps import Principal, get_principal, get_runtime
from lightbox.core.errors import NotFound
from lightbox.models.download_token import DownloadRequest, DownloadTokenCreate, DownloadTokenRead
from lightbox.services import downloads as policy
from lightbox.services.runtime import Runtime

router = APIRouter()


@router.post("/sign", response_model=DownloadTokenRead)
def sign_download(
    body: DownloadTokenCreate,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    if not body.uids:
        raise HTTPException(status_code=400, detail="Image UIDs are required")
    for uid in body.uids:
        image = runtime.assets.read_metadata(uid)
        if not principal.can_see(image.owner_uid, image.private):
            raise NotFound("Image not found")

    token = runtime.downloads.create_token(body, owner_uid=principal.uid)
    read = policy.to_read(token)
    # The issuer always sees what the token covers
    read.uids = list(token.image_uids)
    return read


@router.post("")
def download_archive(
    body: DownloadRequest,
    request: Request,
    token: Optional[str] = None,
    password: Optional[str] = None,
    runtime: Runtime = Depends(get_runtime),
):
    if not token:
        raise HTTPException(status_code=400, detail="Missing token query param")

    grant = runtime.downloads.validate_token(token, password).raise_for_outcome()
    if not grant.allow_download:
        raise HTTPException(status_code=403, detail="Downloads not permitted for this token")
    policy.check_embed(grant, request.headers.get("host"), request.headers.get("referer"), request.headers.get("origin"))
    if not body.uids:
        raise HTTPException(status_code=400, detail="Image UIDs are required")
    policy.check_subset(body.uids, grant.image_uids)

    filename = body.filename or policy.default_archive_name(runtime.settings.PROJECT_NAME)
    return StreamingResponse(
        runtime.downloads.zip_stream(list(dict.fromkeys(body.uids))),
        media_type="application/octet-stream",
        headers={"Content-Disposition": policy.content_disposition(filename)},
    )


@router.get("/tokens/{token}", response_model=DownloadTokenRead)
def read_token(token: str, runtime: Runtime = Depends(get_runtime)):
    row = runtime.downloads.get_token(token)
    if row is None or row.is_expired():
        raise HTTPException(status_code=404, detail="Token not found")
    return policy.to_read(row)


@router.delete("/tokens/{token}", status_code=204)
def revoke_token(
    token: str,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    row = runtime.downloads.get_token(token)
    if row is None:
        raise HTTPException(status_code=404, detail="Token not found")
    if not principal.is_admin and row.owner_uid != principal.uid:
        raise HTTPException(status_code=403, detail="Only the issuer can revoke this token")
    runtime.downloads.revoke(token)
    return Response(status_code=204)
