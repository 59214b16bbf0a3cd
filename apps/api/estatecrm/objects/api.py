from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from jose import JWTError
from sqlalchemy.orm import Session

from estatecrm.api.errors import error_response
from estatecrm.core.auth import decode_session_token, read_session_token
from estatecrm.core.database import get_db
from estatecrm.crm.api import get_current_user, property_service
from estatecrm.crm.service import ActorUser
from estatecrm.objects.schemas import (
    PropertyImageRequest,
    PropertyImageResponse,
    StoredObjectResponse,
    UploadUrlResponse,
)
from estatecrm.objects.storage import LocalObjectStore, ObjectNotFoundError, get_object_store

router = APIRouter(tags=["objects"])

CACHE_MAX_AGE_SECONDS = 3600


def get_optional_user_id(request: Request) -> str | None:
    token = read_session_token(request)
    if not token:
        return None
    try:
        payload = decode_session_token(token)
    except JWTError:
        return None
    subject = payload.get("sub")
    return str(subject) if subject else None


def _object_response(content: bytes, content_type: str, visibility: str) -> Response:
    return Response(
        content=content,
        media_type=content_type,
        headers={"Cache-Control": f"{visibility}, max-age={CACHE_MAX_AGE_SECONDS}"},
    )


@router.post("/api/objects/upload", response_model=UploadUrlResponse)
def request_upload_url(
    request: Request,
    user: ActorUser = Depends(get_current_user),
    store: LocalObjectStore = Depends(get_object_store),
) -> UploadUrlResponse:
    return UploadUrlResponse(upload_url=store.reserve_upload())


@router.put("/objects/uploads/{object_id}", response_model=StoredObjectResponse)
async def upload_object(
    request: Request,
    object_id: uuid.UUID,
    user: ActorUser = Depends(get_current_user),
    store: LocalObjectStore = Depends(get_object_store),
) -> StoredObjectResponse:
    content = await request.body()
    object_path = f"/objects/uploads/{object_id}"
    acl = store.write(object_path, content, owner=user.user_id, content_type=request.headers.get("content-type"))
    return StoredObjectResponse(object_path=object_path, size=len(content), content_type=acl.content_type)


@router.get("/objects/{object_path:path}")
def download_object(
    request: Request,
    object_path: str,
    store: LocalObjectStore = Depends(get_object_store),
) -> Response:
    try:
        stored = store.get(f"/objects/{object_path}")
    except ObjectNotFoundError:
        return error_response(request, status_code=status.HTTP_404_NOT_FOUND, code="object_not_found", message="Object not found")

    user_id = get_optional_user_id(request)
    if not stored.acl.allows(user_id):
        if user_id is None:
            return error_response(request, status_code=status.HTTP_401_UNAUTHORIZED, code="unauthorized", message="Unauthorized")
        return error_response(request, status_code=status.HTTP_403_FORBIDDEN, code="object_forbidden", message="Forbidden")
    return _object_response(stored.read_bytes(), stored.acl.content_type, stored.acl.visibility)


@router.get("/public-objects/{file_path:path}")
def public_object(
    request: Request,
    file_path: str,
    store: LocalObjectStore = Depends(get_object_store),
) -> Response:
    try:
        stored = store.search_public(file_path)
    except ObjectNotFoundError:
        return error_response(request, status_code=status.HTTP_404_NOT_FOUND, code="object_not_found", message="File not found")
    return _object_response(stored.read_bytes(), stored.acl.content_type, "public")


@router.put("/api/property-images", response_model=PropertyImageResponse)
def attach_property_image(
    request: Request,
    dto: PropertyImageRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    store: LocalObjectStore = Depends(get_object_store),
) -> PropertyImageResponse | JSONResponse:
    object_path = store.normalize_object_path(dto.property_image_url)
    try:
        if object_path.startswith("/objects/"):
            current = store.get(object_path).acl
            if current.owner not in (None, user.user_id):
                return error_response(
                    request, status_code=status.HTTP_403_FORBIDDEN, code="object_forbidden", message="Forbidden"
                )
            store.set_acl(object_path, owner=user.user_id, visibility="public")
        if dto.property_id is not None:
            property_service.add_image(db, user, dto.property_id, object_path)
    except ObjectNotFoundError:
        return error_response(request, status_code=status.HTTP_404_NOT_FOUND, code="object_not_found", message="Object not found")
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="property_image_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    return PropertyImageResponse(object_path=object_path)
