from __future__ import annotations

import logging
from typing import Any, List, Optional, Union

from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlmodel import Session

from datadrop.config import RATE_LIMIT_PER_MINUTE
from datadrop.core.auth import CurrentUser, require_user
from datadrop.core.metrics import metrics
from datadrop.core.rate_limit import RateLimiter
from datadrop.db import get_session
from datadrop.deletion import enqueue_deletion, request_deletion
from datadrop.downloads import perform_download, resolve_download_info
from datadrop.multipart import abort_upload, complete_upload, get_part_location
from datadrop.records import UNCHANGED, edit_settings, list_files
from datadrop.sharing import create_share_link
from datadrop.storage import get_deletion_queue, get_object_storage
from datadrop.uploads import begin_upload, confirm_upload

router = APIRouter()

logger = logging.getLogger("datadrop")

rate_limiter = RateLimiter(RATE_LIMIT_PER_MINUTE)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class UploadRequest(_CamelModel):
    file_name: Optional[str] = Field(default=None, alias="fileName")
    file_type: Optional[str] = Field(default=None, alias="fileType")
    file_size: Optional[Any] = Field(default=None, alias="fileSize")
    upload_type: Optional[str] = Field(default=None, alias="uploadType")
    expires_at: Optional[str] = Field(default=None, alias="expiresAt")
    expires_in_seconds: Optional[Any] = Field(default=None, alias="expiresInSeconds")
    max_downloads: Optional[Any] = Field(default=None, alias="maxDownloads")


class PartRequest(_CamelModel):
    part_number: Any = Field(default=None, alias="partNumber")


class CompleteRequest(_CamelModel):
    parts: List[Any] = Field(default_factory=list)


class ShareRequest(_CamelModel):
    expires_at: Optional[str] = Field(default=None, alias="expiresAt")
    expires_in_seconds: Optional[Any] = Field(default=None, alias="expiresInSeconds")


class EditSettingsRequest(_CamelModel):
    expires_at: Optional[str] = Field(default=None, alias="expiresAt")
    expires_in_seconds: Optional[Any] = Field(default=None, alias="expiresInSeconds")
    max_downloads: Optional[Union[int, str]] = Field(default=None, alias="maxDownloads")


async def enforce_rate_limit(request: Request):
    client = request.client.host if request.client else "unknown"
    allowed, retry_after = rate_limiter.hit(client)
    if not allowed:
        headers = {"Retry-After": str(retry_after)}
        raise HTTPException(
            status_code=429,
            detail=f"Rate limit exceeded. Try again in {retry_after} seconds.",
            headers=headers,
        )


@router.get("/api/health")
def health():
    return {"status": "ok"}


@router.get("/metrics")
def metrics_snapshot():
    response = JSONResponse(metrics.snapshot())
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
    return response


# Upload sessions


@router.post("/api/upload")
def create_upload(
    body: UploadRequest,
    user: CurrentUser = Depends(require_user),
    session: Session = Depends(get_session),
):
    return begin_upload(
        session,
        get_object_storage(),
        user,
        file_name=body.file_name,
        file_type=body.file_type,
        file_size=body.file_size,
        upload_type=body.upload_type,
        expires_at=body.expires_at,
        expires_in_seconds=body.expires_in_seconds,
        max_downloads=body.max_downloads,
    )


@router.post("/api/upload/{file_id}/part")
def upload_part_location(
    file_id: str,
    body: PartRequest,
    user: CurrentUser = Depends(require_user),
    session: Session = Depends(get_session),
):
    return get_part_location(session, get_object_storage(), user, file_id, body.part_number)


@router.post("/api/upload/{file_id}/complete")
def upload_complete(
    file_id: str,
    body: CompleteRequest,
    user: CurrentUser = Depends(require_user),
    session: Session = Depends(get_session),
):
    return complete_upload(session, get_object_storage(), user, file_id, body.parts)


@router.post("/api/upload/{file_id}/abort")
def upload_abort(
    file_id: str,
    user: CurrentUser = Depends(require_user),
    session: Session = Depends(get_session),
):
    return abort_upload(session, get_object_storage(), user, file_id)


# Owner file management


@router.get("/api/files")
def files_index(user: CurrentUser = Depends(require_user), session: Session = Depends(get_session)):
    return {"files": list_files(session, user)}


@router.post("/api/files/{file_id}/confirm")
def files_confirm(
    file_id: str,
    user: CurrentUser = Depends(require_user),
    session: Session = Depends(get_session),
):
    return confirm_upload(session, get_object_storage(), user, file_id)


@router.post("/api/files/{file_id}/share")
def files_share(
    file_id: str,
    body: Optional[ShareRequest] = Body(default=None),
    user: CurrentUser = Depends(require_user),
    session: Session = Depends(get_session),
):
    body = body or ShareRequest()
    return create_share_link(
        session,
        user,
        file_id,
        expires_at=body.expires_at,
        expires_in_seconds=body.expires_in_seconds,
    )


@router.patch("/api/files/{file_id}")
def files_edit(
    file_id: str,
    body: EditSettingsRequest,
    user: CurrentUser = Depends(require_user),
    session: Session = Depends(get_session),
):
    # An explicit null for maxDownloads means unlimited; an absent key means unchanged
    max_downloads = body.max_downloads if "max_downloads" in body.model_fields_set else UNCHANGED
    return edit_settings(
        session,
        user,
        file_id,
        expires_at=body.expires_at,
        expires_in_seconds=body.expires_in_seconds,
        max_downloads=max_downloads,
    )


@router.delete("/api/files/{file_id}")
def files_delete(
    file_id: str,
    user: CurrentUser = Depends(require_user),
    session: Session = Depends(get_session),
):
    return request_deletion(session, get_deletion_queue(), user, file_id)


# Share-token downloads


@router.get("/api/file/{token}/info", dependencies=[Depends(enforce_rate_limit)])
def download_info(token: str, session: Session = Depends(get_session)):
    return resolve_download_info(session, token)


@router.post("/api/file/{token}", dependencies=[Depends(enforce_rate_limit)])
def download(token: str, background_tasks: BackgroundTasks, session: Session = Depends(get_session)):
    result = perform_download(session, get_object_storage(), token)
    if result.deletion is not None:
        # Runs after the response is sent
        background_tasks.add_task(enqueue_deletion, get_deletion_queue(), result.deletion)
    return result.payload
