from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask
from typing import Optional
import logging

from image_vault.dependencies.dependencies import get_config, get_orchestrator, get_proxy, get_s3_service
from image_vault.exceptions import MissingFieldException
from image_vault.image_service.models import (
    AnalyzeRequest,
    AnalyzeResponse,
    KeyRequest,
    ListImagesResponse,
    MessageResponse,
    PresignGetResponse,
    PresignPutRequest,
    PresignPutResponse,
)
from image_vault.image_service.orchestrator import UploadOrchestrator
from image_vault.image_service.proxy import RetrievalProxy, UpstreamStatus
from image_vault.settings import Settings
from image_vault.storage.s3 import S3Service

log = logging.getLogger(__name__)

router = APIRouter(tags=["storage"])

# Upstream headers relayed by the image proxy
PASSTHROUGH_HEADERS = ("content-length", "content-encoding", "etag", "last-modified")

@router.post("/presign-put", response_model=PresignPutResponse)
def presign_put(
    body: PresignPutRequest,
    s3: S3Service = Depends(get_s3_service),
):
    """Issues a one-hour presigned PUT for a new object owned by `userId`."""
    grant = s3.issue_upload_grant(body.user_id, body.file_name, body.content_type)
    return PresignPutResponse(url=grant.url, key=grant.key, bucket=grant.bucket)

@router.post("/presign-get", response_model=PresignGetResponse)
def presign_get(
    body: KeyRequest,
    s3: S3Service = Depends(get_s3_service),
):
    """Issues a presigned GET for an existing object."""
    grant = s3.issue_download_grant(body.key)
    return PresignGetResponse(url=grant.url)

@router.post("/delete-object", response_model=MessageResponse)
def delete_object(
    body: KeyRequest,
    s3: S3Service = Depends(get_s3_service),
):
    """Deletes a single object. Unknown keys succeed."""
    s3.delete_object(body.key)
    return MessageResponse(message="Object deleted successfully")

@router.get("/image-proxy")
async def image_proxy(
    url: Optional[str] = Query(None),
    proxy: RetrievalProxy = Depends(get_proxy),
    config: Settings = Depends(get_config),
):
    """
    Relays the bytes behind an S3 presigned URL.

    Non-signed URLs are rejected. Upstream errors keep their status code and
    body so they can be diagnosed from the browser.
    """
    try:
        upstream = await proxy.open(url)
    except UpstreamStatus as e:
        return JSONResponse(
            status_code=e.status_code,
            content={"error": "Upstream fetch failed", "detail": e.body, "status": e.status_code},
        )

    headers = {
        name: upstream.headers[name] for name in PASSTHROUGH_HEADERS if name in upstream.headers
    }
    headers["Cache-Control"] = f"private, max-age={config.proxy_cache_seconds}"
    return StreamingResponse(
        upstream.aiter_raw(),
        status_code=upstream.status_code,
        media_type=upstream.headers.get("content-type", "application/octet-stream"),
        headers=headers,
        background=BackgroundTask(upstream.aclose),
    )

@router.post("/analyze-image", response_model=AnalyzeResponse)
async def analyze_image(
    body: AnalyzeRequest,
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """Runs analysis for an existing image and stores the description and tags."""
    if not body.s3_url and not body.key:
        raise MissingFieldException("s3Url or key")
    analysis = await orchestrator.analyze_image(body.image_id, key=body.key, signed_url=body.s3_url)
    return AnalyzeResponse(message="Image analyzed successfully", analysis=analysis)

@router.get("/search-images", response_model=ListImagesResponse)
async def search_images(
    query: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None, alias="userId"),
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """Searches an owner's images by tag or description, newest first."""
    images = await orchestrator.search_images(user_id, query)
    return ListImagesResponse(images=images)
