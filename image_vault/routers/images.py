from fastapi import APIRouter, Depends, UploadFile, File, Form, Query, Request, Response
from fastapi.responses import StreamingResponse
from typing import Optional
import asyncio
import logging

from image_vault.dependencies.dependencies import get_feed, get_orchestrator
from image_vault.exceptions import InvalidTypeException, MissingFieldException, TooLargeException
from image_vault.image_service.models import ImageRecord, ListImagesResponse, UploadSession
from image_vault.image_service.orchestrator import UploadOrchestrator
from image_vault.storage.events import ChangeFeed

log = logging.getLogger(__name__)

router = APIRouter(
    prefix="/images",
    tags=["images"]
)

# Seconds between keep-alive comments on the event stream
KEEPALIVE_SECONDS = 15

@router.post("", response_model=UploadSession, status_code=201)
async def upload_image(
    file: UploadFile = File(...),
    user_id: str = Form(...),
    response: Response = None,
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """Uploads an image through the server and runs the full pipeline on it."""
    # Add security header
    if response:
        response.headers["X-Content-Type-Options"] = "nosniff"

    # Pre-check content-type
    if not file.content_type or not file.content_type.startswith("image/"):
        raise InvalidTypeException(file.content_type)

    limit = orchestrator.max_upload_bytes
    contents = await file.read(limit + 1)
    if len(contents) > limit:
        raise TooLargeException(len(contents), limit)

    return await orchestrator.upload_bytes(
        data=contents,
        file_name=file.filename or "upload",
        content_type=file.content_type,
        owner_id=user_id,
    )

@router.get("", response_model=ListImagesResponse)
async def list_images_handler(
    user_id: Optional[str] = Query(None, alias="userId"),
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """Lists an owner's images, newest first."""
    images = await orchestrator.list_images(user_id)
    return ListImagesResponse(images=images)

@router.get("/events")
async def image_events(
    request: Request,
    user_id: Optional[str] = Query(None, alias="userId"),
    feed: ChangeFeed = Depends(get_feed),
):
    """Server-sent events for every insert, update and delete of the owner's images."""
    if not user_id:
        raise MissingFieldException("userId")

    async def stream():
        async with feed.subscribe(user_id) as queue:
            while not await request.is_disconnected():
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield event.to_sse()

    return StreamingResponse(stream(), media_type="text/event-stream", headers={"Cache-Control": "no-cache"})

@router.get("/{image_id}", response_model=ImageRecord)
async def get_image(
    image_id: str,
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """Gets image metadata."""
    return await orchestrator.get_image(image_id)

@router.post("/{image_id}/featured", response_model=ImageRecord)
async def toggle_featured(
    image_id: str,
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """Flips the featured flag; independent of analysis state."""
    return await orchestrator.toggle_featured(image_id)

@router.delete("/{image_id}", status_code=204)
async def delete_image(
    image_id: str,
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """Deletes the stored object, then its metadata."""
    await orchestrator.delete_image(image_id)
    return Response(status_code=204)
