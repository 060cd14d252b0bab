from fastapi import APIRouter, Depends
import logging

from image_vault.dependencies.dependencies import get_orchestrator
from image_vault.image_service.models import (
    BeginUploadRequest,
    CompleteUploadRequest,
    ProgressRequest,
    UploadSession,
)
from image_vault.image_service.orchestrator import UploadOrchestrator

log = logging.getLogger(__name__)

router = APIRouter(
    prefix="/uploads",
    tags=["uploads"]
)

@router.post("", response_model=UploadSession, status_code=201)
async def begin_upload(
    body: BeginUploadRequest,
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """
    Starts an upload: validates the file and returns a presigned PUT URL.

    The browser sends the bytes straight to `upload_url`, then calls
    `/uploads/{upload_id}/complete` with the outcome.
    """
    return await orchestrator.begin_upload(body)

@router.get("/{upload_id}", response_model=UploadSession)
async def get_upload(
    upload_id: str,
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """Current state of an upload, for polling."""
    return orchestrator.get_upload(upload_id)

@router.post("/{upload_id}/progress", response_model=UploadSession)
async def report_progress(
    upload_id: str,
    body: ProgressRequest,
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """Records transfer progress. Progress never goes backwards."""
    return orchestrator.report_progress(upload_id, body.loaded, body.total)

@router.post("/{upload_id}/complete", response_model=UploadSession)
async def complete_upload(
    upload_id: str,
    body: CompleteUploadRequest,
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """Reports the end of the transfer and runs metadata write and analysis."""
    return await orchestrator.complete_upload(upload_id, body.success, body.error)
