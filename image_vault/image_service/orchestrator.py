"""
    Upload-to-analysis pipeline.

    Coordinates the object store, the metadata store and image analysis for
    each upload. No transaction spans the three systems, so the ordering of
    calls carries the consistency guarantees:

    * metadata is written only after the bytes are confirmed in storage;
    * deletion removes the object first and the row only on success, so a
      failure leaves an object without a row, never a row without an object;
    * an object whose row could not be written is logged as orphaned and kept.
"""
from io import BytesIO
from datetime import timedelta
from typing import Dict, List, Optional, Set
import logging

from starlette.concurrency import run_in_threadpool

from image_vault.analysis.models import AnalysisResult
from image_vault.analysis.service import AnalysisService
from image_vault.exceptions import (
    APIException,
    ImageNotFoundException,
    InvalidStateException,
    InvalidTypeException,
    MissingFieldException,
    TooLargeException,
    UploadNotFoundException,
    UpstreamException,
)
from image_vault.image_service.models import (
    BeginUploadRequest,
    ImageRecord,
    UploadSession,
    UploadState,
    utcnow,
)
from image_vault.image_service.proxy import RetrievalProxy, UpstreamStatus
from image_vault.image_service.service import search_records
from image_vault.storage.dynamodb import DynamoDBService
from image_vault.storage.events import ChangeEvent, ChangeFeed
from image_vault.storage.s3 import S3Service

log = logging.getLogger(__name__)

# Progress reported when each state is entered
STATE_PROGRESS = {
    UploadState.VALIDATING: 0.0,
    UploadState.GRANT_REQUESTED: 20.0,
    UploadState.UPLOADING: 40.0,
    UploadState.METADATA_WRITTEN: 60.0,
    UploadState.ANALYZING: 80.0,
    UploadState.COMPLETE: 100.0,
}
# The byte transfer moves progress between these two marks
TRANSFER_START, TRANSFER_END = 40.0, 60.0

class UploadTracker:
    """
        Process-local registry of upload sessions, polled by id.

        Finished (complete or failed) sessions stay pollable for `ttl_seconds`
        after their last change. Past `max_sessions`, the oldest finished
        sessions are evicted first; sessions still in progress are never evicted.
    """

    def __init__(self, ttl_seconds: int = 3600, max_sessions: int = 1000):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_sessions = max_sessions
        self._sessions: Dict[str, UploadSession] = {}

    def add(self, session: UploadSession) -> UploadSession:
        self.prune()
        self._sessions[session.upload_id] = session
        return session

    def prune(self) -> int:
        """Evicts expired finished sessions, then the oldest finished ones over the cap."""
        finished = sorted(
            (s for s in self._sessions.values() if s.terminal), key=lambda s: s.updated_at,
        )
        cutoff = utcnow() - self.ttl
        overflow = len(self._sessions) - self.max_sessions + 1
        evicted = 0
        for session in finished:
            if session.updated_at > cutoff and evicted >= overflow:
                break
            self.discard(session.upload_id)
            evicted += 1
        if evicted:
            log.debug("Evicted %d finished upload sessions", evicted)
        return evicted

    def get(self, upload_id: str) -> UploadSession:
        session = self._sessions.get(upload_id)
        if session is None:
            raise UploadNotFoundException(upload_id)
        return session

    def discard(self, upload_id: str):
        self._sessions.pop(upload_id, None)

    def __len__(self):
        return len(self._sessions)

class UploadOrchestrator:
    def __init__(
        self,
        s3: S3Service,
        db: DynamoDBService,
        analysis: AnalysisService,
        proxy: RetrievalProxy,
        feed: ChangeFeed,
        tracker: Optional[UploadTracker] = None,
        max_upload_bytes: int = 10 * 1024 * 1024,
    ):
        self.s3 = s3
        self.db = db
        self.analysis = analysis
        self.proxy = proxy
        self.feed = feed
        self.tracker = tracker or UploadTracker()
        self.max_upload_bytes = max_upload_bytes
        self._completing: Set[str] = set()

    # -------------------------
    # State machine
    # -------------------------
    def _advance(self, session: UploadSession, state: UploadState):
        if not session.can_move_to(state):
            raise InvalidStateException(
                f"Upload {session.upload_id} cannot move from {session.state.value} to {state.value}"
            )
        session.state = state
        session.progress = max(session.progress, STATE_PROGRESS.get(state, session.progress))
        session.updated_at = utcnow()
        log.info("Upload %s -> %s", session.upload_id, state.value)

    def _fail(self, session: UploadSession, exc: Exception):
        session.error = exc.detail if isinstance(exc, APIException) else str(exc)
        if not session.terminal:
            self._advance(session, UploadState.FAILED)
        log.error("Upload %s failed: %s", session.upload_id, session.error)

    def _validate(self, session: UploadSession):
        if not session.content_type or not session.content_type.startswith("image/"):
            raise InvalidTypeException(session.content_type)
        if session.file_size > self.max_upload_bytes:
            raise TooLargeException(session.file_size, self.max_upload_bytes)
        if not session.user_id:
            raise MissingFieldException("userId")

    async def _start(self, session: UploadSession) -> UploadSession:
        """Validating -> GrantRequested -> Uploading."""
        self.tracker.add(session)
        try:
            self._validate(session)
            self._advance(session, UploadState.GRANT_REQUESTED)
            grant = await run_in_threadpool(
                self.s3.issue_upload_grant, session.user_id, session.file_name, session.content_type
            )
            session.key = grant.key
            session.upload_url = grant.url
            self._advance(session, UploadState.UPLOADING)
        except APIException as e:
            self._fail(session, e)
            raise
        return session

    async def begin_upload(self, request: BeginUploadRequest, owner_id: Optional[str] = None) -> UploadSession:
        """
            Validates the file and issues an upload grant. The returned session
            is in `uploading`; the caller PUTs the bytes to `upload_url` and then
            reports the outcome through `complete_upload`.
        """
        session = UploadSession(
            user_id=owner_id or request.user_id,
            file_name=request.file_name,
            content_type=request.content_type,
            file_size=request.file_size,
        )
        return await self._start(session)

    def get_upload(self, upload_id: str) -> UploadSession:
        return self.tracker.get(upload_id)

    def report_progress(self, upload_id: str, loaded: int, total: int) -> UploadSession:
        session = self.tracker.get(upload_id)
        if session.state != UploadState.UPLOADING:
            raise InvalidStateException(f"Upload {upload_id} is not transferring bytes")
        fraction = min(max(loaded / total, 0.0), 1.0)
        session.progress = max(session.progress, TRANSFER_START + fraction * (TRANSFER_END - TRANSFER_START))
        session.updated_at = utcnow()
        return session

    async def complete_upload(self, upload_id: str, success: bool, error: Optional[str] = None) -> UploadSession:
        """Called once the caller's transfer has finished, successfully or not."""
        session = self.tracker.get(upload_id)
        if session.state != UploadState.UPLOADING:
            raise InvalidStateException(
                f"Upload {upload_id} is {session.state.value}, expected {UploadState.UPLOADING.value}"
            )
        # Checked and claimed with no await in between; one caller finishes an upload
        if upload_id in self._completing:
            raise InvalidStateException(f"Upload {upload_id} is already being completed")
        if not success:
            self._fail(session, UpstreamException(error or "Upload to storage failed"))
            return session

        self._completing.add(upload_id)
        try:
            try:
                stored = await run_in_threadpool(self.s3.head, session.key)
            except APIException as e:
                self._fail(session, e)
                raise
            if stored is None:
                exc = UpstreamException(f"Uploaded object {session.key} was not found in storage")
                self._fail(session, exc)
                raise exc
            return await self._finish(session)
        finally:
            self._completing.discard(upload_id)

    async def upload_bytes(self, data: bytes, file_name: str, content_type: str, owner_id: str) -> UploadSession:
        """Same pipeline, with the server performing the transfer itself."""
        session = UploadSession(
            user_id=owner_id,
            file_name=file_name,
            content_type=content_type,
            file_size=len(data),
        )
        await self._start(session)
        try:
            await run_in_threadpool(self.s3.upload, BytesIO(data), session.key, content_type)
        except APIException as e:
            self._fail(session, e)
            raise
        session.progress = TRANSFER_END
        return await self._finish(session, data=data)

    async def _finish(self, session: UploadSession, data: Optional[bytes] = None) -> UploadSession:
        """Uploading -> MetadataWritten -> Analyzing -> Complete."""
        record = ImageRecord(
            user_id=session.user_id,
            s3_key=session.key,
            file_name=session.file_name,
            file_size=session.file_size,
            mime_type=session.content_type,
        )
        try:
            await run_in_threadpool(self.db.put_metadata, record.to_item())
        except APIException as e:
            log.error("Orphaned object s3://%s/%s: metadata insert failed", self.s3.bucket, session.key)
            self._fail(session, e)
            raise
        session.image_id = record.image_id
        self._advance(session, UploadState.METADATA_WRITTEN)
        self.feed.publish(ChangeEvent(
            event="insert", user_id=record.user_id, image_id=record.image_id, record=record.model_dump(mode="json"),
        ))
        log.info("Saved image metadata %s", record.image_id)

        self._advance(session, UploadState.ANALYZING)
        try:
            if data is None:
                data = await run_in_threadpool(self.s3.get_object_bytes, record.s3_key)
            session.analysis = await self._analyze_and_store(record, data)
        except APIException as e:
            self._fail(session, e)
            raise
        self._advance(session, UploadState.COMPLETE)
        return session

    # -------------------------
    # Analysis
    # -------------------------
    async def _analyze_and_store(self, record: ImageRecord, data: bytes) -> AnalysisResult:
        result = await self.analysis.analyze(
            data, mime_type=record.mime_type, file_name=record.file_name, file_size=record.file_size,
        )
        # Analysis replaces tags and description, never appends
        item = await run_in_threadpool(
            self.db.update_metadata, record.image_id, {"tags": result.tags, "description": result.description},
        )
        if item is None:
            raise ImageNotFoundException(record.image_id)
        self.feed.publish(ChangeEvent(
            event="update", user_id=record.user_id, image_id=record.image_id,
            record=ImageRecord.from_item(item).model_dump(mode="json"),
        ))
        log.info("Stored %s analysis for image %s", result.source, record.image_id)
        return result

    async def analyze_image(
        self, image_id: str, key: Optional[str] = None, signed_url: Optional[str] = None,
    ) -> AnalysisResult:
        """
            (Re)analyzes an existing record. Bytes are read from the store by
            key, or through the retrieval proxy when a signed URL is given.
            Concurrent calls for the same record are not deduplicated.
        """
        record = await self.get_image(image_id)
        if signed_url:
            try:
                data = (await self.proxy.fetch_image_bytes(signed_url)).content
            except UpstreamStatus as e:
                raise UpstreamException(
                    f"Failed to fetch image from S3: {e.status_code}", error="Failed to analyze image"
                )
        else:
            data = await run_in_threadpool(self.s3.get_object_bytes, key or record.s3_key)
        return await self._analyze_and_store(record, data)

    # -------------------------
    # Records
    # -------------------------
    async def get_image(self, image_id: str) -> ImageRecord:
        item = await run_in_threadpool(self.db.get_metadata, image_id)
        if not item:
            raise ImageNotFoundException(image_id)
        return ImageRecord.from_item(item)

    async def list_images(self, owner_id: str) -> List[ImageRecord]:
        if not owner_id:
            raise MissingFieldException("userId")
        items = await run_in_threadpool(self.db.query_by_user, owner_id)
        return [ImageRecord.from_item(it) for it in items]

    async def search_images(self, owner_id: str, query: str) -> List[ImageRecord]:
        missing = [name for name, value in (("query", query), ("userId", owner_id)) if not value]
        if missing:
            raise MissingFieldException(*missing)
        return search_records(await self.list_images(owner_id), query)

    async def toggle_featured(self, image_id: str) -> ImageRecord:
        record = await self.get_image(image_id)
        item = await run_in_threadpool(self.db.update_metadata, image_id, {"is_featured": not record.is_featured})
        if item is None:
            raise ImageNotFoundException(image_id)
        updated = ImageRecord.from_item(item)
        self.feed.publish(ChangeEvent(
            event="update", user_id=updated.user_id, image_id=image_id, record=updated.model_dump(mode="json"),
        ))
        return updated

    async def delete_image(self, image_id: str):
        """
            Deletes the object, then the row. If storage refuses, the row is
            kept and the error propagates.
        """
        record = await self.get_image(image_id)
        await run_in_threadpool(self.s3.delete_object, record.s3_key)
        await run_in_threadpool(self.db.delete_metadata, image_id)
        self.feed.publish(ChangeEvent(event="delete", user_id=record.user_id, image_id=image_id))
        log.info("Deleted image %s (%s)", image_id, record.s3_key)
