from enum import Enum
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field
from uuid import uuid4

from image_vault.analysis.models import AnalysisResult

def new_id() -> str:
    """Generates a new unique ID."""
    return str(uuid4())

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

# -------------------------
# Records
# -------------------------
class ImageRecord(BaseModel):
    image_id: str = Field(default_factory=new_id)
    user_id: str
    s3_key: str
    file_name: str
    file_size: int
    mime_type: str
    tags: List[str] = []
    description: Optional[str] = None
    is_featured: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    def to_item(self) -> Dict[str, Any]:
        item = self.model_dump()
        # Dynamo needs created_at as ISO string
        item["created_at"] = self.created_at.isoformat()
        if item["description"] is None:
            del item["description"]
        return item

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "ImageRecord":
        return cls(
            image_id=item["image_id"],
            user_id=item["user_id"],
            s3_key=item["s3_key"],
            file_name=item["file_name"],
            file_size=int(item.get("file_size", 0)),
            mime_type=item["mime_type"],
            tags=list(item.get("tags") or []),
            description=item.get("description"),
            is_featured=bool(item.get("is_featured", False)),
            created_at=datetime.fromisoformat(item["created_at"]),
        )

# -------------------------
# Upload state machine
# -------------------------
class UploadState(str, Enum):
    VALIDATING = "validating"
    GRANT_REQUESTED = "grant_requested"
    UPLOADING = "uploading"
    METADATA_WRITTEN = "metadata_written"
    ANALYZING = "analyzing"
    COMPLETE = "complete"
    FAILED = "failed"

TERMINAL_STATES = {UploadState.COMPLETE, UploadState.FAILED}

# Forward transitions; FAILED is reachable from every non-terminal state
TRANSITIONS = {
    UploadState.VALIDATING: {UploadState.GRANT_REQUESTED},
    UploadState.GRANT_REQUESTED: {UploadState.UPLOADING},
    UploadState.UPLOADING: {UploadState.METADATA_WRITTEN},
    UploadState.METADATA_WRITTEN: {UploadState.ANALYZING},
    UploadState.ANALYZING: {UploadState.COMPLETE},
    UploadState.COMPLETE: set(),
    UploadState.FAILED: set(),
}

class UploadSession(BaseModel):
    upload_id: str = Field(default_factory=new_id)
    user_id: str
    file_name: str
    content_type: str
    file_size: int
    state: UploadState = UploadState.VALIDATING
    progress: float = 0.0
    key: Optional[str] = None
    upload_url: Optional[str] = None
    image_id: Optional[str] = None
    analysis: Optional[AnalysisResult] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def can_move_to(self, state: UploadState) -> bool:
        if state == UploadState.FAILED:
            return not self.terminal
        return state in TRANSITIONS[self.state]

# -------------------------
# Requests
# -------------------------
class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

class PresignPutRequest(CamelModel):
    file_name: str = Field(alias="fileName")
    content_type: str = Field(alias="contentType")
    user_id: str = Field(alias="userId")

class KeyRequest(CamelModel):
    key: str

class AnalyzeRequest(CamelModel):
    image_id: str = Field(alias="imageId")
    s3_url: Optional[str] = Field(None, alias="s3Url")
    key: Optional[str] = None

class BeginUploadRequest(CamelModel):
    file_name: str = Field(alias="fileName")
    content_type: str = Field(alias="contentType")
    file_size: int = Field(alias="fileSize", ge=0)
    user_id: str = Field(alias="userId")

class ProgressRequest(CamelModel):
    loaded: int = Field(ge=0)
    total: int = Field(gt=0)

class CompleteUploadRequest(CamelModel):
    success: bool
    error: Optional[str] = None

# -------------------------
# Responses
# -------------------------
class PresignPutResponse(BaseModel):
    url: str
    key: str
    bucket: str

class PresignGetResponse(BaseModel):
    url: str

class MessageResponse(BaseModel):
    message: str

class AnalyzeResponse(BaseModel):
    message: str
    analysis: AnalysisResult

class ListImagesResponse(BaseModel):
    images: List[ImageRecord]
