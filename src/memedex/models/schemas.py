"""
memedex schemas.

Request/response models for:
- Items: the meme record and its partial update
- Scanning: progress snapshot and run result
- Processing: batch counters and reset counts
- Search: hits and response envelope
- System: stats, health, version, errors
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, computed_field, field_validator

# ========================================
# ITEM SCHEMAS
# ========================================


class ItemStatus(str, Enum):
    """Processing status of an item."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"


def folder_of(file_path: str) -> str:
    """Return ``file_path`` with its final path segment stripped."""
    if "/" not in file_path:
        return ""
    return file_path.rsplit("/", 1)[0]


class MemeItem(BaseModel):
    """One indexed meme record."""

    id: str = Field(..., description="Unique item identifier")
    file_path: str = Field(..., description="Image file path")
    folder: str = Field("", description="Parent folder of file_path")
    title: Optional[str] = Field(None, description="Item title")
    description: Optional[str] = Field(None, description="Generated description")
    embedding: Optional[List[float]] = Field(
        None, exclude=True, description="Description embedding vector"
    )
    tags: List[str] = Field(default_factory=list, description="Item tags")
    starred: bool = Field(False, description="Starred flag")
    status: ItemStatus = Field(ItemStatus.PENDING, description="Processing status")
    meta: Dict[str, Any] = Field(default_factory=dict, description="Free-form metadata")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")

    @property
    def filename(self) -> str:
        """Final path segment of file_path."""
        return self.file_path.rsplit("/", 1)[-1]

    @computed_field
    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None


class ItemUpdate(BaseModel):
    """Partial update of user-editable item fields."""

    title: Optional[str] = Field(None, description="New title")
    description: Optional[str] = Field(None, description="New description")
    tags: Optional[List[str]] = Field(None, description="New tags")
    starred: Optional[bool] = Field(None, description="New starred flag")
    status: Optional[ItemStatus] = Field(None, description="Status override")

    @field_validator("tags")
    @classmethod
    def clean_tags(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        """Clean and validate tags."""
        if v is None:
            return None
        cleaned_tags = [tag.strip() for tag in v if tag.strip()]
        return list(dict.fromkeys(cleaned_tags))  # Remove duplicates

    def changes(self) -> Dict[str, Any]:
        """Fields explicitly set by the caller."""
        return self.model_dump(exclude_unset=True)


class ItemListResponse(BaseModel):
    """Response for item listing."""

    memes: List[MemeItem] = Field(..., description="Item page")
    count: int = Field(..., description="Number of items in this page")


class ShareRequest(BaseModel):
    """Record of a shared rendition of an item."""

    url: str = Field(..., description="Shared URL")
    text_boxes: List[Dict[str, Any]] = Field(
        default_factory=list, description="Text overlays used for the share"
    )


class GenerateResponse(BaseModel):
    """Response for single-item generation."""

    success: bool = Field(..., description="Generation success status")
    item: MemeItem = Field(..., description="Updated item")


class DeleteResponse(BaseModel):
    """Response for item deletion."""

    success: bool = Field(..., description="Whether an item was deleted")


# ========================================
# SCAN SCHEMAS
# ========================================


class ScanState(str, Enum):
    """Scanner run state."""

    IDLE = "idle"
    SCANNING = "scanning"
    COMPLETE = "complete"
    ERROR = "error"


class ScanProgress(BaseModel):
    """Snapshot of scanner progress."""

    status: ScanState = Field(ScanState.IDLE, description="Scanner state")
    processed: int = Field(0, description="Files handled so far")
    total: int = Field(0, description="Files discovered in the counting pass")
    error: Optional[str] = Field(None, description="Failure message")


class ScanResult(BaseModel):
    """Outcome of a completed scan."""

    added: int = Field(0, description="New items inserted")
    skipped: int = Field(0, description="Paths already indexed")


class ScanRequest(BaseModel):
    """Request to scan a directory."""

    directory: Optional[str] = Field(None, description="Root directory to scan")


class ScanStartedResponse(BaseModel):
    """Response for an accepted scan request."""

    started: bool = Field(..., description="Scan accepted")
    directory: str = Field(..., description="Root directory being scanned")


# ========================================
# PROCESSING SCHEMAS
# ========================================


class BatchResult(BaseModel):
    """Counters of a batch generation run."""

    processed: int = Field(0, description="Items completed")
    failed: int = Field(0, description="Items that ended in error")
    total: int = Field(0, description="Pending items selected for the run")


class ResetResponse(BaseModel):
    """Response for bulk status resets."""

    reset: int = Field(..., description="Number of items reset to pending")


class CleanupResult(BaseModel):
    """Outcome of a missing-file cleanup sweep."""

    checked: int = Field(0, description="Items checked")
    deleted: int = Field(0, description="Items deleted")
    failed: int = Field(0, description="Items whose file could not be checked")


# ========================================
# SEARCH SCHEMAS
# ========================================


class SearchMode(str, Enum):
    """Search strategy."""

    VECTOR = "vector"
    TEXT = "text"


class SearchHit(BaseModel):
    """Individual search result."""

    item: MemeItem = Field(..., description="Matched item")
    score: float = Field(..., description="Combined relevance score")


class SearchResponse(BaseModel):
    """Response for search."""

    results: List[SearchHit] = Field(..., description="Ranked results")


# ========================================
# UPLOAD SCHEMAS
# ========================================


class UploadFileResult(BaseModel):
    """Result for one uploaded file."""

    name: str = Field(..., description="Original filename")
    success: bool = Field(..., description="Upload success status")
    id: Optional[str] = Field(None, description="Created item id")
    error: Optional[str] = Field(None, description="Failure reason")


class UploadResponse(BaseModel):
    """Response for image upload."""

    uploaded: int = Field(..., description="Files stored")
    failed: int = Field(..., description="Files rejected")
    results: List[UploadFileResult] = Field(..., description="Per-file results")


# ========================================
# SYSTEM SCHEMAS
# ========================================


class StatsResponse(BaseModel):
    """Item counts by status."""

    total: int = 0
    pending: int = 0
    processing: int = 0
    complete: int = 0
    error: int = 0
    starred: int = 0


class DescriptionHealth(BaseModel):
    """Reachability of the description model."""

    available: bool = Field(..., description="Model reachable and installed")
    model: str = Field(..., description="Configured model name")
    error: Optional[str] = Field(None, description="Failure reason")


class SettingValue(BaseModel):
    """Value of a stored setting."""

    value: Any = Field(..., description="JSON value")


class HealthResponse(BaseModel):
    """System health check response."""

    ok: bool = True


class VersionResponse(BaseModel):
    """Application version response."""

    version: str
    app_name: str


class ErrorResponse(BaseModel):
    """Structured API error."""

    error: str = Field(..., description="Error message")
    code: str = Field(..., description="Error kind")
    retryable: bool = Field(False, description="Whether retrying later may help")
