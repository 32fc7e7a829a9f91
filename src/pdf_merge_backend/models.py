from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator, model_validator

from .utils import GROUP_NAME_PATTERN

MAX_GROUPS_PER_BATCH = 50
MAX_SOURCES_PER_GROUP = 100


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    EXPIRED = "expired"


class GroupStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Only jobs that produced files can expire
EXPIRABLE_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.PARTIAL)


def _check_url(value: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Invalid URL: {value!r}")
    return value


class BatchGroupInput(BaseModel):
    name: str = Field(min_length=1, max_length=255, pattern=GROUP_NAME_PATTERN.pattern)
    sources: List[str] = Field(min_length=1, max_length=MAX_SOURCES_PER_GROUP)

    @field_validator("sources")
    @classmethod
    def _validate_sources(cls, sources: List[str]) -> List[str]:
        return [_check_url(source) for source in sources]


class BatchMetadata(BaseModel):
    author: Optional[str] = Field(default=None, max_length=255)
    subject: Optional[str] = Field(default=None, max_length=255)
    keywords: Optional[List[str]] = None


class BatchSubmitRequest(BaseModel):
    webhook_url: str
    groups: List[BatchGroupInput] = Field(min_length=1, max_length=MAX_GROUPS_PER_BATCH)
    metadata: Optional[BatchMetadata] = None

    @field_validator("webhook_url")
    @classmethod
    def _validate_webhook_url(cls, value: str) -> str:
        return _check_url(value)

    @model_validator(mode="after")
    def _unique_group_names(self) -> "BatchSubmitRequest":
        names = [group.name for group in self.groups]
        if len(set(names)) != len(names):
            raise ValueError("Group names must be unique within a batch")
        return self


class BatchSubmitResponse(BaseModel):
    job_id: str
    status: JobStatus
    group_count: int
    created_at: datetime


class JobProgress(BaseModel):
    total: int
    completed: int
    failed: int


class SourceFailure(BaseModel):
    index: int
    url: str
    error: str


class GroupStatusResponse(BaseModel):
    name: str
    status: GroupStatus
    download_url: Optional[str] = None
    error: Optional[str] = None
    failed_sources: List[SourceFailure] = Field(default_factory=list)


class BatchStatusResponse(BaseModel):
    id: str
    status: JobStatus
    progress: JobProgress
    groups: List[GroupStatusResponse]
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class WebhookResult(BaseModel):
    name: str
    download_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    error: Optional[str] = None
    failed_sources: Optional[List[SourceFailure]] = None


class WebhookSummary(BaseModel):
    total: int
    success: int
    failed: int


class WebhookPayload(BaseModel):
    job_id: str
    status: JobStatus
    results: List[WebhookResult]
    summary: WebhookSummary
    completed_at: datetime


class MergeRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    author: Optional[str] = Field(default=None, max_length=255)
    subject: Optional[str] = Field(default=None, max_length=255)
    keywords: Optional[List[str]] = None
    sources: List[str] = Field(min_length=1, max_length=MAX_SOURCES_PER_GROUP)

    @field_validator("sources")
    @classmethod
    def _validate_sources(cls, sources: List[str]) -> List[str]:
        return [_check_url(source) for source in sources]


class AppCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class AppRecordResponse(BaseModel):
    id: str
    name: str
    prefix: str
    is_active: bool
    created_at: str


class AppCreateResponse(BaseModel):
    token: str
    app: AppRecordResponse

