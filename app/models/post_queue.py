from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class PostType(str, Enum):
    NEW_POST = "NEW_POST"
    REVISION = "REVISION"


class PostStatus(str, Enum):
    PENDING = "PENDING"
    PUBLISHED = "PUBLISHED"
    FAILED = "FAILED"


TERMINAL_STATUSES = (PostStatus.PUBLISHED, PostStatus.FAILED)


class PostJob(BaseModel):
    """Content ready to be queued for publishing."""

    title: str = Field(..., min_length=1)
    html_body: str = Field(..., min_length=1)
    tags: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    ranking_snapshot_id: Optional[int] = None


class PostQueueEntry(BaseModel):
    id: int
    title: str
    html_body: str
    tags: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    post_type: PostType = PostType.NEW_POST
    original_post_id: Optional[str] = None
    external_post_id: Optional[str] = None
    ranking_snapshot_id: Optional[int] = None
    status: PostStatus = PostStatus.PENDING
    retry_count: int = Field(default=0, ge=0)
    failure_log: Optional[str] = None
    created_at: datetime
    published_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PublishResult(BaseModel):
    """What the publish action reports back for one entry."""

    success: bool
    external_id: Optional[str] = None


class PublishOutcome(BaseModel):
    """Input to the queue's outcome recording."""

    success: bool
    external_post_id: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def published(cls, external_post_id: Optional[str] = None) -> "PublishOutcome":
        return cls(success=True, external_post_id=external_post_id)

    @classmethod
    def failed(cls, error: str) -> "PublishOutcome":
        return cls(success=False, error=error)
