"""
Durable publish queue (post_queue table).

Lifecycle of an entry:

    PENDING --success--> PUBLISHED            (published_at set, retry_count kept)
    PENDING --failure--> PENDING              (retry_count + 1, failure appended)
    PENDING --failure--> FAILED               (once retry_count reaches max_retries)

PUBLISHED and FAILED are final. The queue never retries on its own: the
pipeline drains PENDING entries one at a time in creation order and reports
each outcome back through ``record_outcome``. FAILED entries need a human.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Collection, Optional
from zoneinfo import ZoneInfo

from app.config import settings
from app.core.errors import QueueTransitionError
from app.core.logging import get_logger
from app.core.scheduling import SystemClock
from app.models.post_queue import (
    TERMINAL_STATUSES,
    PostJob,
    PostQueueEntry,
    PostStatus,
    PostType,
    PublishOutcome,
)
from services.db_service import fetchrow

logger = get_logger()

FAILURE_LOG_MAX_CHARS = 8000


def week_start(now: datetime, tz: str) -> datetime:
    """Sunday 00:00 local time of the week containing ``now``."""
    local = now.astimezone(ZoneInfo(tz))
    days_since_sunday = (local.weekday() + 1) % 7
    start = local - timedelta(days=days_since_sunday)
    return start.replace(hour=0, minute=0, second=0, microsecond=0)


@dataclass(frozen=True)
class QueueTransition:
    status: PostStatus
    retry_count: int
    failure_log: Optional[str]
    published_at: Optional[datetime]
    external_post_id: Optional[str]


def next_state(
    entry: PostQueueEntry,
    outcome: PublishOutcome,
    *,
    max_retries: int,
    now: datetime,
) -> QueueTransition:
    if entry.status in TERMINAL_STATUSES:
        raise QueueTransitionError(entry.id, entry.status.value)

    if outcome.success:
        return QueueTransition(
            status=PostStatus.PUBLISHED,
            retry_count=entry.retry_count,
            failure_log=entry.failure_log,
            published_at=now,
            external_post_id=outcome.external_post_id or entry.original_post_id,
        )

    retry_count = entry.retry_count + 1
    line = f"[{now.isoformat()}] attempt {retry_count}: {outcome.error or 'unknown error'}"
    failure_log = f"{entry.failure_log}\n{line}" if entry.failure_log else line
    if len(failure_log) > FAILURE_LOG_MAX_CHARS:
        failure_log = failure_log[-FAILURE_LOG_MAX_CHARS:]
    return QueueTransition(
        status=PostStatus.FAILED if retry_count >= max_retries else PostStatus.PENDING,
        retry_count=retry_count,
        failure_log=failure_log,
        published_at=None,
        external_post_id=None,
    )


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class PostQueueStore(ABC):
    @abstractmethod
    async def insert(
        self,
        job: PostJob,
        post_type: PostType,
        original_post_id: Optional[str],
    ) -> PostQueueEntry:
        """Insert a PENDING entry; an existing entry for the same snapshot is returned as-is."""

    @abstractmethod
    async def get(self, entry_id: int) -> Optional[PostQueueEntry]:
        ...

    @abstractmethod
    async def oldest_pending(self, exclude_ids: Collection[int]) -> Optional[PostQueueEntry]:
        ...

    @abstractmethod
    async def latest_published_since(self, since: datetime) -> Optional[PostQueueEntry]:
        ...

    @abstractmethod
    async def apply(self, entry: PostQueueEntry, transition: QueueTransition) -> Optional[PostQueueEntry]:
        """Persist the transition only if the row is still PENDING with the same retry_count."""


_ENTRY_COLUMNS = """
    id, title, html_body, tags, description, post_type, original_post_id,
    external_post_id, ranking_snapshot_id, status, retry_count, failure_log,
    created_at, published_at, updated_at
"""


def _row_to_entry(row) -> PostQueueEntry:
    data = dict(row)
    data["tags"] = list(data.get("tags") or [])
    return PostQueueEntry.model_validate(data)


class PostgresPostQueueStore(PostQueueStore):
    async def insert(
        self,
        job: PostJob,
        post_type: PostType,
        original_post_id: Optional[str],
    ) -> PostQueueEntry:
        row = await fetchrow(
            f"""
            INSERT INTO post_queue (
                title, html_body, tags, description, post_type, original_post_id,
                ranking_snapshot_id, status, retry_count
            ) VALUES ($1, $2, $3::text[], $4, $5, $6, $7, 'PENDING', 0)
            ON CONFLICT (ranking_snapshot_id) DO NOTHING
            RETURNING {_ENTRY_COLUMNS}
            """,
            job.title,
            job.html_body,
            list(job.tags),
            job.description,
            post_type.value,
            original_post_id,
            job.ranking_snapshot_id,
        )
        if row is None:
            row = await fetchrow(
                f"SELECT {_ENTRY_COLUMNS} FROM post_queue WHERE ranking_snapshot_id = $1",
                job.ranking_snapshot_id,
            )
            if row is None:
                raise RuntimeError("post_queue insert conflicted but no entry was found")
        return _row_to_entry(row)

    async def get(self, entry_id: int) -> Optional[PostQueueEntry]:
        row = await fetchrow(f"SELECT {_ENTRY_COLUMNS} FROM post_queue WHERE id = $1", int(entry_id))
        return _row_to_entry(row) if row else None

    async def oldest_pending(self, exclude_ids: Collection[int]) -> Optional[PostQueueEntry]:
        row = await fetchrow(
            f"""
            SELECT {_ENTRY_COLUMNS}
            FROM post_queue
            WHERE status = 'PENDING'
              AND NOT (id = ANY($1::bigint[]))
            ORDER BY created_at ASC, id ASC
            LIMIT 1
            """,
            [int(i) for i in exclude_ids],
        )
        return _row_to_entry(row) if row else None

    async def latest_published_since(self, since: datetime) -> Optional[PostQueueEntry]:
        row = await fetchrow(
            f"""
            SELECT {_ENTRY_COLUMNS}
            FROM post_queue
            WHERE status = 'PUBLISHED'
              AND external_post_id IS NOT NULL
              AND published_at >= $1
            ORDER BY published_at DESC, id DESC
            LIMIT 1
            """,
            since,
        )
        return _row_to_entry(row) if row else None

    async def apply(self, entry: PostQueueEntry, transition: QueueTransition) -> Optional[PostQueueEntry]:
        row = await fetchrow(
            f"""
            UPDATE post_queue
            SET status = $2,
                retry_count = $3,
                failure_log = $4,
                published_at = $5,
                external_post_id = COALESCE($6, external_post_id),
                updated_at = NOW()
            WHERE id = $1
              AND status = 'PENDING'
              AND retry_count = $7
            RETURNING {_ENTRY_COLUMNS}
            """,
            entry.id,
            transition.status.value,
            transition.retry_count,
            transition.failure_log,
            transition.published_at,
            transition.external_post_id,
            entry.retry_count,
        )
        return _row_to_entry(row) if row else None


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class PostQueueService:
    def __init__(
        self,
        store: Optional[PostQueueStore] = None,
        *,
        max_retries: Optional[int] = None,
        tz: Optional[str] = None,
        clock: Optional[SystemClock] = None,
    ) -> None:
        self.store = store or PostgresPostQueueStore()
        self.max_retries = max_retries if max_retries is not None else settings.POST_MAX_RETRIES
        self.tz = tz or settings.PIPELINE_TIMEZONE
        self.clock = clock or SystemClock()

    async def enqueue(self, job: PostJob) -> PostQueueEntry:
        """
        Queue a post as PENDING. When a post was already published this week
        the job becomes a REVISION of that post instead of a new one.
        """
        since = week_start(self.clock.now(), self.tz)
        prior = await self.store.latest_published_since(since)
        if prior is not None and prior.external_post_id:
            post_type, original_id = PostType.REVISION, prior.external_post_id
        else:
            post_type, original_id = PostType.NEW_POST, None

        entry = await self.store.insert(job, post_type, original_id)
        logger.info(
            "post_queue_enqueued",
            entry_id=entry.id,
            post_type=entry.post_type.value,
            original_post_id=entry.original_post_id,
            ranking_snapshot_id=entry.ranking_snapshot_id,
        )
        return entry

    async def dequeue_next(self, exclude_ids: Collection[int] = ()) -> Optional[PostQueueEntry]:
        return await self.store.oldest_pending(exclude_ids)

    async def record_outcome(self, entry_id: int, outcome: PublishOutcome) -> PostQueueEntry:
        entry = await self.store.get(entry_id)
        if entry is None:
            raise ValueError(f"post_queue entry {entry_id} not found")

        transition = next_state(entry, outcome, max_retries=self.max_retries, now=self.clock.now())
        updated = await self.store.apply(entry, transition)
        if updated is None:
            current = await self.store.get(entry_id)
            raise QueueTransitionError(entry_id, current.status.value if current else "missing")

        log = logger.info if updated.status is not PostStatus.FAILED else logger.error
        log(
            "post_queue_outcome_recorded",
            entry_id=updated.id,
            status=updated.status.value,
            retry_count=updated.retry_count,
            external_post_id=updated.external_post_id,
            error=outcome.error,
        )
        return updated

