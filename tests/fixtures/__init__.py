# tests/fixtures/__init__.py
"""
Test fixtures for the pipeline tests.

Factory functions:
- make_record()
- make_plan_item()
- make_entry()

Fakes (no database, browser or model needed):
- FakeClock: controllable now/monotonic; sleep() records and advances time
- InMemoryPlanStore, InMemorySnapshotStore, InMemoryPostQueueStore, InMemorySessionStore
- FakeAI: scripted generate_json answers
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Collection, Dict, List, Optional, Sequence

from app.core.errors import TransientInfrastructureError
from app.models.plans import PlanItem, RawPlanRecord
from app.models.post_queue import PostJob, PostQueueEntry, PostStatus, PostType
from app.models.ranking import RankingSnapshot
from services.plan_ingest_service import PlanStore, compute_fingerprint
from services.post_queue_service import PostQueueStore, QueueTransition
from services.publish_session_service import SessionStore
from services.ranking_gate_service import SnapshotStore

BASE_TIME = datetime(2025, 11, 5, 1, 0, tzinfo=timezone.utc)  # Wed 10:00 Asia/Seoul


def make_record(
    plan_name: str = "음성기본 11GB+",
    mvno: str = "찬스모바일",
    price_promo: int = 12000,
    network: str = "LG U+",
    **overrides: Any,
) -> RawPlanRecord:
    """Factory function to create a collected plan record."""
    data: Dict[str, Any] = {
        "source_site": "moyoplan",
        "plan_name": plan_name,
        "mvno": mvno,
        "network": network,
        "technology": "LTE",
        "price_promo": price_promo,
        "price_original": 38500,
        "promotion_duration_months": 7,
        "data_base_gb": 11,
        "data_post_speed_mbps": 3,
        "talk_minutes": 9999,
        "sms_count": 9999,
        "detail_url": "https://www.moyoplan.com/plans/1",
        "collected_at": BASE_TIME,
    }
    data.update(overrides)
    return RawPlanRecord(**data)


def make_plan_item(plan_id: int = 1, price_promo: int = 10000, **overrides: Any) -> PlanItem:
    """Factory function to create a stored plan row; data_hash is the real fingerprint."""
    record = make_record(plan_name=f"plan-{plan_id}", price_promo=price_promo, **overrides)
    return PlanItem(
        **record.model_dump(),
        id=plan_id,
        data_hash=compute_fingerprint(record),
        first_seen_at=BASE_TIME,
        last_seen_at=BASE_TIME,
    )


def make_entry(
    entry_id: int = 1,
    status: PostStatus = PostStatus.PENDING,
    retry_count: int = 0,
    **overrides: Any,
) -> PostQueueEntry:
    """Factory function to create a post queue entry."""
    data: Dict[str, Any] = {
        "id": entry_id,
        "title": f"post {entry_id}",
        "html_body": "<p>body</p>",
        "tags": ["알뜰폰"],
        "status": status,
        "retry_count": retry_count,
        "created_at": BASE_TIME + timedelta(seconds=entry_id),
    }
    data.update(overrides)
    return PostQueueEntry(**data)


def make_job(ranking_snapshot_id: Optional[int] = None, title: str = "weekly post") -> PostJob:
    return PostJob(
        title=title,
        html_body="<section><h2>알뜰폰</h2></section>",
        tags=["알뜰폰", "요금제"],
        description="desc",
        ranking_snapshot_id=ranking_snapshot_id,
    )


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class FakeClock:
    def __init__(self, start: datetime = BASE_TIME) -> None:
        self._now = start
        self._monotonic = 1000.0
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        self._monotonic += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(max(0.0, seconds))
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# In-memory stores
# ---------------------------------------------------------------------------

class _Ticker:
    def __init__(self) -> None:
        self._t = BASE_TIME

    def tick(self) -> datetime:
        self._t += timedelta(milliseconds=1)
        return self._t


class InMemoryPlanStore(PlanStore):
    """
    Rows keyed by fingerprint. ``fail_on`` plan names raise on upsert;
    ``fail_with`` is raised when a pass starts (the first ``fail_times`` passes,
    or every pass when None).
    """

    def __init__(
        self,
        fail_on: Collection[str] = (),
        fail_with: Optional[Exception] = None,
        fail_times: Optional[int] = None,
    ) -> None:
        self.rows: Dict[str, PlanItem] = {}
        self.fail_on = set(fail_on)
        self.fail_with = fail_with
        self.fail_times = fail_times
        self.timestamp_calls = 0
        self._ticker = _Ticker()
        self._next_id = 1

    async def current_timestamp(self) -> datetime:
        self.timestamp_calls += 1
        if self.fail_with is not None and (self.fail_times is None or self.timestamp_calls <= self.fail_times):
            raise self.fail_with
        return self._ticker.tick()

    async def upsert(self, fingerprint: str, record: RawPlanRecord) -> bool:
        if record.plan_name in self.fail_on:
            raise RuntimeError(f"constraint violation for {record.plan_name}")
        now = self._ticker.tick()
        existing = self.rows.get(fingerprint)
        if existing is not None:
            self.rows[fingerprint] = existing.model_copy(update={"last_seen_at": now})
            return False
        self.rows[fingerprint] = PlanItem(
            **record.model_dump(),
            id=self._next_id,
            data_hash=fingerprint,
            first_seen_at=now,
            last_seen_at=now,
        )
        self._next_id += 1
        return True

    def _seen(self, seen_since: Optional[datetime]) -> List[PlanItem]:
        rows = [r for r in self.rows.values() if seen_since is None or r.last_seen_at >= seen_since]
        return sorted(rows, key=lambda p: (p.price_promo, p.data_hash))

    async def select_top(self, n: int, seen_since: Optional[datetime]) -> List[PlanItem]:
        return self._seen(seen_since)[:n]

    async def list_seen_since(self, seen_since: Optional[datetime]) -> List[PlanItem]:
        return self._seen(seen_since)


class InMemorySnapshotStore(SnapshotStore):
    """
    ``has_queue_entry`` looks at ``queue_store`` when given, plus any snapshot
    ids marked in ``enqueued``.
    """

    def __init__(self, queue_store: Optional["InMemoryPostQueueStore"] = None) -> None:
        self.snapshots: List[RankingSnapshot] = []
        self.queue_store = queue_store
        self.enqueued: set[int] = set()
        self.create_calls = 0
        self._ticker = _Ticker()

    async def latest(self) -> Optional[RankingSnapshot]:
        if not self.snapshots:
            return None
        return max(self.snapshots, key=lambda s: (s.created_at, s.id))

    async def create(self, ranking_hash: str, plan_ids: Sequence[int]) -> RankingSnapshot:
        self.create_calls += 1
        snapshot = RankingSnapshot(
            id=len(self.snapshots) + 1,
            ranking_hash=ranking_hash,
            top_count=len(plan_ids),
            plan_ids=list(plan_ids),
            created_at=self._ticker.tick(),
        )
        self.snapshots.append(snapshot)
        return snapshot

    async def has_queue_entry(self, snapshot_id: int) -> bool:
        if snapshot_id in self.enqueued:
            return True
        if self.queue_store is None:
            return False
        return any(e.ranking_snapshot_id == snapshot_id for e in self.queue_store.entries.values())


class InMemoryPostQueueStore(PostQueueStore):
    """``fail_inserts`` are raised by the next inserts, one per call."""

    def __init__(self, fail_inserts: Sequence[Exception] = ()) -> None:
        self.entries: Dict[int, PostQueueEntry] = {}
        self.fail_inserts = list(fail_inserts)
        self.insert_calls = 0
        self._ticker = _Ticker()

    def add(self, entry: PostQueueEntry) -> PostQueueEntry:
        self.entries[entry.id] = entry
        return entry

    async def insert(
        self,
        job: PostJob,
        post_type: PostType,
        original_post_id: Optional[str],
    ) -> PostQueueEntry:
        self.insert_calls += 1
        if self.fail_inserts:
            raise self.fail_inserts.pop(0)
        if job.ranking_snapshot_id is not None:
            for entry in self.entries.values():
                if entry.ranking_snapshot_id == job.ranking_snapshot_id:
                    return entry
        entry_id = max(self.entries, default=0) + 1
        entry = PostQueueEntry(
            id=entry_id,
            title=job.title,
            html_body=job.html_body,
            tags=list(job.tags),
            description=job.description,
            post_type=post_type,
            original_post_id=original_post_id,
            ranking_snapshot_id=job.ranking_snapshot_id,
            created_at=self._ticker.tick(),
        )
        self.entries[entry_id] = entry
        return entry

    async def get(self, entry_id: int) -> Optional[PostQueueEntry]:
        return self.entries.get(entry_id)

    async def oldest_pending(self, exclude_ids: Collection[int]) -> Optional[PostQueueEntry]:
        pending = [
            e for e in self.entries.values()
            if e.status is PostStatus.PENDING and e.id not in exclude_ids
        ]
        return min(pending, key=lambda e: (e.created_at, e.id), default=None)

    async def latest_published_since(self, since: datetime) -> Optional[PostQueueEntry]:
        published = [
            e for e in self.entries.values()
            if e.status is PostStatus.PUBLISHED
            and e.external_post_id
            and e.published_at is not None
            and e.published_at >= since
        ]
        return max(published, key=lambda e: (e.published_at, e.id), default=None)

    async def apply(self, entry: PostQueueEntry, transition: QueueTransition) -> Optional[PostQueueEntry]:
        current = self.entries.get(entry.id)
        if current is None or current.status is not PostStatus.PENDING or current.retry_count != entry.retry_count:
            return None
        updated = current.model_copy(
            update={
                "status": transition.status,
                "retry_count": transition.retry_count,
                "failure_log": transition.failure_log,
                "published_at": transition.published_at,
                "external_post_id": transition.external_post_id or current.external_post_id,
                "updated_at": transition.published_at or current.updated_at,
            }
        )
        self.entries[entry.id] = updated
        return updated


class InMemorySessionStore(SessionStore):
    def __init__(self, state: Optional[Dict[str, Any]] = None) -> None:
        self.state = state
        self.saves = 0
        self.deletes = 0

    async def load(self) -> Optional[Dict[str, Any]]:
        return self.state

    async def save(self, state: Dict[str, Any]) -> None:
        self.saves += 1
        self.state = state

    async def delete(self) -> None:
        self.deletes += 1
        self.state = None


# ---------------------------------------------------------------------------
# Model fake
# ---------------------------------------------------------------------------

class FakeAI:
    """
    Answers generate_json from a script. Each item is either a model instance
    (returned) or an exception (raised). Calls are recorded.
    """

    def __init__(self, script: Sequence[Any]) -> None:
        self.script = list(script)
        self.calls: List[Dict[str, Any]] = []

    async def generate_json(
        self,
        system_prompt: str,
        user_prompt: str,
        response_model: Any,
        action_type: str = "generic",
        ranking_snapshot_id: Optional[int] = None,
    ):
        self.calls.append({"action_type": action_type, "ranking_snapshot_id": ranking_snapshot_id})
        if not self.script:
            raise RuntimeError("FakeAI script exhausted")
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item, {"ok": True}


def transient_db_error(message: str = "deadlock detected") -> TransientInfrastructureError:
    return TransientInfrastructureError(message)
