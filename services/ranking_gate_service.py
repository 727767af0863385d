"""
Change gate in front of the expensive classification/generation stages.

The gate hashes the fingerprints of the current top-N plans and compares the
result with the most recent ranking snapshot. Only a different ranking is
persisted and let through. An unchanged ranking whose snapshot never made it
into the post queue (the run died between gate and enqueue) is let through
again under the same snapshot id; enqueue is idempotent per snapshot.
"""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from app.core.logging import get_logger
from app.models.plans import PlanItem
from app.models.ranking import GateDecision, RankingSnapshot
from services.db_service import (
    executemany_with_conn,
    fetch,
    fetchrow,
    fetchrow_with_conn,
    fetchval,
    run_in_transaction,
)
from services.plan_ingest_service import PlanIngestService

logger = get_logger()

RANKING_HASH_SEPARATOR = "|"


def compute_ranking_hash(fingerprints: Iterable[str]) -> str:
    """Order-independent hash over a set of plan fingerprints."""
    joined = RANKING_HASH_SEPARATOR.join(sorted(fingerprints))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


class SnapshotStore(ABC):
    @abstractmethod
    async def latest(self) -> Optional[RankingSnapshot]:
        ...

    @abstractmethod
    async def create(self, ranking_hash: str, plan_ids: Sequence[int]) -> RankingSnapshot:
        ...

    @abstractmethod
    async def has_queue_entry(self, snapshot_id: int) -> bool:
        """Whether a post_queue entry was ever created for this snapshot."""


class PostgresSnapshotStore(SnapshotStore):
    async def latest(self) -> Optional[RankingSnapshot]:
        row = await fetchrow(
            """
            SELECT id, ranking_hash, top_count, created_at
            FROM ranking_snapshots
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """
        )
        if row is None:
            return None
        members = await fetch(
            """
            SELECT plan_id
            FROM ranking_snapshot_plans
            WHERE snapshot_id = $1
            ORDER BY position ASC
            """,
            row["id"],
        )
        return RankingSnapshot(**dict(row), plan_ids=[m["plan_id"] for m in members])

    async def create(self, ranking_hash: str, plan_ids: Sequence[int]) -> RankingSnapshot:
        async with run_in_transaction() as conn:
            row = await fetchrow_with_conn(
                conn,
                """
                INSERT INTO ranking_snapshots (ranking_hash, top_count)
                VALUES ($1, $2)
                RETURNING id, ranking_hash, top_count, created_at
                """,
                ranking_hash,
                len(plan_ids),
            )
            if row is None:
                raise RuntimeError("ranking snapshot insert returned no row")
            await executemany_with_conn(
                conn,
                """
                INSERT INTO ranking_snapshot_plans (snapshot_id, plan_id, position)
                VALUES ($1, $2, $3)
                """,
                [(row["id"], plan_id, pos) for pos, plan_id in enumerate(plan_ids)],
            )
        return RankingSnapshot(**dict(row), plan_ids=list(plan_ids))

    async def has_queue_entry(self, snapshot_id: int) -> bool:
        return bool(
            await fetchval(
                "SELECT EXISTS (SELECT 1 FROM post_queue WHERE ranking_snapshot_id = $1)",
                snapshot_id,
            )
        )


class RankingGateService:
    def __init__(
        self,
        store: Optional[SnapshotStore] = None,
        plans: Optional[PlanIngestService] = None,
    ) -> None:
        self.store = store or PostgresSnapshotStore()
        self.plans = plans or PlanIngestService()

    async def evaluate(self, top_n: Sequence[PlanItem]) -> GateDecision:
        if not top_n:
            logger.info("ranking_gate_skipped", reason="empty_selection")
            return GateDecision(should_proceed=False, reason="empty_selection")

        ranking_hash = compute_ranking_hash(p.data_hash for p in top_n)
        latest = await self.store.latest()

        if latest is not None and latest.ranking_hash == ranking_hash:
            if await self.store.has_queue_entry(latest.id):
                logger.info(
                    "ranking_gate_skipped",
                    reason="unchanged",
                    ranking_hash=ranking_hash,
                    latest_snapshot_id=latest.id,
                )
                return GateDecision(
                    ranking_hash=ranking_hash,
                    should_proceed=False,
                    snapshot_id=latest.id,
                    reason="unchanged",
                )
            # snapshot is er, maar de run erna kwam nooit tot enqueue
            logger.info(
                "ranking_gate_resumed",
                ranking_hash=ranking_hash,
                snapshot_id=latest.id,
            )
            return GateDecision(
                ranking_hash=ranking_hash,
                should_proceed=True,
                snapshot_id=latest.id,
                reason="resumed",
            )

        snapshot = await self.store.create(ranking_hash, [p.id for p in top_n])
        logger.info(
            "ranking_gate_passed",
            ranking_hash=ranking_hash,
            previous_hash=latest.ranking_hash if latest else None,
            snapshot_id=snapshot.id,
            top_count=snapshot.top_count,
        )
        return GateDecision(
            ranking_hash=ranking_hash,
            should_proceed=True,
            snapshot_id=snapshot.id,
            reason="changed" if latest else "first_snapshot",
        )

    async def select_and_evaluate(self, n: int, seen_since: Optional[datetime]) -> GateDecision:
        top: List[PlanItem] = await self.plans.select_current_top_n(n, seen_since)
        return await self.evaluate(top)
