from __future__ import annotations

import hashlib

import pytest

from app.models.post_queue import PostType
from services.plan_ingest_service import PlanIngestService
from services.ranking_gate_service import RankingGateService, compute_ranking_hash
from tests.fixtures import (
    InMemoryPlanStore,
    InMemoryPostQueueStore,
    InMemorySnapshotStore,
    make_job,
    make_plan_item,
    make_record,
)


def _h(i: int) -> str:
    return hashlib.sha256(f"h{i}".encode()).hexdigest()


def test_ranking_hash_is_order_independent() -> None:
    s1 = compute_ranking_hash([_h(1), _h(2), _h(3), _h(4), _h(5)])
    assert compute_ranking_hash([_h(3), _h(1), _h(5), _h(2), _h(4)]) == s1


def test_ranking_hash_sorts_then_joins() -> None:
    hashes = [_h(2), _h(1)]
    expected = hashlib.sha256("|".join(sorted(hashes)).encode("utf-8")).hexdigest()
    assert compute_ranking_hash(hashes) == expected


def test_ranking_hash_changes_with_membership() -> None:
    assert compute_ranking_hash([_h(1), _h(2)]) != compute_ranking_hash([_h(1), _h(3)])


def _gate(store: InMemorySnapshotStore) -> RankingGateService:
    return RankingGateService(store=store, plans=PlanIngestService(InMemoryPlanStore()))


@pytest.mark.asyncio
async def test_first_evaluation_creates_snapshot() -> None:
    store = InMemorySnapshotStore()
    top = [make_plan_item(1, 1000), make_plan_item(2, 2000)]

    decision = await _gate(store).evaluate(top)

    assert decision.should_proceed is True
    assert decision.reason == "first_snapshot"
    assert decision.snapshot_id == 1
    assert store.snapshots[0].plan_ids == [1, 2]
    assert store.snapshots[0].top_count == 2


@pytest.mark.asyncio
async def test_same_ranking_in_other_order_is_skipped_without_write() -> None:
    store = InMemorySnapshotStore()
    gate = _gate(store)
    top = [make_plan_item(i, 1000 * i) for i in range(1, 6)]
    await gate.evaluate(top)
    store.enqueued.add(1)

    shuffled = [top[2], top[0], top[4], top[1], top[3]]
    decision = await gate.evaluate(shuffled)

    assert decision.should_proceed is False
    assert decision.reason == "unchanged"
    assert decision.snapshot_id == 1
    assert store.create_calls == 1


@pytest.mark.asyncio
async def test_changed_ranking_passes_and_persists() -> None:
    store = InMemorySnapshotStore()
    gate = _gate(store)
    await gate.evaluate([make_plan_item(1, 1000), make_plan_item(2, 2000)])

    decision = await gate.evaluate([make_plan_item(1, 1000), make_plan_item(3, 1500)])

    assert decision.should_proceed is True
    assert decision.reason == "changed"
    assert decision.snapshot_id == 2
    assert len(store.snapshots) == 2


@pytest.mark.asyncio
async def test_empty_selection_is_skipped() -> None:
    store = InMemorySnapshotStore()
    decision = await _gate(store).evaluate([])
    assert decision.should_proceed is False
    assert decision.reason == "empty_selection"
    assert store.create_calls == 0


@pytest.mark.asyncio
async def test_select_and_evaluate_uses_current_pass_top_n() -> None:
    plan_store = InMemoryPlanStore()
    plans = PlanIngestService(plan_store)
    snapshots = InMemorySnapshotStore()
    gate = RankingGateService(store=snapshots, plans=plans)

    pass_started = await plans.begin_pass()
    await plans.ingest_batch([make_record(plan_name=f"p{i}", price_promo=1000 * i) for i in range(1, 5)])

    first = await gate.select_and_evaluate(2, pass_started)
    snapshots.enqueued.add(first.snapshot_id)
    second = await gate.select_and_evaluate(2, pass_started)

    assert first.should_proceed is True
    assert second.should_proceed is False
    top_ids = snapshots.snapshots[0].plan_ids
    cheapest = sorted(plan_store.rows.values(), key=lambda p: p.price_promo)[:2]
    assert top_ids == [p.id for p in cheapest]


@pytest.mark.asyncio
async def test_unchanged_ranking_without_queue_entry_resumes_same_snapshot() -> None:
    store = InMemorySnapshotStore()
    gate = _gate(store)
    top = [make_plan_item(1, 1000), make_plan_item(2, 2000)]
    await gate.evaluate(top)

    # previous run died before enqueue
    decision = await gate.evaluate(list(reversed(top)))

    assert decision.should_proceed is True
    assert decision.reason == "resumed"
    assert decision.snapshot_id == 1
    assert store.create_calls == 1


@pytest.mark.asyncio
async def test_resume_stops_once_the_snapshot_is_queued() -> None:
    queue_store = InMemoryPostQueueStore()
    store = InMemorySnapshotStore(queue_store=queue_store)
    gate = _gate(store)
    top = [make_plan_item(1, 1000)]
    first = await gate.evaluate(top)

    await queue_store.insert(make_job(ranking_snapshot_id=first.snapshot_id), PostType.NEW_POST, None)
    decision = await gate.evaluate(top)

    assert decision.should_proceed is False
    assert decision.reason == "unchanged"
