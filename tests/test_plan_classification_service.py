from __future__ import annotations

import pytest

from app.core.errors import MalformedOutputError
from app.core.rate_limiting import IntervalRateLimiter, RateLimiter
from app.models.ai import ChunkClassification, PlanCategory
from services.plan_classification_service import (
    PlanClassificationService,
    build_chunk_prompt,
    chunked,
    merge_chunk_results,
)
from tests.fixtures import FakeAI, FakeClock, make_plan_item


class CountingLimiter(RateLimiter):
    def __init__(self) -> None:
        self.calls = 0

    async def acquire(self) -> None:
        self.calls += 1


def test_chunked_splits_into_fixed_sizes() -> None:
    plans = [make_plan_item(i, 1000 + i) for i in range(1, 8)]
    chunks = chunked(plans, 3)
    assert [len(c) for c in chunks] == [3, 3, 1]
    with pytest.raises(ValueError):
        chunked(plans, 0)


def test_chunk_prompt_marks_sentinels() -> None:
    plan = make_plan_item(1, 1000, data_base_gb=999, promotion_duration_months=999)
    prompt = build_chunk_prompt([plan])
    assert '"data_gb": "unlimited"' in prompt
    assert '"promotion_months": "lifetime"' in prompt
    assert "navigation" in prompt


def test_merge_unions_dedupes_and_keeps_cheapest() -> None:
    plans = [make_plan_item(i, price) for i, price in ((1, 5000), (2, 1000), (3, 3000), (4, 2000))]
    results = [
        ChunkClassification(navigation=[1, 2], tablet=[3]),
        ChunkClassification(navigation=[2, 4, 99]),
    ]

    groups = merge_chunk_results(results, plans, top_k=2)

    assert [p.id for p in groups.plans_for(PlanCategory.navigation)] == [2, 4]
    assert [p.id for p in groups.plans_for(PlanCategory.tablet)] == [3]
    assert groups.plans_for(PlanCategory.lifetime) == []


def test_chunk_schema_rejects_more_than_five_ids() -> None:
    with pytest.raises(ValueError):
        ChunkClassification(navigation=[1, 2, 3, 4, 5, 6])


@pytest.mark.asyncio
async def test_malformed_chunk_is_skipped_and_others_count() -> None:
    plans = [make_plan_item(i, 1000 * i) for i in range(1, 5)]
    ai = FakeAI([
        MalformedOutputError("invalid JSON"),
        ChunkClassification(business=[3, 4]),
    ])
    limiter = CountingLimiter()
    service = PlanClassificationService(ai, rate_limiter=limiter, chunk_size=2, top_k=10)

    report = await service.classify(plans, ranking_snapshot_id=9)

    assert report.chunks_total == 2
    assert report.chunks_failed == 1
    assert "malformed" in report.failures[0]
    assert [p.id for p in report.groups.plans_for(PlanCategory.business)] == [3, 4]
    assert limiter.calls == 2
    assert all(call["ranking_snapshot_id"] == 9 for call in ai.calls)


@pytest.mark.asyncio
async def test_failed_call_is_skipped() -> None:
    plans = [make_plan_item(1, 1000)]
    service = PlanClassificationService(FakeAI([RuntimeError("rate limited")]), rate_limiter=CountingLimiter(), chunk_size=10)

    report = await service.classify(plans)

    assert report.chunks_failed == 1
    assert report.groups.is_empty


@pytest.mark.asyncio
async def test_interval_limiter_spaces_chunk_calls() -> None:
    clock = FakeClock()
    plans = [make_plan_item(i, 1000 * i) for i in range(1, 4)]
    ai = FakeAI([ChunkClassification(), ChunkClassification(), ChunkClassification()])
    service = PlanClassificationService(
        ai,
        rate_limiter=IntervalRateLimiter(10, clock=clock),
        chunk_size=1,
        top_k=10,
    )

    await service.classify(plans)

    assert clock.sleeps == [10, 10]
    assert len(ai.calls) == 3
