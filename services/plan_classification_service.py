"""
Plan classification into usage categories (navigation, sub line, tablet, ...).

Plans are sent to the model in fixed-size chunks, one chunk at a time through
the rate limiter. Each chunk answers with at most five plan ids per category.
A chunk whose answer is malformed (or whose call fails) is skipped; the other
chunks still count. The chunk answers are merged into the cheapest
``top_k`` plans per category.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from app.config import settings
from app.core.errors import MalformedOutputError
from app.core.logging import get_logger
from app.core.rate_limiting import IntervalRateLimiter, RateLimiter
from app.models.ai import CATEGORY_LABELS_KO, ChunkClassification, ClassifiedGroups, PlanCategory
from app.models.plans import (
    LIFETIME_PROMOTION_MONTHS,
    UNLIMITED_DATA_GB,
    UNLIMITED_MINUTES,
    PlanItem,
)
from services.openai_service import OpenAIService

logger = get_logger()

CLASSIFY_SYSTEM_PROMPT = (
    "You are an analyst for Korean MVNO (알뜰폰) mobile plans. "
    "Classify the given plans into usage categories and pick the best value plans per category."
)

_CATEGORY_GUIDE: Dict[PlanCategory, str] = {
    PlanCategory.navigation: "car navigation, dashcams, spare devices: 0-1GB data, roughly 1,000-2,000 KRW",
    PlanCategory.sub_line: "OTP/verification, dual SIM, work second phone: 100-300 min, ~1GB, 1,000-3,000 KRW",
    PlanCategory.tablet: "tablets, learning pads, IoT: data only, 1-10GB, 3,000-8,000 KRW",
    PlanCategory.kids_senior: "call centric, unlimited voice, little data, 3,000-5,000 KRW",
    PlanCategory.business: "heavy calling, 5-20GB data, 5,000-10,000 KRW",
    PlanCategory.promotion: "time limited discounts, promotion_months between 1 and 12",
    PlanCategory.lifetime: "permanent low price, promotion_months = lifetime",
}


def chunked(items: Sequence[PlanItem], size: int) -> List[List[PlanItem]]:
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def _plan_for_prompt(plan: PlanItem) -> dict:
    return {
        "id": plan.id,
        "plan_name": plan.plan_name,
        "mvno": plan.mvno,
        "network": plan.network,
        "technology": plan.technology,
        "data_gb": "unlimited" if plan.data_base_gb >= UNLIMITED_DATA_GB else plan.data_base_gb,
        "post_cap_speed_mbps": plan.data_post_speed_mbps,
        "talk_minutes": "unlimited" if plan.talk_minutes >= UNLIMITED_MINUTES else plan.talk_minutes,
        "sms": "unlimited" if plan.sms_count >= UNLIMITED_MINUTES else plan.sms_count,
        "price_promo": plan.price_promo,
        "price_original": plan.price_original,
        "promotion_months": (
            "lifetime"
            if plan.promotion_duration_months == LIFETIME_PROMOTION_MONTHS
            else plan.promotion_duration_months
        ),
        "benefits": plan.benefit_summary or None,
    }


def build_chunk_prompt(chunk: Sequence[PlanItem]) -> str:
    guide = "\n".join(
        f"- {cat.value} ({CATEGORY_LABELS_KO[cat]}): {text}" for cat, text in _CATEGORY_GUIDE.items()
    )
    plans_json = json.dumps([_plan_for_prompt(p) for p in chunk], ensure_ascii=False)
    return (
        f"Plans:\n{plans_json}\n\n"
        f"Categories:\n{guide}\n\n"
        "For every category return up to 5 plan ids from the list above, best value first. "
        "Use only ids that appear in the list."
    )


@dataclass
class ClassificationReport:
    groups: ClassifiedGroups
    chunks_total: int = 0
    chunks_failed: int = 0
    failures: List[str] = field(default_factory=list)


def merge_chunk_results(
    results: Sequence[ChunkClassification],
    plans: Sequence[PlanItem],
    *,
    top_k: int,
) -> ClassifiedGroups:
    """
    Union of the ids per category, unknown ids dropped, cheapest ``top_k`` kept.
    """
    by_id = {p.id: p for p in plans}
    groups: Dict[PlanCategory, List[PlanItem]] = {}
    for category in PlanCategory:
        ids: set[int] = set()
        for result in results:
            ids.update(i for i in result.ids_for(category) if i in by_id)
        ranked = sorted((by_id[i] for i in ids), key=lambda p: (p.price_promo, p.data_hash))
        groups[category] = ranked[:top_k]
    return ClassifiedGroups(groups=groups)


class PlanClassificationService:
    def __init__(
        self,
        ai: Optional[OpenAIService] = None,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        chunk_size: Optional[int] = None,
        top_k: Optional[int] = None,
    ) -> None:
        self.ai = ai or OpenAIService()
        self.rate_limiter = rate_limiter or IntervalRateLimiter(settings.CLASSIFY_MIN_INTERVAL_SECONDS)
        self.chunk_size = chunk_size or settings.CLASSIFY_CHUNK_SIZE
        self.top_k = top_k or settings.CATEGORY_TOP_K

    async def classify_chunk(
        self,
        chunk: Sequence[PlanItem],
        ranking_snapshot_id: Optional[int] = None,
    ) -> ChunkClassification:
        await self.rate_limiter.acquire()
        parsed, _meta = await self.ai.generate_json(
            system_prompt=CLASSIFY_SYSTEM_PROMPT,
            user_prompt=build_chunk_prompt(chunk),
            response_model=ChunkClassification,
            action_type="plan_classification",
            ranking_snapshot_id=ranking_snapshot_id,
        )
        return parsed

    async def classify(
        self,
        plans: Sequence[PlanItem],
        ranking_snapshot_id: Optional[int] = None,
    ) -> ClassificationReport:
        chunks = chunked(plans, self.chunk_size)
        results: List[ChunkClassification] = []
        report = ClassificationReport(groups=ClassifiedGroups(), chunks_total=len(chunks))

        for index, chunk in enumerate(chunks, start=1):
            try:
                results.append(await self.classify_chunk(chunk, ranking_snapshot_id))
            except MalformedOutputError as exc:
                report.chunks_failed += 1
                report.failures.append(f"chunk {index}: malformed output")
                logger.warning("plan_classification_chunk_malformed", chunk=index, size=len(chunk), error=str(exc))
            except Exception as exc:
                report.chunks_failed += 1
                report.failures.append(f"chunk {index}: {type(exc).__name__}")
                logger.warning(
                    "plan_classification_chunk_failed",
                    chunk=index,
                    size=len(chunk),
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

        report.groups = merge_chunk_results(results, plans, top_k=self.top_k)
        logger.info(
            "plan_classification_finished",
            chunks_total=report.chunks_total,
            chunks_failed=report.chunks_failed,
            category_sizes={c.value: len(report.groups.plans_for(c)) for c in PlanCategory},
        )
        return report
