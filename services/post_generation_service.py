"""
Blog post generation from classified plan groups.

The model writes the HTML; when its answer is malformed, fails, or the body is
too short, a deterministic post is built locally from the same groups so a run
never stalls on the model.
"""

from __future__ import annotations

import json
import re
from datetime import date, datetime
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

from app.config import settings
from app.core.logging import get_logger
from app.core.scheduling import SystemClock
from app.models.ai import CATEGORY_LABELS_KO, ClassifiedGroups, GeneratedPost, PlanCategory
from app.models.plans import LIFETIME_PROMOTION_MONTHS, UNLIMITED_DATA_GB, UNLIMITED_MINUTES, PlanItem
from services.openai_service import OpenAIService

logger = get_logger()

DEFAULT_TAGS: List[str] = ["알뜰폰", "요금제", "가성비", "무제한", "보조폰", "네비게이션용", "프로모션"]
FALLBACK_ROWS_PER_SECTION = 10

_SECTIONS: List[tuple[PlanCategory, str, str]] = [
    (PlanCategory.navigation, "네비게이션용 요금제", "navigation"),
    (PlanCategory.sub_line, "서브회선/세컨드폰용 요금제", "sub-line"),
    (PlanCategory.tablet, "태블릿/스마트기기 전용 요금제", "tablet"),
    (PlanCategory.kids_senior, "어린이/시니어 특화 요금제", "kids-senior"),
    (PlanCategory.business, "업무/비즈니스 전용 요금제", "business"),
    (PlanCategory.promotion, "프로모션 한정 요금제", "promotion"),
    (PlanCategory.lifetime, "평생형/상시할인 요금제", "lifetime"),
]

GENERATE_SYSTEM_PROMPT = (
    "You write Korean SEO blog posts comparing MVNO (알뜰폰) plans. "
    "Use <section>, <h2>, <h3> and <table class=\"plan-table\"> only; no emoji, no hype."
)

_EMOJI_RE = re.compile(
    "[\U0001F000-\U0001F0FF\U0001F100-\U0001F64F\U0001F680-\U0001F6FF\U0001F300-\U0001F9FF"
    "\u2600-\u26FF\u2700-\u27BF\uFE0F]"
)
_HYPE_PHRASES = (
    "지금 바로", "꼭 확인하세요", "절대 놓치지 마세요", "반드시 체크", "강력 추천",
    "최고의 선택", "완벽한", "놀라운", "대박", "혜택 팡팡", "초특가",
)


# ---------------------------------------------------------------------------
# Calendar helpers
# ---------------------------------------------------------------------------

def week_of_month(d: date) -> int:
    """
    Week number of ``d`` in its month, counting Sunday-start weeks.

    The days before the first Sunday are week 1 and the week from the first
    Sunday on is week 2, so a month that starts on a Sunday opens with week 2.
    Same week boundaries as the REVISION period in the post queue.
    """
    first_sunday = 1 + (6 - d.replace(day=1).weekday()) % 7
    if d.day < first_sunday:
        return 1
    return (d.day - first_sunday) // 7 + 2


def build_title(now: datetime) -> str:
    return (
        f"{now.year}년 {now.month}월 {week_of_month(now.date())}째주 알뜰폰 요금제 추천 TOP 35 "
        f"({now.month}월 {now.day}일 수정)"
    )


def build_description(now: datetime) -> str:
    return f"{now.year}년 {now.month}월 최신 알뜰폰 요금제 7가지 카테고리별 비교 분석"


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def normalize_network(network: str) -> str:
    n = (network or "").strip().lower()
    if "lgu" in n or "lg u+" in n or n == "lg":
        return "LG U+"
    if "skt" in n or "sk telecom" in n or n == "sk":
        return "SKT"
    if "kt" in n or "olleh" in n:
        return "KT"
    return network


def network_priority(network: str) -> int:
    return {"LG U+": 1, "KT": 2, "SKT": 3}.get(normalize_network(network), 999)


def _fmt_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:g}"


def format_data(plan: PlanItem) -> str:
    if plan.data_base_gb >= UNLIMITED_DATA_GB:
        return "무제한"
    base = f"{_fmt_number(plan.data_base_gb)}GB"
    if plan.data_post_speed_mbps:
        return f"{base} + {_fmt_number(plan.data_post_speed_mbps)}Mbps"
    return base


def format_talk(plan: PlanItem) -> str:
    return "무제한" if plan.talk_minutes >= UNLIMITED_MINUTES else f"{plan.talk_minutes}분"


def format_promotion(plan: PlanItem) -> str:
    months = plan.promotion_duration_months
    if months is None:
        return "-"
    return "평생" if months == LIFETIME_PROMOTION_MONTHS else f"{months}개월"


def sort_for_table(plans: List[PlanItem]) -> List[PlanItem]:
    return sorted(plans, key=lambda p: (network_priority(p.network), p.price_promo, p.data_hash))


def build_fallback_html(groups: ClassifiedGroups, now: datetime) -> str:
    parts = [
        f"<h2>{now.year}년 {now.month}월 알뜰폰 요금제 추천 (사용 목적별 맞춤형)</h2>",
        "<p>최신 알뜰폰 요금제를 7가지 사용 목적별로 정리했습니다.</p>",
    ]
    for category, title, section_id in _SECTIONS:
        plans = sort_for_table(groups.plans_for(category))[:FALLBACK_ROWS_PER_SECTION]
        if not plans:
            continue
        rows: List[str] = []
        current_network = None
        for plan in plans:
            network = normalize_network(plan.network)
            if network != current_network:
                current_network = network
                rows.append(f'      <tr><td colspan="8" class="carrier-sep">{network}</td></tr>')
            rows.append(
                "      <tr>"
                f"<td>{network}</td><td>{plan.technology}</td><td>{plan.plan_name}</td>"
                f"<td>{plan.mvno}</td><td>{format_data(plan)}</td><td>{format_talk(plan)}</td>"
                f"<td>{plan.price_promo:,}원</td><td>{format_promotion(plan)}</td>"
                "</tr>"
            )
        parts.append(
            f'<section id="{section_id}" class="plan-section">\n'
            f"  <h3>{title}</h3>\n"
            f'  <table class="plan-table" aria-label="{title} 비교표">\n'
            "    <thead><tr>"
            '<th scope="col">통신망</th><th scope="col">기술</th><th scope="col">요금제명</th>'
            '<th scope="col">사업자</th><th scope="col">데이터</th><th scope="col">통화</th>'
            '<th scope="col">월 요금</th><th scope="col">프로모션 기간</th>'
            "</tr></thead>\n"
            "    <tbody>\n" + "\n".join(rows) + "\n    </tbody>\n"
            "  </table>\n"
            "</section>"
        )
    return "\n".join(parts)


def refine_html(html: str) -> str:
    """Strip emoji, hype phrases and decorative emphasis from model HTML."""
    refined = _EMOJI_RE.sub("", html)
    refined = re.sub(r"&#x?[0-9a-fA-F]+;", "", refined)
    refined = re.sub(r"<strong>([^0-9<>]*?)</strong>", r"\1", refined)
    refined = re.sub(r"<em>(.*?)</em>", r"\1", refined, flags=re.DOTALL)
    for phrase in _HYPE_PHRASES:
        refined = refined.replace(phrase, "")
    refined = re.sub(r"[ \t]{2,}", " ", refined)
    refined = re.sub(r"<(p|strong|em)>\s*</\1>", "", refined)
    refined = re.sub(r"\n{3,}", "\n\n", refined)
    return refined.strip()


def build_fallback_post(groups: ClassifiedGroups, now: datetime) -> GeneratedPost:
    return GeneratedPost(
        title=build_title(now),
        html_body=build_fallback_html(groups, now),
        tags=list(DEFAULT_TAGS),
        description=build_description(now),
    )


def _groups_for_prompt(groups: ClassifiedGroups) -> Dict[str, list]:
    payload: Dict[str, list] = {}
    for category, _title, _id in _SECTIONS:
        payload[CATEGORY_LABELS_KO[category]] = [
            {
                "plan_name": p.plan_name,
                "mvno": p.mvno,
                "network": normalize_network(p.network),
                "technology": p.technology,
                "data": format_data(p),
                "talk": format_talk(p),
                "price": f"{p.price_promo:,}원",
                "price_original": f"{p.price_original:,}원" if p.price_original else None,
                "promotion": format_promotion(p),
                "benefits": p.benefit_summary,
            }
            for p in sort_for_table(groups.plans_for(category))
        ]
    return payload


class PostGenerationService:
    def __init__(
        self,
        ai: Optional[OpenAIService] = None,
        *,
        min_body_length: Optional[int] = None,
        tz: Optional[str] = None,
        clock: Optional[SystemClock] = None,
    ) -> None:
        self.ai = ai
        self.clock = clock or SystemClock()
        self.min_body_length = (
            settings.POST_MIN_BODY_LENGTH if min_body_length is None else min_body_length
        )
        self.tz = tz or settings.PIPELINE_TIMEZONE

    def _ai(self) -> OpenAIService:
        if self.ai is None:
            self.ai = OpenAIService()
        return self.ai

    async def generate(
        self,
        groups: ClassifiedGroups,
        *,
        now: Optional[datetime] = None,
        ranking_snapshot_id: Optional[int] = None,
    ) -> GeneratedPost:
        local_now = (now or self.clock.now()).astimezone(ZoneInfo(self.tz))
        user_prompt = (
            f"Title to use: {build_title(local_now)}\n"
            f"Plans per category (already ranked):\n"
            f"{json.dumps(_groups_for_prompt(groups), ensure_ascii=False)}\n\n"
            "Write one <section> with an <h2> and one plan table per non-empty category, "
            "carriers ordered LG U+, KT, SKT. Return title, html_body, tags (max 10) and a "
            "description under 150 characters."
        )
        try:
            post, _meta = await self._ai().generate_json(
                system_prompt=GENERATE_SYSTEM_PROMPT,
                user_prompt=user_prompt,
                response_model=GeneratedPost,
                action_type="post_generation",
                ranking_snapshot_id=ranking_snapshot_id,
            )
        except Exception as exc:
            logger.warning(
                "post_generation_fallback",
                reason="model_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return build_fallback_post(groups, local_now)

        body = refine_html(post.html_body)
        if len(body) < self.min_body_length:
            logger.warning(
                "post_generation_fallback",
                reason="body_too_short",
                body_length=len(body),
                min_length=self.min_body_length,
            )
            return build_fallback_post(groups, local_now)

        return GeneratedPost(
            title=post.title,
            html_body=body,
            tags=post.tags or list(DEFAULT_TAGS),
            description=post.description or build_description(local_now),
        )
