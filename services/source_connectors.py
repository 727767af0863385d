"""
Plan sources.

A connector yields the raw plan records of one collection pass. ``collect_all``
runs the configured connectors one after another; a failing source is logged
and the pass continues with the others.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncContextManager, Callable, Dict, List, Optional, Sequence, Type

import httpx
from bs4 import BeautifulSoup
from playwright.async_api import Page
from pydantic import ValidationError

from app.core.logging import get_logger
from app.models.plans import RawPlanRecord
from services.browser_service import browser_page
from services.plan_text_parsing import (
    extract_price,
    join_benefits,
    parse_data_allowance,
    parse_promotion_months,
    parse_unlimited_or_number,
)

logger = get_logger()

DEFAULT_USER_AGENT = "planpost-bot/0.1 (+https://github.com/planpost)"


class SourceConnector(ABC):
    name: str = "source"

    @abstractmethod
    async def collect(self) -> List[RawPlanRecord]:
        ...


@dataclass
class CollectionResult:
    records: List[RawPlanRecord] = field(default_factory=list)
    per_source: Dict[str, int] = field(default_factory=dict)
    failed_sources: List[str] = field(default_factory=list)


async def collect_all(connectors: Sequence[SourceConnector]) -> CollectionResult:
    result = CollectionResult()
    for connector in connectors:
        try:
            records = await connector.collect()
        except Exception as exc:
            result.failed_sources.append(connector.name)
            logger.error(
                "source_collect_failed",
                source=connector.name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            continue
        result.records.extend(records)
        result.per_source[connector.name] = len(records)
        logger.info("source_collected", source=connector.name, records=len(records))
    return result


# ---------------------------------------------------------------------------
# Demo data
# ---------------------------------------------------------------------------

class DemoSourceConnector(SourceConnector):
    """Fixed sample plans for local runs and smoke tests."""

    name = "demo"

    async def collect(self) -> List[RawPlanRecord]:
        now = datetime.now(timezone.utc)
        return [
            RawPlanRecord(
                source_site="moyoplan",
                plan_name="[모요핫딜]음성기본 11GB+일 2GB+",
                detail_url="https://www.moyoplan.com/plans/29214",
                mvno="찬스모바일",
                network="LG U+",
                technology="LTE",
                price_promo=12000,
                price_original=38500,
                promotion_duration_months=7,
                data_base_gb=11,
                data_post_speed_mbps=3,
                talk_minutes=9999,
                sms_count=9999,
                benefit_summary="7개월 할인, 기본 통화 + 11GB 데이터",
                collected_at=now,
            ),
            RawPlanRecord(
                source_site="moyoplan",
                plan_name="알뜰 5G 무제한",
                detail_url="https://www.moyoplan.com/plans/12345",
                mvno="유모바일",
                network="SKT",
                technology="5G",
                price_promo=35000,
                price_original=40000,
                promotion_duration_months=12,
                data_base_gb=999,
                talk_minutes=9999,
                sms_count=9999,
                benefit_summary="12개월 할인, 무제한 통화 + 무제한 데이터",
                collected_at=now,
            ),
            RawPlanRecord(
                source_site="moyoplan",
                plan_name="프리티 프리미엄",
                detail_url="https://www.moyoplan.com/plans/67890",
                mvno="프리티",
                network="KT",
                technology="5G",
                price_promo=55000,
                data_base_gb=999,
                talk_minutes=9999,
                sms_count=9999,
                benefit_summary="무제한 통화 + 무제한 데이터",
                collected_at=now,
            ),
        ]


# ---------------------------------------------------------------------------
# Static HTML sources
# ---------------------------------------------------------------------------

class HtmlSourceConnector(SourceConnector):
    """
    Base for sources whose listing pages are server rendered.

    Subclasses implement ``page_url`` and ``extract_records``; paging stops at
    the first page without records or at ``max_pages``.
    """

    def __init__(
        self,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout_s: int = 15,
        max_retries: int = 2,
        max_pages: int = 20,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.user_agent = user_agent
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.max_pages = max(1, max_pages)
        self._transport = transport

    @abstractmethod
    def page_url(self, page: int) -> str:
        ...

    @abstractmethod
    def extract_records(self, soup: BeautifulSoup, collected_at: datetime) -> List[RawPlanRecord]:
        ...

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> str:
        attempt = 0
        delay = 1.0
        while True:
            try:
                response = await client.get(url)
                response.raise_for_status()
                return response.text
            except httpx.HTTPError:
                attempt += 1
                if attempt > self.max_retries:
                    raise
                await asyncio.sleep(delay)
                delay = min(delay * 2, 10)

    async def collect(self) -> List[RawPlanRecord]:
        records: List[RawPlanRecord] = []
        collected_at = datetime.now(timezone.utc)
        async with httpx.AsyncClient(
            timeout=self.timeout_s,
            headers={"User-Agent": self.user_agent, "Accept-Language": "ko-KR,ko;q=0.9"},
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            for page in range(1, self.max_pages + 1):
                html = await self._fetch(client, self.page_url(page))
                page_records = self.extract_records(BeautifulSoup(html, "html.parser"), collected_at)
                logger.debug("source_page_parsed", source=self.name, page=page, records=len(page_records))
                if not page_records:
                    break
                records.extend(page_records)
        return records


# ---------------------------------------------------------------------------
# Browser-rendered sources
# ---------------------------------------------------------------------------

class BrowserSourceConnector(SourceConnector):
    """
    Base for sources that render their listing client-side.

    The page is loaded in a fresh browser, ``expand`` may click through
    "load more" buttons, and the final DOM is handed to ``extract_records``.
    """

    url: str = ""
    ready_selector: Optional[str] = None

    def __init__(self, *, page_factory: Callable[..., AsyncContextManager[Page]] = browser_page) -> None:
        self.page_factory = page_factory

    @abstractmethod
    def extract_records(self, soup: BeautifulSoup, collected_at: datetime) -> List[RawPlanRecord]:
        ...

    async def expand(self, page: Page) -> None:
        """Hook for sources that page with a button; the default does nothing."""

    async def collect(self) -> List[RawPlanRecord]:
        collected_at = datetime.now(timezone.utc)
        async with self.page_factory(None) as page:
            await page.goto(self.url, wait_until="domcontentloaded", timeout=30_000)
            if self.ready_selector:
                await page.wait_for_selector(self.ready_selector, timeout=15_000)
            await self.expand(page)
            html = await page.content()
        return self.extract_records(BeautifulSoup(html, "html.parser"), collected_at)


class MoyoplanSourceConnector(BrowserSourceConnector):
    """Plan cards from moyoplan.com's plan listing."""

    name = "moyoplan"
    BASE_URL = "https://www.moyoplan.com"
    url = f"{BASE_URL}/plans"
    ready_selector = 'a[href^="/plans/"]'
    MORE_BUTTON = 'button:has-text("더보기")'
    MAX_EXPANSIONS = 30

    async def expand(self, page: Page) -> None:
        for _ in range(self.MAX_EXPANSIONS):
            button = page.locator(self.MORE_BUTTON).first
            if await button.count() == 0:
                return
            await button.click()
            await page.wait_for_timeout(800)

    def extract_records(self, soup: BeautifulSoup, collected_at: datetime) -> List[RawPlanRecord]:
        records: List[RawPlanRecord] = []
        for card in soup.select('a[href^="/plans/"]'):
            img = card.find("img", alt=True)
            if img is None:
                continue
            spans = [s.get_text(" ", strip=True) for s in card.find_all("span")]
            spans = [s for s in spans if s]

            data_text = next(
                (s for s in spans if ("GB" in s or "Mbps" in s) and "원" not in s and ("월" in s or "+" in s)),
                next((s for s in spans if ("GB" in s or "Mbps" in s) and "원" not in s), ""),
            )
            price_texts = [s for s in spans if s.endswith("원") or "원" in s]
            plan_name = next((s for s in spans if s not in (data_text,) and s not in price_texts and len(s) >= 4), "")
            talk_text = next((s for s in spans if "통화" in s or "분" in s), "")
            sms_text = next((s for s in spans if "문자" in s or "건" in s), "")
            network_text = next((s for s in spans if s in ("LG U+", "LGU+", "KT", "SKT")), "")
            technology = "5G" if any("5G" in s for s in spans) else "LTE"
            after_promo = next((s for s in price_texts if "이후" in s), "")
            benefits = [s for s in spans if ("제공" in s or "사은품" in s) and s not in (talk_text, sms_text)]

            allowance = parse_data_allowance(data_text)
            try:
                records.append(
                    RawPlanRecord(
                        source_site=self.name,
                        plan_name=plan_name,
                        detail_url=f"{self.BASE_URL}{card['href']}",
                        mvno=img["alt"],
                        network=network_text,
                        technology=technology,
                        price_promo=extract_price(price_texts[0]) if price_texts else 0,
                        price_original=extract_price(after_promo) or None,
                        promotion_duration_months=parse_promotion_months(after_promo),
                        data_base_gb=allowance.total_gb,
                        data_post_speed_mbps=allowance.speed_mbps,
                        talk_minutes=parse_unlimited_or_number(talk_text),
                        sms_count=parse_unlimited_or_number(sms_text),
                        benefit_summary=join_benefits(benefits),
                        collected_at=collected_at,
                    )
                )
            except ValidationError as exc:
                logger.debug("source_card_skipped", source=self.name, href=card.get("href"), error=str(exc))
        return records


CONNECTORS: Dict[str, Type[SourceConnector]] = {
    DemoSourceConnector.name: DemoSourceConnector,
    MoyoplanSourceConnector.name: MoyoplanSourceConnector,
}


def build_connectors(keys: Sequence[str]) -> List[SourceConnector]:
    connectors: List[SourceConnector] = []
    for key in keys:
        cls = CONNECTORS.get(key.strip().lower())
        if cls is None:
            raise ValueError(f"unknown source connector: {key!r} (known: {', '.join(sorted(CONNECTORS))})")
        connectors.append(cls())
    return connectors
