from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List

import httpx
import pytest
from bs4 import BeautifulSoup

from app.models.plans import RawPlanRecord
from services.source_connectors import (
    DemoSourceConnector,
    HtmlSourceConnector,
    MoyoplanSourceConnector,
    SourceConnector,
    build_connectors,
    collect_all,
)

MOYO_CARD = """
<a href="/plans/29214">
  <img alt="찬스모바일" src="/logo.png"/>
  <span>음성기본 모요핫딜</span>
  <span>LG U+</span>
  <span>LTE</span>
  <span>월 11GB + 매일 2GB + 3Mbps</span>
  <span>통화 무제한</span>
  <span>문자 기본제공</span>
  <span>월 12,000원</span>
  <span>7개월 이후 38,500원</span>
  <span>네이버페이 10,000P 제공</span>
</a>
"""


class BrokenConnector(SourceConnector):
    name = "broken"

    async def collect(self) -> List[RawPlanRecord]:
        raise RuntimeError("HTTP 403")


@pytest.mark.asyncio
async def test_collect_all_isolates_failing_source() -> None:
    result = await collect_all([BrokenConnector(), DemoSourceConnector()])
    assert result.failed_sources == ["broken"]
    assert result.per_source == {"demo": 3}
    assert len(result.records) == 3


@pytest.mark.asyncio
async def test_demo_connector_yields_valid_records() -> None:
    records = await DemoSourceConnector().collect()
    assert {r.mvno for r in records} == {"찬스모바일", "유모바일", "프리티"}
    assert min(r.price_promo for r in records) == 12000


def test_build_connectors_by_key() -> None:
    connectors = build_connectors(["demo", " Moyoplan "])
    assert [c.name for c in connectors] == ["demo", "moyoplan"]
    with pytest.raises(ValueError):
        build_connectors(["nope"])


def test_moyoplan_card_parsing() -> None:
    soup = BeautifulSoup(f"<main>{MOYO_CARD}<a href='/plans/1'>no logo</a></main>", "html.parser")
    collected_at = datetime(2025, 11, 5, tzinfo=timezone.utc)

    records = MoyoplanSourceConnector().extract_records(soup, collected_at)

    assert len(records) == 1
    plan = records[0]
    assert plan.mvno == "찬스모바일"
    assert plan.plan_name == "음성기본 모요핫딜"
    assert plan.network == "LG U+"
    assert plan.technology == "LTE"
    assert plan.price_promo == 12000
    assert plan.price_original == 38500
    assert plan.promotion_duration_months == 7
    assert plan.data_base_gb == 71
    assert plan.data_post_speed_mbps == 3
    assert plan.talk_minutes == 9999
    assert plan.sms_count == 9999
    assert plan.benefit_summary == "네이버페이 10,000P"
    assert plan.detail_url == "https://www.moyoplan.com/plans/29214"


class FakePage:
    def __init__(self, html: str) -> None:
        self.html = html
        self.visited: List[str] = []

    async def goto(self, url, **kwargs):
        self.visited.append(url)

    async def wait_for_selector(self, selector, **kwargs):
        return None

    def locator(self, selector):
        return FakeLocator()

    async def content(self) -> str:
        return self.html


class FakeLocator:
    @property
    def first(self):
        return self

    async def count(self) -> int:
        return 0


@pytest.mark.asyncio
async def test_browser_connector_parses_rendered_page() -> None:
    page = FakePage(f"<html><body>{MOYO_CARD}</body></html>")

    @asynccontextmanager
    async def page_factory(storage_state=None):
        yield page

    records = await MoyoplanSourceConnector(page_factory=page_factory).collect()

    assert page.visited == ["https://www.moyoplan.com/plans"]
    assert [r.mvno for r in records] == ["찬스모바일"]


class ListingConnector(HtmlSourceConnector):
    name = "listing"

    def page_url(self, page: int) -> str:
        return f"https://plans.example/list?page={page}"

    def extract_records(self, soup, collected_at):
        return [
            RawPlanRecord(source_site=self.name, plan_name=li.get_text(strip=True), mvno="테스트", price_promo=1000)
            for li in soup.select("li.plan")
        ]


@pytest.mark.asyncio
async def test_html_connector_pages_until_empty() -> None:
    pages = {
        "1": "<ul><li class='plan'>A</li><li class='plan'>B</li></ul>",
        "2": "<ul><li class='plan'>C</li></ul>",
        "3": "<ul></ul>",
    }

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=pages[request.url.params["page"]])

    connector = ListingConnector(transport=httpx.MockTransport(handler), max_retries=0)
    records = await connector.collect()

    assert [r.plan_name for r in records] == ["A", "B", "C"]


@pytest.mark.asyncio
async def test_html_connector_raises_after_retries() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    connector = ListingConnector(transport=httpx.MockTransport(handler), max_retries=0)
    with pytest.raises(httpx.HTTPStatusError):
        await connector.collect()
