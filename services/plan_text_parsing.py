"""
Normalizers for the Korean text found on plan listing pages.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional

from app.models.plans import LIFETIME_PROMOTION_MONTHS, UNLIMITED_DATA_GB, UNLIMITED_MINUTES

DAYS_PER_MONTH = 30

_MONTHLY_GB_RE = re.compile(r"(?:월\s*)?(\d+(?:\.\d+)?)\s*GB", re.IGNORECASE)
_DAILY_GB_RE = re.compile(r"매일\s*(\d+(?:\.\d+)?)\s*GB", re.IGNORECASE)
_SPEED_RE = re.compile(r"(\d+(?:\.\d+)?)\s*Mbps", re.IGNORECASE)
_MB_RE = re.compile(r"(\d+(?:\.\d+)?)\s*MB(?!ps)", re.IGNORECASE)
_MONTHS_RE = re.compile(r"(\d+)\s*개월")
_WON_RE = re.compile(r"(\d[\d,]*)\s*원")


@dataclass(frozen=True)
class DataAllowance:
    total_gb: float
    daily_gb: Optional[float] = None
    speed_mbps: Optional[float] = None


def extract_number(text: Optional[str]) -> int:
    """"7,990원" -> 7990; no digits -> 0."""
    digits = re.sub(r"[^0-9]", "", text or "")
    return int(digits) if digits else 0


def extract_price(text: Optional[str]) -> int:
    """First won amount in the text: "7개월 이후 38,500원" -> 38500."""
    match = _WON_RE.search(text or "")
    return extract_number(match.group(1)) if match else extract_number(text)


def parse_data_allowance(text: Optional[str]) -> DataAllowance:
    """
    "월 11GB + 매일 2GB + 3Mbps" -> 71 GB total (daily quota over 30 days),
    daily 2 GB, 3 Mbps after the cap. "무제한" -> 999.
    """
    if not text:
        return DataAllowance(total_gb=0.0)
    if "무제한" in text:
        return DataAllowance(total_gb=float(UNLIMITED_DATA_GB))

    total = 0.0
    daily: Optional[float] = None
    speed: Optional[float] = None

    daily_match = _DAILY_GB_RE.search(text)
    monthly_text = _DAILY_GB_RE.sub("", text) if daily_match else text
    monthly_match = _MONTHLY_GB_RE.search(monthly_text)
    if monthly_match:
        total += float(monthly_match.group(1))
    if daily_match:
        daily = float(daily_match.group(1))
        total += daily * DAYS_PER_MONTH

    speed_match = _SPEED_RE.search(text)
    if speed_match:
        speed = float(speed_match.group(1))

    mb_match = _MB_RE.search(text)
    if mb_match and total == 0:
        total = float(mb_match.group(1)) / 1024

    return DataAllowance(total_gb=total, daily_gb=daily, speed_mbps=speed)


def parse_unlimited_or_number(text: Optional[str]) -> int:
    if not text:
        return 0
    if "무제한" in text or "기본제공" in text:
        return UNLIMITED_MINUTES
    return extract_number(text)


def parse_promotion_months(text: Optional[str]) -> Optional[int]:
    """"7개월 이후 38,500원" -> 7, "평생" -> 999, nothing found -> None."""
    if not text:
        return None
    if "평생" in text or "영구" in text:
        return LIFETIME_PROMOTION_MONTHS
    match = _MONTHS_RE.search(text)
    return int(match.group(1)) if match else None


def join_benefits(texts: Iterable[str]) -> Optional[str]:
    cleaned = []
    for text in texts:
        item = re.sub(r"제공$", "", text.strip())
        item = re.sub(r"^\s*-\s*", "", item)
        item = item.replace("데이터 결합 (", "").replace("추가데이터", "추가 데이터")
        item = item.rstrip(")").strip()
        if item:
            cleaned.append(item)
    return " | ".join(cleaned) if cleaned else None
