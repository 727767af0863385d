from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

# Sentinels used by the listing sites and kept as-is in storage
UNLIMITED_DATA_GB = 999
UNLIMITED_MINUTES = 9999
LIFETIME_PROMOTION_MONTHS = 999


class RawPlanRecord(BaseModel):
    """One plan as collected from a source, before fingerprinting."""

    source_site: str = Field(..., min_length=1)
    plan_name: str = Field(..., min_length=1)
    mvno: str = Field(..., min_length=1)
    network: str = ""
    technology: str = "LTE"
    price_promo: int = Field(..., ge=0)
    price_original: Optional[int] = Field(default=None, ge=0)
    promotion_duration_months: Optional[int] = None
    promotion_end_date: Optional[date] = None
    data_base_gb: float = Field(default=0.0, ge=0)
    data_post_speed_mbps: Optional[float] = Field(default=None, ge=0)
    talk_minutes: int = 0
    sms_count: int = 0
    detail_url: Optional[str] = None
    benefit_summary: Optional[str] = None
    collected_at: Optional[datetime] = None

    @field_validator("source_site", "plan_name", "mvno")
    @classmethod
    def _strip(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("value cannot be empty")
        return normalized


class PlanItem(RawPlanRecord):
    """A stored plan row, keyed by its content fingerprint."""

    id: int
    data_hash: str = Field(..., min_length=64, max_length=64)
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
