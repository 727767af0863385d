"""
Plan ingestion with content-addressed deduplication.

Every collected record is reduced to a SHA-256 fingerprint over its stable
attributes and upserted on that fingerprint: the first sighting inserts a row,
later sightings only refresh ``last_seen_at``. A plan whose price or specs
change hashes differently and becomes a new row; the old row stays as history.

Downstream consumers (ranking gate, classification) read the rows seen in the
latest collection pass, which is the current variant of every plan.
"""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, List, Optional

from app.core.errors import ItemIngestError
from app.core.logging import get_logger
from app.models.plans import PlanItem, RawPlanRecord
from services.db_service import fetch, fetchrow, fetchval

logger = get_logger()

# Order matters: it is part of the fingerprint.
STABLE_FIELDS: tuple[str, ...] = (
    "source_site",
    "plan_name",
    "mvno",
    "price_promo",
    "price_original",
    "data_base_gb",
    "data_post_speed_mbps",
    "talk_minutes",
    "sms_count",
    "promotion_duration_months",
    "technology",
)
FINGERPRINT_SEPARATOR = "|"


class IngestOutcome(str, Enum):
    CREATED = "created"
    UNCHANGED = "unchanged"


@dataclass
class IngestSummary:
    created: int = 0
    unchanged: int = 0
    failed: int = 0
    fingerprints: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.created + self.unchanged + self.failed

    def as_counters(self) -> dict:
        return {"created": self.created, "unchanged": self.unchanged, "failed": self.failed}


def _token(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, str):
        return value.strip()
    return str(value)


def compute_fingerprint(record: RawPlanRecord) -> str:
    source = FINGERPRINT_SEPARATOR.join(_token(getattr(record, name)) for name in STABLE_FIELDS)
    return hashlib.sha256(source.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class PlanStore(ABC):
    @abstractmethod
    async def current_timestamp(self) -> datetime:
        """Store clock, used to mark the start of a collection pass."""

    @abstractmethod
    async def upsert(self, fingerprint: str, record: RawPlanRecord) -> bool:
        """Insert or refresh last_seen_at. True when a new row was inserted."""

    @abstractmethod
    async def select_top(self, n: int, seen_since: Optional[datetime]) -> List[PlanItem]:
        ...

    @abstractmethod
    async def list_seen_since(self, seen_since: Optional[datetime]) -> List[PlanItem]:
        ...


_PLAN_COLUMNS = """
    id, data_hash, source_site, plan_name, detail_url, mvno, network, technology,
    price_promo, price_original, promotion_duration_months, promotion_end_date,
    data_base_gb, data_post_speed_mbps, talk_minutes, sms_count, benefit_summary,
    first_seen_at, last_seen_at
"""


class PostgresPlanStore(PlanStore):
    async def current_timestamp(self) -> datetime:
        return await fetchval("SELECT clock_timestamp()")

    async def upsert(self, fingerprint: str, record: RawPlanRecord) -> bool:
        # xmax = 0 only for a freshly inserted tuple
        row = await fetchrow(
            """
            INSERT INTO plans (
                data_hash, source_site, plan_name, detail_url, mvno, network, technology,
                price_promo, price_original, promotion_duration_months, promotion_end_date,
                data_base_gb, data_post_speed_mbps, talk_minutes, sms_count, benefit_summary,
                first_seen_at, last_seen_at
            ) VALUES (
                $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16,
                NOW(), NOW()
            )
            ON CONFLICT (data_hash) DO UPDATE
            SET last_seen_at = NOW()
            RETURNING id, (xmax = 0) AS inserted
            """,
            fingerprint,
            record.source_site,
            record.plan_name,
            record.detail_url,
            record.mvno,
            record.network,
            record.technology,
            record.price_promo,
            record.price_original,
            record.promotion_duration_months,
            record.promotion_end_date,
            float(record.data_base_gb),
            record.data_post_speed_mbps,
            record.talk_minutes,
            record.sms_count,
            record.benefit_summary,
        )
        if row is None:
            raise RuntimeError(f"plan upsert returned no row for {fingerprint}")
        return bool(row["inserted"])

    async def select_top(self, n: int, seen_since: Optional[datetime]) -> List[PlanItem]:
        rows = await fetch(
            f"""
            SELECT {_PLAN_COLUMNS}
            FROM plans
            WHERE ($1::timestamptz IS NULL OR last_seen_at >= $1::timestamptz)
            ORDER BY price_promo ASC, data_hash ASC
            LIMIT $2
            """,
            seen_since,
            int(n),
        )
        return [PlanItem.model_validate(dict(r)) for r in rows]

    async def list_seen_since(self, seen_since: Optional[datetime]) -> List[PlanItem]:
        rows = await fetch(
            f"""
            SELECT {_PLAN_COLUMNS}
            FROM plans
            WHERE ($1::timestamptz IS NULL OR last_seen_at >= $1::timestamptz)
            ORDER BY price_promo ASC, data_hash ASC
            """,
            seen_since,
        )
        return [PlanItem.model_validate(dict(r)) for r in rows]


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class PlanIngestService:
    def __init__(self, store: Optional[PlanStore] = None) -> None:
        self.store = store or PostgresPlanStore()

    async def begin_pass(self) -> datetime:
        return await self.store.current_timestamp()

    async def ingest(self, record: RawPlanRecord) -> IngestOutcome:
        fingerprint = compute_fingerprint(record)
        try:
            inserted = await self.store.upsert(fingerprint, record)
        except Exception as exc:
            raise ItemIngestError(fingerprint, f"upsert failed for {record.plan_name!r}: {exc}") from exc
        return IngestOutcome.CREATED if inserted else IngestOutcome.UNCHANGED

    async def ingest_batch(self, records: Iterable[RawPlanRecord]) -> IngestSummary:
        """
        Ingest each record on its own. A failing record is logged and counted,
        the rest of the batch still goes through.
        """
        summary = IngestSummary()
        for record in records:
            try:
                outcome = await self.ingest(record)
            except ItemIngestError as exc:
                summary.failed += 1
                logger.warning(
                    "plan_ingest_record_failed",
                    fingerprint=exc.fingerprint,
                    source_site=record.source_site,
                    plan_name=record.plan_name,
                    error=str(exc),
                    error_type=type(exc.__cause__).__name__,
                )
                continue
            summary.fingerprints.append(compute_fingerprint(record))
            if outcome is IngestOutcome.CREATED:
                summary.created += 1
            else:
                summary.unchanged += 1

        logger.info("plan_ingest_batch_finished", **summary.as_counters())
        return summary

    async def select_current_top_n(self, n: int, seen_since: Optional[datetime]) -> List[PlanItem]:
        """Cheapest ``n`` plans of the pass, ties broken by fingerprint."""
        return await self.store.select_top(n, seen_since)

    async def list_current(self, seen_since: Optional[datetime]) -> List[PlanItem]:
        return await self.store.list_seen_since(seen_since)

