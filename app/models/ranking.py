from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class RankingSnapshot(BaseModel):
    id: int
    ranking_hash: str = Field(..., min_length=64, max_length=64)
    top_count: int = Field(..., ge=1)
    plan_ids: List[int] = Field(default_factory=list)
    created_at: datetime


class GateDecision(BaseModel):
    ranking_hash: Optional[str] = None
    should_proceed: bool
    snapshot_id: Optional[int] = None
    reason: str
