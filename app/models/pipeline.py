from __future__ import annotations

from pydantic import BaseModel, Field


class ManualRunResult(BaseModel):
    """Structured answer of an on-demand pipeline run."""

    success: bool
    message: str
    duration_ms: int = Field(default=0, ge=0)
