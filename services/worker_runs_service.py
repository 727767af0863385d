"""
Worker run bookkeeping for the pipeline bot.

Every orchestrator run (scheduled, manual, retry, publisher-only) gets one row in
worker_runs and walks pending -> running -> finished | failed. Counters are the
run report as JSONB so a failed night can be reconstructed from the table alone.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional
from uuid import UUID

from app.core.logging import get_logger
from services.db_service import execute, fetchrow

logger = get_logger()

FINAL_STATUSES = ("finished", "failed")


def _clamp(progress: int) -> int:
    return max(0, min(100, int(progress)))


async def start_worker_run(bot: str, trigger: Optional[str] = None) -> UUID:
    """Insert a pending run and return its id."""
    try:
        row = await fetchrow(
            "INSERT INTO worker_runs (bot, trigger, status) VALUES ($1, $2, 'pending') RETURNING id",
            bot,
            trigger,
        )
    except Exception as e:
        logger.error("worker_run_start_failed", bot=bot, trigger=trigger, error=str(e))
        raise
    if row is None:
        raise RuntimeError(f"worker_runs insert returned no id for bot={bot}")
    return UUID(str(row["id"]))


async def mark_worker_run_running(run_id: UUID) -> None:
    try:
        await execute(
            "UPDATE worker_runs SET status = 'running', started_at = NOW(), progress = 0 WHERE id = $1",
            run_id,
        )
    except Exception as e:
        logger.warning("worker_run_mark_running_failed", run_id=str(run_id), error=str(e))


async def update_worker_run_progress(run_id: UUID, progress: int) -> None:
    # voortgang is informatief; een mislukte update stopt de run niet
    try:
        await execute("UPDATE worker_runs SET progress = $1 WHERE id = $2", _clamp(progress), run_id)
    except Exception as e:
        logger.warning(
            "worker_run_progress_failed",
            run_id=str(run_id),
            progress=_clamp(progress),
            error=str(e),
        )


async def finish_worker_run(
    run_id: UUID,
    status: str,
    progress: int,
    counters: Optional[Dict[str, Any]] = None,
    error_message: Optional[str] = None,
) -> None:
    if status not in FINAL_STATUSES:
        raise ValueError(f"status must be one of {FINAL_STATUSES}, got {status!r}")
    try:
        await execute(
            """
            UPDATE worker_runs
            SET status = $1,
                progress = $2,
                counters = CAST($3::text AS JSONB),
                error_message = $4,
                finished_at = NOW()
            WHERE id = $5
            """,
            status,
            _clamp(progress),
            json.dumps(counters or {}, ensure_ascii=False, default=str),
            error_message,
            run_id,
        )
    except Exception as e:
        logger.error("worker_run_finish_failed", run_id=str(run_id), status=status, error=str(e))
        raise
