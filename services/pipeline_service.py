"""
Pipeline orchestration.

One run is strictly sequential:

    collect -> ingest (dedup) -> ranking gate -> [classify -> generate -> enqueue] -> drain queue

The bracketed stages only run when the gate lets the ranking through. Draining
always runs so entries left PENDING by an earlier run get their next attempt.

Runs never raise. A failure whose cause chain looks like database or network
contention schedules exactly one delayed re-run of the whole pipeline; that
re-run does not schedule another. Anything else is logged and the run ends.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

import asyncpg

from app.config import settings
from app.core.errors import TransientInfrastructureError
from app.core.logging import get_logger
from app.core.rate_limiting import IntervalRateLimiter
from app.core.scheduling import DelayedTaskScheduler, SystemClock
from app.models.pipeline import ManualRunResult
from app.models.post_queue import PostJob, PostQueueEntry, PostStatus, PublishOutcome
from services.openai_service import OpenAIService
from services.plan_classification_service import PlanClassificationService
from services.plan_ingest_service import IngestSummary, PlanIngestService
from services.post_generation_service import PostGenerationService
from services.post_queue_service import PostQueueService
from services.publish_session_service import PublishSessionManager, build_session_store
from services.publisher_service import BlogPublisher
from services.ranking_gate_service import RankingGateService
from services.source_connectors import SourceConnector, build_connectors, collect_all
from services.worker_runs_service import (
    finish_worker_run,
    mark_worker_run_running,
    start_worker_run,
    update_worker_run_progress,
)

logger = get_logger()

TRANSIENT_DB_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.exceptions.TransactionRollbackError,  # deadlock, serialization failure
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.LockNotAvailableError,
    asyncpg.exceptions.QueryCanceledError,
)
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = TRANSIENT_DB_ERRORS + (
    TransientInfrastructureError,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
)
TRANSIENT_MARKERS: tuple[str, ...] = (
    "deadlock detected",
    "could not serialize access",
    "too many connections",
    "connection refused",
    "connection reset",
    "connection was closed",
    "lock timeout",
    "canceling statement due to statement timeout",
)


def is_transient_error(exc: BaseException) -> bool:
    """
    Walk the cause/context chain; any transient exception type or contention
    marker in a message makes the whole failure transient.
    """
    seen: set[int] = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, TRANSIENT_ERRORS):
            return True
        message = str(current).lower()
        if any(marker in message for marker in TRANSIENT_MARKERS):
            return True
        current = current.__cause__ or current.__context__
    return False


@dataclass
class DrainReport:
    attempted: int = 0
    published: int = 0
    failed_attempts: int = 0
    exhausted: int = 0
    entry_ids: List[int] = field(default_factory=list)

    def as_counters(self) -> Dict[str, int]:
        return {
            "attempted": self.attempted,
            "published": self.published,
            "failed_attempts": self.failed_attempts,
            "exhausted": self.exhausted,
        }


@dataclass
class RunReport:
    trigger: str
    status: str = "running"
    collected: int = 0
    failed_sources: List[str] = field(default_factory=list)
    ingest: Optional[IngestSummary] = None
    gate_reason: Optional[str] = None
    snapshot_id: Optional[int] = None
    enqueued_entry_id: Optional[int] = None
    drain: Optional[DrainReport] = None
    error: Optional[str] = None
    retry_scheduled: bool = False

    def as_counters(self) -> Dict[str, Any]:
        return {
            "trigger": self.trigger,
            "collected": self.collected,
            "failed_sources": self.failed_sources,
            "ingest": self.ingest.as_counters() if self.ingest else None,
            "gate_reason": self.gate_reason,
            "snapshot_id": self.snapshot_id,
            "enqueued_entry_id": self.enqueued_entry_id,
            "drain": self.drain.as_counters() if self.drain else None,
            "retry_scheduled": self.retry_scheduled,
        }

    def summary(self) -> str:
        parts = [f"collected={self.collected}"]
        if self.ingest:
            parts.append(f"created={self.ingest.created}")
        parts.append(f"gate={self.gate_reason}")
        if self.enqueued_entry_id is not None:
            parts.append(f"enqueued={self.enqueued_entry_id}")
        if self.drain:
            parts.append(f"published={self.drain.published}")
        return ", ".join(parts)


class PipelineService:
    def __init__(
        self,
        *,
        connectors: Sequence[SourceConnector],
        ingest: PlanIngestService,
        gate: RankingGateService,
        classifier: PlanClassificationService,
        generator: PostGenerationService,
        queue: PostQueueService,
        session_manager: PublishSessionManager,
        publisher: BlogPublisher,
        scheduler: Optional[DelayedTaskScheduler] = None,
        clock: Optional[SystemClock] = None,
        top_n: Optional[int] = None,
        retry_delay_s: Optional[float] = None,
        track_runs: bool = True,
    ) -> None:
        self.connectors = list(connectors)
        self.ingest = ingest
        self.gate = gate
        self.classifier = classifier
        self.generator = generator
        self.queue = queue
        self.session_manager = session_manager
        self.publisher = publisher
        self.clock = clock or SystemClock()
        self.scheduler = scheduler or DelayedTaskScheduler(self.clock)
        self.top_n = top_n or settings.RANKING_TOP_N
        self.retry_delay_s = settings.RUN_RETRY_DELAY_SECONDS if retry_delay_s is None else retry_delay_s
        self.track_runs = track_runs
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Run tracking (best effort; a tracking failure never fails the run)
    # ------------------------------------------------------------------

    async def _track_start(self, bot: str, trigger: str) -> Optional[UUID]:
        if not self.track_runs:
            return None
        try:
            run_id = await start_worker_run(bot=bot, trigger=trigger)
        except Exception as exc:
            logger.warning("pipeline_run_tracking_unavailable", bot=bot, error=str(exc))
            return None
        await mark_worker_run_running(run_id)
        return run_id

    async def _track_progress(self, run_id: Optional[UUID], progress: int) -> None:
        if run_id is not None:
            await update_worker_run_progress(run_id, progress)

    async def _track_finish(
        self,
        run_id: Optional[UUID],
        status: str,
        counters: Dict[str, Any],
        error: Optional[str],
    ) -> None:
        if run_id is None:
            return
        try:
            await finish_worker_run(run_id, status, 100, counters, error)
        except Exception as exc:
            logger.warning("pipeline_run_tracking_finish_failed", run_id=str(run_id), error=str(exc))

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def run_pipeline(self, trigger: str = "scheduled", allow_retry: bool = True) -> RunReport:
        async with self._lock:
            report = RunReport(trigger=trigger)
            run_id = await self._track_start("pipeline", trigger)
            logger.info("pipeline_run_started", trigger=trigger, allow_retry=allow_retry)
            try:
                await self._run_stages(report, run_id)
                report.status = "finished"
            except Exception as exc:
                report.status = "failed"
                report.error = f"{type(exc).__name__}: {exc}"
                transient = is_transient_error(exc)
                logger.error(
                    "pipeline_run_failed",
                    trigger=trigger,
                    transient=transient,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    exc_info=True,
                )
                if transient and allow_retry:
                    self.scheduler.schedule(
                        self.retry_delay_s,
                        lambda: self.run_pipeline(trigger="retry", allow_retry=False),
                        name="pipeline_retry",
                    )
                    report.retry_scheduled = True

            await self._track_finish(
                run_id,
                "finished" if report.status == "finished" else "failed",
                report.as_counters(),
                report.error,
            )
            logger.info("pipeline_run_finished", status=report.status, **report.as_counters())
            return report

    async def _run_stages(self, report: RunReport, run_id: Optional[UUID]) -> None:
        collection = await collect_all(self.connectors)
        report.collected = len(collection.records)
        report.failed_sources = list(collection.failed_sources)
        await self._track_progress(run_id, 15)

        pass_started = await self.ingest.begin_pass()
        report.ingest = await self.ingest.ingest_batch(collection.records)
        await self._track_progress(run_id, 30)

        decision = await self.gate.select_and_evaluate(self.top_n, pass_started)
        report.gate_reason = decision.reason
        report.snapshot_id = decision.snapshot_id
        await self._track_progress(run_id, 40)

        if decision.should_proceed:
            plans = await self.ingest.list_current(pass_started)
            classification = await self.classifier.classify(plans, ranking_snapshot_id=decision.snapshot_id)
            await self._track_progress(run_id, 60)
            post = await self.generator.generate(classification.groups, ranking_snapshot_id=decision.snapshot_id)
            entry = await self.queue.enqueue(
                PostJob(
                    title=post.title,
                    html_body=post.html_body,
                    tags=post.tags,
                    description=post.description,
                    ranking_snapshot_id=decision.snapshot_id,
                )
            )
            report.enqueued_entry_id = entry.id
            await self._track_progress(run_id, 75)

        report.drain = await self.drain_queue()

    async def drain_queue(self) -> DrainReport:
        """
        Publish every PENDING entry once, oldest first. Publish failures are
        recorded on the entry; queue storage errors propagate.
        """
        report = DrainReport()
        attempted: set[int] = set()
        while True:
            entry = await self.queue.dequeue_next(exclude_ids=attempted)
            if entry is None:
                break
            attempted.add(entry.id)
            report.attempted += 1
            report.entry_ids.append(entry.id)

            outcome = await self._publish_entry(entry)
            updated = await self.queue.record_outcome(entry.id, outcome)
            if updated.status is PostStatus.PUBLISHED:
                report.published += 1
            else:
                report.failed_attempts += 1
                if updated.status is PostStatus.FAILED:
                    report.exhausted += 1

        logger.info("post_queue_drained", **report.as_counters())
        return report

    async def _publish_entry(self, entry: PostQueueEntry) -> PublishOutcome:
        try:
            result = await self.session_manager.with_session(
                lambda handle: self.publisher.publish(entry, handle)
            )
        except Exception as exc:
            logger.warning(
                "post_publish_failed",
                entry_id=entry.id,
                retry_count=entry.retry_count,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return PublishOutcome.failed(f"{type(exc).__name__}: {exc}")
        if not result.success:
            return PublishOutcome.failed("publish action reported no success")
        return PublishOutcome.published(result.external_id)

    async def run_publisher_only(self) -> Optional[DrainReport]:
        """Drain the queue without collecting; errors are logged, never raised."""
        async with self._lock:
            run_id = await self._track_start("publisher", "interval")
            try:
                report = await self.drain_queue()
            except Exception as exc:
                logger.error(
                    "publisher_run_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    exc_info=True,
                )
                await self._track_finish(run_id, "failed", {}, str(exc))
                return None
            await self._track_finish(run_id, "finished", report.as_counters(), None)
            return report

    async def trigger_manual_run(self) -> ManualRunResult:
        started = self.clock.monotonic()
        report = await self.run_pipeline(trigger="manual")
        duration_ms = max(0, int((self.clock.monotonic() - started) * 1000))
        if report.status == "failed":
            message = f"Pipeline run failed: {report.error}"
            if report.retry_scheduled:
                message += f" (retry scheduled in {int(self.retry_delay_s)}s)"
            return ManualRunResult(success=False, message=message, duration_ms=duration_ms)
        return ManualRunResult(success=True, message=f"Pipeline run finished: {report.summary()}", duration_ms=duration_ms)


def build_default_pipeline() -> PipelineService:
    """Wire the production collaborators from settings."""
    clock = SystemClock()
    ingest = PlanIngestService()
    ai = OpenAIService()
    publisher = BlogPublisher()
    return PipelineService(
        connectors=build_connectors(settings.SOURCE_CONNECTORS),
        ingest=ingest,
        gate=RankingGateService(plans=ingest),
        classifier=PlanClassificationService(
            ai,
            rate_limiter=IntervalRateLimiter(settings.CLASSIFY_MIN_INTERVAL_SECONDS, clock=clock),
        ),
        generator=PostGenerationService(ai, clock=clock),
        queue=PostQueueService(clock=clock),
        session_manager=PublishSessionManager(
            build_session_store(settings.PUBLISH_SESSION_FILE), publisher.authenticate
        ),
        publisher=publisher,
        scheduler=DelayedTaskScheduler(clock),
        clock=clock,
    )
