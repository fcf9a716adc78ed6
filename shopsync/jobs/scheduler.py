"""
Dependency-Ordered Scheduler

One scheduling pass:
1. Reclaim stale running jobs
2. Select a bounded batch of pending jobs ordered by dependency rank, date, shop
3. Keep only the first object type in the batch and jobs whose prerequisites
   are completed
4. Run shops concurrently (bounded per object type), jobs of one shop in
   sequence, each claimed atomically right before its worker starts
5. Apply every worker result to the job store and report status counts

The pass is invoked repeatedly by an external timer until no jobs are pending.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import structlog
from prometheus_client import Counter, Histogram
from pydantic import BaseModel, Field

from shopsync.config import get_settings
from shopsync.config.logging import job_context
from shopsync.config.settings import SchedulerSettings
from shopsync.database.models import JobStatus, SyncJob
from shopsync.errors import BudgetExceededError, ShopSyncError
from shopsync.jobs.store import JobStore
from shopsync.workers.base import Budget, WorkerResult
from shopsync.workers.registry import WorkerRegistry, build_default_registry

logger = structlog.get_logger(__name__)
settings = get_settings()


# =============================================================================
# METRICS
# =============================================================================

JOBS_DISPATCHED = Counter(
    "shopsync_jobs_dispatched_total",
    "Worker invocations by object type and resulting job status",
    ["object_type", "status"],
)

JOB_DURATION = Histogram(
    "shopsync_job_duration_seconds",
    "Worker invocation duration",
    ["object_type"],
)


# =============================================================================
# RESULT MODELS
# =============================================================================

class JobStats(BaseModel):
    """Job counts per status"""
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0


class JobOutcome(BaseModel):
    """What happened to one dispatched job"""
    job_id: int
    shop: str
    object_type: str
    status: JobStatus
    records_processed: int = 0
    cursor: Optional[str] = None
    error: Optional[str] = None
    duration_seconds: float = 0


class DispatchReport(BaseModel):
    """Result of one scheduling pass"""
    complete: bool
    message: str
    stats: JobStats
    duration_seconds: float
    object_type: Optional[str] = None
    reclaimed: int = 0
    blocked: int = 0
    held_back: int = 0
    outcomes: List[JobOutcome] = Field(default_factory=list)


@dataclass
class ClaimedBatch:
    """Jobs selected for one pass"""
    jobs: List[SyncJob] = field(default_factory=list)
    object_type: Optional[str] = None
    reclaimed: int = 0
    blocked: int = 0
    held_back: int = 0
    
    def by_shop(self) -> Dict[str, List[SyncJob]]:
        groups: Dict[str, List[SyncJob]] = {}
        for job in self.jobs:
            groups.setdefault(job.shop, []).append(job)
        return groups


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class Orchestrator:
    """
    Drives sync jobs through their workers.
    
    Example:
        orchestrator = Orchestrator()
        report = await orchestrator.run_pass(object_type="orders")
        if not report.complete:
            ...  # invoke again later
    """
    
    def __init__(
        self,
        store: Optional[JobStore] = None,
        registry: Optional[WorkerRegistry] = None,
        scheduler_settings: Optional[SchedulerSettings] = None,
    ):
        self.settings = scheduler_settings or settings.scheduler
        self.store = store or JobStore(scheduler_settings=self.settings)
        self.registry = registry or build_default_registry()
    
    async def claim_batch(
        self,
        limit: Optional[int] = None,
        object_type: Optional[str] = None,
        shop: Optional[str] = None,
    ) -> ClaimedBatch:
        """
        Select the jobs this pass will dispatch.
        
        Stale jobs are reclaimed first. Jobs whose prerequisites are not
        completed stay pending and are counted as blocked.
        """
        batch = ClaimedBatch()
        batch.reclaimed = await self.store.reclaim_stale()
        
        candidates = await self.store.select_pending(
            limit or self.settings.batch_size,
            object_type=object_type,
            shop=shop,
        )
        if not candidates:
            return batch
        
        batch.object_type = candidates[0].object_type
        for job in candidates:
            if job.object_type != batch.object_type:
                batch.held_back += 1
                continue
            if not await self.store.prerequisites_met(job):
                batch.blocked += 1
                logger.info(
                    "Job waiting on prerequisites",
                    job_id=job.id,
                    shop=job.shop,
                    object_type=job.object_type,
                    start_date=str(job.start_date),
                )
                continue
            batch.jobs.append(job)
        
        # A failed prerequisite keeps its dependents pending until re-seeded,
        # and with them every later object type in the batch
        if not batch.jobs and batch.blocked and batch.held_back:
            logger.warning(
                "Scheduling stalled on blocked jobs",
                object_type=batch.object_type,
                blocked=batch.blocked,
                held_back=batch.held_back,
            )
        return batch
    
    async def run_pass(
        self,
        object_type: Optional[str] = None,
        shop: Optional[str] = None,
    ) -> DispatchReport:
        """Run one bounded scheduling pass"""
        started = time.perf_counter()
        budget = Budget(self.settings.invocation_budget_seconds)
        batch = await self.claim_batch(object_type=object_type, shop=shop)
        
        outcomes: List[JobOutcome] = []
        if batch.jobs:
            limit = self.settings.parallel_limit(batch.object_type)
            semaphore = asyncio.Semaphore(limit) if limit > 0 else None
            
            async def run_group(jobs: List[SyncJob]) -> List[JobOutcome]:
                if semaphore is None:
                    return await self._run_shop(jobs, budget)
                async with semaphore:
                    return await self._run_shop(jobs, budget)
            
            groups = batch.by_shop()
            logger.info(
                "Dispatching jobs",
                object_type=batch.object_type,
                jobs=len(batch.jobs),
                shops=len(groups),
                parallel_limit=limit or "unrestricted",
            )
            for group in await asyncio.gather(*(run_group(jobs) for jobs in groups.values())):
                outcomes.extend(group)
        
        stats = JobStats(**await self.store.stats(object_type=object_type, shop=shop))
        report = DispatchReport(
            complete=stats.pending == 0,
            message=self._message(batch, outcomes, stats),
            stats=stats,
            duration_seconds=round(time.perf_counter() - started, 2),
            object_type=batch.object_type,
            reclaimed=batch.reclaimed,
            blocked=batch.blocked,
            held_back=batch.held_back,
            outcomes=outcomes,
        )
        logger.info(
            "Scheduling pass finished",
            complete=report.complete,
            dispatched=len(outcomes),
            blocked=report.blocked,
            reclaimed=report.reclaimed,
            duration_seconds=report.duration_seconds,
            **stats.model_dump(),
        )
        return report
    
    async def _run_shop(self, jobs: List[SyncJob], budget: Budget) -> List[JobOutcome]:
        outcomes = []
        for index, job in enumerate(jobs):
            if index > 0:
                await asyncio.sleep(self.settings.wave_pause_seconds)
            if budget.expired():
                logger.info("Pass budget spent, leaving job pending", job_id=job.id, shop=job.shop)
                break
            if not await self.store.claim(job.id):
                logger.info("Job already claimed elsewhere", job_id=job.id, shop=job.shop)
                continue
            outcomes.append(await self._dispatch(job, budget))
        return outcomes
    
    async def _dispatch(self, job: SyncJob, budget: Budget) -> JobOutcome:
        """Run the worker for a claimed job and record its result"""
        with job_context(job.id, job.shop, job.object_type):
            return await self._dispatch_in_context(job, budget)
    
    async def _dispatch_in_context(self, job: SyncJob, budget: Budget) -> JobOutcome:
        started = time.perf_counter()
        resumable = False
        
        try:
            worker = self.registry.get(job.object_type)
            resumable = worker.resumable
            result = await worker.run(job, budget)
        except BudgetExceededError as e:
            if resumable:
                result = WorkerResult.partial(job.progress_cursor, 0)
            else:
                result = WorkerResult.failed(str(e))
        except ShopSyncError as e:
            result = WorkerResult.failed(str(e))
        except Exception as e:
            logger.exception("Worker raised unexpectedly")
            result = WorkerResult.failed(f"{type(e).__name__}: {e}")
        
        duration = time.perf_counter() - started
        JOB_DURATION.labels(object_type=job.object_type).observe(duration)
        status = await self._apply(job, result)
        JOBS_DISPATCHED.labels(object_type=job.object_type, status=status.value).inc()
        
        if status == JobStatus.FAILED:
            logger.error("Job failed", error=result.error, duration_seconds=round(duration, 2))
        else:
            logger.info(
                "Job finished",
                status=status.value,
                records=result.records_processed,
                duration_seconds=round(duration, 2),
            )
        return JobOutcome(
            job_id=job.id,
            shop=job.shop,
            object_type=job.object_type,
            status=status,
            records_processed=result.records_processed,
            cursor=result.cursor,
            error=self.store.truncate(result.error) if result.error else None,
            duration_seconds=round(duration, 2),
        )
    
    async def _apply(self, job: SyncJob, result: WorkerResult) -> JobStatus:
        if not result.success:
            await self.store.mark_failed(job.id, result.error or "Worker reported failure")
            return JobStatus.FAILED
        if not result.done:
            await self.store.requeue(job.id, result.cursor, result.records_processed)
            return JobStatus.PENDING
        
        applied = await self.store.mark_completed(job.id, result.records_processed)
        if applied and self.settings.auto_enqueue_dependents:
            await self.store.enqueue_dependents(job)
        return JobStatus.COMPLETED
    
    @staticmethod
    def _message(batch: ClaimedBatch, outcomes: List[JobOutcome], stats: JobStats) -> str:
        if not outcomes:
            if batch.blocked:
                message = f"{batch.blocked} {batch.object_type} jobs waiting on prerequisites"
                if batch.held_back:
                    message += f", {batch.held_back} later jobs held back"
                return message
            if stats.pending == 0:
                return "No pending jobs"
            return "No jobs dispatched"
        
        counts = {status: 0 for status in JobStatus}
        for outcome in outcomes:
            counts[outcome.status] += 1
        return (
            f"Processed {len(outcomes)} {batch.object_type} jobs: "
            f"{counts[JobStatus.COMPLETED]} completed, {counts[JobStatus.FAILED]} failed, "
            f"{counts[JobStatus.PENDING]} re-queued; {stats.pending} pending"
        )
