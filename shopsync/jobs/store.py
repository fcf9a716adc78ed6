"""
Job Store

Durable queue of sync jobs. Every state change is a single-row conditional
UPDATE guarded by the job's current status, so whoever flips a job from
``pending`` to ``running`` owns it until a terminal status is written. Late
writes from a worker whose job was already reclaimed are discarded.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional

import structlog
from prometheus_client import Counter
from sqlalchemy import and_, case, delete, exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from shopsync.config import get_settings
from shopsync.config.settings import SchedulerSettings
from shopsync.database.connection import get_db
from shopsync.database.models import JobStatus, SyncJob, utcnow
from shopsync.errors import ConfigurationError
from shopsync.jobs.dependencies import DEPENDENCY_GRAPH, RANKS, dependents, prerequisites

logger = structlog.get_logger(__name__)
settings = get_settings()


# =============================================================================
# METRICS
# =============================================================================

STALE_JOBS_RECLAIMED = Counter(
    "shopsync_stale_jobs_reclaimed_total",
    "Running jobs failed by the staleness reclaimer",
    ["object_type"],
)


@dataclass
class SeedResult:
    """Outcome of a backfill seed"""
    created: int = 0
    skipped_completed: int = 0
    skipped_running: int = 0
    replaced: int = 0


def daily_units(start_date: date, end_date: date, days_per_job: int = 1) -> List[tuple]:
    """Split an inclusive date range into consecutive (start, end) units"""
    if end_date < start_date:
        raise ValueError(f"end_date {end_date} is before start_date {start_date}")
    units = []
    current = start_date
    step = max(1, days_per_job)
    while current <= end_date:
        unit_end = min(current + timedelta(days=step - 1), end_date)
        units.append((current, unit_end))
        current = unit_end + timedelta(days=1)
    return units


def _same_unit(model, shop: str, object_type: str, start_date: date, end_date: date):
    return and_(
        model.shop == shop,
        model.object_type == object_type,
        model.start_date == start_date,
        model.end_date == end_date,
    )


class JobStore:
    """
    Reads and writes sync jobs.
    
    Example:
        store = JobStore()
        await store.seed(["shop.myshopify.com"], ["orders"], date(2024, 10, 1), date(2024, 10, 7))
        jobs = await store.select_pending(limit=20)
    """
    
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        scheduler_settings: Optional[SchedulerSettings] = None,
    ):
        self.session_factory = session_factory
        self.settings = scheduler_settings or settings.scheduler
    
    def _session(self):
        return get_db(self.session_factory)
    
    # =========================================================================
    # CREATION
    # =========================================================================
    
    async def seed(
        self,
        shops: Iterable[str],
        object_types: Iterable[str],
        start_date: date,
        end_date: date,
        days_per_job: int = 1,
    ) -> SeedResult:
        """
        Create pending jobs for a backfill.
        
        Completed and running units are left alone; pending and failed
        duplicates are replaced by one fresh pending job.
        """
        result = SeedResult()
        units = daily_units(start_date, end_date, days_per_job)
        object_types = [self._object_type(t) for t in object_types]
        
        async with self._session() as db:
            for shop in shops:
                for object_type in object_types:
                    for unit_start, unit_end in units:
                        match = _same_unit(SyncJob, shop, object_type, unit_start, unit_end)
                        statuses = set((await db.execute(select(SyncJob.status).where(match))).scalars())
                        if JobStatus.COMPLETED in statuses:
                            result.skipped_completed += 1
                            continue
                        if JobStatus.RUNNING in statuses:
                            result.skipped_running += 1
                            continue
                        if statuses:
                            deleted = await db.execute(delete(SyncJob).where(match))
                            result.replaced += deleted.rowcount or 0
                        db.add(SyncJob(
                            shop=shop,
                            object_type=object_type,
                            start_date=unit_start,
                            end_date=unit_end,
                            status=JobStatus.PENDING,
                        ))
                        result.created += 1
        
        logger.info(
            "Jobs seeded",
            created=result.created,
            skipped_completed=result.skipped_completed,
            skipped_running=result.skipped_running,
            replaced=result.replaced,
        )
        return result
    
    async def ensure_job(
        self,
        shop: str,
        object_type: str,
        start_date: date,
        end_date: date,
    ) -> Optional[SyncJob]:
        """Create a pending job unless one already exists for the unit"""
        object_type = self._object_type(object_type)
        async with self._session() as db:
            found = await db.scalar(
                select(SyncJob.id).where(_same_unit(SyncJob, shop, object_type, start_date, end_date)).limit(1)
            )
            if found is not None:
                return None
            job = SyncJob(
                shop=shop,
                object_type=object_type,
                start_date=start_date,
                end_date=end_date,
                status=JobStatus.PENDING,
            )
            db.add(job)
        return job
    
    async def enqueue_dependents(self, job: SyncJob) -> List[SyncJob]:
        """Create jobs for dependent types whose prerequisites are now all complete"""
        created = []
        for object_type in sorted(dependents(job.object_type)):
            candidate = SyncJob(
                shop=job.shop,
                object_type=object_type,
                start_date=job.start_date,
                end_date=job.end_date,
            )
            if not await self.prerequisites_met(candidate):
                continue
            new_job = await self.ensure_job(job.shop, object_type, job.start_date, job.end_date)
            if new_job is not None:
                created.append(new_job)
                logger.info(
                    "Dependent job enqueued",
                    shop=job.shop,
                    object_type=object_type,
                    start_date=str(job.start_date),
                )
        return created
    
    # =========================================================================
    # SELECTION AND CLAIMING
    # =========================================================================
    
    async def reclaim_stale(self, now: Optional[datetime] = None) -> int:
        """
        Fail running jobs older than their type's staleness threshold.
        
        Returns:
            Number of jobs reclaimed
        """
        now = now or utcnow()
        overrides = self.settings.stale_after_overrides
        groups = [([t], self.settings.stale_threshold(t)) for t in overrides]
        groups.append((None, self.settings.stale_after_seconds))
        
        total = 0
        async with self._session() as db:
            for object_types, threshold in groups:
                conditions = [
                    SyncJob.status == JobStatus.RUNNING,
                    SyncJob.started_at < now - timedelta(seconds=threshold),
                ]
                if object_types is None:
                    if overrides:
                        conditions.append(SyncJob.object_type.notin_(list(overrides)))
                else:
                    conditions.append(SyncJob.object_type.in_(object_types))
                
                stale = (await db.execute(
                    select(SyncJob.id, SyncJob.object_type).where(*conditions)
                )).all()
                if not stale:
                    continue
                
                result = await db.execute(
                    update(SyncJob)
                    .where(SyncJob.id.in_([row.id for row in stale]), SyncJob.status == JobStatus.RUNNING)
                    .values(
                        status=JobStatus.FAILED,
                        error_message=f"Job timeout - exceeded {threshold} second limit",
                        completed_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                total += result.rowcount or 0
                for row in stale:
                    STALE_JOBS_RECLAIMED.labels(object_type=row.object_type).inc()
                    logger.warning(
                        "Stale job reclaimed",
                        job_id=row.id,
                        object_type=row.object_type,
                        threshold_seconds=threshold,
                    )
        return total
    
    async def select_pending(
        self,
        limit: int,
        object_type: Optional[str] = None,
        shop: Optional[str] = None,
    ) -> List[SyncJob]:
        """Pending jobs ordered by dependency rank, start date, shop"""
        rank_order = case(RANKS, value=SyncJob.object_type, else_=len(RANKS) + 1)
        stmt = select(SyncJob).where(SyncJob.status == JobStatus.PENDING)
        if object_type:
            stmt = stmt.where(SyncJob.object_type == self._object_type(object_type))
        if shop:
            stmt = stmt.where(SyncJob.shop == shop)
        stmt = stmt.order_by(rank_order, SyncJob.start_date, SyncJob.shop, SyncJob.id).limit(limit)
        
        async with self._session() as db:
            return list((await db.execute(stmt)).scalars().all())
    
    async def claim(self, job_id: int, now: Optional[datetime] = None) -> bool:
        """
        Flip a job from pending to running.
        
        Fails when the job is no longer pending or another job for the same
        unit is already running.
        """
        now = now or utcnow()
        other = aliased(SyncJob)
        unit_running = exists(
            select(other.id).where(
                other.shop == SyncJob.shop,
                other.object_type == SyncJob.object_type,
                other.start_date == SyncJob.start_date,
                other.end_date == SyncJob.end_date,
                other.status == JobStatus.RUNNING,
                other.id != SyncJob.id,
            )
        )
        async with self._session() as db:
            result = await db.execute(
                update(SyncJob)
                .where(
                    SyncJob.id == job_id,
                    SyncJob.status == JobStatus.PENDING,
                    ~unit_running,
                )
                .values(
                    status=JobStatus.RUNNING,
                    started_at=now,
                    completed_at=None,
                    error_message=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
        return (result.rowcount or 0) == 1
    
    async def prerequisites_met(self, job: SyncJob) -> bool:
        """Every prerequisite type has a completed job covering the job's range"""
        required = prerequisites(job.object_type)
        if not required:
            return True
        async with self._session() as db:
            stmt = (
                select(SyncJob.object_type)
                .where(
                    SyncJob.shop == job.shop,
                    SyncJob.object_type.in_(list(required)),
                    SyncJob.status == JobStatus.COMPLETED,
                    SyncJob.start_date <= job.start_date,
                    SyncJob.end_date >= job.end_date,
                )
                .distinct()
            )
            completed = set((await db.execute(stmt)).scalars())
        return required <= completed
    
    # =========================================================================
    # TRANSITIONS
    # =========================================================================
    
    async def _finish(self, job_id: int, **values) -> bool:
        async with self._session() as db:
            result = await db.execute(
                update(SyncJob)
                .where(SyncJob.id == job_id, SyncJob.status == JobStatus.RUNNING)
                .values(updated_at=utcnow(), **values)
                .execution_options(synchronize_session=False)
            )
        applied = (result.rowcount or 0) == 1
        if not applied:
            logger.warning("Job no longer running, result discarded", job_id=job_id)
        return applied
    
    async def mark_completed(self, job_id: int, records: int = 0) -> bool:
        """running -> completed"""
        return await self._finish(
            job_id,
            status=JobStatus.COMPLETED,
            completed_at=utcnow(),
            records_processed=SyncJob.records_processed + records,
            progress_cursor=None,
            error_message=None,
        )
    
    async def mark_failed(self, job_id: int, error: str) -> bool:
        """running -> failed, with a truncated error message"""
        return await self._finish(
            job_id,
            status=JobStatus.FAILED,
            completed_at=utcnow(),
            error_message=self.truncate(error),
        )
    
    async def requeue(self, job_id: int, cursor: Optional[str], records: int = 0) -> bool:
        """running -> pending with the furthest processed key"""
        return await self._finish(
            job_id,
            status=JobStatus.PENDING,
            started_at=None,
            progress_cursor=cursor,
            records_processed=SyncJob.records_processed + records,
            error_message=None,
        )
    
    # =========================================================================
    # QUERIES AND MAINTENANCE
    # =========================================================================
    
    async def get(self, job_id: int) -> Optional[SyncJob]:
        async with self._session() as db:
            return await db.get(SyncJob, job_id)
    
    async def stats(self, object_type: Optional[str] = None, shop: Optional[str] = None) -> Dict[str, int]:
        """Job counts per status"""
        stmt = select(SyncJob.status, func.count()).group_by(SyncJob.status)
        if object_type:
            stmt = stmt.where(SyncJob.object_type == self._object_type(object_type))
        if shop:
            stmt = stmt.where(SyncJob.shop == shop)
        
        counts = {status.value: 0 for status in JobStatus}
        async with self._session() as db:
            for status, count in (await db.execute(stmt)).all():
                counts[JobStatus(status).value] = count
        return counts
    
    async def cleanup_duplicates(self) -> int:
        """Delete non-completed jobs whose unit already has a completed job"""
        done = aliased(SyncJob)
        completed_twin = exists(
            select(done.id).where(
                done.shop == SyncJob.shop,
                done.object_type == SyncJob.object_type,
                done.start_date == SyncJob.start_date,
                done.end_date == SyncJob.end_date,
                done.status == JobStatus.COMPLETED,
            )
        )
        async with self._session() as db:
            result = await db.execute(
                delete(SyncJob)
                .where(SyncJob.status.in_([JobStatus.PENDING, JobStatus.FAILED]), completed_twin)
                .execution_options(synchronize_session=False)
            )
        removed = result.rowcount or 0
        if removed:
            logger.info("Duplicate jobs removed", removed=removed)
        return removed
    
    def truncate(self, message: str) -> str:
        limit = self.settings.error_max_length
        return message if len(message) <= limit else message[: limit - 3] + "..."
    
    @staticmethod
    def _object_type(object_type: str) -> str:
        key = getattr(object_type, "value", object_type)
        if key not in DEPENDENCY_GRAPH:
            raise ConfigurationError(f"Unknown object type: {object_type}")
        return key
