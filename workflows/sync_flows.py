"""
Prefect Workflow Orchestration - Shop Sync

Timer-driven flows around the scheduler and the aggregation engine:
- continue_sync: repeat scheduling passes until no job is pending
- backfill: seed jobs for a date range, then continue_sync
- daily_aggregation: aggregate yesterday for every shop
"""

import asyncio
from datetime import date
from typing import List, Optional

from prefect import flow, get_run_logger, task

from shopsync.aggregation.engine import AggregationEngine
from shopsync.config import get_settings
from shopsync.config.logging import configure_logging
from shopsync.database.connection import close_database, create_tables, init_database
from shopsync.jobs.scheduler import Orchestrator
from shopsync.jobs.store import JobStore

settings = get_settings()


# =============================================================================
# TASKS
# =============================================================================

@task(
    name="dispatch_pass",
    description="Run one bounded scheduling pass",
    retries=2,
    retry_delay_seconds=30,
)
async def dispatch_pass(
    object_type: Optional[str] = None,
    shop: Optional[str] = None,
) -> dict:
    """Reclaim stale jobs and dispatch the next batch"""
    logger = get_run_logger()
    
    report = await Orchestrator().run_pass(object_type=object_type, shop=shop)
    logger.info(f"{report.message} ({report.duration_seconds}s)")
    
    return {
        "complete": report.complete,
        "message": report.message,
        "stats": report.stats.model_dump(),
        "dispatched": len(report.outcomes),
    }


@task(
    name="seed_jobs",
    description="Create pending jobs for a backfill range",
    retries=1,
    retry_delay_seconds=30,
)
async def seed_jobs(
    start_date: date,
    end_date: date,
    object_types: List[str],
    shops: Optional[List[str]] = None,
) -> dict:
    """Seed jobs and drop duplicates of completed units"""
    logger = get_run_logger()
    
    store = JobStore()
    result = await store.seed(
        shops=shops or settings.shopify.shops,
        object_types=object_types,
        start_date=start_date,
        end_date=end_date,
    )
    removed = await store.cleanup_duplicates()
    
    logger.info(f"Seeded {result.created} jobs, {result.skipped_completed} already completed")
    return {
        "created": result.created,
        "skipped_completed": result.skipped_completed,
        "skipped_running": result.skipped_running,
        "replaced": result.replaced,
        "duplicates_removed": removed,
    }


@task(
    name="aggregate_day",
    description="Aggregate daily metrics for all shops",
    retries=2,
    retry_delay_seconds=60,
)
async def aggregate_day(target_date: Optional[date] = None) -> dict:
    """Aggregate a day and its stale days"""
    logger = get_run_logger()
    
    report = await AggregationEngine().run_daily(target_date=target_date)
    logger.info(
        f"Aggregated {report.metric_date} for {report.shops_processed} shops, "
        f"re-aggregated {len(report.reaggregated_dates)} dates"
    )
    if report.errors:
        logger.warning(f"Aggregation failed for: {', '.join(sorted(report.errors))}")
    
    return {
        "date": report.metric_date.isoformat(),
        "shops_processed": report.shops_processed,
        "reaggregated_dates": [d.isoformat() for d in report.reaggregated_dates],
        "errors": report.errors,
    }


# =============================================================================
# FLOWS
# =============================================================================

async def _open_database() -> None:
    configure_logging()
    await init_database()
    await create_tables()


@flow(
    name="continue_sync",
    description="Repeat scheduling passes until every job has finished",
)
async def continue_sync(
    object_type: Optional[str] = None,
    shop: Optional[str] = None,
    max_passes: int = 100,
    pause_seconds: float = 5.0,
) -> dict:
    """
    Drive pending jobs to completion.
    
    Stops when no job is pending, or after ``max_passes``.
    """
    logger = get_run_logger()
    await _open_database()
    
    passes = 0
    result = {"complete": False}
    try:
        while passes < max_passes:
            passes += 1
            result = await dispatch_pass(object_type=object_type, shop=shop)
            if result["complete"]:
                break
            await asyncio.sleep(pause_seconds)
    finally:
        await close_database()
    
    logger.info(f"Sync stopped after {passes} passes, complete={result['complete']}")
    return {"passes": passes, **result}


@flow(
    name="backfill",
    description="Seed a backfill range and sync it",
)
async def backfill(
    start_date: date,
    end_date: date,
    object_types: Optional[List[str]] = None,
    shops: Optional[List[str]] = None,
    max_passes: int = 500,
) -> dict:
    """Seed jobs for the range, then run passes until done"""
    await _open_database()
    try:
        seeded = await seed_jobs(
            start_date=start_date,
            end_date=end_date,
            object_types=object_types or ["orders"],
            shops=shops,
        )
    finally:
        await close_database()
    
    synced = await continue_sync(max_passes=max_passes)
    return {"seeded": seeded, "sync": synced}


@flow(
    name="daily_aggregation",
    description="Aggregate yesterday's metrics for every shop",
    retries=1,
    retry_delay_seconds=300,
)
async def daily_aggregation(target_date: Optional[date] = None) -> dict:
    """Daily metrics with stale-date re-aggregation"""
    await _open_database()
    try:
        return await aggregate_day(target_date=target_date)
    finally:
        await close_database()


# =============================================================================
# DEPLOYMENT CONFIGURATION
# =============================================================================

if __name__ == "__main__":
    asyncio.run(continue_sync())
