"""
Job Endpoints

Trigger scheduling passes, seed backfills and inspect the job queue. An
external timer calls ``POST /jobs/dispatch`` until it reports ``complete``.
"""

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from shopsync.config import get_settings
from shopsync.database.models import ObjectType
from shopsync.jobs.scheduler import JobStats, Orchestrator
from shopsync.jobs.store import JobStore

settings = get_settings()
router = APIRouter()


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_job_store() -> JobStore:
    return JobStore()


def get_orchestrator() -> Orchestrator:
    return Orchestrator()


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DispatchRequest(CamelModel):
    """Optional filters for one scheduling pass"""
    object_type: Optional[ObjectType] = None
    shop: Optional[str] = None


class DispatchResponse(CamelModel):
    """Progress after one scheduling pass"""
    complete: bool
    message: str
    stats: JobStats
    duration_seconds: float
    object_type: Optional[str] = None
    dispatched: int = 0
    blocked: int = 0
    held_back: int = 0
    reclaimed: int = 0


class SeedRequest(CamelModel):
    """Backfill request"""
    start_date: date
    end_date: date
    shops: Optional[List[str]] = None
    object_types: List[ObjectType] = Field(default_factory=lambda: [ObjectType.ORDERS])
    days_per_job: int = Field(default=1, ge=1, le=31)
    
    @model_validator(mode="after")
    def check_range(self) -> "SeedRequest":
        if self.end_date < self.start_date:
            raise ValueError("endDate must not be before startDate")
        return self


class SeedResponse(CamelModel):
    """Backfill outcome"""
    created: int
    skipped_completed: int
    skipped_running: int
    replaced: int


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/dispatch", response_model=DispatchResponse)
async def dispatch(
    request: Optional[DispatchRequest] = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> DispatchResponse:
    """
    Run one bounded scheduling pass.
    
    Reclaims stale jobs, dispatches the next batch of pending jobs and
    returns status counts. ``complete`` is true once nothing is pending.
    """
    request = request or DispatchRequest()
    report = await orchestrator.run_pass(
        object_type=request.object_type.value if request.object_type else None,
        shop=request.shop,
    )
    return DispatchResponse(
        complete=report.complete,
        message=report.message,
        stats=report.stats,
        duration_seconds=report.duration_seconds,
        object_type=report.object_type,
        dispatched=len(report.outcomes),
        blocked=report.blocked,
        held_back=report.held_back,
        reclaimed=report.reclaimed,
    )


@router.post("/seed", response_model=SeedResponse)
async def seed(
    request: SeedRequest,
    store: JobStore = Depends(get_job_store),
) -> SeedResponse:
    """Create pending jobs for every shop, object type and day in the range"""
    result = await store.seed(
        shops=request.shops or settings.shopify.shops,
        object_types=[t.value for t in request.object_types],
        start_date=request.start_date,
        end_date=request.end_date,
        days_per_job=request.days_per_job,
    )
    return SeedResponse(
        created=result.created,
        skipped_completed=result.skipped_completed,
        skipped_running=result.skipped_running,
        replaced=result.replaced,
    )


@router.get("/stats", response_model=JobStats)
async def job_stats(
    object_type: Optional[ObjectType] = Query(None, alias="objectType"),
    shop: Optional[str] = None,
    store: JobStore = Depends(get_job_store),
) -> JobStats:
    """Job counts per status"""
    counts = await store.stats(
        object_type=object_type.value if object_type else None,
        shop=shop,
    )
    return JobStats(**counts)
