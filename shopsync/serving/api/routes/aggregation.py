"""
Aggregation Endpoints

Daily trigger for the aggregation engine.
"""

from datetime import date
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from shopsync.aggregation.engine import AggregationEngine, DailyMetrics

router = APIRouter()


def get_aggregation_engine() -> AggregationEngine:
    return AggregationEngine()


class AggregationRequest(BaseModel):
    """Day to aggregate, yesterday when omitted"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
    
    target_date: Optional[date] = None
    shops: Optional[List[str]] = None


class AggregationResponse(BaseModel):
    """Metrics written for the day and the stale days re-aggregated"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
    
    metric_date: date = Field(alias="date")
    shops_processed: int
    metrics: List[DailyMetrics]
    reaggregated_dates: List[date]
    errors: Dict[str, str]


@router.post("/run", response_model=AggregationResponse)
async def run_aggregation(
    request: Optional[AggregationRequest] = None,
    engine: AggregationEngine = Depends(get_aggregation_engine),
) -> AggregationResponse:
    """
    Aggregate one day for all shops.
    
    Days found stale while aggregating are re-aggregated in the same call.
    """
    request = request or AggregationRequest()
    report = await engine.run_daily(target_date=request.target_date, shops=request.shops)
    return AggregationResponse(
        metric_date=report.metric_date,
        shops_processed=report.shops_processed,
        metrics=report.metrics,
        reaggregated_dates=report.reaggregated_dates,
        errors=report.errors,
    )
