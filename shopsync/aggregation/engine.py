"""
Incremental Aggregation Engine

Recomputes daily metrics per (shop, local calendar day) from the raw order
and line-item tables. A day's rows are always rebuilt wholesale, so running
the same aggregation twice yields identical output.

Attribution:
- Sales, discounts and cancellations count on the order's business date
- Returns count on the refund date (return_*) and on the order's business
  date (cohort_return_*)
- Shipping revenue and discounts count on the business date, shipping
  refunds on the refund date

After a day is aggregated, rows mutated during that day but belonging to
other days are located and those days re-aggregated, breadth-first, up to
a configured number of generations.
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Set

import structlog
from prometheus_client import Counter
from pydantic import BaseModel, Field
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shopsync.aggregation.timezone import local_date_of, local_day_window, yesterday
from shopsync.config import get_settings
from shopsync.config.settings import AggregationSettings
from shopsync.database.connection import get_db
from shopsync.database.models import (
    DailyDimensionMetrics,
    DailyShopMetrics,
    Dimension,
    Order,
    OrderLineItem,
    utcnow,
)
from shopsync.database.upsert import upsert_rows
from shopsync.ingestion.parsers import article_number, normalize_color

logger = structlog.get_logger(__name__)
settings = get_settings()

CENTS = Decimal("0.01")
ZERO = Decimal("0")

REASON_SCHEDULED = "scheduled"
REASON_STALE = "stale-detection"
REASON_LOOKBACK = "lookback"


# =============================================================================
# METRICS
# =============================================================================

AGGREGATIONS = Counter(
    "shopsync_aggregations_total",
    "Daily aggregations written, by reason",
    ["reason"],
)


# =============================================================================
# RESULT MODELS
# =============================================================================

class MetricValues(BaseModel):
    """Measures shared by shop-level and dimension-level metrics"""
    order_count: int = 0
    sku_quantity_gross: int = 0
    sku_quantity_net: int = 0
    revenue_gross: Decimal = ZERO
    revenue_net: Decimal = ZERO
    return_quantity: int = 0
    return_amount: Decimal = ZERO
    return_order_count: int = 0
    cohort_return_quantity: int = 0
    cohort_return_amount: Decimal = ZERO
    cancelled_quantity: int = 0
    cancelled_amount: Decimal = ZERO
    total_discounts: Decimal = ZERO


class DimensionMetrics(MetricValues):
    """Metrics for one color or article number"""
    dimension: Dimension
    dimension_value: str


class DailyMetrics(MetricValues):
    """Whole-shop metrics for one local day"""
    shop: str
    metric_date: date
    shipping_revenue: Decimal = ZERO
    shipping_discount: Decimal = ZERO
    shipping_refund: Decimal = ZERO
    aggregation_reason: str = REASON_SCHEDULED
    aggregation_generation: int = 0
    dimensions: List[DimensionMetrics] = Field(default_factory=list)


class AggregationRun(BaseModel):
    """A day's aggregation plus the stale days it re-aggregated"""
    shop: str
    metric_date: date
    metrics: DailyMetrics
    reaggregated: List[DailyMetrics] = Field(default_factory=list)
    
    @property
    def reaggregated_dates(self) -> List[date]:
        return [m.metric_date for m in self.reaggregated]


class DailyAggregationReport(BaseModel):
    """Result of the daily trigger across shops"""
    metric_date: date
    shops_processed: int = 0
    runs: List[AggregationRun] = Field(default_factory=list)
    lookback: List[DailyMetrics] = Field(default_factory=list)
    errors: Dict[str, str] = Field(default_factory=dict)
    
    @property
    def metrics(self) -> List[DailyMetrics]:
        return [run.metrics for run in self.runs]
    
    @property
    def reaggregated_dates(self) -> List[date]:
        dates = {d for run in self.runs for d in run.reaggregated_dates}
        return sorted(dates)


# =============================================================================
# ACCUMULATION
# =============================================================================

def _cents(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def _dec(value: Any) -> Decimal:
    if value is None:
        return ZERO
    return value if isinstance(value, Decimal) else Decimal(str(value))


@dataclass
class MetricAccumulator:
    """Unrounded running totals for one metric row"""
    orders: Set[str] = field(default_factory=set)
    return_orders: Set[str] = field(default_factory=set)
    sku_quantity_gross: int = 0
    return_quantity: int = 0
    cohort_return_quantity: int = 0
    cancelled_quantity: int = 0
    revenue_gross: Decimal = ZERO
    return_amount: Decimal = ZERO
    cohort_return_amount: Decimal = ZERO
    cancelled_amount: Decimal = ZERO
    total_discounts: Decimal = ZERO
    
    def add_sale(self, row) -> None:
        """A line item whose order was created on the day"""
        quantity = row.quantity or 0
        cancelled_qty = row.cancelled_qty or 0
        cancelled_amount = _dec(row.cancelled_amount_base)
        price = _dec(row.price_base)
        discount = _dec(row.discount_per_unit_base)
        sale_discount = _dec(row.sale_discount_per_unit_base)
        
        self.orders.add(row.order_id)
        self.revenue_gross += price * quantity - discount * quantity - cancelled_amount
        self.sku_quantity_gross += quantity - cancelled_qty
        self.cancelled_quantity += cancelled_qty
        self.cancelled_amount += cancelled_amount
        self.total_discounts += (discount + sale_discount) * quantity
        self.cohort_return_quantity += row.refunded_qty or 0
        self.cohort_return_amount += _dec(row.refunded_amount_base)
    
    def add_return(self, row) -> None:
        """A line item refunded on the day"""
        self.return_orders.add(row.order_id)
        self.return_quantity += row.refunded_qty or 0
        self.return_amount += _dec(row.refunded_amount_base)
    
    def values(self) -> Dict[str, Any]:
        revenue_gross = _cents(self.revenue_gross)
        return_amount = _cents(self.return_amount)
        return {
            "order_count": len(self.orders),
            "sku_quantity_gross": self.sku_quantity_gross,
            "sku_quantity_net": self.sku_quantity_gross - self.return_quantity,
            "revenue_gross": revenue_gross,
            "revenue_net": revenue_gross - return_amount,
            "return_quantity": self.return_quantity,
            "return_amount": return_amount,
            "return_order_count": len(self.return_orders),
            "cohort_return_quantity": self.cohort_return_quantity,
            "cohort_return_amount": _cents(self.cohort_return_amount),
            "cancelled_quantity": self.cancelled_quantity,
            "cancelled_amount": _cents(self.cancelled_amount),
            "total_discounts": _cents(self.total_discounts),
        }


def dimension_keys(row) -> Dict[Dimension, str]:
    return {
        Dimension.COLOR: normalize_color(row.color),
        Dimension.ARTICLE: article_number(row.sku),
    }


# =============================================================================
# ENGINE
# =============================================================================

SALE_COLUMNS = (
    OrderLineItem.order_id,
    OrderLineItem.sku,
    OrderLineItem.color,
    OrderLineItem.quantity,
    OrderLineItem.price_base,
    OrderLineItem.discount_per_unit_base,
    OrderLineItem.sale_discount_per_unit_base,
    OrderLineItem.cancelled_qty,
    OrderLineItem.cancelled_amount_base,
    OrderLineItem.refunded_qty,
    OrderLineItem.refunded_amount_base,
)

RETURN_COLUMNS = (
    OrderLineItem.order_id,
    OrderLineItem.sku,
    OrderLineItem.color,
    OrderLineItem.refunded_qty,
    OrderLineItem.refunded_amount_base,
)

LINE_ITEM_ORDER = (OrderLineItem.order_id, OrderLineItem.sku)


class AggregationEngine:
    """
    Daily metrics for one shop and one local calendar day.
    
    Example:
        engine = AggregationEngine()
        run = await engine.run("shop.myshopify.com", date(2024, 10, 16))
        print(run.metrics.revenue_net, run.reaggregated_dates)
    """
    
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        aggregation_settings: Optional[AggregationSettings] = None,
        shops: Optional[Iterable[str]] = None,
    ):
        self.session_factory = session_factory
        self.settings = aggregation_settings or settings.aggregation
        self.shops = list(shops) if shops is not None else list(settings.shopify.shops)
    
    def _window(self, day: date):
        return local_day_window(day, self.settings.standard_offset_hours)
    
    async def _paged(self, db: AsyncSession, stmt) -> AsyncIterator[Any]:
        """Yield rows of an ordered statement one page at a time"""
        offset = 0
        page_size = self.settings.page_size
        while True:
            rows = (await db.execute(stmt.limit(page_size).offset(offset))).all()
            for row in rows:
                yield row
            if len(rows) < page_size:
                return
            offset += page_size
    
    # =========================================================================
    # SINGLE DAY
    # =========================================================================
    
    async def aggregate(
        self,
        shop: str,
        day: date,
        reason: str = REASON_SCHEDULED,
        generation: int = 0,
    ) -> DailyMetrics:
        """
        Recompute and overwrite metrics for one shop and day.
        
        A day without raw rows produces all-zero metrics, replacing any
        earlier figures for that day.
        """
        start, end = self._window(day)
        totals = MetricAccumulator()
        by_dimension: Dict[tuple, MetricAccumulator] = {}
        
        def dimension_totals(row) -> List[MetricAccumulator]:
            return [
                by_dimension.setdefault((dimension, value), MetricAccumulator())
                for dimension, value in dimension_keys(row).items()
            ]
        
        sales = (
            select(*SALE_COLUMNS)
            .where(
                OrderLineItem.shop == shop,
                OrderLineItem.created_at_original >= start,
                OrderLineItem.created_at_original < end,
            )
            .order_by(*LINE_ITEM_ORDER)
        )
        returns = (
            select(*RETURN_COLUMNS)
            .where(
                OrderLineItem.shop == shop,
                OrderLineItem.refunded_qty > 0,
                OrderLineItem.refund_date >= start,
                OrderLineItem.refund_date < end,
            )
            .order_by(*LINE_ITEM_ORDER)
        )
        shipping = (
            select(Order.order_id, Order.shipping_amount_base, Order.shipping_discount_base)
            .where(
                Order.shop == shop,
                Order.created_at_original >= start,
                Order.created_at_original < end,
            )
            .order_by(Order.order_id)
        )
        shipping_refunds = (
            select(Order.order_id, Order.shipping_refund_base)
            .where(
                Order.shop == shop,
                Order.shipping_refund_base > 0,
                Order.refund_date >= start,
                Order.refund_date < end,
            )
            .order_by(Order.order_id)
        )
        
        shipping_revenue = shipping_discount = shipping_refund = ZERO
        async with get_db(self.session_factory) as db:
            async for row in self._paged(db, sales):
                totals.add_sale(row)
                for acc in dimension_totals(row):
                    acc.add_sale(row)
            async for row in self._paged(db, returns):
                totals.add_return(row)
                for acc in dimension_totals(row):
                    acc.add_return(row)
            async for row in self._paged(db, shipping):
                shipping_revenue += _dec(row.shipping_amount_base)
                shipping_discount += _dec(row.shipping_discount_base)
            async for row in self._paged(db, shipping_refunds):
                shipping_refund += _dec(row.shipping_refund_base)
            
            metrics = DailyMetrics(
                shop=shop,
                metric_date=day,
                shipping_revenue=_cents(shipping_revenue),
                shipping_discount=_cents(shipping_discount),
                shipping_refund=_cents(shipping_refund),
                aggregation_reason=reason,
                aggregation_generation=generation,
                dimensions=[
                    DimensionMetrics(dimension=dimension, dimension_value=value, **acc.values())
                    for (dimension, value), acc in sorted(
                        by_dimension.items(), key=lambda item: (item[0][0].value, item[0][1])
                    )
                ],
                **totals.values(),
            )
            await self._write(db, metrics)
        
        AGGREGATIONS.labels(reason=reason).inc()
        logger.info(
            "Daily metrics aggregated",
            shop=shop,
            metric_date=str(day),
            reason=reason,
            generation=generation,
            orders=metrics.order_count,
            revenue_net=str(metrics.revenue_net),
            returns=metrics.return_quantity,
        )
        return metrics
    
    async def _write(self, db: AsyncSession, metrics: DailyMetrics) -> None:
        computed_at = utcnow()
        shop_row = metrics.model_dump(exclude={"dimensions"})
        shop_row["computed_at"] = computed_at
        await upsert_rows(db, DailyShopMetrics, [shop_row], ("shop", "metric_date"))
        
        await db.execute(
            delete(DailyDimensionMetrics).where(
                DailyDimensionMetrics.shop == metrics.shop,
                DailyDimensionMetrics.metric_date == metrics.metric_date,
            )
        )
        db.add_all([
            DailyDimensionMetrics(
                shop=metrics.shop,
                metric_date=metrics.metric_date,
                aggregation_reason=metrics.aggregation_reason,
                aggregation_generation=metrics.aggregation_generation,
                computed_at=computed_at,
                **dimension.model_dump(mode="python", exclude={"dimension"}),
                dimension=dimension.dimension.value,
            )
            for dimension in metrics.dimensions
        ])
    
    # =========================================================================
    # STALENESS DETECTION
    # =========================================================================
    
    async def find_stale_dates(self, shop: str, day: date) -> Set[date]:
        """
        Other days touched by rows mutated during ``day``.
        
        A row updated within the day's window whose business date or refund
        date falls on another day makes that day's metrics stale.
        """
        start, end = self._window(day)
        offset = self.settings.standard_offset_hours
        stale: Set[date] = set()
        
        queries = [
            select(OrderLineItem.created_at_original, OrderLineItem.refund_date)
            .where(
                OrderLineItem.shop == shop,
                OrderLineItem.updated_at >= start,
                OrderLineItem.updated_at < end,
            )
            .order_by(*LINE_ITEM_ORDER),
            select(Order.created_at_original, Order.refund_date)
            .where(
                Order.shop == shop,
                Order.updated_at >= start,
                Order.updated_at < end,
            )
            .order_by(Order.order_id),
        ]
        async with get_db(self.session_factory) as db:
            for stmt in queries:
                async for row in self._paged(db, stmt):
                    for instant in (row.created_at_original, row.refund_date):
                        if instant is None:
                            continue
                        affected = local_date_of(instant, offset)
                        if affected != day:
                            stale.add(affected)
        
        if stale:
            logger.info(
                "Stale dates detected",
                shop=shop,
                metric_date=str(day),
                stale_dates=sorted(str(d) for d in stale),
            )
        return stale
    
    # =========================================================================
    # RUNS
    # =========================================================================
    
    async def run(self, shop: str, day: date, reason: str = REASON_SCHEDULED) -> AggregationRun:
        """
        Aggregate a day, then re-aggregate the stale days it reveals.
        
        Each generation re-aggregates the days found stale by the previous
        one. No day is aggregated twice in one run.
        """
        metrics = await self.aggregate(shop, day, reason=reason, generation=0)
        run = AggregationRun(shop=shop, metric_date=day, metrics=metrics)
        
        visited = {day}
        frontier = [day]
        for generation in range(1, self.settings.max_reaggregation_depth + 1):
            next_frontier = []
            for source in frontier:
                for stale in sorted(await self.find_stale_dates(shop, source)):
                    if stale in visited:
                        continue
                    visited.add(stale)
                    run.reaggregated.append(
                        await self.aggregate(shop, stale, reason=REASON_STALE, generation=generation)
                    )
                    next_frontier.append(stale)
            frontier = next_frontier
            if not frontier:
                break
        else:
            if frontier:
                logger.info(
                    "Re-aggregation depth reached",
                    shop=shop,
                    metric_date=str(day),
                    depth=self.settings.max_reaggregation_depth,
                    last_generation=[str(d) for d in frontier],
                )
        return run
    
    async def run_daily(
        self,
        target_date: Optional[date] = None,
        shops: Optional[Iterable[str]] = None,
    ) -> DailyAggregationReport:
        """
        Aggregate one day for every shop.
        
        With a refund look-back configured, the preceding days are
        re-aggregated as well. A failing shop is recorded and the remaining
        shops still run.
        """
        target_date = target_date or yesterday()
        shops = list(shops) if shops is not None else self.shops
        report = DailyAggregationReport(metric_date=target_date)
        
        for shop in shops:
            try:
                run = await self.run(shop, target_date)
                done = {target_date, *run.reaggregated_dates}
                for days_back in range(1, self.settings.refund_lookback_days + 1):
                    day = target_date - timedelta(days=days_back)
                    if day in done:
                        continue
                    report.lookback.append(await self.aggregate(shop, day, reason=REASON_LOOKBACK))
            except Exception as e:
                logger.exception("Daily aggregation failed for shop", shop=shop, metric_date=str(target_date))
                report.errors[shop] = f"{type(e).__name__}: {e}"
                continue
            report.runs.append(run)
            report.shops_processed += 1
        
        logger.info(
            "Daily aggregation finished",
            metric_date=str(target_date),
            shops_processed=report.shops_processed,
            reaggregated=len(report.reaggregated_dates),
            errors=len(report.errors),
        )
        return report
