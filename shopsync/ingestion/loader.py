"""
Raw Row Loader

Writes parsed rows into the raw transaction tables:
- Chunked, idempotent upserts keyed on each table's natural id
- Targeted updates for enrichment data (refunds, shipping discounts)
- Every write stamps ``updated_at`` so the aggregation engine can find rows
  mutated after their business date
"""

import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shopsync.config import get_settings
from shopsync.database.connection import get_db
from shopsync.database.models import Order, OrderLineItem, utcnow
from shopsync.database.upsert import upsert_rows
from shopsync.ingestion.parsers import RefundSummary

logger = structlog.get_logger(__name__)
settings = get_settings()


class LoadResult(BaseModel):
    """Result of a load operation"""
    target_table: str
    rows_loaded: int = 0
    load_duration_seconds: float = 0
    started_at: datetime
    completed_at: Optional[datetime] = None


ORDER_KEY = ("shop", "order_id")
LINE_ITEM_KEY = ("shop", "order_id", "sku")


class RawRowLoader:
    """
    Loads raw transaction rows.
    
    Example:
        loader = RawRowLoader()
        result = await loader.upsert_orders(rows)
    """
    
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        chunk_size: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.chunk_size = chunk_size or settings.shopify.upsert_chunk_size
    
    async def _upsert(self, model: Any, rows: List[Dict[str, Any]], key: tuple) -> LoadResult:
        started_at = utcnow()
        start = time.perf_counter()
        now = started_at
        stamped = [dict(row, updated_at=now) for row in rows]
        
        async with get_db(self.session_factory) as db:
            written = await upsert_rows(db, model, stamped, key, chunk_size=self.chunk_size)
        
        result = LoadResult(
            target_table=model.__tablename__,
            rows_loaded=written,
            load_duration_seconds=round(time.perf_counter() - start, 3),
            started_at=started_at,
            completed_at=utcnow(),
        )
        logger.info(
            "Rows upserted",
            table=result.target_table,
            rows=written,
            duration_seconds=result.load_duration_seconds,
        )
        return result
    
    async def upsert_orders(self, rows: List[Dict[str, Any]]) -> LoadResult:
        """Upsert order rows on (shop, order_id)"""
        now = utcnow()
        return await self._upsert(Order, [dict(row, synced_at=now) for row in rows], ORDER_KEY)
    
    async def upsert_line_items(self, rows: List[Dict[str, Any]]) -> LoadResult:
        """Upsert line-item rows on (shop, order_id, sku)"""
        return await self._upsert(OrderLineItem, rows, LINE_ITEM_KEY)
    
    async def apply_refunds(self, shop: str, summary: RefundSummary) -> int:
        """
        Write one order's refund summary.
        
        Only rows that already exist are touched.
        
        Returns:
            Number of line-item rows updated
        """
        now = utcnow()
        updated = 0
        async with get_db(self.session_factory) as db:
            for line in summary.lines.values():
                result = await db.execute(
                    update(OrderLineItem)
                    .where(
                        OrderLineItem.shop == shop,
                        OrderLineItem.order_id == summary.order_id,
                        OrderLineItem.sku == line.sku,
                    )
                    .values(
                        refunded_qty=line.refunded_qty,
                        refunded_amount_base=line.refunded_amount_base,
                        cancelled_qty=line.cancelled_qty,
                        cancelled_amount_base=line.cancelled_amount_base,
                        refund_date=line.refund_date,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                updated += result.rowcount or 0
            
            await db.execute(
                update(Order)
                .where(Order.shop == shop, Order.order_id == summary.order_id)
                .values(
                    shipping_refund_base=summary.shipping_refund_base,
                    refunded_amount_base=summary.refunded_amount_base,
                    refund_date=summary.refund_date,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
        
        if len(summary.lines) > updated:
            logger.debug(
                "Refunded SKUs without a synced line item",
                shop=shop,
                order_id=summary.order_id,
                missing=len(summary.lines) - updated,
            )
        return updated
    
    async def apply_shipping_discount(self, shop: str, order_id: str, amount: Decimal) -> int:
        """Set an order's shipping discount; returns rows updated"""
        async with get_db(self.session_factory) as db:
            result = await db.execute(
                update(Order)
                .where(Order.shop == shop, Order.order_id == order_id)
                .values(shipping_discount_base=amount, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
        return result.rowcount or 0
