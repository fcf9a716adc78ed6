"""
Enrichment Workers

Resumable per-order workers that add data the bulk exports cannot carry:
- RefundEnrichmentWorker: refunded / cancelled quantities and amounts per SKU,
  refund dates and shipping refunds
- ShippingDiscountWorker: discounts on shipping lines
"""

from typing import List, Optional

import structlog
from sqlalchemy import BigInteger, cast, select

from shopsync.aggregation.timezone import local_range_window
from shopsync.database.connection import get_db
from shopsync.database.models import ObjectType, Order, SyncJob
from shopsync.ingestion.loader import RawRowLoader
from shopsync.ingestion.parsers import (
    CurrencyNormalizer,
    gid_tail,
    shipping_discount,
    summarize_refunds,
)
from shopsync.shopify import queries
from shopsync.shopify.client import ShopifyClient
from shopsync.workers.resumable import ResumableBatchWorker

logger = structlog.get_logger(__name__)


class RefundEnrichmentWorker(ResumableBatchWorker):
    """
    Refund enrichment.
    
    Key space: upstream orders updated inside the job window, ordered by id.
    Each order costs one refunds call.
    """
    
    object_type = ObjectType.REFUNDS.value
    
    def __init__(
        self,
        loader: Optional[RawRowLoader] = None,
        normalizer: Optional[CurrencyNormalizer] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.loader = loader or RawRowLoader()
        self.normalizer = normalizer or CurrencyNormalizer()
    
    async def list_keys(
        self,
        client: ShopifyClient,
        job: SyncJob,
        after: Optional[str],
        limit: int,
    ) -> List[str]:
        start, end = local_range_window(job.start_date, job.end_date)
        data = await client.graphql(
            queries.ORDER_IDS_PAGE,
            {"query": queries.order_id_search(start, end, after), "first": limit},
        )
        edges = ((data.get("orders") or {}).get("edges")) or []
        return [gid_tail(edge["node"]["id"]) for edge in edges]
    
    async def process_item(self, client: ShopifyClient, job: SyncJob, key: str) -> int:
        body = await client.get_json(f"orders/{key}/refunds.json")
        refunds = body.get("refunds") or []
        if not refunds:
            return 0
        
        currency = self._refund_currency(refunds) or await self._order_currency(job.shop, key)
        if currency is None:
            logger.debug("Refunded order not synced yet", shop=job.shop, order_id=key)
            return 0
        summary = summarize_refunds(key, refunds, self.normalizer, currency)
        return await self.loader.apply_refunds(job.shop, summary)
    
    @staticmethod
    def _refund_currency(refunds: list) -> Optional[str]:
        for refund in refunds:
            for item in refund.get("refund_line_items") or []:
                shop_money = (item.get("subtotal_set") or {}).get("shop_money") or {}
                if shop_money.get("currency_code"):
                    return shop_money["currency_code"]
        return None
    
    async def _order_currency(self, shop: str, order_id: str) -> Optional[str]:
        async with get_db(self.loader.session_factory) as db:
            return await db.scalar(
                select(Order.currency).where(Order.shop == shop, Order.order_id == order_id)
            )


class ShippingDiscountWorker(ResumableBatchWorker):
    """
    Shipping discounts.
    
    Key space: synced orders created inside the job window, ordered by
    numeric order id.
    """
    
    object_type = ObjectType.SHIPPING_DISCOUNTS.value
    
    def __init__(
        self,
        loader: Optional[RawRowLoader] = None,
        normalizer: Optional[CurrencyNormalizer] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.loader = loader or RawRowLoader()
        self.normalizer = normalizer or CurrencyNormalizer()
    
    async def list_keys(
        self,
        client: ShopifyClient,
        job: SyncJob,
        after: Optional[str],
        limit: int,
    ) -> List[str]:
        start, end = local_range_window(job.start_date, job.end_date)
        numeric_id = cast(Order.order_id, BigInteger)
        stmt = (
            select(Order.order_id)
            .where(
                Order.shop == job.shop,
                Order.created_at_original >= start,
                Order.created_at_original < end,
            )
            .order_by(numeric_id)
            .limit(limit)
        )
        if after:
            stmt = stmt.where(numeric_id > int(after))
        
        async with get_db(self.loader.session_factory) as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())
    
    async def process_item(self, client: ShopifyClient, job: SyncJob, key: str) -> int:
        data = await client.graphql(
            queries.ORDER_SHIPPING_LINES,
            {"id": f"gid://shopify/Order/{key}"},
        )
        order = data.get("order")
        if not order:
            logger.warning("Order not found upstream", shop=job.shop, order_id=key)
            return 0
        amount = shipping_discount(order, self.normalizer)
        return await self.loader.apply_shipping_discount(job.shop, key, amount)
