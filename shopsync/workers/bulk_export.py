"""
Bulk Export Workers

Workers for object types fetched with one bulk export per job: build the
query for the job's local date window, run the export, stream and reassemble
the JSONL result and upsert the parsed rows.
"""

from abc import abstractmethod
from datetime import datetime
from typing import Callable, List, Optional

import structlog

from shopsync.aggregation.timezone import local_range_window
from shopsync.database.models import ObjectType, SyncJob
from shopsync.ingestion.jsonl import ParentRecord, assemble_records
from shopsync.ingestion.loader import RawRowLoader
from shopsync.ingestion.parsers import CurrencyNormalizer, parse_line_items, parse_order
from shopsync.shopify import queries
from shopsync.shopify.bulk import BulkExportStateMachine
from shopsync.shopify.client import ShopifyClient, create_shopify_client
from shopsync.workers.base import Budget, SyncWorker, WorkerResult

logger = structlog.get_logger(__name__)

ClientFactory = Callable[[str], ShopifyClient]


class BulkExportWorker(SyncWorker):
    """Base for bulk-export object types"""
    
    resumable = False
    
    def __init__(
        self,
        client_factory: Optional[ClientFactory] = None,
        loader: Optional[RawRowLoader] = None,
        normalizer: Optional[CurrencyNormalizer] = None,
        poll_interval: Optional[float] = None,
        cancel_wait: Optional[float] = None,
    ):
        self.client_factory = client_factory or create_shopify_client
        self.loader = loader or RawRowLoader()
        self.normalizer = normalizer or CurrencyNormalizer()
        self.poll_interval = poll_interval
        self.cancel_wait = cancel_wait
    
    @abstractmethod
    def build_query(self, start: datetime, end: datetime) -> str:
        """Bulk query for records in [start, end)"""
        pass
    
    @abstractmethod
    async def load(self, job: SyncJob, parents: List[ParentRecord]) -> int:
        """Parse and upsert reassembled records; returns rows written"""
        pass
    
    async def run(self, job: SyncJob, budget: Budget) -> WorkerResult:
        start, end = local_range_window(job.start_date, job.end_date)
        log = logger.bind(shop=job.shop, object_type=self.object_type, job_id=job.id)
        
        async with self.client_factory(job.shop) as client:
            machine = BulkExportStateMachine(
                client,
                poll_interval=self.poll_interval,
                cancel_wait=self.cancel_wait,
            )
            url = await machine.run_export(self.build_query(start, end), budget)
            if url is None:
                log.info("No records for period", start=start.isoformat(), end=end.isoformat())
                return WorkerResult.completed(0, message="No records for period")
            
            budget.check("result download")
            export = await assemble_records(machine.iter_records(url))
        
        log.info(
            "Bulk result downloaded",
            lines=export.line_count,
            parents=len(export.parents),
            children=export.child_count,
        )
        budget.check("result load")
        records = await self.load(job, export.parents)
        return WorkerResult.completed(records)


class OrdersExportWorker(BulkExportWorker):
    """Order-level rows"""
    
    object_type = ObjectType.ORDERS.value
    
    def build_query(self, start: datetime, end: datetime) -> str:
        return queries.orders_export_query(start, end)
    
    async def load(self, job: SyncJob, parents: List[ParentRecord]) -> int:
        rows = [parse_order(parent.record, self.normalizer, job.shop) for parent in parents]
        result = await self.loader.upsert_orders(rows)
        return result.rows_loaded


class LineItemsExportWorker(BulkExportWorker):
    """Per-SKU line-item rows"""
    
    object_type = ObjectType.SKUS.value
    
    def build_query(self, start: datetime, end: datetime) -> str:
        return queries.line_items_export_query(start, end)
    
    async def load(self, job: SyncJob, parents: List[ParentRecord]) -> int:
        rows = []
        for parent in parents:
            rows.extend(parse_line_items(parent.record, parent.children, self.normalizer, job.shop))
        result = await self.loader.upsert_line_items(rows)
        return result.rows_loaded
