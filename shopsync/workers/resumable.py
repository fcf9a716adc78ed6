"""
Resumable Batch Worker

For object types whose work cannot finish inside one invocation budget,
such as per-order enrichment that needs one upstream call per order.

Each invocation resumes after the job's ``progress_cursor``, processes up to
``batch_size`` keys of an ordered key space and reports the furthest key
processed. A batch shorter than ``batch_size`` means the key space is
exhausted. Items may be processed more than once across invocations; all
writes are keyed updates, so repeats are harmless.
"""

import asyncio
from abc import abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Optional

import structlog

from shopsync.config import get_settings
from shopsync.database.models import SyncJob
from shopsync.shopify.client import ShopifyClient, create_shopify_client
from shopsync.workers.base import Budget, SyncWorker, WorkerResult

logger = structlog.get_logger(__name__)
settings = get_settings()


@dataclass
class BatchProgress:
    """Outcome of one batch"""
    done: bool
    cursor: Optional[str]
    processed: int
    records: int = 0


class ResumableBatchWorker(SyncWorker):
    """
    Cursor-driven worker.
    
    Subclasses implement ``list_keys`` (ordered, strictly after a key) and
    ``process_item``.
    """
    
    resumable = True
    
    def __init__(
        self,
        client_factory: Optional[Callable[[str], ShopifyClient]] = None,
        batch_size: Optional[int] = None,
        item_pause: Optional[float] = None,
        item_margin: float = 5.0,
    ):
        self.client_factory = client_factory or create_shopify_client
        self.batch_size = batch_size or settings.scheduler.resumable_batch_size
        self.item_pause = settings.scheduler.item_pause_seconds if item_pause is None else item_pause
        self.item_margin = item_margin
    
    @abstractmethod
    async def list_keys(
        self,
        client: ShopifyClient,
        job: SyncJob,
        after: Optional[str],
        limit: int,
    ) -> List[str]:
        """Up to ``limit`` keys strictly after ``after``, in key order"""
        pass
    
    @abstractmethod
    async def process_item(self, client: ShopifyClient, job: SyncJob, key: str) -> int:
        """Process one key; returns rows written"""
        pass
    
    async def process_batch(self, job: SyncJob, budget: Optional[Budget] = None) -> BatchProgress:
        """Process the next batch after the job's cursor"""
        cursor = job.progress_cursor
        processed = 0
        records = 0
        
        async with self.client_factory(job.shop) as client:
            keys = await self.list_keys(client, job, cursor, self.batch_size)
            for index, key in enumerate(keys):
                if budget is not None and budget.expired(margin=self.item_margin):
                    logger.info(
                        "Budget nearly spent, re-queueing",
                        shop=job.shop,
                        object_type=self.object_type,
                        job_id=job.id,
                        processed=processed,
                        cursor=cursor,
                    )
                    return BatchProgress(done=False, cursor=cursor, processed=processed, records=records)
                
                records += await self.process_item(client, job, key)
                cursor = key
                processed += 1
                if self.item_pause and index < len(keys) - 1:
                    await asyncio.sleep(self.item_pause)
        
        done = len(keys) < self.batch_size
        logger.info(
            "Batch processed",
            shop=job.shop,
            object_type=self.object_type,
            job_id=job.id,
            processed=processed,
            cursor=cursor,
            done=done,
        )
        return BatchProgress(done=done, cursor=cursor, processed=processed, records=records)
    
    async def run(self, job: SyncJob, budget: Budget) -> WorkerResult:
        progress = await self.process_batch(job, budget)
        if progress.done:
            return WorkerResult.completed(progress.records)
        return WorkerResult.partial(progress.cursor, progress.records)
