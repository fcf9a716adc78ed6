"""
Worker Registry

Maps object types to the worker that syncs them.
"""

from typing import Callable, Dict, Iterable, Optional

from shopsync.errors import ConfigurationError
from shopsync.ingestion.loader import RawRowLoader
from shopsync.jobs.dependencies import DEPENDENCY_GRAPH
from shopsync.shopify.client import ShopifyClient
from shopsync.workers.base import SyncWorker
from shopsync.workers.bulk_export import LineItemsExportWorker, OrdersExportWorker
from shopsync.workers.enrichment import RefundEnrichmentWorker, ShippingDiscountWorker


class WorkerRegistry:
    """Object type -> worker"""
    
    def __init__(self, workers: Iterable[SyncWorker] = ()):
        self._workers: Dict[str, SyncWorker] = {}
        for worker in workers:
            self.register(worker)
    
    def register(self, worker: SyncWorker) -> None:
        if worker.object_type not in DEPENDENCY_GRAPH:
            raise ConfigurationError(f"Worker for undeclared object type: {worker.object_type}")
        self._workers[worker.object_type] = worker
    
    def get(self, object_type: str) -> SyncWorker:
        try:
            return self._workers[object_type]
        except KeyError:
            raise ConfigurationError(f"No worker registered for {object_type}")
    
    def __contains__(self, object_type: str) -> bool:
        return object_type in self._workers


def build_default_registry(
    client_factory: Optional[Callable[[str], ShopifyClient]] = None,
    loader: Optional[RawRowLoader] = None,
) -> WorkerRegistry:
    """Registry with a worker for every declared object type"""
    loader = loader or RawRowLoader()
    return WorkerRegistry([
        OrdersExportWorker(client_factory=client_factory, loader=loader),
        LineItemsExportWorker(client_factory=client_factory, loader=loader),
        RefundEnrichmentWorker(client_factory=client_factory, loader=loader),
        ShippingDiscountWorker(client_factory=client_factory, loader=loader),
    ])
