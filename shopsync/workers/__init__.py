"""
Sync Workers Module
"""
from .base import Budget, SyncWorker, WorkerResult
from .bulk_export import BulkExportWorker, LineItemsExportWorker, OrdersExportWorker
from .enrichment import RefundEnrichmentWorker, ShippingDiscountWorker
from .registry import WorkerRegistry, build_default_registry
from .resumable import BatchProgress, ResumableBatchWorker

__all__ = [
    "Budget",
    "SyncWorker",
    "WorkerResult",
    "BulkExportWorker",
    "LineItemsExportWorker",
    "OrdersExportWorker",
    "RefundEnrichmentWorker",
    "ShippingDiscountWorker",
    "WorkerRegistry",
    "build_default_registry",
    "BatchProgress",
    "ResumableBatchWorker",
]
