"""
Upstream Platform Module
"""
from .bulk import BulkExportStateMachine, BulkOperation, BulkOperationStatus
from .client import ShopifyClient, create_shopify_client

__all__ = [
    "BulkExportStateMachine",
    "BulkOperation",
    "BulkOperationStatus",
    "ShopifyClient",
    "create_shopify_client",
]
