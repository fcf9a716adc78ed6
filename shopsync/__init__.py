"""
Shop Sync Pipeline

Bulk-export ingestion and incremental daily aggregation for multi-shop
e-commerce data.
"""

__version__ = "1.0.0"
