"""
Database Models

Three groups of tables:

Job Store:
- SyncJob: one schedulable unit of sync work per (shop, object type, date range)

Raw Transaction Rows (upserted on their natural key):
- Order: one row per (shop, order_id)
- OrderLineItem: one row per (shop, order_id, sku)

Daily Aggregates (recomputed wholesale per date):
- DailyShopMetrics: one row per (shop, metric_date)
- DailyDimensionMetrics: one row per (shop, metric_date, dimension, dimension_value)

All timestamps are stored in UTC. Monetary *_base columns are expressed in the
configured base currency, excluding VAT.
"""

from datetime import datetime, date, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Date,
    DateTime,
    Enum as SQLEnum,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# =============================================================================
# ENUMERATIONS
# =============================================================================

class JobStatus(str, Enum):
    """Sync job status"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ObjectType(str, Enum):
    """Object types the pipeline knows how to sync"""
    ORDERS = "orders"
    SKUS = "skus"
    REFUNDS = "refunds"
    SHIPPING_DISCOUNTS = "shipping-discounts"


class Dimension(str, Enum):
    """Product attributes daily metrics are broken down by"""
    COLOR = "color"
    ARTICLE = "article"


def _enum_values(enum_cls) -> list:
    return [member.value for member in enum_cls]


# =============================================================================
# JOB STORE
# =============================================================================

class SyncJob(Base):
    """
    Sync Job
    
    A unit of work for one shop, one object type and one date range.
    ``progress_cursor`` holds the last processed key of a resumable job that
    was re-queued after partial progress; it is never mixed with
    ``error_message``.
    """
    __tablename__ = "bulk_sync_jobs"
    
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop: Mapped[str] = mapped_column(String(255), nullable=False)
    object_type: Mapped[str] = mapped_column(String(50), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    
    status: Mapped[JobStatus] = mapped_column(
        SQLEnum(
            JobStatus,
            name="job_status",
            native_enum=False,
            length=16,
            values_callable=_enum_values,
        ),
        default=JobStatus.PENDING,
        nullable=False,
    )
    records_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    progress_cursor: Mapped[Optional[str]] = mapped_column(String(255))
    
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    
    __table_args__ = (
        Index("ix_bulk_sync_jobs_status_type", "status", "object_type"),
        Index("ix_bulk_sync_jobs_unit", "shop", "object_type", "start_date", "end_date"),
    )
    
    def __repr__(self) -> str:
        return (
            f"<SyncJob {self.id} {self.shop} {self.object_type} "
            f"{self.start_date}..{self.end_date} {self.status.value}>"
        )


# =============================================================================
# RAW TRANSACTION ROWS
# =============================================================================

class Order(Base):
    """
    Order
    
    Order-level facts from the bulk export, enriched later with shipping
    discounts and shipping refunds.
    """
    __tablename__ = "orders"
    
    shop: Mapped[str] = mapped_column(String(255), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(64))
    
    created_at_original: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at_upstream: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    refund_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    country: Mapped[Optional[str]] = mapped_column(String(2))
    item_count: Mapped[int] = mapped_column(Integer, default=0)
    
    # Shop currency, VAT included
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 4), default=0)
    
    # Base currency, VAT excluded
    total_amount_base: Mapped[Decimal] = mapped_column(Numeric(14, 4), default=0)
    discount_amount_base: Mapped[Decimal] = mapped_column(Numeric(14, 4), default=0)
    tax_amount_base: Mapped[Decimal] = mapped_column(Numeric(14, 4), default=0)
    shipping_amount_base: Mapped[Decimal] = mapped_column(Numeric(14, 4), default=0)
    shipping_discount_base: Mapped[Decimal] = mapped_column(Numeric(14, 4), default=0)
    shipping_refund_base: Mapped[Decimal] = mapped_column(Numeric(14, 4), default=0)
    refunded_amount_base: Mapped[Decimal] = mapped_column(Numeric(14, 4), default=0)
    tax_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 4))
    
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    
    __table_args__ = (
        Index("ix_orders_shop_created", "shop", "created_at_original"),
        Index("ix_orders_shop_refund_date", "shop", "refund_date"),
        Index("ix_orders_shop_updated", "shop", "updated_at"),
    )


class OrderLineItem(Base):
    """
    Order Line Item ("sku" row)
    
    Quantity and per-unit prices for one SKU in one order. Refund enrichment
    adds returned and cancelled figures together with the refund date.
    """
    __tablename__ = "order_line_items"
    
    shop: Mapped[str] = mapped_column(String(255), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    sku: Mapped[str] = mapped_column(String(128), primary_key=True)
    
    product_title: Mapped[Optional[str]] = mapped_column(String(255))
    variant_title: Mapped[Optional[str]] = mapped_column(String(255))
    color: Mapped[Optional[str]] = mapped_column(String(64))
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    
    created_at_original: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    refund_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    
    quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    price_base: Mapped[Decimal] = mapped_column(Numeric(14, 4), default=0)
    discount_per_unit_base: Mapped[Decimal] = mapped_column(Numeric(14, 4), default=0)
    sale_discount_per_unit_base: Mapped[Decimal] = mapped_column(Numeric(14, 4), default=0)
    
    cancelled_qty: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cancelled_amount_base: Mapped[Decimal] = mapped_column(Numeric(14, 4), default=0)
    refunded_qty: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    refunded_amount_base: Mapped[Decimal] = mapped_column(Numeric(14, 4), default=0)
    
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    
    __table_args__ = (
        Index("ix_order_line_items_shop_created", "shop", "created_at_original"),
        Index("ix_order_line_items_shop_refund_date", "shop", "refund_date"),
        Index("ix_order_line_items_shop_updated", "shop", "updated_at"),
    )


# =============================================================================
# DAILY AGGREGATES
# =============================================================================

class MetricColumns:
    """Measures shared by shop-level and dimension-level daily metrics"""
    
    order_count: Mapped[int] = mapped_column(Integer, default=0)
    sku_quantity_gross: Mapped[int] = mapped_column(Integer, default=0)
    sku_quantity_net: Mapped[int] = mapped_column(Integer, default=0)
    revenue_gross: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)
    revenue_net: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)
    return_quantity: Mapped[int] = mapped_column(Integer, default=0)
    return_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)
    return_order_count: Mapped[int] = mapped_column(Integer, default=0)
    cohort_return_quantity: Mapped[int] = mapped_column(Integer, default=0)
    cohort_return_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)
    cancelled_quantity: Mapped[int] = mapped_column(Integer, default=0)
    cancelled_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)
    total_discounts: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)
    
    aggregation_reason: Mapped[str] = mapped_column(String(32), default="scheduled")
    aggregation_generation: Mapped[int] = mapped_column(Integer, default=0)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class DailyShopMetrics(MetricColumns, Base):
    """
    Daily Shop Metrics
    
    Whole-shop figures for one local calendar day, including shipping.
    """
    __tablename__ = "daily_shop_metrics"
    
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop: Mapped[str] = mapped_column(String(255), nullable=False)
    metric_date: Mapped[date] = mapped_column(Date, nullable=False)
    
    shipping_revenue: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)
    shipping_discount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)
    shipping_refund: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)
    
    __table_args__ = (
        UniqueConstraint("shop", "metric_date", name="uq_daily_shop_metrics_shop_date"),
        Index("ix_daily_shop_metrics_date", "metric_date"),
    )


class DailyDimensionMetrics(MetricColumns, Base):
    """
    Daily Dimension Metrics
    
    Per color / per article number figures for one local calendar day.
    """
    __tablename__ = "daily_dimension_metrics"
    
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop: Mapped[str] = mapped_column(String(255), nullable=False)
    metric_date: Mapped[date] = mapped_column(Date, nullable=False)
    dimension: Mapped[str] = mapped_column(String(32), nullable=False)
    dimension_value: Mapped[str] = mapped_column(String(128), nullable=False)
    
    __table_args__ = (
        UniqueConstraint(
            "shop", "metric_date", "dimension", "dimension_value",
            name="uq_daily_dimension_metrics_key",
        ),
        Index("ix_daily_dimension_metrics_shop_date", "shop", "metric_date"),
    )
