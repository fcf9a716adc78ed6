"""
Unit Tests - Bulk Result Reassembly, Parsers and Raw Row Loading
"""
import json
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from shopsync.database.models import Order, OrderLineItem, SyncJob
from shopsync.errors import ConfigurationError, MalformedRecordError
from shopsync.ingestion.jsonl import reconstruct
from shopsync.ingestion.parsers import (
    article_number,
    normalize_color,
    parse_line_items,
    parse_order,
    shipping_discount,
    summarize_refunds,
)
from shopsync.workers.base import Budget
from shopsync.workers.bulk_export import LineItemsExportWorker, OrdersExportWorker

SHOP = "test-shop.myshopify.com"
RESULT_URL = "https://storage.example.com/results/export.jsonl"


def jsonl(*records) -> str:
    return "\n".join(json.dumps(record) for record in records) + "\n"


def money_set(amount: str) -> dict:
    return {"shopMoney": {"amount": amount}}


def order_record(order_id: int = 1001, currency: str = "DKK", **overrides) -> dict:
    record = {
        "id": f"gid://shopify/Order/{order_id}",
        "name": f"#{order_id}",
        "createdAt": "2024-10-09T08:00:00Z",
        "updatedAt": "2024-10-09T08:05:00Z",
        "cancelledAt": None,
        "currencyCode": currency,
        "subtotalLineItemsQuantity": 2,
        "shippingAddress": {"countryCode": "DK"},
        "taxLines": [{"rate": 0.25}],
        "totalPriceSet": money_set("250.00"),
        "totalDiscountsSet": money_set("25.00"),
        "totalTaxSet": money_set("50.00"),
        "totalShippingPriceSet": money_set("50.00"),
        "totalRefundedSet": money_set("0.00"),
    }
    record.update(overrides)
    return record


def line_record(line_id: int, sku: str, quantity: int, price: str, order_id: int = 1001, **overrides) -> dict:
    record = {
        "id": f"gid://shopify/LineItem/{line_id}",
        "sku": sku,
        "name": "Rain Jacket",
        "variantTitle": "Navy / M",
        "quantity": quantity,
        "originalUnitPriceSet": money_set(price),
        "totalDiscountSet": money_set("0.00"),
        "taxLines": [],
        "variant": {"compareAtPrice": None, "selectedOptions": [{"name": "Color", "value": "Navy"}]},
        "__parentId": f"gid://shopify/Order/{order_id}",
    }
    record.update(overrides)
    return record


class TestReconstruct:
    """Tests for parent/child reassembly"""
    
    def test_children_attached_regardless_of_order(self):
        """A child arriving before its parent is still attached"""
        export = reconstruct(jsonl(
            line_record(1, "ABC-1", 1, "100.00"),
            order_record(1001),
            line_record(2, "ABC-2", 1, "100.00"),
        ).splitlines())
        
        assert len(export.parents) == 1
        assert [c["sku"] for c in export.parents[0].children] == ["ABC-1", "ABC-2"]
        assert export.line_count == 3
        assert export.orphans == []
    
    def test_orphans_reported(self):
        export = reconstruct(jsonl(order_record(1001), line_record(1, "ABC-1", 1, "100.00", order_id=9999)).splitlines())
        
        assert export.child_count == 0
        assert len(export.orphans) == 1
    
    def test_blank_lines_skipped(self):
        export = reconstruct(["", json.dumps(order_record(1001)), "   "])
        assert export.line_count == 1
    
    def test_malformed_line_reports_line_number(self):
        with pytest.raises(MalformedRecordError) as exc_info:
            reconstruct([json.dumps(order_record(1001)), "{broken"])
        assert exc_info.value.line_number == 2
    
    def test_top_level_record_needs_id(self):
        with pytest.raises(MalformedRecordError):
            reconstruct(['{"name": "#1001"}'])


class TestParsers:
    """Tests for record parsing and currency normalization"""
    
    def test_parse_order_net_base_amounts(self, normalizer):
        """Amounts are converted to base currency with VAT removed"""
        row = parse_order(order_record(1001, currency="EUR"), normalizer, SHOP)
        
        assert row["order_id"] == "1001"
        assert row["total_amount"] == Decimal("250.00")
        assert row["total_amount_base"] == Decimal("1500")
        assert row["tax_amount_base"] == Decimal("375")
        assert row["created_at_original"] == datetime(2024, 10, 9, 8, 0, tzinfo=timezone.utc)
        assert row["country"] == "DK"
        assert "shipping_discount_base" not in row
        assert "refund_date" not in row
    
    def test_parse_order_default_tax_rate(self, normalizer):
        """Orders without tax lines use the currency's default rate"""
        row = parse_order(order_record(1001, taxLines=[]), normalizer, SHOP)
        assert row["tax_rate"] == Decimal("0.25")
        assert row["total_amount_base"] == Decimal("200")
    
    def test_parse_order_unknown_currency(self, normalizer):
        with pytest.raises(ConfigurationError):
            parse_order(order_record(1001, currency="USD"), normalizer, SHOP)
    
    def test_parse_order_missing_created_at(self, normalizer):
        with pytest.raises(MalformedRecordError):
            parse_order(order_record(1001, createdAt=None), normalizer, SHOP)
    
    def test_line_items_merged_per_sku(self, normalizer):
        """Two lines of one SKU become one row with weighted per-unit figures"""
        children = [
            line_record(
                1, "ABC-1", 2, "125.00",
                totalDiscountSet=money_set("25.00"),
                variant={"compareAtPrice": "150.00", "selectedOptions": [{"name": "Farve", "value": "Sort"}]},
            ),
            line_record(2, "ABC-1", 1, "125.00"),
            line_record(3, "", 1, "50.00"),
        ]
        
        rows = parse_line_items(order_record(1001), children, normalizer, SHOP)
        
        assert len(rows) == 1
        row = rows[0]
        assert row["quantity"] == 3
        assert row["price_base"] == Decimal("100")
        assert row["discount_per_unit_base"].quantize(Decimal("0.0001")) == Decimal("6.6667")
        assert row["sale_discount_per_unit_base"].quantize(Decimal("0.0001")) == Decimal("13.3333")
        assert row["color"] == "Sort"
        assert row["created_at_original"] == datetime(2024, 10, 9, 8, 0, tzinfo=timezone.utc)
    
    def test_zero_rated_line_keeps_its_rate(self, normalizer):
        """An explicit 0% line rate is not replaced by the order or currency default"""
        order = order_record(1001, taxLines=[])
        children = [line_record(1, "ABC-1", 1, "100.00", taxLines=[{"rate": 0}])]
        
        rows = parse_line_items(order, children, normalizer, SHOP)
        
        assert rows[0]["price_base"] == Decimal("100")
    
    def test_line_without_rate_uses_order_rate(self, normalizer):
        order = order_record(1001, taxLines=[{"rate": 0}])
        children = [line_record(1, "ABC-1", 1, "100.00")]
        
        rows = parse_line_items(order, children, normalizer, SHOP)
        
        assert rows[0]["price_base"] == Decimal("100")
    
    def test_summarize_refunds_splits_returns_and_cancellations(self, normalizer):
        refunds = [
            {
                "created_at": "2024-10-12T09:00:00Z",
                "refund_line_items": [{
                    "quantity": 1,
                    "restock_type": "return",
                    "line_item": {"sku": "ABC-1", "tax_lines": [{"rate": 0.25}]},
                    "subtotal_set": {"shop_money": {"amount": "125.00", "currency_code": "DKK"}},
                }],
                "transactions": [
                    {"kind": "refund", "status": "success", "amount": "174.00", "processed_at": "2024-10-12T10:00:00Z"},
                ],
                "order_adjustments": [
                    {"kind": "shipping_refund", "amount_set": {"shop_money": {"amount": "-49.00"}}},
                ],
            },
            {
                "created_at": "2024-10-09T09:00:00Z",
                "refund_line_items": [{
                    "quantity": 1,
                    "restock_type": "cancel",
                    "line_item": {"sku": "ABC-1", "tax_lines": []},
                    "subtotal_set": {"shop_money": {"amount": "125.00"}},
                }],
                "transactions": [],
            },
        ]
        
        summary = summarize_refunds("1001", refunds, normalizer, "DKK")
        
        line = summary.lines["ABC-1"]
        assert line.refunded_qty == 1
        assert line.refunded_amount_base == Decimal("100")
        assert line.cancelled_qty == 1
        assert line.cancelled_amount_base == Decimal("100")
        assert line.refund_date == datetime(2024, 10, 12, 10, 0, tzinfo=timezone.utc)
        assert summary.shipping_refund_base == Decimal("49.00")
        assert summary.refund_date == datetime(2024, 10, 12, 10, 0, tzinfo=timezone.utc)
    
    def test_zero_value_refund_is_cancellation(self, normalizer):
        refunds = [{
            "created_at": "2024-10-10T09:00:00Z",
            "refund_line_items": [{
                "quantity": 2,
                "restock_type": "no_restock",
                "line_item": {"sku": "ABC-1"},
                "subtotal_set": {"shop_money": {"amount": "250.00"}},
            }],
            "transactions": [{"kind": "refund", "status": "success", "amount": "0.00"}],
        }]
        
        summary = summarize_refunds("1001", refunds, normalizer, "DKK")
        
        assert summary.lines["ABC-1"].cancelled_qty == 2
        assert summary.lines["ABC-1"].refunded_qty == 0
        assert summary.refund_date is None
    
    def test_shipping_discount(self, normalizer):
        order = {
            "id": "gid://shopify/Order/1001",
            "currencyCode": "DKK",
            "taxLines": [{"rate": 0.25}],
            "shippingLines": {"edges": [{"node": {
                "originalPriceSet": money_set("49.00"),
                "discountedPriceSet": money_set("24.00"),
            }}]},
        }
        assert shipping_discount(order, normalizer) == Decimal("20")
    
    @pytest.mark.parametrize("value,expected", [
        ("Navy", "BLUE"),
        ("Sort", "BLACK"),
        ("Light Grey Melange", "GREY"),
        ("Chartreuse", "OTHER"),
        (None, "OTHER"),
    ])
    def test_normalize_color(self, value, expected):
        assert normalize_color(value) == expected
    
    def test_article_number(self):
        assert article_number("100234-BLK-M") == "100234"
        assert article_number("GIFTCARD") == "GIFTCARD"


class TestRawRowLoader:
    """Tests for idempotent raw row writes"""
    
    async def test_upsert_is_idempotent(self, loader, normalizer, session_factory):
        """Loading the same export twice leaves one row per natural key"""
        rows = [parse_order(order_record(i), normalizer, SHOP) for i in (1001, 1002, 1003)]
        
        await loader.upsert_orders(rows)
        result = await loader.upsert_orders(rows)
        
        assert result.rows_loaded == 3
        async with session_factory() as session:
            assert await session.scalar(select(func.count()).select_from(Order)) == 3
    
    async def test_reingest_keeps_enrichment(self, loader, normalizer, session_factory):
        """Re-ingesting a line item does not reset refund figures"""
        order = order_record(1001)
        rows = parse_line_items(order, [line_record(1, "ABC-1", 2, "125.00")], normalizer, SHOP)
        await loader.upsert_line_items(rows)
        
        refunds = [{
            "created_at": "2024-10-12T09:00:00Z",
            "refund_line_items": [{
                "quantity": 1,
                "restock_type": "return",
                "line_item": {"sku": "ABC-1"},
                "subtotal_set": {"shop_money": {"amount": "125.00"}},
            }],
            "transactions": [{"kind": "refund", "status": "success", "amount": "125.00"}],
        }]
        updated = await loader.apply_refunds(SHOP, summarize_refunds("1001", refunds, normalizer, "DKK"))
        assert updated == 1
        
        await loader.upsert_line_items(rows)
        
        async with session_factory() as session:
            line = await session.get(OrderLineItem, (SHOP, "1001", "ABC-1"))
        assert line.refunded_qty == 1
        assert line.quantity == 2
    
    async def test_refunds_for_unknown_rows_ignored(self, loader, normalizer):
        refunds = [{
            "created_at": "2024-10-12T09:00:00Z",
            "refund_line_items": [{"quantity": 1, "line_item": {"sku": "ABC-1"}, "subtotal_set": {"shop_money": {"amount": "1"}}}],
            "transactions": [{"kind": "refund", "amount": "1"}],
        }]
        assert await loader.apply_refunds(SHOP, summarize_refunds("404", refunds, normalizer, "DKK")) == 0


def bulk_upstream(fake_shopify, body: str) -> None:
    fake_shopify.on_graphql("currentBulkOperation", lambda v: {"currentBulkOperation": None})
    fake_shopify.on_graphql("bulkOperationRunQuery", lambda v: {
        "bulkOperationRunQuery": {
            "bulkOperation": {"id": "gid://shopify/BulkOperation/1", "status": "CREATED"},
            "userErrors": [],
        },
    })
    fake_shopify.on_graphql("node(id", lambda v: {"node": {
        "id": "gid://shopify/BulkOperation/1",
        "status": "COMPLETED",
        "objectCount": "3",
        "url": RESULT_URL if body else None,
    }})
    if body:
        fake_shopify.downloads[RESULT_URL] = body


def export_job(object_type: str) -> SyncJob:
    return SyncJob(id=1, shop=SHOP, object_type=object_type, start_date=date(2024, 10, 9), end_date=date(2024, 10, 9))


class TestBulkExportWorkers:
    """End-to-end export, reassembly and load against a scripted upstream"""
    
    async def test_orders_export(self, fake_shopify, loader, normalizer, session_factory):
        bulk_upstream(fake_shopify, jsonl(order_record(1001), order_record(1002)))
        worker = OrdersExportWorker(
            client_factory=fake_shopify.client,
            loader=loader,
            normalizer=normalizer,
            poll_interval=0,
            cancel_wait=0,
        )
        
        result = await worker.run(export_job("orders"), Budget(60))
        
        assert result.success and result.done
        assert result.records_processed == 2
        async with session_factory() as session:
            order = await session.get(Order, (SHOP, "1002"))
        assert order.total_amount_base == Decimal("200")
    
    async def test_export_window_in_query(self, fake_shopify, loader, normalizer):
        """The bulk query covers the job's local day in UTC"""
        bulk_upstream(fake_shopify, "")
        worker = OrdersExportWorker(client_factory=fake_shopify.client, loader=loader, normalizer=normalizer, poll_interval=0, cancel_wait=0)
        
        result = await worker.run(export_job("orders"), Budget(60))
        
        assert result.records_processed == 0
        assert result.message == "No records for period"
        submitted = [
            json.loads(r.content)["variables"]["query"]
            for r in fake_shopify.requests
            if b"bulkOperationRunQuery" in r.content
        ]
        assert "created_at:>='2024-10-08T22:00:00Z'" in submitted[0]
        assert "created_at:<'2024-10-09T22:00:00Z'" in submitted[0]
    
    async def test_line_items_export(self, fake_shopify, loader, normalizer, session_factory):
        bulk_upstream(fake_shopify, jsonl(
            line_record(1, "ABC-1", 2, "125.00"),
            order_record(1001),
            line_record(2, "XYZ-9", 1, "250.00"),
        ))
        worker = LineItemsExportWorker(
            client_factory=fake_shopify.client,
            loader=loader,
            normalizer=normalizer,
            poll_interval=0,
            cancel_wait=0,
        )
        
        result = await worker.run(export_job("skus"), Budget(60))
        
        assert result.records_processed == 2
        async with session_factory() as session:
            line = await session.get(OrderLineItem, (SHOP, "1001", "XYZ-9"))
        assert line.price_base == Decimal("200")
        assert line.color == "Navy"
