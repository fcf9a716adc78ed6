"""
Record Parsers

Turn upstream records (bulk export JSONL records and REST refund payloads)
into raw row dictionaries keyed by their natural ids. Amounts are converted
to the base currency and VAT is removed using the record's tax rate, or the
currency's default rate when the record has none.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional

import structlog

from shopsync.config import get_settings
from shopsync.aggregation.timezone import parse_timestamp
from shopsync.errors import ConfigurationError, MalformedRecordError

logger = structlog.get_logger(__name__)
settings = get_settings()

ZERO = Decimal("0")


# =============================================================================
# HELPERS
# =============================================================================

def gid_tail(gid: str) -> str:
    """Numeric id from a global id such as gid://shopify/Order/123"""
    return str(gid).rsplit("/", 1)[-1]


def to_decimal(value: Any) -> Decimal:
    """Decimal from an upstream amount (string, number or None)"""
    if value is None or value == "":
        return ZERO
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise MalformedRecordError(f"invalid amount {value!r}") from e


def money(record: Optional[Mapping[str, Any]], key: str) -> Decimal:
    """Shop-currency amount of a MoneyBag field (``{"shopMoney": {"amount": ...}}``)"""
    if not record:
        return ZERO
    bag = record.get(key) or {}
    return to_decimal((bag.get("shopMoney") or {}).get("amount"))


def rest_money(record: Mapping[str, Any], key: str) -> Decimal:
    """Shop-currency amount of a REST ``*_set`` field, falling back to the plain field"""
    bag = record.get(f"{key}_set") or {}
    shop_money = bag.get("shop_money") or {}
    if "amount" in shop_money:
        return to_decimal(shop_money["amount"])
    return to_decimal(record.get(key))


def first_tax_rate(tax_lines: Optional[Iterable[Mapping[str, Any]]]) -> Optional[Decimal]:
    for line in tax_lines or []:
        if line.get("rate") is not None:
            return to_decimal(line["rate"])
    return None


class CurrencyNormalizer:
    """Converts shop-currency, VAT-inclusive amounts to base-currency net amounts"""
    
    def __init__(
        self,
        rates: Optional[Mapping[str, Decimal]] = None,
        default_tax_rates: Optional[Mapping[str, Decimal]] = None,
    ):
        self.rates = {k.upper(): Decimal(str(v)) for k, v in (rates or settings.shopify.currency_rates).items()}
        self.default_tax_rates = {
            k.upper(): Decimal(str(v))
            for k, v in (default_tax_rates or settings.shopify.default_tax_rates).items()
        }
    
    def rate(self, currency: str) -> Decimal:
        try:
            return self.rates[currency.upper()]
        except KeyError:
            raise ConfigurationError(f"No exchange rate configured for {currency}")
    
    def tax_rate(self, currency: str, explicit: Optional[Decimal] = None) -> Decimal:
        if explicit is not None:
            return explicit
        return self.default_tax_rates.get(currency.upper(), ZERO)
    
    def to_base(self, amount: Decimal, currency: str) -> Decimal:
        return amount * self.rate(currency)
    
    @staticmethod
    def ex_tax(amount: Decimal, tax_rate: Decimal) -> Decimal:
        return amount / (1 + tax_rate)
    
    def net_base(self, amount: Decimal, currency: str, tax_rate: Decimal) -> Decimal:
        """Base-currency amount with VAT removed"""
        return self.to_base(self.ex_tax(amount, tax_rate), currency)


# =============================================================================
# COLORS AND ARTICLES
# =============================================================================

COLOR_MAP: Dict[str, str] = {
    "black": "BLACK", "sort": "BLACK",
    "white": "WHITE", "hvid": "WHITE",
    "blue": "BLUE", "blå": "BLUE", "navy": "BLUE",
    "red": "RED", "rød": "RED",
    "green": "GREEN", "grøn": "GREEN",
    "yellow": "YELLOW", "gul": "YELLOW",
    "pink": "PINK", "lyserød": "PINK", "rosa": "PINK",
    "purple": "PURPLE", "lilla": "PURPLE",
    "grey": "GREY", "gray": "GREY", "grå": "GREY",
    "brown": "BROWN", "brun": "BROWN",
    "beige": "BEIGE", "sand": "BEIGE",
    "orange": "ORANGE",
}

COLOR_OPTION_NAMES = {"color", "colour", "farve", "farbe", "kleur"}


def normalize_color(value: Optional[str]) -> str:
    """Canonical color name, OTHER when unknown"""
    if not value:
        return "OTHER"
    text = value.lower()
    for keyword, color in COLOR_MAP.items():
        if keyword in text:
            return color
    return "OTHER"


def article_number(sku: str) -> str:
    """Article number: the SKU up to the first dash"""
    return sku.split("-", 1)[0]


def variant_color(line_item: Mapping[str, Any]) -> Optional[str]:
    variant = line_item.get("variant") or {}
    for option in variant.get("selectedOptions") or []:
        if str(option.get("name", "")).lower() in COLOR_OPTION_NAMES:
            return option.get("value")
    return None


# =============================================================================
# BULK EXPORT RECORDS
# =============================================================================

def _required(record: Mapping[str, Any], key: str) -> Any:
    value = record.get(key)
    if value is None:
        raise MalformedRecordError(f"record {record.get('id', '?')} missing {key}")
    return value


def parse_order(record: Mapping[str, Any], normalizer: CurrencyNormalizer, shop: str) -> Dict[str, Any]:
    """
    Order row from an order export record.
    
    Enrichment columns (shipping discount, shipping refund, refund date) are
    left out so re-ingesting an order never resets them.
    """
    currency = _required(record, "currencyCode")
    tax_rate = normalizer.tax_rate(currency, first_tax_rate(record.get("taxLines")))
    
    def net(key: str) -> Decimal:
        return normalizer.net_base(money(record, key), currency, tax_rate)
    
    return {
        "shop": shop,
        "order_id": gid_tail(_required(record, "id")),
        "name": record.get("name"),
        "created_at_original": parse_timestamp(_required(record, "createdAt")),
        "updated_at_upstream": parse_timestamp(record.get("updatedAt")),
        "cancelled_at": parse_timestamp(record.get("cancelledAt")),
        "currency": currency,
        "country": (record.get("shippingAddress") or {}).get("countryCode"),
        "item_count": int(record.get("subtotalLineItemsQuantity") or 0),
        "total_amount": money(record, "totalPriceSet"),
        "total_amount_base": net("totalPriceSet"),
        "discount_amount_base": net("totalDiscountsSet"),
        "tax_amount_base": normalizer.to_base(money(record, "totalTaxSet"), currency),
        "shipping_amount_base": net("totalShippingPriceSet"),
        "refunded_amount_base": net("totalRefundedSet"),
        "tax_rate": tax_rate,
    }


@dataclass
class _LineTotals:
    line: Dict[str, Any]
    quantity: int = 0
    gross: Decimal = ZERO
    discount: Decimal = ZERO
    sale_discount: Decimal = ZERO


def _per_unit(amount: Decimal, quantity: int) -> Decimal:
    return amount / quantity if quantity else ZERO


def parse_line_items(
    order: Mapping[str, Any],
    children: Iterable[Mapping[str, Any]],
    normalizer: CurrencyNormalizer,
    shop: str,
) -> List[Dict[str, Any]]:
    """
    Line-item rows for one order, one per SKU.
    
    Several lines with the same SKU are merged; per-unit figures become
    quantity-weighted averages. Lines without a SKU are skipped.
    """
    currency = _required(order, "currencyCode")
    order_id = gid_tail(_required(order, "id"))
    created_at = parse_timestamp(_required(order, "createdAt"))
    order_tax = first_tax_rate(order.get("taxLines"))
    
    merged: Dict[str, _LineTotals] = {}
    skipped = 0
    for child in children:
        if "quantity" not in child:
            continue
        sku = (child.get("sku") or "").strip()
        if not sku:
            skipped += 1
            continue
        
        quantity = int(child["quantity"])
        line_tax = first_tax_rate(child.get("taxLines"))
        rate = normalizer.tax_rate(currency, line_tax if line_tax is not None else order_tax)
        unit_price = money(child, "originalUnitPriceSet")
        total_discount = money(child, "totalDiscountSet")
        compare_at = to_decimal((child.get("variant") or {}).get("compareAtPrice"))
        sale_discount = max(compare_at - unit_price, ZERO) if compare_at else ZERO
        
        totals = merged.get(sku)
        if totals is None:
            totals = _LineTotals(line={
                "shop": shop,
                "order_id": order_id,
                "sku": sku,
                "product_title": child.get("name"),
                "variant_title": child.get("variantTitle"),
                "color": variant_color(child),
                "currency": currency,
                "created_at_original": created_at,
            })
            merged[sku] = totals
        totals.quantity += quantity
        totals.gross += normalizer.net_base(unit_price * quantity, currency, rate)
        totals.discount += normalizer.net_base(total_discount, currency, rate)
        totals.sale_discount += normalizer.net_base(sale_discount * quantity, currency, rate)
    
    if skipped:
        logger.debug("Skipped line items without SKU", order_id=order_id, skipped=skipped)
    
    rows = []
    for totals in merged.values():
        quantity = totals.quantity
        row = dict(totals.line)
        row.update({
            "quantity": quantity,
            "price_base": _per_unit(totals.gross, quantity),
            "discount_per_unit_base": _per_unit(totals.discount, quantity),
            "sale_discount_per_unit_base": _per_unit(totals.sale_discount, quantity),
        })
        rows.append(row)
    return rows


# =============================================================================
# REFUNDS
# =============================================================================

@dataclass
class LineRefund:
    """Refunded and cancelled figures for one SKU of an order"""
    sku: str
    refunded_qty: int = 0
    refunded_amount_base: Decimal = ZERO
    cancelled_qty: int = 0
    cancelled_amount_base: Decimal = ZERO
    refund_date: Optional[datetime] = None


@dataclass
class RefundSummary:
    """Everything refund enrichment writes for one order"""
    order_id: str
    lines: Dict[str, LineRefund] = field(default_factory=dict)
    shipping_refund_base: Decimal = ZERO
    refunded_amount_base: Decimal = ZERO
    refund_date: Optional[datetime] = None


def refund_event_time(refund: Mapping[str, Any]) -> Optional[datetime]:
    """Latest successful refund transaction, else the refund's creation time"""
    processed = [
        parse_timestamp(t.get("processed_at") or t.get("created_at"))
        for t in refund.get("transactions") or []
        if t.get("kind") == "refund" and t.get("status", "success") == "success"
    ]
    processed = [p for p in processed if p is not None]
    if processed:
        return max(processed)
    return parse_timestamp(refund.get("processed_at") or refund.get("created_at"))


def _refund_total(refund: Mapping[str, Any]) -> Decimal:
    return sum(
        (
            to_decimal(t.get("amount"))
            for t in refund.get("transactions") or []
            if t.get("kind") == "refund" and t.get("status", "success") == "success"
        ),
        ZERO,
    )


def summarize_refunds(
    order_id: str,
    refunds: Iterable[Mapping[str, Any]],
    normalizer: CurrencyNormalizer,
    currency: str,
) -> RefundSummary:
    """
    Fold an order's refunds into per-SKU and order-level figures.
    
    A refund line restocked as ``cancel``, or any line of a refund that moved
    no money, is a cancellation: it counts against the order's own date.
    Everything else is a return dated by the refund.
    """
    summary = RefundSummary(order_id=order_id)
    
    for refund in refunds:
        event_time = refund_event_time(refund)
        zero_value = _refund_total(refund) == ZERO
        returned_anything = False
        
        for item in refund.get("refund_line_items") or []:
            line_item = item.get("line_item") or {}
            sku = (line_item.get("sku") or "").strip()
            if not sku:
                continue
            quantity = int(item.get("quantity") or 0)
            rate = normalizer.tax_rate(currency, first_tax_rate(line_item.get("tax_lines")))
            amount = normalizer.net_base(rest_money(item, "subtotal"), currency, rate)
            
            line = summary.lines.setdefault(sku, LineRefund(sku=sku))
            if item.get("restock_type") == "cancel" or zero_value:
                line.cancelled_qty += quantity
                line.cancelled_amount_base += amount
                continue
            
            returned_anything = True
            line.refunded_qty += quantity
            line.refunded_amount_base += amount
            summary.refunded_amount_base += amount
            if event_time and (line.refund_date is None or event_time > line.refund_date):
                line.refund_date = event_time
        
        for adjustment in refund.get("order_adjustments") or []:
            if adjustment.get("kind") != "shipping_refund":
                continue
            returned_anything = True
            summary.shipping_refund_base += normalizer.to_base(
                abs(rest_money(adjustment, "amount")), currency
            )
        
        if returned_anything and event_time and (
            summary.refund_date is None or event_time > summary.refund_date
        ):
            summary.refund_date = event_time
    
    return summary


def shipping_discount(order: Mapping[str, Any], normalizer: CurrencyNormalizer) -> Decimal:
    """Base-currency net shipping discount of an order's shipping lines"""
    currency = _required(order, "currencyCode")
    rate = normalizer.tax_rate(currency, first_tax_rate(order.get("taxLines")))
    edges = ((order.get("shippingLines") or {}).get("edges")) or []
    discount = ZERO
    for edge in edges:
        node = edge.get("node") or {}
        discount += money(node, "originalPriceSet") - money(node, "discountedPriceSet")
    return normalizer.net_base(max(discount, ZERO), currency, rate)
