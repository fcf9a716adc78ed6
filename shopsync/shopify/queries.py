"""
GraphQL documents

Bulk operation control plus the export queries whose JSONL output the
ingestion parsers understand.
"""

from datetime import datetime
from typing import Optional

CURRENT_BULK_OPERATION = """
query {
  currentBulkOperation {
    id
    status
    errorCode
    objectCount
    url
  }
}
"""

BULK_OPERATION_BY_ID = """
query bulkOperation($id: ID!) {
  node(id: $id) {
    ... on BulkOperation {
      id
      status
      errorCode
      objectCount
      url
    }
  }
}
"""

RUN_BULK_QUERY = """
mutation bulkOperationRunQuery($query: String!) {
  bulkOperationRunQuery(query: $query) {
    bulkOperation {
      id
      status
    }
    userErrors {
      field
      message
    }
  }
}
"""

CANCEL_BULK_OPERATION = """
mutation bulkOperationCancel($id: ID!) {
  bulkOperationCancel(id: $id) {
    bulkOperation {
      id
      status
    }
    userErrors {
      field
      message
    }
  }
}
"""

ORDER_IDS_PAGE = """
query orderIds($query: String!, $first: Int!) {
  orders(first: $first, query: $query, sortKey: ID) {
    edges {
      node {
        id
      }
    }
  }
}
"""

ORDER_SHIPPING_LINES = """
query orderShipping($id: ID!) {
  order(id: $id) {
    id
    currencyCode
    taxLines {
      rate
    }
    shippingLines(first: 10) {
      edges {
        node {
          originalPriceSet { shopMoney { amount } }
          discountedPriceSet { shopMoney { amount } }
        }
      }
    }
  }
}
"""


def _iso(instant: datetime) -> str:
    return instant.strftime("%Y-%m-%dT%H:%M:%SZ")


def search_window(field: str, start: datetime, end: datetime) -> str:
    """Search syntax for a half-open timestamp window"""
    return f"{field}:>='{_iso(start)}' AND {field}:<'{_iso(end)}'"


def order_id_search(start: datetime, end: datetime, after: Optional[str] = None) -> str:
    """Orders updated in a window, optionally after an order id"""
    query = search_window("updated_at", start, end)
    if after:
        query = f"{query} AND id:>{after}"
    return query


def orders_export_query(start: datetime, end: datetime) -> str:
    """Order-level bulk export for orders created in a window"""
    return f"""
{{
  orders(query: "{search_window('created_at', start, end)}") {{
    edges {{
      node {{
        id
        name
        createdAt
        updatedAt
        cancelledAt
        currencyCode
        subtotalLineItemsQuantity
        shippingAddress {{ countryCode }}
        taxLines {{ rate }}
        totalPriceSet {{ shopMoney {{ amount }} }}
        totalDiscountsSet {{ shopMoney {{ amount }} }}
        totalTaxSet {{ shopMoney {{ amount }} }}
        totalShippingPriceSet {{ shopMoney {{ amount }} }}
        totalRefundedSet {{ shopMoney {{ amount }} }}
      }}
    }}
  }}
}}
"""


def line_items_export_query(start: datetime, end: datetime) -> str:
    """Line-item bulk export; line items arrive as child records of their order"""
    return f"""
{{
  orders(query: "{search_window('created_at', start, end)}") {{
    edges {{
      node {{
        id
        createdAt
        currencyCode
        taxLines {{ rate }}
        lineItems {{
          edges {{
            node {{
              id
              sku
              name
              variantTitle
              quantity
              originalUnitPriceSet {{ shopMoney {{ amount }} }}
              totalDiscountSet {{ shopMoney {{ amount }} }}
              taxLines {{ rate }}
              variant {{
                compareAtPrice
                selectedOptions {{ name value }}
              }}
            }}
          }}
        }}
      }}
    }}
  }}
}}
"""
