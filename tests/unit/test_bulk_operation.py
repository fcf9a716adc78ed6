"""
Unit Tests - Upstream Client and Bulk Export State Machine
"""
from typing import Any, Callable, Dict, List

import httpx
import pytest

from shopsync.errors import (
    BudgetExceededError,
    BulkOperationFailedError,
    MalformedRecordError,
    PollTimeoutError,
    TerminalUpstreamError,
    TransientUpstreamError,
)
from shopsync.shopify.bulk import BulkExportStateMachine, BulkOperationStatus
from shopsync.workers.base import Budget

OPERATION_ID = "gid://shopify/BulkOperation/1"
RESULT_URL = "https://storage.example.com/results/export.jsonl"


def sequence(*responses: Any) -> Callable[[Dict[str, Any]], Any]:
    """Responder returning each response in turn, repeating the last"""
    remaining: List[Any] = list(responses)
    
    def _respond(variables):
        if len(remaining) > 1:
            return remaining.pop(0)
        return remaining[0]
    return _respond


def operation(status: str, url: str = None, object_count: int = 0, error_code: str = None) -> Dict[str, Any]:
    return {
        "node": {
            "id": OPERATION_ID,
            "status": status,
            "objectCount": str(object_count),
            "url": url,
            "errorCode": error_code,
        }
    }


def submitted(errors: List[Dict[str, str]] = None) -> Dict[str, Any]:
    if errors:
        return {"bulkOperationRunQuery": {"bulkOperation": None, "userErrors": errors}}
    return {
        "bulkOperationRunQuery": {
            "bulkOperation": {"id": OPERATION_ID, "status": "CREATED"},
            "userErrors": [],
        }
    }


def current(status: str) -> Dict[str, Any]:
    return {"currentBulkOperation": {"id": "gid://shopify/BulkOperation/0", "status": status}}


def no_current(variables):
    return {"currentBulkOperation": None}


def cancelled(variables):
    return {"bulkOperationCancel": {"bulkOperation": {"id": "old", "status": "CANCELING"}, "userErrors": []}}


def machine_for(client, **kwargs) -> BulkExportStateMachine:
    options = {"poll_interval": 0, "max_poll_attempts": 5, "cancel_wait": 0}
    options.update(kwargs)
    return BulkExportStateMachine(client, **options)


class TestShopifyClient:
    """Tests for retry and error classification"""
    
    async def test_rate_limit_retried_with_retry_after(self, fake_shopify):
        fake_shopify.on_graphql("shop", sequence(
            httpx.Response(429, headers={"Retry-After": "0"}),
            {"shop": {"name": "Test"}},
        ))
        
        async with fake_shopify.client() as client:
            data = await client.graphql("{ shop { name } }")
        
        assert data == {"shop": {"name": "Test"}}
        assert len(fake_shopify.requests) == 2
    
    async def test_throttled_graphql_retried(self, fake_shopify):
        """THROTTLED errors arrive with HTTP 200 and are still retried"""
        fake_shopify.on_graphql("shop", sequence(
            httpx.Response(200, json={"errors": [{"message": "Throttled", "extensions": {"code": "THROTTLED"}}]}),
            {"shop": {"name": "Test"}},
        ))
        
        async with fake_shopify.client() as client:
            data = await client.graphql("{ shop { name } }")
        
        assert data["shop"]["name"] == "Test"
    
    async def test_server_errors_exhaust_retries(self, fake_shopify):
        fake_shopify.on_graphql("shop", lambda v: httpx.Response(503))
        
        async with fake_shopify.client() as client:
            with pytest.raises(TransientUpstreamError):
                await client.graphql("{ shop { name } }")
        
        assert len(fake_shopify.requests) == 3
    
    async def test_client_errors_not_retried(self, fake_shopify):
        fake_shopify.on_graphql("shop", lambda v: httpx.Response(403, text="forbidden"))
        
        async with fake_shopify.client() as client:
            with pytest.raises(TerminalUpstreamError):
                await client.graphql("{ shop { name } }")
        
        assert len(fake_shopify.requests) == 1
    
    async def test_graphql_errors_are_terminal(self, fake_shopify):
        fake_shopify.on_graphql("shop", lambda v: httpx.Response(200, json={"errors": [{"message": "Field 'x' doesn't exist"}]}))
        
        async with fake_shopify.client() as client:
            with pytest.raises(TerminalUpstreamError, match="doesn't exist"):
                await client.graphql("{ shop { name } }")
    
    async def test_rest_get(self, fake_shopify):
        fake_shopify.rest["orders/1001/refunds.json"] = {"refunds": []}
        
        async with fake_shopify.client() as client:
            body = await client.get_json("orders/1001/refunds.json")
        
        assert body == {"refunds": []}
        assert fake_shopify.requests[0].headers["X-Shopify-Access-Token"] == "test-token"
    
    async def test_download_without_token(self, fake_shopify):
        """Result files are fetched without the shop's access token"""
        fake_shopify.downloads[RESULT_URL] = '{"id": "1"}\n\n{"id": "2"}\n'
        
        async with fake_shopify.client() as client:
            lines = [line async for line in client.stream_lines(RESULT_URL)]
        
        assert lines == ['{"id": "1"}', '{"id": "2"}']
        assert "X-Shopify-Access-Token" not in fake_shopify.requests[0].headers


class TestBulkExportStateMachine:
    """Tests for the bulk operation lifecycle"""
    
    async def test_export_completes_with_url(self, fake_shopify):
        fake_shopify.on_graphql("currentBulkOperation", no_current)
        fake_shopify.on_graphql("bulkOperationRunQuery", lambda v: submitted())
        fake_shopify.on_graphql("node(id", sequence(
            operation("CREATED"),
            operation("RUNNING", object_count=10),
            operation("COMPLETED", url=RESULT_URL, object_count=42),
        ))
        
        async with fake_shopify.client() as client:
            machine = machine_for(client)
            url = await machine.run_export("{ orders { edges { node { id } } } }")
        
        assert url == RESULT_URL
        assert machine.state == BulkOperationStatus.COMPLETED
        assert machine.history == [
            BulkOperationStatus.NONE,
            BulkOperationStatus.SUBMITTED,
            BulkOperationStatus.CREATED,
            BulkOperationStatus.RUNNING,
            BulkOperationStatus.COMPLETED,
        ]
        assert machine.operation.object_count == 42
    
    async def test_zero_results_returns_none(self, fake_shopify):
        """A completed export with no matching objects has no result file"""
        fake_shopify.on_graphql("currentBulkOperation", no_current)
        fake_shopify.on_graphql("bulkOperationRunQuery", lambda v: submitted())
        fake_shopify.on_graphql("node(id", lambda v: operation("COMPLETED", object_count=0))
        
        async with fake_shopify.client() as client:
            url = await machine_for(client).run_export("{ orders { edges { node { id } } } }")
        
        assert url is None
    
    async def test_active_operation_cancelled_before_submit(self, fake_shopify):
        fake_shopify.on_graphql("currentBulkOperation", sequence(
            current("RUNNING"),
            current("CANCELED"),
        ))
        fake_shopify.on_graphql("bulkOperationCancel", cancelled)
        fake_shopify.on_graphql("bulkOperationRunQuery", lambda v: submitted())
        fake_shopify.on_graphql("node(id", lambda v: operation("COMPLETED", url=RESULT_URL))
        
        async with fake_shopify.client() as client:
            await machine_for(client).run_export("{ orders { edges { node { id } } } }")
        
        calls = fake_shopify.graphql_calls
        assert calls.index("bulkOperationCancel") < calls.index("bulkOperationRunQuery")
    
    async def test_finished_operation_not_cancelled(self, fake_shopify):
        fake_shopify.on_graphql("currentBulkOperation", lambda v: {
            "currentBulkOperation": {"id": "gid://shopify/BulkOperation/0", "status": "COMPLETED"},
        })
        fake_shopify.on_graphql("bulkOperationCancel", cancelled)
        fake_shopify.on_graphql("bulkOperationRunQuery", lambda v: submitted())
        fake_shopify.on_graphql("node(id", lambda v: operation("COMPLETED", url=RESULT_URL))
        
        async with fake_shopify.client() as client:
            await machine_for(client).run_export("{ orders { edges { node { id } } } }")
        
        assert "bulkOperationCancel" not in fake_shopify.graphql_calls
    
    async def test_conflict_cancels_and_resubmits(self, fake_shopify):
        """A conflict on submit is resolved without surfacing to the caller"""
        fake_shopify.on_graphql("currentBulkOperation", sequence(
            {"currentBulkOperation": None},
            current("RUNNING"),
            current("CANCELED"),
        ))
        fake_shopify.on_graphql("bulkOperationCancel", cancelled)
        fake_shopify.on_graphql("bulkOperationRunQuery", sequence(
            submitted([{"field": None, "message": "A bulk query operation for this app and shop is already in progress"}]),
            submitted(),
        ))
        fake_shopify.on_graphql("node(id", lambda v: operation("COMPLETED", url=RESULT_URL))
        
        async with fake_shopify.client() as client:
            url = await machine_for(client).run_export("{ orders { edges { node { id } } } }")
        
        assert url == RESULT_URL
        assert fake_shopify.graphql_calls.count("bulkOperationRunQuery") == 2
        assert "bulkOperationCancel" in fake_shopify.graphql_calls
    
    async def test_conflict_while_cancelling_waits_for_slot(self, fake_shopify):
        """A cancelled operation still CANCELING is waited out before resubmitting"""
        fake_shopify.on_graphql("currentBulkOperation", sequence(
            current("RUNNING"),
            current("CANCELING"),
            current("CANCELED"),
        ))
        fake_shopify.on_graphql("bulkOperationCancel", cancelled)
        conflict = submitted([{"field": None, "message": "A bulk query operation for this app and shop is already in progress"}])
        fake_shopify.on_graphql("bulkOperationRunQuery", sequence(conflict, conflict, submitted()))
        fake_shopify.on_graphql("node(id", lambda v: operation("COMPLETED", url=RESULT_URL))
        
        async with fake_shopify.client() as client:
            url = await machine_for(client).run_export("{ orders { edges { node { id } } } }")
        
        assert url == RESULT_URL
        assert fake_shopify.graphql_calls.count("bulkOperationRunQuery") == 3
        assert fake_shopify.graphql_calls.count("bulkOperationCancel") == 1
    
    async def test_canceling_operation_not_cancelled_again(self, fake_shopify):
        fake_shopify.on_graphql("currentBulkOperation", sequence(
            current("CANCELING"),
            current("CANCELED"),
        ))
        fake_shopify.on_graphql("bulkOperationCancel", cancelled)
        fake_shopify.on_graphql("bulkOperationRunQuery", lambda v: submitted())
        fake_shopify.on_graphql("node(id", lambda v: operation("COMPLETED", url=RESULT_URL))
        
        async with fake_shopify.client() as client:
            await machine_for(client).run_export("{ orders { edges { node { id } } } }")
        
        calls = fake_shopify.graphql_calls
        assert "bulkOperationCancel" not in calls
        assert calls.index("bulkOperationRunQuery") > 1
    
    async def test_operation_stuck_cancelling_is_terminal(self, fake_shopify):
        fake_shopify.on_graphql("currentBulkOperation", lambda v: current("CANCELING"))
        fake_shopify.on_graphql("bulkOperationRunQuery", lambda v: submitted())
        
        async with fake_shopify.client() as client:
            with pytest.raises(TerminalUpstreamError, match="still CANCELING after 3 checks"):
                await machine_for(client, max_cancel_checks=3).run_export("{ orders { edges { node { id } } } }")
        
        assert fake_shopify.graphql_calls.count("currentBulkOperation") == 4
        assert "bulkOperationRunQuery" not in fake_shopify.graphql_calls
    
    async def test_persistent_conflict_fails_without_conflict_error(self, fake_shopify):
        """Conflicts that never clear end as a terminal failure"""
        fake_shopify.on_graphql("currentBulkOperation", no_current)
        fake_shopify.on_graphql("bulkOperationRunQuery", lambda v: submitted(
            [{"field": None, "message": "A bulk query operation for this app and shop is already in progress"}]
        ))
        
        async with fake_shopify.client() as client:
            with pytest.raises(TerminalUpstreamError, match="after 2 submissions"):
                await machine_for(client, max_submits=2).run_export("{ orders { edges { node { id } } } }")
        
        assert fake_shopify.graphql_calls.count("bulkOperationRunQuery") == 2
    
    async def test_rejected_query_is_terminal(self, fake_shopify):
        fake_shopify.on_graphql("currentBulkOperation", no_current)
        fake_shopify.on_graphql("bulkOperationRunQuery", lambda v: submitted([
            {"field": ["query"], "message": "Invalid bulk query: field 'x' doesn't exist"},
        ]))
        
        async with fake_shopify.client() as client:
            with pytest.raises(TerminalUpstreamError, match="Bulk query rejected"):
                await machine_for(client).run_export("{ x }")
    
    async def test_failed_operation_raises(self, fake_shopify):
        fake_shopify.on_graphql("currentBulkOperation", no_current)
        fake_shopify.on_graphql("bulkOperationRunQuery", lambda v: submitted())
        fake_shopify.on_graphql("node(id", lambda v: operation("FAILED", error_code="ACCESS_DENIED"))
        
        async with fake_shopify.client() as client:
            with pytest.raises(BulkOperationFailedError) as exc_info:
                await machine_for(client).run_export("{ orders { edges { node { id } } } }")
        
        assert exc_info.value.status == "FAILED"
        assert str(exc_info.value) == "Bulk operation FAILED: ACCESS_DENIED"
    
    def test_canceled_spelling_accepted(self):
        assert BulkOperationStatus.parse("CANCELED") == BulkOperationStatus.CANCELLED
        assert BulkOperationStatus.parse(None) == BulkOperationStatus.NONE
    
    async def test_poll_timeout(self, fake_shopify):
        fake_shopify.on_graphql("currentBulkOperation", no_current)
        fake_shopify.on_graphql("bulkOperationRunQuery", lambda v: submitted())
        fake_shopify.on_graphql("node(id", lambda v: operation("RUNNING"))
        
        async with fake_shopify.client() as client:
            with pytest.raises(PollTimeoutError):
                await machine_for(client, max_poll_attempts=3).run_export("{ orders { edges { node { id } } } }")
        
        assert fake_shopify.graphql_calls.count("node(id") == 3
    
    async def test_budget_stops_polling(self, fake_shopify):
        """Polling stops once the remaining budget cannot cover another interval"""
        fake_shopify.on_graphql("currentBulkOperation", no_current)
        fake_shopify.on_graphql("bulkOperationRunQuery", lambda v: submitted())
        fake_shopify.on_graphql("node(id", lambda v: operation("RUNNING"))
        
        async with fake_shopify.client() as client:
            machine = machine_for(client, poll_interval=5)
            with pytest.raises(BudgetExceededError) as exc_info:
                await machine.run_export("{ orders { edges { node { id } } } }", budget=Budget(1))
        
        assert not isinstance(exc_info.value, PollTimeoutError)
        assert fake_shopify.graphql_calls.count("node(id") == 1
    
    async def test_iter_records(self, fake_shopify):
        fake_shopify.downloads[RESULT_URL] = (
            '{"id": "gid://shopify/Order/1"}\n'
            '{"id": "gid://shopify/LineItem/11", "__parentId": "gid://shopify/Order/1"}\n'
        )
        
        async with fake_shopify.client() as client:
            records = [r async for r in machine_for(client).iter_records(RESULT_URL)]
        
        assert [r["id"] for r in records] == ["gid://shopify/Order/1", "gid://shopify/LineItem/11"]
    
    async def test_iter_records_malformed_line(self, fake_shopify):
        fake_shopify.downloads[RESULT_URL] = '{"id": "gid://shopify/Order/1"}\n{not json\n'
        
        async with fake_shopify.client() as client:
            with pytest.raises(MalformedRecordError) as exc_info:
                async for _ in machine_for(client).iter_records(RESULT_URL):
                    pass
        
        assert exc_info.value.line_number == 2
