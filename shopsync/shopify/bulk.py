"""
Bulk Export State Machine

Drives one upstream bulk operation from submission to a downloadable
result:

    NONE -> SUBMITTED -> CREATED / RUNNING -> COMPLETED / FAILED / CANCELLED

The platform runs at most one bulk operation per shop, so an operation that
is still CREATED or RUNNING is cancelled, and one that is CANCELING is
waited out, before submitting. Conflicts are
resolved here and never reach the scheduler; FAILED, CANCELLED and EXPIRED
operations, poll timeouts and budget overruns are raised to the caller.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, TYPE_CHECKING

import structlog
from prometheus_client import Counter

from shopsync.config import get_settings
from shopsync.errors import (
    BudgetExceededError,
    BulkOperationConflictError,
    BulkOperationFailedError,
    PollTimeoutError,
    TerminalUpstreamError,
)
from shopsync.ingestion.jsonl import decode_line
from shopsync.shopify import queries
from shopsync.shopify.client import ShopifyClient

if TYPE_CHECKING:
    from shopsync.workers.base import Budget

logger = structlog.get_logger(__name__)
settings = get_settings()


# =============================================================================
# METRICS
# =============================================================================

BULK_OPERATION_POLLS = Counter(
    "shopsync_bulk_operation_polls_total",
    "Bulk operation status polls",
    ["status"],
)

BULK_OPERATIONS_FINISHED = Counter(
    "shopsync_bulk_operations_finished_total",
    "Bulk operations that reached a terminal state",
    ["status"],
)


# =============================================================================
# STATES
# =============================================================================

class BulkOperationStatus(str, Enum):
    """Bulk operation lifecycle"""
    NONE = "NONE"
    SUBMITTED = "SUBMITTED"
    CREATED = "CREATED"
    RUNNING = "RUNNING"
    CANCELING = "CANCELING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    
    @classmethod
    def parse(cls, value: Optional[str]) -> "BulkOperationStatus":
        if not value:
            return cls.NONE
        value = value.upper()
        if value == "CANCELED":
            return cls.CANCELLED
        return cls(value)
    
    @property
    def is_active(self) -> bool:
        return self in (BulkOperationStatus.CREATED, BulkOperationStatus.RUNNING)
    
    @property
    def is_unfinished(self) -> bool:
        """The operation still holds the shop's bulk operation slot"""
        return self.is_active or self == BulkOperationStatus.CANCELING
    
    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    BulkOperationStatus.COMPLETED,
    BulkOperationStatus.FAILED,
    BulkOperationStatus.CANCELLED,
    BulkOperationStatus.EXPIRED,
})


@dataclass
class BulkOperation:
    """Snapshot of an upstream bulk operation"""
    id: str
    status: BulkOperationStatus
    object_count: int = 0
    url: Optional[str] = None
    error_code: Optional[str] = None
    
    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "BulkOperation":
        return cls(
            id=payload["id"],
            status=BulkOperationStatus.parse(payload.get("status")),
            object_count=int(payload.get("objectCount") or 0),
            url=payload.get("url"),
            error_code=payload.get("errorCode"),
        )


def _user_error_message(errors: List[Dict[str, Any]]) -> str:
    return "; ".join(error.get("message", "") for error in errors)


def _is_conflict(message: str) -> bool:
    message = message.lower()
    return "already in progress" in message or "already running" in message


# =============================================================================
# STATE MACHINE
# =============================================================================

class BulkExportStateMachine:
    """
    Runs one bulk export for one shop.
    
    Example:
        machine = BulkExportStateMachine(client)
        url = await machine.run_export(query)
        if url:
            async for line in client.stream_lines(url):
                ...
    """
    
    def __init__(
        self,
        client: ShopifyClient,
        poll_interval: Optional[float] = None,
        max_poll_attempts: Optional[int] = None,
        cancel_wait: Optional[float] = None,
        max_cancel_checks: Optional[int] = None,
        max_submits: Optional[int] = None,
    ):
        self.client = client
        self.poll_interval = settings.shopify.poll_interval_seconds if poll_interval is None else poll_interval
        self.max_poll_attempts = max_poll_attempts or settings.shopify.max_poll_attempts
        self.cancel_wait = settings.shopify.conflict_cancel_wait_seconds if cancel_wait is None else cancel_wait
        self.max_cancel_checks = max_cancel_checks or settings.shopify.conflict_max_checks
        self.max_submits = max_submits or settings.shopify.conflict_max_submits
        
        self.state = BulkOperationStatus.NONE
        self.history: List[BulkOperationStatus] = [BulkOperationStatus.NONE]
        self.operation: Optional[BulkOperation] = None
    
    def _transition(self, status: BulkOperationStatus) -> None:
        if status == self.state:
            return
        logger.debug(
            "Bulk operation transition",
            shop=self.client.shop,
            from_state=self.state.value,
            to_state=status.value,
        )
        self.state = status
        self.history.append(status)
    
    async def current_operation(self) -> Optional[BulkOperation]:
        """The shop's current bulk operation, if any"""
        data = await self.client.graphql(queries.CURRENT_BULK_OPERATION)
        payload = data.get("currentBulkOperation")
        return BulkOperation.from_payload(payload) if payload else None
    
    async def cancel(self, operation_id: str) -> None:
        """Request cancellation of a bulk operation"""
        data = await self.client.graphql(queries.CANCEL_BULK_OPERATION, {"id": operation_id})
        errors = (data.get("bulkOperationCancel") or {}).get("userErrors") or []
        if errors:
            # Usually the operation finished between the check and the cancel
            logger.warning(
                "Bulk operation cancel rejected",
                shop=self.client.shop,
                operation_id=operation_id,
                errors=_user_error_message(errors),
            )
    
    async def ensure_idle(self, budget: Optional["Budget"] = None) -> None:
        """
        Wait until the shop has no unfinished bulk operation.
        
        A CREATED or RUNNING operation is cancelled first; one already
        CANCELING is only waited out. The slot is checked again every
        ``cancel_wait`` seconds.
        
        Raises:
            TerminalUpstreamError: Still unfinished after max_cancel_checks checks
            BudgetExceededError: The invocation budget ran out while waiting
        """
        current = await self.current_operation()
        if current is None or not current.status.is_unfinished:
            return
        
        if current.status.is_active:
            logger.info(
                "Cancelling active bulk operation",
                shop=self.client.shop,
                operation_id=current.id,
                status=current.status.value,
            )
            await self.cancel(current.id)
        
        for check in range(1, self.max_cancel_checks + 1):
            if budget is not None and budget.remaining() < self.cancel_wait:
                raise BudgetExceededError(
                    f"Invocation budget exhausted while bulk operation {current.status.value}"
                )
            await asyncio.sleep(self.cancel_wait)
            current = await self.current_operation()
            if current is None or not current.status.is_unfinished:
                return
            logger.debug(
                "Waiting for bulk operation to finish",
                shop=self.client.shop,
                operation_id=current.id,
                status=current.status.value,
                check=check,
            )
        
        raise TerminalUpstreamError(
            f"Bulk operation {current.id} still {current.status.value} "
            f"after {self.max_cancel_checks} checks"
        )
    
    async def submit(self, query: str) -> BulkOperation:
        """
        Submit a bulk query.
        
        Raises:
            BulkOperationConflictError: Another operation is still active
            TerminalUpstreamError: The query was rejected
        """
        data = await self.client.graphql(queries.RUN_BULK_QUERY, {"query": query})
        result = data.get("bulkOperationRunQuery") or {}
        errors = result.get("userErrors") or []
        if errors:
            message = _user_error_message(errors)
            if _is_conflict(message):
                raise BulkOperationConflictError(message)
            raise TerminalUpstreamError(f"Bulk query rejected: {message}")
        
        payload = result.get("bulkOperation")
        if not payload:
            raise TerminalUpstreamError("Bulk query submission returned no operation")
        
        operation = BulkOperation.from_payload(payload)
        self.operation = operation
        self._transition(BulkOperationStatus.SUBMITTED)
        logger.info("Bulk operation submitted", shop=self.client.shop, operation_id=operation.id)
        return operation
    
    async def poll(self, operation_id: str) -> BulkOperation:
        """Fetch the status of a bulk operation by id"""
        data = await self.client.graphql(queries.BULK_OPERATION_BY_ID, {"id": operation_id})
        payload = data.get("node")
        if not payload:
            raise TerminalUpstreamError(f"Bulk operation {operation_id} not found")
        operation = BulkOperation.from_payload(payload)
        self.operation = operation
        self._transition(operation.status)
        BULK_OPERATION_POLLS.labels(status=operation.status.value).inc()
        return operation
    
    async def wait_for_completion(
        self,
        operation_id: str,
        budget: Optional["Budget"] = None,
    ) -> BulkOperation:
        """
        Poll until the operation reaches a terminal state.
        
        Raises:
            BulkOperationFailedError: FAILED, CANCELLED or EXPIRED
            PollTimeoutError: Still running after max_poll_attempts
            BudgetExceededError: The invocation budget ran out first
        """
        for attempt in range(1, self.max_poll_attempts + 1):
            operation = await self.poll(operation_id)
            logger.info(
                "Bulk operation status",
                shop=self.client.shop,
                operation_id=operation_id,
                status=operation.status.value,
                object_count=operation.object_count,
                attempt=attempt,
            )
            
            if operation.status == BulkOperationStatus.COMPLETED:
                BULK_OPERATIONS_FINISHED.labels(status=operation.status.value).inc()
                return operation
            if operation.status.is_terminal:
                BULK_OPERATIONS_FINISHED.labels(status=operation.status.value).inc()
                raise BulkOperationFailedError(operation.status.value, operation.error_code)
            
            if attempt == self.max_poll_attempts:
                break
            if budget is not None and budget.remaining() < self.poll_interval:
                raise BudgetExceededError(
                    f"Invocation budget exhausted while bulk operation {operation.status.value}"
                )
            await asyncio.sleep(self.poll_interval)
        
        raise PollTimeoutError(self.max_poll_attempts)
    
    async def run_export(self, query: str, budget: Optional["Budget"] = None) -> Optional[str]:
        """
        Run a bulk export to completion.
        
        A conflict on submit means another operation took the shop's slot
        in the meantime; the slot is freed again and the query resubmitted,
        up to ``max_submits`` submissions.
        
        Returns:
            Result file URL, or None when the export matched no objects
        """
        operation = None
        for attempt in range(1, self.max_submits + 1):
            await self.ensure_idle(budget)
            try:
                operation = await self.submit(query)
                break
            except BulkOperationConflictError as e:
                logger.info(
                    "Bulk operation conflict, freeing the slot and resubmitting",
                    shop=self.client.shop,
                    attempt=attempt,
                    error=str(e),
                )
        if operation is None:
            raise TerminalUpstreamError(
                f"Bulk operation slot still busy after {self.max_submits} submissions"
            )
        
        finished = await self.wait_for_completion(operation.id, budget)
        if not finished.url:
            logger.info("Bulk operation completed without results", shop=self.client.shop)
            return None
        
        logger.info(
            "Bulk operation completed",
            shop=self.client.shop,
            object_count=finished.object_count,
        )
        return finished.url
    
    async def iter_records(self, url: str) -> AsyncIterator[Dict[str, Any]]:
        """Stream the result file one decoded record at a time"""
        line_number = 0
        async for line in self.client.stream_lines(url):
            line = line.strip()
            if not line:
                continue
            line_number += 1
            yield decode_line(line, line_number)
