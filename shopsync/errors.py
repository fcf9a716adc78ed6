"""
Error Taxonomy

Every failure the pipeline distinguishes has its own exception type so that
call sites can decide between retrying, cancel-and-retry, re-queueing and
recording a failed job.
"""

from typing import Optional


class ShopSyncError(Exception):
    """Base class for all pipeline errors"""


class ConfigurationError(ShopSyncError):
    """Missing credentials, unknown object type or an invalid dependency graph"""


# =============================================================================
# UPSTREAM
# =============================================================================

class TransientUpstreamError(ShopSyncError):
    """Rate limiting, 5xx or transport failure. Retried at the call site."""
    
    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class TerminalUpstreamError(ShopSyncError):
    """Upstream rejected the request and retrying will not help"""


class BulkOperationConflictError(ShopSyncError):
    """Another bulk operation is already active for the shop"""
    
    def __init__(self, message: str, operation_id: Optional[str] = None):
        super().__init__(message)
        self.operation_id = operation_id


class BulkOperationFailedError(TerminalUpstreamError):
    """Bulk operation ended FAILED, CANCELLED or EXPIRED"""
    
    def __init__(self, status: str, error_code: Optional[str] = None):
        message = f"Bulk operation {status}"
        if error_code:
            message = f"{message}: {error_code}"
        super().__init__(message)
        self.status = status
        self.error_code = error_code


class MalformedRecordError(TerminalUpstreamError):
    """A result line could not be decoded or lacks required fields"""
    
    def __init__(self, message: str, line_number: Optional[int] = None):
        if line_number is not None:
            message = f"line {line_number}: {message}"
        super().__init__(message)
        self.line_number = line_number


# =============================================================================
# BUDGETS
# =============================================================================

class BudgetExceededError(ShopSyncError):
    """Work would overrun the invocation's wall-clock budget"""


class PollTimeoutError(BudgetExceededError):
    """Bulk operation did not finish within the maximum poll attempts"""
    
    def __init__(self, attempts: int):
        super().__init__(f"Bulk operation timed out after {attempts} polls")
        self.attempts = attempts
