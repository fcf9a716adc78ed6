"""
Worker Contracts

A worker performs one invocation of a sync job. It returns a
``WorkerResult``; job status transitions are applied by the scheduler.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

from shopsync.database.models import SyncJob
from shopsync.errors import BudgetExceededError


class Budget:
    """Wall-clock budget of one worker invocation"""
    
    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self._deadline = clock() + seconds
    
    def remaining(self) -> float:
        return max(0.0, self._deadline - self._clock())
    
    def expired(self, margin: float = 0.0) -> bool:
        return self.remaining() <= margin
    
    def check(self, what: str) -> None:
        if self.expired():
            raise BudgetExceededError(f"Invocation budget of {self.seconds:.0f}s exceeded during {what}")


@dataclass
class WorkerResult:
    """Outcome of one worker invocation"""
    success: bool
    done: bool = True
    records_processed: int = 0
    cursor: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None
    
    @classmethod
    def completed(cls, records: int, message: Optional[str] = None) -> "WorkerResult":
        return cls(success=True, done=True, records_processed=records, message=message)
    
    @classmethod
    def partial(cls, cursor: Optional[str], records: int) -> "WorkerResult":
        return cls(success=True, done=False, records_processed=records, cursor=cursor)
    
    @classmethod
    def failed(cls, error: str) -> "WorkerResult":
        return cls(success=False, done=False, error=error)


class SyncWorker(ABC):
    """
    Base class for object-type workers.
    
    Subclasses set ``object_type`` and implement ``run``. Resumable workers
    may return partial results, and a budget overrun re-queues them instead
    of failing the job.
    """
    
    object_type: str = ""
    resumable: bool = False
    
    @abstractmethod
    async def run(self, job: SyncJob, budget: Budget) -> WorkerResult:
        """Run one invocation for a claimed job"""
        pass
