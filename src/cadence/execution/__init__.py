"""Execution support: bounded worker pool and advisory cancellation."""

from .cancellation import Cancelled, CancellationToken, Deadline
from .worker import PoolClosed, WorkerPool

__all__ = ["Cancelled", "CancellationToken", "Deadline", "PoolClosed", "WorkerPool"]
