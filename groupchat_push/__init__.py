from .context import FanoutContext
from .errors import ErrorKind, FatalFailure, PushError, RetryableFailure
from .fanout import FanoutOrchestrator
from .schemas import AggregateReport, BatchResult, GroupMessage, Notification, RetryPolicy

__all__ = [
    "AggregateReport",
    "BatchResult",
    "ErrorKind",
    "FanoutContext",
    "FanoutOrchestrator",
    "FatalFailure",
    "GroupMessage",
    "Notification",
    "PushError",
    "RetryPolicy",
    "RetryableFailure",
]
