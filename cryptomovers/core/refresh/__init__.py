"""Cache refresh state machine and its background scheduler."""

from .engine import Action, CacheSnapshot, RefreshEngine, ServeResult, decide, epoch_ms
from .policy import FetchMode, RefreshPolicy, SourceTag
from .scheduler import BackgroundScheduler, SchedulerClosed

__all__ = [
    "Action",
    "BackgroundScheduler",
    "CacheSnapshot",
    "FetchMode",
    "RefreshEngine",
    "RefreshPolicy",
    "SchedulerClosed",
    "ServeResult",
    "SourceTag",
    "decide",
    "epoch_ms",
]
