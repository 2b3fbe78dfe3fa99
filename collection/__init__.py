"""Data collection: scheduling, collector registry, and run recording."""

from collection.collector_factory import get_collector, list_collectors, register_collector
from collection.recorder import CollectionRecorder
from collection.scheduler import CollectionScheduler, compute_next_run, is_due

__all__ = [
    "CollectionRecorder",
    "CollectionScheduler",
    "compute_next_run",
    "get_collector",
    "is_due",
    "list_collectors",
    "register_collector",
]
