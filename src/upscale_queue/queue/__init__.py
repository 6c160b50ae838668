"""Durable job queue: models, storage, dispatch primitives and notifications.

``JobQueue`` and ``JobProcessor`` live in ``upscale_queue.queue.job_queue`` and
``upscale_queue.queue.processor``; they are not re-exported here because they
depend on the plugin registry, which itself imports the job models.
"""

from .backends import JobRepository
from .dispatch import ConcurrencyGate, WorkItemChannel
from .events import EventBroker, QueueStateEvent, Subscription
from .models import (
    Job,
    JobEvent,
    JobStatus,
    ProcessingKind,
    QueueStatistics,
    StateTransition,
)
from .sqlite_backend import SQLiteJobRepository

__all__ = [
    "JobRepository",
    "ConcurrencyGate",
    "WorkItemChannel",
    "EventBroker",
    "QueueStateEvent",
    "Subscription",
    "Job",
    "JobEvent",
    "JobStatus",
    "ProcessingKind",
    "QueueStatistics",
    "StateTransition",
    "SQLiteJobRepository",
]
