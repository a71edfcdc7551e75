"""Error hierarchy for the job queue layer."""
from __future__ import annotations


class QueueError(Exception):
    """Base exception for queue, worker, and broker operations."""


class BrokerError(QueueError):
    """The broker backend rejected or could not complete an operation."""


class QueueTypeMismatchError(QueueError):
    """A queue name was re-registered with a different payload type."""

    def __init__(self, name: str, existing: type, requested: type):
        self.name = name
        self.existing = existing
        self.requested = requested
        super().__init__(
            f"Queue '{name}' is bound to {existing.__name__}, "
            f"cannot re-register it with {requested.__name__}"
        )


class WorkerStateError(QueueError):
    """A worker was asked to do something its current state does not allow."""
