"""
Job model and option types shared by the broker, queues, and workers.

Wire shape (what the broker stores, JSON-encoded):
  {
      "id":           broker-assigned id, or the caller's deduplication id,
      "queueName":    logical queue the job belongs to,
      "data":         JSON payload,
      "opts":         {"delay", "priority", "attempts", "backoff": {"type", "delay"}, "jobId"},
      "attemptsMade": delivery attempts so far (incremented by the broker on claim),
      "state":        waiting|delayed|active|completed|failed,
      "timestamp":    enqueue time (ms since epoch),
      "readyAt":      earliest time the job may be claimed (ms since epoch),
      ...
  }
"""
from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field, asdict, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar, Union

T = TypeVar("T")


def now_ms() -> int:
    return int(time.time() * 1000)


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class BackoffType(str, Enum):
    EXPONENTIAL = "exponential"
    FIXED = "fixed"


@dataclass(frozen=True)
class Backoff:
    type: BackoffType = BackoffType.EXPONENTIAL
    delay: int = 1000  # ms

    def delay_for(self, attempts_made: int) -> int:
        """Milliseconds to wait before redelivering after `attempts_made` attempts."""
        if self.type == BackoffType.FIXED:
            return self.delay
        return self.delay * (2 ** max(attempts_made - 1, 0))

    def to_dict(self) -> dict[str, Any]:
        return {"type": BackoffType(self.type).value, "delay": self.delay}

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> Optional[Backoff]:
        if not data:
            return None
        return cls(type=BackoffType(data.get("type", "exponential")), delay=int(data.get("delay", 0)))


@dataclass(frozen=True)
class QueueDefaults:
    """Default policy applied to every job unless the caller overrides it."""
    attempts: int = 3
    backoff: Backoff = field(default_factory=Backoff)
    remove_on_complete: int = 100
    remove_on_fail: int = 500

    @classmethod
    def from_config(cls, config) -> QueueDefaults:
        return cls(
            attempts=config.default_attempts,
            backoff=Backoff(type=BackoffType(config.backoff_type), delay=config.backoff_delay_ms),
            remove_on_complete=config.remove_on_complete,
            remove_on_fail=config.remove_on_fail,
        )


QUEUE_DEFAULTS = QueueDefaults()

# Highest priority number accepted; 0 is served first
MAX_PRIORITY = 2 ** 21


@dataclass(frozen=True)
class JobOptions:
    """Per-call overrides for a single enqueue."""
    delay: Optional[int] = None        # ms before the job becomes claimable
    priority: Optional[int] = None     # lower = higher priority, default 0
    attempts: Optional[int] = None     # override the queue's retry budget
    backoff: Optional[Backoff] = None  # override the queue's backoff policy
    job_id: Optional[str] = None       # caller id used for deduplication

    def resolve(self, defaults: QueueDefaults) -> ResolvedOptions:
        if self.priority is not None and not 0 <= self.priority <= MAX_PRIORITY:
            raise ValueError(f"priority must be between 0 and {MAX_PRIORITY}, got {self.priority}")
        return ResolvedOptions(
            delay=max(self.delay or 0, 0),
            priority=self.priority or 0,
            attempts=self.attempts if self.attempts is not None else defaults.attempts,
            backoff=self.backoff or defaults.backoff,
            job_id=self.job_id,
            remove_on_complete=defaults.remove_on_complete,
            remove_on_fail=defaults.remove_on_fail,
        )


@dataclass(frozen=True)
class ResolvedOptions:
    delay: int = 0
    priority: int = 0
    attempts: int = 3
    backoff: Backoff = field(default_factory=Backoff)
    job_id: Optional[str] = None
    remove_on_complete: int = 100
    remove_on_fail: int = 500

    def to_dict(self) -> dict[str, Any]:
        return {
            "delay": self.delay,
            "priority": self.priority,
            "attempts": self.attempts,
            "backoff": self.backoff.to_dict(),
            "jobId": self.job_id,
            "removeOnComplete": self.remove_on_complete,
            "removeOnFail": self.remove_on_fail,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResolvedOptions:
        return cls(
            delay=int(data.get("delay") or 0),
            priority=int(data.get("priority") or 0),
            attempts=int(data.get("attempts") or 1),
            backoff=Backoff.from_dict(data.get("backoff")) or Backoff(),
            job_id=data.get("jobId"),
            remove_on_complete=int(data.get("removeOnComplete", 100)),
            remove_on_fail=int(data.get("removeOnFail", 500)),
        )


@dataclass
class Job(Generic[T]):
    """A unit of work on a queue."""
    queue_name: str
    data: T
    opts: ResolvedOptions = field(default_factory=ResolvedOptions)
    id: str = ""
    attempts_made: int = 0
    state: JobState = JobState.WAITING
    timestamp: int = 0
    ready_at: int = 0
    processed_on: Optional[int] = None
    finished_on: Optional[int] = None
    failed_reason: str = ""
    return_value: Any = None

    def __post_init__(self):
        if not self.id:
            self.id = self.opts.job_id or f"job_{uuid.uuid4().hex[:12]}"
        if not self.timestamp:
            self.timestamp = now_ms()
        if not self.ready_at:
            self.ready_at = self.timestamp + self.opts.delay
            if self.opts.delay > 0:
                self.state = JobState.DELAYED

    @property
    def attempts_remaining(self) -> int:
        return max(self.opts.attempts - self.attempts_made, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "queueName": self.queue_name,
            "data": self.data,
            "opts": self.opts.to_dict(),
            "attemptsMade": self.attempts_made,
            "state": JobState(self.state).value,
            "timestamp": self.timestamp,
            "readyAt": self.ready_at,
            "processedOn": self.processed_on,
            "finishedOn": self.finished_on,
            "failedReason": self.failed_reason,
            "returnValue": self.return_value,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        return cls(
            queue_name=data["queueName"],
            data=data.get("data"),
            opts=ResolvedOptions.from_dict(data.get("opts") or {}),
            id=data["id"],
            attempts_made=int(data.get("attemptsMade", 0)),
            state=JobState(data.get("state", "waiting")),
            timestamp=int(data.get("timestamp") or now_ms()),
            ready_at=int(data.get("readyAt") or data.get("timestamp") or now_ms()),
            processed_on=data.get("processedOn"),
            finished_on=data.get("finishedOn"),
            failed_reason=data.get("failedReason") or "",
            return_value=data.get("returnValue"),
        )

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> Job:
        return cls.from_dict(json.loads(raw))

    def with_data(self, data: Any) -> Job:
        """Copy of this job carrying a decoded payload (used when handing jobs to handlers)."""
        return replace(self, data=data)


JobHandler = Callable[[Job[T]], Awaitable[Any]]
CompletedCallback = Callable[[Job[T], Any], Any]
FailedCallback = Callable[[Optional[Job[T]], BaseException], Any]


@dataclass
class QueueCounts:
    waiting: int = 0
    delayed: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)
