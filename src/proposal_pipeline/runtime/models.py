"""Domain models for the durable step runtime."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class RunStatus(str, Enum):
    """Lifecycle states of one durable run."""

    QUEUED = "queued"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.TIMED_OUT, RunStatus.CANCELLED},
)


class StepStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class WaitKind(str, Enum):
    """What a parked run is waiting on."""

    EVENT = "event"
    SLEEP = "sleep"
    POLL = "poll"


class WaitStatus(str, Enum):
    PENDING = "pending"
    MATCHED = "matched"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class RuntimeEventView:
    """Persisted event as seen by handlers and dispatch."""

    event_id: str
    name: str
    job_id: str | None
    payload: dict[str, Any]
    created_at: datetime
    dispatched_at: datetime | None = None
    seq: int = 0


@dataclass(slots=True)
class RunView:
    """Readable run row."""

    run_id: str
    function_id: str
    job_id: str | None
    event_id: str
    status: RunStatus
    cancel_requested: bool
    executions: int
    deadline_at: datetime | None
    heartbeat_at: datetime | None
    result: Any
    error: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class StepRecord:
    """Memoized outcome of one named step."""

    step_name: str
    status: StepStatus
    value: Any = None
    attempts: int = 0
    error: str | None = None


@dataclass(slots=True)
class WaitView:
    """Persisted continuation: a run parked on an event or a timer."""

    wait_id: int
    run_id: str
    step_name: str
    kind: WaitKind
    event_name: str | None
    job_id: str | None
    expires_at: datetime
    status: WaitStatus
    match: dict[str, Any] = field(default_factory=dict)

    def matches(self, event: RuntimeEventView) -> bool:
        """Subset match of the persisted correlation fields against the payload."""

        if self.kind != WaitKind.EVENT or event.name != self.event_name:
            return False
        return all(
            key in event.payload and event.payload[key] == expected
            for key, expected in self.match.items()
        )
