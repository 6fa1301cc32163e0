"""Durable step runtime backed by SQLite.

Functions are triggered by persisted events and executed as runs made of
named steps. Every completed step is memoized, so a run that is re-entered
after a suspension or a process crash replays its handler and skips the
work it already did. Waits on events, sleeps and polling ticks are stored
as rows rather than parked threads: the run returns control to the worker
and is re-queued when the event arrives or the timer fires.
"""

from proposal_pipeline.runtime.engine import (
    DurableRuntime,
    FunctionSpec,
    RunCancelled,
    RunInterrupted,
    RunSuspended,
    RunTimedOutError,
    StepContext,
    StepFailedError,
)
from proposal_pipeline.runtime.models import RunStatus, RunView, RuntimeEventView, WaitKind
from proposal_pipeline.runtime.repository import RuntimeRepository

__all__ = [
    "DurableRuntime",
    "FunctionSpec",
    "RunCancelled",
    "RunInterrupted",
    "RunStatus",
    "RunSuspended",
    "RunTimedOutError",
    "RunView",
    "RuntimeEventView",
    "RuntimeRepository",
    "StepContext",
    "StepFailedError",
    "WaitKind",
]
