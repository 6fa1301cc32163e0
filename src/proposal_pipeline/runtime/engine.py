"""Durable step runtime: memoized steps, persisted waits, cancellation and schedules."""

from __future__ import annotations

import json
import logging
import random
import signal
import time
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from croniter import croniter

from proposal_pipeline.runtime.models import (
    RunStatus,
    RunView,
    RuntimeEventView,
    StepRecord,
    StepStatus,
    WaitKind,
    WaitStatus,
    WaitView,
)
from proposal_pipeline.runtime.repository import RuntimeRepository
from proposal_pipeline.storage.common import utc_now

logger = logging.getLogger(__name__)

Handler = Callable[["StepContext", RuntimeEventView], Any]
CancelHook = Callable[[str, dict[str, Any]], None]


class StepFailedError(RuntimeError):
    """A step exhausted its retries."""

    def __init__(self, step_name: str, message: str) -> None:
        super().__init__(f"Step {step_name} failed: {message}")
        self.step_name = step_name
        self.message = message


class RunTimedOutError(RuntimeError):
    """The run passed its overall finish deadline."""


class RunInterrupted(BaseException):  # noqa: N818
    """Control-flow signal that unwinds a handler without failing it."""


class RunSuspended(RunInterrupted):
    """The run parked on a persisted wait."""

    def __init__(self, step_name: str) -> None:
        super().__init__(step_name)
        self.step_name = step_name


class RunCancelled(RunInterrupted):
    """A job-scoped cancel event was observed between steps."""


@dataclass(slots=True)
class FunctionSpec:
    """Registered durable function triggered by one event name."""

    function_id: str
    trigger: str
    handler: Handler
    cancel_on: str | None = None
    timeout: timedelta | None = None
    concurrency: int | None = None
    on_cancel: CancelHook | None = None


@dataclass(slots=True)
class ScheduleSpec:
    name: str
    cron: str
    fn: Callable[[datetime], Any]
    next_fire_at: datetime


@dataclass(slots=True)
class RuntimeCycleSummary:
    """Counters for one dispatch/tick/execute pass."""

    dispatched: int = 0
    woken: int = 0
    executed: int = 0

    @property
    def changed(self) -> int:
        return self.dispatched + self.woken + self.executed


class StepContext:
    """Handle passed to function handlers to run durable primitives."""

    def __init__(
        self,
        *,
        runtime: DurableRuntime,
        run: RunView,
        event: RuntimeEventView,
        steps: dict[str, StepRecord],
    ) -> None:
        self._runtime = runtime
        self._run = run
        self._steps = steps
        self.event = event

    @property
    def run_id(self) -> str:
        return self._run.run_id

    @property
    def job_id(self) -> str | None:
        return self._run.job_id

    @property
    def attempt(self) -> int:
        """How many times this run has been (re)started."""

        return self._run.executions

    def run(self, step_name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Execute ``fn`` once per run and return its memoized JSON value."""

        record = self._steps.get(step_name)
        if record is not None:
            if record.status == StepStatus.FAILED:
                raise StepFailedError(step_name, record.error or "unknown error")
            return record.value
        self._checkpoint()
        record = self._runtime._invoke_step(  # noqa: SLF001
            run_id=self.run_id,
            step_name=step_name,
            fn=fn,
            args=args,
            kwargs=kwargs,
        )
        self._steps[step_name] = record
        if record.status == StepStatus.FAILED:
            raise StepFailedError(step_name, record.error or "unknown error")
        return record.value

    def send_event(self, step_name: str, name: str, payload: dict[str, Any]) -> str:
        return self.run(step_name, self._runtime.send_event, name, payload)

    def wait_for_event(
        self,
        step_name: str,
        event_name: str,
        *,
        match: dict[str, Any],
        timeout: timedelta,
        since_seq: int | None = None,
    ) -> dict[str, Any] | None:
        """Park until a matching event arrives; ``None`` once ``timeout`` elapses.

        Arming also looks back over events raised after ``since_seq`` (default:
        this run's trigger), so a reply that arrived while the run was down
        between sending a request and arming this wait is still delivered.
        Events already consumed by another wait of the same run are skipped.
        """

        if step_name in self._steps:
            return self._steps[step_name].value
        self._checkpoint()
        wait = self._runtime.repository.arm_wait(
            run_id=self.run_id,
            step_name=step_name,
            kind=WaitKind.EVENT,
            event_name=event_name,
            match=match,
            expires_at=self._runtime.clock() + timeout,
        )
        missed = self._runtime._deliver_missed_event(  # noqa: SLF001
            wait,
            after_seq=self.event.seq if since_seq is None else since_seq,
        )
        if missed is not None:
            self._steps[step_name] = StepRecord(
                step_name=step_name,
                status=StepStatus.COMPLETED,
                value=missed.payload,
            )
            return missed.payload
        raise RunSuspended(step_name)

    def event_cursor(self, step_name: str) -> int:
        """Memoize the newest event sequence number, for a later ``since_seq``."""

        return self.run(step_name, self._runtime.repository.latest_event_seq)

    def cancel_job_runs(self, step_name: str, function_id: str) -> int:
        """Cancel this job's other runs of ``function_id``; running ones are flagged."""

        def _cancel() -> int:
            if self.job_id is None:
                return 0
            cancelled, flagged = self._runtime.repository.cancel_runs(
                function_id=function_id,
                job_id=self.job_id,
            )
            for run in cancelled:
                logger.info("Run %s of %s released by %s", run.run_id, function_id, self.run_id)
            return len(cancelled) + len(flagged)

        return self.run(step_name, _cancel)

    def sleep(self, step_name: str, duration: timedelta) -> None:
        if step_name in self._steps:
            return
        self._checkpoint()
        self._runtime.repository.arm_wait(
            run_id=self.run_id,
            step_name=step_name,
            kind=WaitKind.SLEEP,
            expires_at=self._runtime.clock() + duration,
        )
        raise RunSuspended(step_name)

    def poll(
        self,
        step_name: str,
        check: Callable[[], tuple[Any, bool]],
        *,
        interval: timedelta,
        timeout: timedelta,
    ) -> tuple[Any, bool]:
        """Durably re-run ``check`` every ``interval`` until it reports done.

        ``check`` returns ``(value, done)`` and reads live state, so it is not
        memoized between ticks. The final outcome is memoized as
        ``(value, converged)``; ``converged`` is false when ``timeout`` hit first.
        """

        record = self._steps.get(step_name)
        if record is not None:
            return record.value["value"], bool(record.value["converged"])
        started_raw = self.run(
            f"{step_name}:started",
            lambda: self._runtime.clock().isoformat(),
        )
        started_at = datetime.fromisoformat(started_raw)
        self._checkpoint()
        value, done = check()
        timed_out = self._runtime.clock() >= started_at + timeout
        if done or timed_out:
            outcome = self.run(
                step_name,
                lambda: {"value": value, "converged": bool(done)},
            )
            return outcome["value"], bool(outcome["converged"])
        self._runtime.repository.arm_wait(
            run_id=self.run_id,
            step_name=f"{step_name}:tick",
            kind=WaitKind.POLL,
            expires_at=min(self._runtime.clock() + interval, started_at + timeout),
        )
        raise RunSuspended(step_name)

    def _checkpoint(self) -> None:
        if self._runtime.repository.is_cancel_requested(self.run_id):
            raise RunCancelled(self.run_id)
        deadline = self._run.deadline_at
        if deadline is not None and self._runtime.clock() >= deadline:
            raise RunTimedOutError(
                f"Run {self.run_id} exceeded its deadline of {deadline.isoformat()}",
            )


class DurableRuntime:
    """Executes registered functions as resumable, step-memoized runs."""

    def __init__(  # noqa: PLR0913
        self,
        repository: RuntimeRepository,
        *,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        step_retries: int = 2,
        retry_base_seconds: float = 1.0,
        retry_max_seconds: float = 30.0,
        max_workers: int = 4,
        stale_run_seconds: int = 1800,
        poll_interval_seconds: float = 2.0,
    ) -> None:
        self.repository = repository
        self.clock = clock
        self.sleep = sleep
        self.step_retries = step_retries
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.max_workers = max_workers
        self.stale_run_seconds = stale_run_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._functions: dict[str, FunctionSpec] = {}
        self._schedules: dict[str, ScheduleSpec] = {}
        self._random = random.Random()  # noqa: S311
        self._stop_requested = False

    # -- registration ---------------------------------------------------------

    def register(self, spec: FunctionSpec) -> FunctionSpec:
        if spec.function_id in self._functions:
            raise ValueError(f"Function already registered: {spec.function_id}")
        if spec.concurrency is not None and spec.concurrency < 1:
            raise ValueError(f"Concurrency must be >= 1 for {spec.function_id}")
        self._functions[spec.function_id] = spec
        return spec

    def function(  # noqa: PLR0913
        self,
        function_id: str,
        *,
        trigger: str,
        cancel_on: str | None = None,
        timeout: timedelta | None = None,
        concurrency: int | None = None,
        on_cancel: CancelHook | None = None,
    ) -> Callable[[Handler], Handler]:
        """Decorator form of :meth:`register`."""

        def decorator(handler: Handler) -> Handler:
            self.register(
                FunctionSpec(
                    function_id=function_id,
                    trigger=trigger,
                    handler=handler,
                    cancel_on=cancel_on,
                    timeout=timeout,
                    concurrency=concurrency,
                    on_cancel=on_cancel,
                ),
            )
            return handler

        return decorator

    def on_schedule(self, name: str, cron: str, fn: Callable[[datetime], Any]) -> None:
        """Invoke ``fn(now)`` at every fire time of ``cron``."""

        if not croniter.is_valid(cron):
            raise ValueError(f"Invalid cron expression for {name}: {cron!r}")
        self._schedules[name] = ScheduleSpec(
            name=name,
            cron=cron,
            fn=fn,
            next_fire_at=croniter(cron, self.clock()).get_next(datetime),
        )

    @property
    def functions(self) -> dict[str, FunctionSpec]:
        return dict(self._functions)

    # -- events ---------------------------------------------------------------

    def send_event(self, name: str, payload: dict[str, Any]) -> str:
        event = self.repository.add_event(name=name, payload=payload)
        logger.debug("Event %s queued for job %s", name, event.job_id)
        return event.event_id

    def dispatch_pending(self) -> int:
        """Deliver queued events: cancellations, then waits, then new runs."""

        events = self.repository.pending_events()
        for event in events:
            self._dispatch_event(event)
            self.repository.mark_event_dispatched(event.event_id)
        return len(events)

    def _dispatch_event(self, event: RuntimeEventView) -> None:
        for spec in self._functions.values():
            if spec.cancel_on == event.name and event.job_id is not None:
                cancelled, flagged = self.repository.cancel_runs(
                    function_id=spec.function_id,
                    job_id=event.job_id,
                )
                for run in cancelled:
                    logger.info("Cancelled run %s of %s", run.run_id, spec.function_id)
                    self._call_on_cancel(spec, run.job_id, event.payload)
                for run in flagged:
                    logger.info("Cancel requested for running run %s", run.run_id)

        for wait in self.repository.pending_event_waits(
            event_name=event.name,
            job_id=event.job_id,
        ):
            if wait.matches(event):
                self.repository.resolve_wait(wait=wait, status=WaitStatus.MATCHED, event=event)

        for spec in self._functions.values():
            if spec.trigger != event.name:
                continue
            if self._cancelled_before(spec, event):
                logger.info(
                    "Skipping %s for job %s: job was cancelled",
                    spec.function_id,
                    event.job_id,
                )
                continue
            deadline = self.clock() + spec.timeout if spec.timeout is not None else None
            run = self.repository.create_run(
                function_id=spec.function_id,
                event=event,
                deadline_at=deadline,
            )
            logger.debug("Queued run %s of %s", run.run_id, spec.function_id)

    def _deliver_missed_event(self, wait: WaitView, *, after_seq: int) -> RuntimeEventView | None:
        if wait.event_name is None:
            return None
        for event in self.repository.events_since(
            name=wait.event_name,
            after_seq=after_seq,
            job_id=wait.job_id,
            run_id=wait.run_id,
        ):
            if not wait.matches(event):
                continue
            if self.repository.resolve_wait(wait=wait, status=WaitStatus.MATCHED, event=event):
                logger.info(
                    "Run %s picked up %s raised before %s was armed",
                    wait.run_id,
                    event.name,
                    wait.step_name,
                )
                return event
            return None
        return None

    def _cancelled_before(self, spec: FunctionSpec, event: RuntimeEventView) -> bool:
        if spec.cancel_on is None or event.job_id is None:
            return False
        return any(
            cancel.created_at <= event.created_at
            for cancel in self.repository.list_events(name=spec.cancel_on, job_id=event.job_id)
        )

    # -- timers ---------------------------------------------------------------

    def tick(self) -> int:
        """Requeue stale runs and expire waits, then wake overdue runs and fire schedules."""

        woken = self._recover_stale_runs()
        for wait in self.repository.expired_waits():
            if self.repository.resolve_wait(wait=wait, status=WaitStatus.EXPIRED):
                woken += 1
        woken += self.repository.wake_runs_past_deadline()
        woken += self.repository.wake_orphaned_runs()
        return woken + self._fire_schedules()

    def _fire_schedules(self) -> int:
        now = self.clock()
        fired = 0
        for schedule in self._schedules.values():
            if now < schedule.next_fire_at:
                continue
            fired += 1
            try:
                schedule.fn(now)
            except Exception:
                logger.exception("Scheduled function %s failed", schedule.name)
            schedule.next_fire_at = croniter(schedule.cron, now).get_next(datetime)
        return fired

    # -- execution ------------------------------------------------------------

    def execute_ready(self) -> int:
        """Execute queued runs, honoring per-function concurrency caps."""

        selected: list[RunView] = []
        running: dict[str, int] = {}
        for run in self.repository.list_runs(status=RunStatus.QUEUED):
            spec = self._functions.get(run.function_id)
            if spec is None:
                logger.warning("No handler registered for %s", run.function_id)
                continue
            if spec.concurrency is not None:
                if spec.function_id not in running:
                    running[spec.function_id] = self.repository.count_running(spec.function_id)
                if running[spec.function_id] >= spec.concurrency:
                    continue
                running[spec.function_id] += 1
            selected.append(run)

        if not selected:
            return 0
        if self.max_workers <= 1 or len(selected) == 1:
            for run in selected:
                self._execute(run)
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                list(pool.map(self._execute, selected))
        return len(selected)

    def _execute(self, queued: RunView) -> None:
        run = self.repository.claim_run(queued.run_id)
        if run is None:
            return
        spec = self._functions[run.function_id]
        event = self.repository.get_event(run.event_id)
        if event is None:
            self.repository.finish_run(
                run.run_id,
                status=RunStatus.FAILED,
                error=f"Trigger event {run.event_id} not found",
            )
            return
        context = StepContext(
            runtime=self,
            run=run,
            event=event,
            steps=self.repository.load_steps(run.run_id),
        )
        try:
            result = spec.handler(context, event)
        except RunSuspended as suspended:
            self.repository.suspend_run(run.run_id)
            logger.debug("Run %s parked on %s", run.run_id, suspended.step_name)
            if self.repository.is_cancel_requested(run.run_id) and run.job_id is not None:
                cancelled, _ = self.repository.cancel_runs(
                    function_id=spec.function_id,
                    job_id=run.job_id,
                )
                for cancelled_run in cancelled:
                    self._call_on_cancel(spec, cancelled_run.job_id, event.payload)
            return
        except RunCancelled:
            self.repository.finish_run(run.run_id, status=RunStatus.CANCELLED)
            self.repository.cancel_waits(run.run_id)
            logger.info("Run %s of %s cancelled", run.run_id, spec.function_id)
            self._call_on_cancel(spec, run.job_id, event.payload)
            return
        except RunTimedOutError as error:
            self.repository.finish_run(run.run_id, status=RunStatus.TIMED_OUT, error=str(error))
            self.repository.cancel_waits(run.run_id)
            logger.error("Run %s of %s timed out", run.run_id, spec.function_id)
            return
        except Exception as error:  # noqa: BLE001
            self.repository.finish_run(run.run_id, status=RunStatus.FAILED, error=str(error))
            self.repository.cancel_waits(run.run_id)
            logger.error("Run %s of %s failed: %s", run.run_id, spec.function_id, error)
            return
        self.repository.finish_run(run.run_id, status=RunStatus.COMPLETED, result=result)
        logger.debug("Run %s of %s completed", run.run_id, spec.function_id)

    def _invoke_step(
        self,
        *,
        run_id: str,
        step_name: str,
        fn: Callable[..., Any],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> StepRecord:
        attempts = 0
        while True:
            attempts += 1
            try:
                value = fn(*args, **kwargs)
            except Exception as error:  # noqa: BLE001
                retryable = bool(getattr(error, "transient", True))
                if not retryable or attempts > self.step_retries:
                    record = StepRecord(
                        step_name=step_name,
                        status=StepStatus.FAILED,
                        attempts=attempts,
                        error=str(error) or type(error).__name__,
                    )
                    self.repository.save_step(run_id=run_id, record=record)
                    logger.error(
                        "Step %s of run %s failed after %d attempt(s): %s",
                        step_name,
                        run_id,
                        attempts,
                        error,
                    )
                    return record
                delay = self._compute_retry_delay(retry_number=attempts)
                logger.warning(
                    "Step %s of run %s failed (attempt %d), retrying in %.1fs: %s",
                    step_name,
                    run_id,
                    attempts,
                    delay,
                    error,
                )
                self.sleep(delay)
                continue
            record = StepRecord(
                step_name=step_name,
                status=StepStatus.COMPLETED,
                value=json.loads(json.dumps(value, ensure_ascii=False)),
                attempts=attempts,
            )
            self.repository.save_step(run_id=run_id, record=record)
            self.repository.touch_run(run_id)
            return record

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)

    def _call_on_cancel(
        self,
        spec: FunctionSpec,
        job_id: str | None,
        payload: dict[str, Any],
    ) -> None:
        if spec.on_cancel is None or job_id is None:
            return
        try:
            spec.on_cancel(job_id, payload)
        except Exception:
            logger.exception("Cancel hook of %s failed for job %s", spec.function_id, job_id)

    # -- loops ----------------------------------------------------------------

    def run_cycle(self) -> RuntimeCycleSummary:
        summary = RuntimeCycleSummary()
        summary.dispatched = self.dispatch_pending()
        summary.woken = self.tick()
        summary.executed = self.execute_ready()
        return summary

    def run_until_idle(self, *, max_cycles: int = 1000) -> int:
        """Cycle until nothing changes; returns the number of cycles run."""

        for cycle in range(1, max_cycles + 1):
            if self.run_cycle().changed == 0:
                return cycle
        logger.warning("Runtime still busy after %d cycles", max_cycles)
        return max_cycles

    def recover_interrupted_runs(self, *, stale_after: timedelta | None = None) -> int:
        """Requeue runs a dead process left running, then orphaned waiting runs.

        The worker loop also does this on every tick, so a run whose heartbeat
        goes stale after start-up is still picked up.
        """

        return self._recover_stale_runs(stale_after) + self.repository.wake_orphaned_runs()

    def _recover_stale_runs(self, stale_after: timedelta | None = None) -> int:
        if stale_after is None:
            if self.stale_run_seconds <= 0:
                return 0
            stale_after = timedelta(seconds=self.stale_run_seconds)
        recovered = self.repository.recover_stale_running_runs(stale_after=stale_after)
        if recovered:
            logger.warning("Recovered %d interrupted run(s)", recovered)
        return recovered

    def run_forever(self) -> None:
        """Worker loop; SIGINT/SIGTERM stop it after the current cycle."""

        self._stop_requested = False
        self.recover_interrupted_runs()
        with self._signal_handlers():
            while not self._stop_requested:
                try:
                    changed = self.run_cycle().changed
                except Exception:
                    logger.exception("Runtime cycle failed")
                    changed = 0
                if changed == 0:
                    self._sleep_with_stop(self.poll_interval_seconds)
        logger.info("Runtime worker stopped")

    def request_stop(self) -> None:
        self._stop_requested = True

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s, stopping after current cycle", name)
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            yield
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
        finally:
            try:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
            except ValueError:
                pass

