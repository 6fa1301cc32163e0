from __future__ import annotations

from datetime import timedelta

import allure
import pytest
from conftest import SimulatedCrash

from proposal_pipeline.generation import GenerationError
from proposal_pipeline.runtime import FunctionSpec, RunStatus, StepFailedError

pytestmark = [
    allure.epic("Durable Runtime"),
    allure.feature("Steps"),
]


class _Counter:
    def __init__(self, value: object = None) -> None:
        self.calls = 0
        self.value = value

    def __call__(self) -> object:
        self.calls += 1
        return self.value


def test_completed_steps_are_not_repeated_after_a_sleep(runtime, store, clock) -> None:
    first = _Counter("draft")
    second = _Counter("scored")

    @runtime.function("writer", trigger="write.requested")
    def _writer(ctx, event):
        drafted = ctx.run("draft", first)
        ctx.sleep("cool-down", timedelta(minutes=5))
        scored = ctx.run("score", second)
        return {"draft": drafted, "score": scored, "job_id": event.payload["job_id"]}

    runtime.send_event("write.requested", {"job_id": "job-1"})
    runtime.run_until_idle()

    [run] = store.list_runs(function_id="writer")
    assert run.status == RunStatus.WAITING
    assert (first.calls, second.calls) == (1, 0)

    clock.advance(minutes=6)
    runtime.run_until_idle()

    [run] = store.list_runs(function_id="writer")
    assert run.status == RunStatus.COMPLETED
    assert run.executions == 2
    assert run.result == {"draft": "draft", "score": "scored", "job_id": "job-1"}
    assert (first.calls, second.calls) == (1, 1)
    assert set(store.load_steps(run.run_id)) == {"draft", "cool-down", "score"}


def test_transient_step_failures_are_retried_with_backoff(runtime, store, sleeps) -> None:
    attempts = []

    def flaky() -> str:
        attempts.append(len(attempts) + 1)
        if len(attempts) < 3:
            raise ConnectionError("connection reset")
        return "ok"

    @runtime.function("flaky", trigger="flaky.requested")
    def _flaky(ctx, _event):
        return ctx.run("call", flaky)

    runtime.send_event("flaky.requested", {"job_id": "job-1"})
    runtime.run_until_idle()

    [run] = store.list_runs(function_id="flaky")
    assert run.status == RunStatus.COMPLETED
    assert run.result == "ok"
    assert attempts == [1, 2, 3]
    assert len(sleeps) == 2
    assert 0 <= sleeps[0] <= 1.0
    assert 0 <= sleeps[1] <= 2.0
    assert store.load_steps(run.run_id)["call"].attempts == 3


def test_non_transient_failure_skips_retries_and_fails_the_run(runtime, store, sleeps) -> None:
    def broken() -> None:
        raise GenerationError("model not found", transient=False)

    @runtime.function("broken", trigger="broken.requested")
    def _broken(ctx, _event):
        return ctx.run("call", broken)

    runtime.send_event("broken.requested", {"job_id": "job-1"})
    runtime.run_until_idle()

    [run] = store.list_runs(function_id="broken")
    assert run.status == RunStatus.FAILED
    assert run.error == "Step call failed: model not found"
    assert sleeps == []
    record = store.load_steps(run.run_id)["call"]
    assert record.attempts == 1
    assert record.error == "model not found"


def test_handler_can_compensate_for_an_exhausted_step(runtime, store, sleeps) -> None:
    def always_down() -> None:
        raise TimeoutError("upstream timeout")

    @runtime.function("compensating", trigger="work.requested")
    def _compensating(ctx, _event):
        try:
            ctx.run("call", always_down)
        except StepFailedError as error:
            return ctx.run("fallback", lambda: {"failed_step": error.step_name})
        return None

    runtime.send_event("work.requested", {"job_id": "job-1"})
    runtime.run_until_idle()

    [run] = store.list_runs(function_id="compensating")
    assert run.status == RunStatus.COMPLETED
    assert run.result == {"failed_step": "call"}
    assert len(sleeps) == 2
    assert store.load_steps(run.run_id)["call"].attempts == 3


def test_cancel_flag_is_observed_at_the_next_step_boundary(runtime, store) -> None:
    cancelled = []
    second = _Counter()

    def first() -> int:
        runtime.repository.cancel_runs(function_id="cancellable", job_id="job-1")
        return 1

    runtime.register(
        FunctionSpec(
            function_id="cancellable",
            trigger="work.requested",
            handler=lambda ctx, _event: (ctx.run("first", first), ctx.run("second", second)),
            cancel_on="work.cancelled",
            on_cancel=lambda job_id, payload: cancelled.append((job_id, payload)),
        ),
    )

    runtime.send_event("work.requested", {"job_id": "job-1"})
    runtime.run_until_idle()

    [run] = store.list_runs(function_id="cancellable")
    assert run.status == RunStatus.CANCELLED
    assert second.calls == 0
    assert cancelled == [("job-1", {"job_id": "job-1"})]


def test_run_past_its_deadline_times_out(runtime, store, clock) -> None:
    @runtime.function("bounded", trigger="work.requested", timeout=timedelta(minutes=10))
    def _bounded(ctx, _event):
        ctx.sleep("long-nap", timedelta(hours=1))
        return "woke up"

    runtime.send_event("work.requested", {"job_id": "job-1"})
    runtime.run_until_idle()
    clock.advance(minutes=11)
    runtime.run_until_idle()

    [run] = store.list_runs(function_id="bounded")
    assert run.status == RunStatus.TIMED_OUT
    assert run.error is not None
    assert "exceeded its deadline" in run.error
    assert [wait.status.value for wait in store.list_waits(run_id=run.run_id)] == ["cancelled"]


def test_concurrency_cap_limits_runs_per_pass(runtime, store) -> None:
    @runtime.function("capped", trigger="work.requested", concurrency=1)
    def _capped(ctx, event):
        return ctx.run("echo", lambda: event.payload["job_id"])

    runtime.send_event("work.requested", {"job_id": "job-1"})
    runtime.send_event("work.requested", {"job_id": "job-2"})

    assert runtime.dispatch_pending() == 2
    assert runtime.execute_ready() == 1
    statuses = sorted(run.status.value for run in store.list_runs(function_id="capped"))
    assert statuses == ["completed", "queued"]

    assert runtime.execute_ready() == 1
    assert runtime.execute_ready() == 0


def _noop(_ctx, _event) -> None:
    return None


def test_registration_rejects_duplicates_and_bad_settings(runtime) -> None:
    runtime.register(FunctionSpec(function_id="once", trigger="a", handler=_noop))

    with pytest.raises(ValueError, match="already registered"):
        runtime.register(FunctionSpec(function_id="once", trigger="b", handler=_noop))
    with pytest.raises(ValueError, match="Concurrency"):
        runtime.register(
            FunctionSpec(function_id="zero", trigger="a", handler=_noop, concurrency=0),
        )
    with pytest.raises(ValueError, match="Invalid cron"):
        runtime.on_schedule("broken", "every five minutes", lambda now: None)


def test_schedule_fires_on_cron_boundaries(runtime, clock) -> None:
    fired = []
    runtime.on_schedule("every-minute", "* * * * *", fired.append)

    runtime.tick()
    assert fired == []

    clock.advance(seconds=31)
    runtime.tick()
    runtime.tick()
    assert [moment.strftime("%H:%M:%S") for moment in fired] == ["09:01:01"]

    clock.advance(minutes=1)
    runtime.tick()
    assert len(fired) == 2


def test_failing_schedule_does_not_break_the_tick(runtime, clock) -> None:
    def explode(_now) -> None:
        raise RuntimeError("sweep crashed")

    runtime.on_schedule("explosive", "* * * * *", explode)
    clock.advance(minutes=1)

    assert runtime.tick() == 1


def test_worker_loop_stops_when_requested(runtime, store) -> None:
    @runtime.function("stopper", trigger="work.requested")
    def _stopper(ctx, _event):
        ctx.run("stop", runtime.request_stop)
        return "stopped"

    runtime.send_event("work.requested", {"job_id": "job-1"})
    runtime.run_forever()

    [run] = store.list_runs(function_id="stopper")
    assert run.status == RunStatus.COMPLETED


def test_run_left_running_by_a_crash_is_requeued_once_its_heartbeat_is_stale(
    runtime,
    store,
    clock,
) -> None:
    drafted = _Counter("draft")
    crashes = [SimulatedCrash()]

    def publish() -> str:
        if crashes:
            raise crashes.pop()
        return "published"

    @runtime.function("publisher", trigger="publish.requested")
    def _publisher(ctx, _event):
        return {"draft": ctx.run("draft", drafted), "publish": ctx.run("publish", publish)}

    runtime.send_event("publish.requested", {"job_id": "job-1"})
    with pytest.raises(SimulatedCrash):
        runtime.run_until_idle()
    [run] = store.list_runs(function_id="publisher")
    assert run.status == RunStatus.RUNNING

    clock.advance(seconds=60)
    runtime.run_until_idle()
    assert store.get_run(run.run_id).status == RunStatus.RUNNING

    clock.advance(minutes=30)
    runtime.run_until_idle()

    run = store.get_run(run.run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.result == {"draft": "draft", "publish": "published"}
    assert drafted.calls == 1
