from __future__ import annotations

import allure
import pytest
from conftest import (
    ScriptedGenerator,
    approve,
    fatal_error,
    iterate,
    settle,
    transient_error,
)

from proposal_pipeline.config import PipelineSettings
from proposal_pipeline.pipeline import events
from proposal_pipeline.pipeline.models import (
    Decision,
    InvalidDecisionError,
    JobNotFoundError,
    JobStatus,
    UnitStatus,
)
from proposal_pipeline.pipeline.unit_review import unit_payload

pytestmark = [
    allure.epic("Proposal Pipeline"),
    allure.feature("Unit review"),
]

_INPUT = {"title": "Harbor Modernization", "requirements": ["24/7 support"]}
_SINGLE = PipelineSettings(units=("Technical",))


def _single_unit_job(make_app, **kwargs):
    app = make_app(pipeline=_SINGLE, **kwargs)
    job = app.service.create_job(_INPUT)
    app.service.request_generation(job.job_id)
    settle(app)
    return app, job.job_id


def test_unit_reaches_awaiting_approval_after_draft_and_score(make_app, generator) -> None:
    app, job_id = _single_unit_job(make_app)

    unit = app.jobs.require_unit(job_id, 1)
    assert unit.status == UnitStatus.AWAITING_APPROVAL
    assert unit.awaiting_approval
    assert unit.score == 90.0
    assert unit.content == "[draft unit=1] Write the 'Technical' section of the proposal."
    assert unit.compliance["score"] == 90.0
    assert "criteria" in unit.compliance
    assert generator.count("consult", 1) == 0
    assert app.jobs.require_job(job_id).status == JobStatus.REVIEW


def test_approval_records_the_final_score_and_progress(make_app) -> None:
    app, job_id = _single_unit_job(make_app)

    approve(app, job_id, 1, score=93.5)
    settle(app)

    job = app.jobs.require_job(job_id)
    unit = job.unit(1)
    assert unit.status == UnitStatus.APPROVED
    assert not unit.awaiting_approval
    assert unit.score == 93.5
    assert job.status == JobStatus.PROCESSING
    assert job.progress_percent == unit.progress_end == 80
    [decision] = app.jobs.list_decisions(job_id)
    assert decision.decision == Decision.APPROVED
    assert decision.final_score == 93.5


def test_low_score_triggers_consultation_and_rewrite_clears_insights(make_app) -> None:
    generator = ScriptedGenerator(unit_scores={1: [70.0, 88.0]})
    app, job_id = _single_unit_job(make_app, gen=generator)

    unit = app.jobs.require_unit(job_id, 1)
    assert generator.count("consult", 1) == 1
    assert unit.insights is not None
    assert unit.insights.startswith("[consult unit=1]")

    iterate(app, job_id, 1, iteration=1, feedback="quantify the uptime commitments")
    settle(app)

    unit = app.jobs.require_unit(job_id, 1)
    assert unit.iteration == 2
    assert unit.status == UnitStatus.AWAITING_APPROVAL
    assert unit.score == 88.0
    assert unit.insights is None
    assert generator.count("rewrite", 1) == 1
    assert generator.count("consult", 1) == 1


def test_consultation_failure_does_not_block_the_unit(make_app) -> None:
    generator = ScriptedGenerator(unit_scores={1: [55.0]})
    generator.fail_next("consult", fatal_error("consultant offline"), unit_id=1)
    app, job_id = _single_unit_job(make_app, gen=generator)

    unit = app.jobs.require_unit(job_id, 1)
    assert unit.status == UnitStatus.AWAITING_APPROVAL
    assert unit.insights is None


def test_iteration_ceiling_blocks_the_unit(make_app, generator) -> None:
    app, job_id = _single_unit_job(make_app)

    for iteration in range(1, 6):
        unit = app.jobs.require_unit(job_id, 1)
        assert unit.status == UnitStatus.AWAITING_APPROVAL
        assert unit.iteration == iteration
        iterate(app, job_id, 1, iteration=iteration, feedback=f"round {iteration}")
        settle(app)

    unit = app.jobs.require_unit(job_id, 1)
    assert unit.status == UnitStatus.BLOCKED
    assert unit.iteration == 5
    assert unit.insights == "Iteration limit of 5 reached"
    assert generator.count("rewrite", 1) == 4
    assert len(app.jobs.list_decisions(job_id)) == 5

    with pytest.raises(InvalidDecisionError, match="not awaiting approval"):
        iterate(app, job_id, 1, iteration=5, feedback="one more")


def test_transient_draft_failure_is_retried(make_app, generator, sleeps) -> None:
    generator.fail_next("draft", transient_error(), unit_id=1)
    app, job_id = _single_unit_job(make_app)

    assert generator.count("draft", 1) == 2
    assert len(sleeps) == 1
    assert app.jobs.require_unit(job_id, 1).status == UnitStatus.AWAITING_APPROVAL


def test_fatal_scoring_failure_blocks_the_unit(make_app, generator) -> None:
    generator.fail_next("score", fatal_error("scorer rejected the content"), unit_id=1)
    app, job_id = _single_unit_job(make_app)

    unit = app.jobs.require_unit(job_id, 1)
    assert unit.status == UnitStatus.BLOCKED
    assert unit.insights == "scorer rejected the content"
    assert generator.count("score", 1) == 1


def test_decision_timeout_blocks_the_unit(make_app, clock) -> None:
    app = make_app(
        pipeline=PipelineSettings(units=("Technical",), decision_timeout_seconds=7_200),
    )
    job = app.service.create_job(_INPUT)
    app.service.request_generation(job.job_id)
    settle(app)

    settle(app, clock, hours=2, seconds=1)

    unit = app.jobs.require_unit(job.job_id, 1)
    assert unit.status == UnitStatus.BLOCKED
    assert unit.insights == "No decision within 2 hours"
    assert app.jobs.list_decisions(job.job_id) == []


def test_duplicate_and_stale_decision_events_are_ignored(make_app) -> None:
    app, job_id = _single_unit_job(make_app)
    stale = {
        "job_id": job_id,
        "unit_id": 1,
        "iteration": 2,
        "decision": "approved",
        "final_score": 10.0,
    }
    app.runtime.send_event(events.UNIT_DECISION, stale)
    settle(app)
    assert app.jobs.require_unit(job_id, 1).status == UnitStatus.AWAITING_APPROVAL

    current = {**stale, "iteration": 1, "final_score": 91.0}
    app.runtime.send_event(events.UNIT_DECISION, current)
    app.runtime.send_event(events.UNIT_DECISION, {**current, "final_score": 12.0})
    settle(app)

    unit = app.jobs.require_unit(job_id, 1)
    assert unit.status == UnitStatus.APPROVED
    assert unit.score == 91.0
    assert len(app.jobs.list_decisions(job_id)) == 1


def test_regenerating_a_drafted_unit_is_skipped(make_app, generator) -> None:
    app, job_id = _single_unit_job(make_app)

    app.runtime.send_event(events.UNIT_GENERATE, unit_payload(app.jobs.require_unit(job_id, 1)))
    settle(app)

    assert generator.count("draft", 1) == 1
    runs = app.runtime_store.list_runs(function_id=events.UNIT_GENERATION_FUNCTION, job_id=job_id)
    assert sorted(run.result["status"] for run in runs) == ["ready_for_scoring", "skipped"]


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"decision": "maybe"}, "Unknown decision"),
        ({"decision": "iterate", "feedback": "  "}, "feedback is required"),
        ({"final_score": None}, "final_score is required"),
        ({"final_score": "high"}, "final_score must be a number"),
        ({"unit_id": 0}, "Invalid unit_id"),
        ({"iteration": True}, "Invalid iteration"),
        ({"iteration": 2}, "unit is on iteration 1"),
    ],
)
def test_invalid_decisions_are_rejected(make_app, overrides, message) -> None:
    app, job_id = _single_unit_job(make_app)
    payload = {
        "job_id": job_id,
        "unit_id": 1,
        "iteration": 1,
        "decision": "approved",
        "final_score": 90.0,
        **overrides,
    }

    with pytest.raises(InvalidDecisionError, match=message):
        app.service.submit_decision(payload)


def test_decisions_for_unknown_or_finished_jobs_are_rejected(make_app) -> None:
    app, job_id = _single_unit_job(make_app)

    with pytest.raises(JobNotFoundError):
        approve(app, "missing-job", 1)

    app.service.cancel(job_id)
    with pytest.raises(InvalidDecisionError, match="already cancelled"):
        approve(app, job_id, 1)


def test_malformed_decision_event_leaves_the_unit_awaiting(make_app) -> None:
    app, job_id = _single_unit_job(make_app)
    app.runtime.send_event(
        events.UNIT_DECISION,
        {"job_id": job_id, "unit_id": 1, "iteration": 1, "decision": "iterate", "feedback": ""},
    )
    settle(app)

    unit = app.jobs.require_unit(job_id, 1)
    assert unit.status == UnitStatus.AWAITING_APPROVAL
    assert unit.awaiting_approval
    assert app.jobs.list_decisions(job_id) == []

    approve(app, job_id, 1, score=92.0)
    settle(app)

    unit = app.jobs.require_unit(job_id, 1)
    assert unit.status == UnitStatus.APPROVED
    assert unit.score == 92.0
    [run] = app.runtime_store.list_runs(function_id=events.UNIT_REVIEW_FUNCTION, job_id=job_id)
    assert run.result == {"unit_id": 1, "status": "approved", "iteration": 1}


def test_early_decision_for_a_later_iteration_is_not_replayed(make_app) -> None:
    app, job_id = _single_unit_job(make_app)
    app.runtime.send_event(
        events.UNIT_DECISION,
        {"job_id": job_id, "unit_id": 1, "iteration": 2, "decision": "approved", "final_score": 1},
    )
    settle(app)

    iterate(app, job_id, 1, iteration=1, feedback="name the escalation contacts")
    settle(app)

    unit = app.jobs.require_unit(job_id, 1)
    assert unit.iteration == 2
    assert unit.status == UnitStatus.AWAITING_APPROVAL
    assert [record.decision for record in app.jobs.list_decisions(job_id)] == [Decision.ITERATE]


def test_generated_unit_is_handed_off_for_review(make_app) -> None:
    app, job_id = _single_unit_job(make_app)

    [handoff] = app.runtime_store.list_runs(
        function_id=events.UNIT_HANDOFF_FUNCTION,
        job_id=job_id,
    )
    assert handoff.result == {"unit_id": 1, "review_requested": True}
    [consult] = app.runtime_store.list_events(name=events.UNIT_CONSULT, job_id=job_id)
    assert consult.payload == {"job_id": job_id, "unit_id": 1, "iteration": 1}


def test_failed_generation_is_not_handed_off(make_app, generator) -> None:
    generator.fail_next("draft", fatal_error(), unit_id=1)
    app, job_id = _single_unit_job(make_app)

    assert app.jobs.require_unit(job_id, 1).status == UnitStatus.BLOCKED
    [generated] = app.runtime_store.list_events(name=events.UNIT_GENERATED, job_id=job_id)
    assert generated.payload["success"] is False
    [handoff] = app.runtime_store.list_runs(
        function_id=events.UNIT_HANDOFF_FUNCTION,
        job_id=job_id,
    )
    assert handoff.result == {"unit_id": 1, "review_requested": False}
    assert app.runtime_store.list_events(name=events.UNIT_CONSULT, job_id=job_id) == []
