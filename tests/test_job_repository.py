from __future__ import annotations

import allure
import pytest

from proposal_pipeline.pipeline.models import (
    Decision,
    DecisionPayload,
    JobCreate,
    JobNotFoundError,
    JobStatus,
    UnitNotFoundError,
    UnitSpec,
    UnitStatus,
)
from proposal_pipeline.pipeline.repository import JobRepository

pytestmark = [
    allure.epic("Proposal Pipeline"),
    allure.feature("Job records"),
]


@pytest.fixture()
def jobs(tmp_path, clock):
    repository = JobRepository(tmp_path / "jobs.db", clock=clock)
    repository.init_schema()
    yield repository
    repository.close()


def _create(jobs: JobRepository, *names: str, job_id: str | None = None):
    return jobs.create_job(
        JobCreate(
            input={"title": "Harbor Modernization"},
            units=[UnitSpec(name=name) for name in names or ("Technical",)],
            job_id=job_id,
        ),
    )


def test_create_job_splits_the_unit_progress_range(jobs) -> None:
    job = _create(jobs, "Technical", "Management", "Pricing", job_id="job-1")

    assert job.job_id == "job-1"
    assert job.status == JobStatus.DRAFT
    assert job.progress_percent == 0
    assert job.input == {"title": "Harbor Modernization"}
    assert [unit.unit_id for unit in job.units] == [1, 2, 3]
    assert [(unit.progress_start, unit.progress_end) for unit in job.units] == [
        (30, 46),
        (46, 63),
        (63, 80),
    ]
    assert all(unit.status == UnitStatus.PENDING for unit in job.units)
    assert all(unit.iteration == 1 and unit.version == 1 for unit in job.units)


def test_create_job_requires_units(jobs) -> None:
    with pytest.raises(ValueError, match="at least one unit"):
        jobs.create_job(JobCreate(input={}, units=[]))


def test_progress_never_moves_backwards(jobs) -> None:
    job = _create(jobs)

    assert jobs.update_job(job.job_id, status=JobStatus.PROCESSING, progress_percent=40)
    assert jobs.update_job(job.job_id, progress_percent=20, current_step="late writer")
    stored = jobs.require_job(job.job_id)
    assert stored.progress_percent == 40
    assert stored.current_step == "late writer"

    jobs.update_job(job.job_id, progress_percent=150)
    assert jobs.require_job(job.job_id).progress_percent == 100


def test_terminal_jobs_are_not_rewritten(jobs, clock) -> None:
    job = _create(jobs)
    assert jobs.update_job(job.job_id, status=JobStatus.COMPLETED, current_step="Completed")
    clock.advance(minutes=1)

    assert not jobs.update_job(job.job_id, status=JobStatus.FAILED, current_step="Error: late")
    assert not jobs.touch_job(job.job_id)
    stored = jobs.require_job(job.job_id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.current_step == "Completed"


def test_conditional_updates_check_status_and_heartbeat(jobs, clock) -> None:
    job = _create(jobs)
    created_at = jobs.require_job(job.job_id).updated_at

    assert not jobs.update_job(
        job.job_id,
        status=JobStatus.FAILED,
        expected_status={JobStatus.PROCESSING},
    )
    assert not jobs.update_job(
        job.job_id,
        status=JobStatus.FAILED,
        updated_before=created_at,
    )
    clock.advance(minutes=5)
    assert jobs.update_job(
        job.job_id,
        status=JobStatus.FAILED,
        expected_status={JobStatus.DRAFT},
        updated_before=clock(),
    )
    assert jobs.require_job(job.job_id).status == JobStatus.FAILED


def test_missing_rows_raise_lookup_errors(jobs) -> None:
    job = _create(jobs)

    with pytest.raises(JobNotFoundError):
        jobs.update_job("missing", status=JobStatus.PROCESSING)
    with pytest.raises(UnitNotFoundError):
        jobs.update_unit(job.job_id, 9, status=UnitStatus.GENERATING)
    with pytest.raises(UnitNotFoundError):
        jobs.require_job(job.job_id).unit(9)
    assert jobs.get_job("missing") is None


def test_unit_updates_bump_the_version_and_respect_expected_status(jobs) -> None:
    job = _create(jobs)

    unit = jobs.update_unit(job.job_id, 1, status=UnitStatus.GENERATING, score=12.5)
    assert unit is not None
    assert unit.version == 2
    assert unit.score == 12.5

    unit = jobs.update_unit(job.job_id, 1, content="draft text")
    assert unit is not None
    assert unit.version == 3
    assert unit.score == 12.5

    unit = jobs.update_unit(job.job_id, 1, score=None, insights="needs metrics")
    assert unit is not None
    assert unit.score is None
    assert unit.insights == "needs metrics"

    assert (
        jobs.update_unit(
            job.job_id,
            1,
            status=UnitStatus.APPROVED,
            expected_status={UnitStatus.AWAITING_APPROVAL},
        )
        is None
    )
    assert jobs.require_unit(job.job_id, 1).status == UnitStatus.GENERATING


def test_decisions_are_archived_once_per_iteration(jobs) -> None:
    job = _create(jobs, "Technical", "Management")
    iterate = DecisionPayload(
        job_id=job.job_id,
        unit_id=2,
        iteration=1,
        decision=Decision.ITERATE,
        feedback="add metrics",
    )
    approve = DecisionPayload(
        job_id=job.job_id,
        unit_id=1,
        iteration=1,
        decision=Decision.APPROVED,
        final_score=91.0,
    )

    assert jobs.record_decision(iterate)
    assert jobs.record_decision(approve)
    assert not jobs.record_decision(iterate)

    decisions = jobs.list_decisions(job.job_id)
    assert [(item.unit_id, item.decision) for item in decisions] == [
        (1, Decision.APPROVED),
        (2, Decision.ITERATE),
    ]
    [only] = jobs.list_decisions(job.job_id, unit_id=2)
    assert only.feedback == "add metrics"


def test_query_jobs_filters_by_status_and_heartbeat(jobs, clock) -> None:
    old = _create(jobs, job_id="old")
    jobs.update_job(old.job_id, status=JobStatus.PROCESSING)
    clock.advance(hours=1)
    fresh = _create(jobs, job_id="fresh")
    jobs.update_job(fresh.job_id, status=JobStatus.PROCESSING)
    _create(jobs, job_id="draft")

    processing = jobs.query_jobs(status=JobStatus.PROCESSING)
    assert [job.job_id for job in processing] == ["old", "fresh"]

    stale = jobs.query_jobs(status=JobStatus.PROCESSING, updated_before=clock())
    assert [job.job_id for job in stale] == ["old"]

    several = jobs.query_jobs(status={JobStatus.PROCESSING, JobStatus.DRAFT}, limit=2)
    assert len(several) == 2
    assert len(jobs.query_jobs()) == 3


def test_review_status_follows_awaiting_units(jobs) -> None:
    job = _create(jobs, "Technical", "Management")
    assert jobs.refresh_review_status(job.job_id) is None

    jobs.update_job(job.job_id, status=JobStatus.PROCESSING)
    jobs.update_unit(job.job_id, 2, status=UnitStatus.AWAITING_APPROVAL, awaiting_approval=True)
    assert jobs.refresh_review_status(job.job_id) == JobStatus.REVIEW
    stored = jobs.require_job(job.job_id)
    assert stored.status == JobStatus.REVIEW
    assert stored.current_step == "Awaiting unit approval"

    jobs.update_unit(job.job_id, 2, status=UnitStatus.APPROVED, awaiting_approval=False)
    assert jobs.refresh_review_status(job.job_id) == JobStatus.PROCESSING
    assert jobs.require_job(job.job_id).status == JobStatus.PROCESSING
