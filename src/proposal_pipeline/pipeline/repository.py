"""Job record store: jobs, versioned unit rows and the decision history."""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from proposal_pipeline.pipeline.models import (
    ACTIVE_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    ConcurrentUpdateError,
    Decision,
    DecisionPayload,
    DecisionRecord,
    JobCreate,
    JobNotFoundError,
    JobStatus,
    JobView,
    PhaseStatus,
    UnitNotFoundError,
    UnitStatus,
    UnitView,
)
from proposal_pipeline.storage.alembic_runner import upgrade_head
from proposal_pipeline.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_object,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from proposal_pipeline.storage.sqlmodel_models import ProposalJob, ProposalUnit, UnitDecision

logger = logging.getLogger(__name__)

UNIT_PROGRESS_START = 30
UNIT_PROGRESS_END = 80
_MAX_WRITE_ATTEMPTS = 5

_UNSET: Any = object()


class JobRepository:
    """Job persistence facade backed by SQLModel + SQLite."""

    def __init__(
        self,
        db_path: Path,
        *,
        clock: Callable[[], datetime] = utc_now,
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- jobs -----------------------------------------------------------------

    def create_job(self, payload: JobCreate) -> JobView:
        """Create a job with its fixed set of units."""

        if not payload.units:
            raise ValueError("A job needs at least one unit.")
        now = to_db_datetime(self.clock())
        job_id = payload.job_id or str(uuid4())
        count = len(payload.units)
        with Session(self.engine) as session:
            session.add(
                ProposalJob(
                    job_id=job_id,
                    status=payload.status.value,
                    progress_percent=0,
                    input_json=dump_json(payload.input),
                    created_at=now,
                    updated_at=now,
                ),
            )
            span = UNIT_PROGRESS_END - UNIT_PROGRESS_START
            for index, spec in enumerate(payload.units):
                session.add(
                    ProposalUnit(
                        job_id=job_id,
                        unit_id=index + 1,
                        name=spec.name,
                        status=UnitStatus.PENDING.value,
                        iteration=1,
                        compliance_json=dump_json({"criteria": spec.criteria}),
                        progress_start=UNIT_PROGRESS_START + span * index // count,
                        progress_end=UNIT_PROGRESS_START + span * (index + 1) // count,
                        updated_at=now,
                    ),
                )
            session.commit()
        logger.info("Created job %s with %d unit(s)", job_id, count)
        return self.require_job(job_id)

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(ProposalJob, job_id)
            if row is None:
                return None
            units = self._unit_rows(session, job_id)
            return _to_job_view(row, units)

    def require_job(self, job_id: str) -> JobView:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def update_job(  # noqa: PLR0913
        self,
        job_id: str,
        *,
        status: JobStatus | None = None,
        progress_percent: int | None = None,
        current_step: str | None = None,
        assembly_status: PhaseStatus | None = None,
        final_scoring_status: PhaseStatus | None = None,
        final_score: float | None = None,
        assembled_document: str | None = None,
        preparation: dict[str, Any] | None = None,
        error_message: str | None = None,
        expected_status: Collection[JobStatus] | None = None,
        updated_before: datetime | None = None,
    ) -> bool:
        """Merge the given fields into a non-terminal job.

        Progress never moves backwards. Returns ``False`` without writing when
        the job is already terminal, not in ``expected_status`` or, with
        ``updated_before``, has a heartbeat at or after that instant.
        """

        for _ in range(_MAX_WRITE_ATTEMPTS):
            with Session(self.engine) as session:
                row = session.get(ProposalJob, job_id)
                if row is None:
                    raise JobNotFoundError(job_id)
                observed = JobStatus(row.status)
                if observed in TERMINAL_JOB_STATUSES:
                    logger.debug("Job %s is %s; update skipped", job_id, observed.value)
                    return False
                if expected_status is not None and observed not in expected_status:
                    return False
                if updated_before is not None and to_utc_aware_datetime(
                    row.updated_at,
                ) >= to_utc_aware_datetime(updated_before):
                    return False

                values: dict[str, Any] = {"updated_at": to_db_datetime(self.clock())}
                if status is not None:
                    values["status"] = status.value
                if progress_percent is not None:
                    values["progress_percent"] = max(
                        row.progress_percent,
                        min(100, max(0, progress_percent)),
                    )
                if current_step is not None:
                    values["current_step"] = current_step
                if assembly_status is not None:
                    values["assembly_status"] = assembly_status.value
                if final_scoring_status is not None:
                    values["final_scoring_status"] = final_scoring_status.value
                if final_score is not None:
                    values["final_score"] = final_score
                if assembled_document is not None:
                    values["assembled_document"] = assembled_document
                if preparation is not None:
                    values["preparation_json"] = dump_json(preparation)
                if error_message is not None:
                    values["error_message"] = error_message

                guard = [
                    col(ProposalJob.job_id) == job_id,
                    col(ProposalJob.status) == observed.value,
                ]
                if updated_before is not None:
                    guard.append(col(ProposalJob.updated_at) == row.updated_at)
                result = session.exec(
                    sa_update(ProposalJob)
                    .where(*guard)
                    .values(**values),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()

            if status is not None and status != observed:
                logger.info(
                    "Job %s: %s -> %s (%s)",
                    job_id,
                    observed.value,
                    status.value,
                    current_step or "",
                )
            else:
                logger.info("Job %s updated: %s", job_id, current_step or sorted(values))
            return True
        raise ConcurrentUpdateError(f"Job {job_id} kept changing during update")

    def touch_job(self, job_id: str) -> bool:
        """Refresh the heartbeat of a non-terminal job."""

        return self.update_job(job_id)

    def refresh_review_status(self, job_id: str) -> JobStatus | None:
        """Put an active job in ``review`` while any unit awaits a human, else ``processing``."""

        job = self.require_job(job_id)
        if job.status not in ACTIVE_JOB_STATUSES:
            return None
        desired = (
            JobStatus.REVIEW
            if any(unit.awaiting_approval for unit in job.units)
            else JobStatus.PROCESSING
        )
        if desired == job.status:
            return desired
        step = "Awaiting unit approval" if desired == JobStatus.REVIEW else "Processing units"
        if self.update_job(
            job_id,
            status=desired,
            current_step=step,
            expected_status={job.status},
        ):
            return desired
        return None

    def query_jobs(
        self,
        *,
        status: JobStatus | Collection[JobStatus] | None = None,
        updated_before: datetime | None = None,
        limit: int | None = None,
    ) -> list[JobView]:
        """List jobs, oldest heartbeat first."""

        with Session(self.engine) as session:
            statement = select(ProposalJob).order_by(col(ProposalJob.updated_at).asc())
            if isinstance(status, JobStatus):
                statement = statement.where(ProposalJob.status == status.value)
            elif status is not None:
                statement = statement.where(
                    col(ProposalJob.status).in_([item.value for item in status]),
                )
            if updated_before is not None:
                statement = statement.where(
                    col(ProposalJob.updated_at) < to_db_datetime(updated_before),
                )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
            return [_to_job_view(row, self._unit_rows(session, row.job_id)) for row in rows]

    # -- units ----------------------------------------------------------------

    def get_unit(self, job_id: str, unit_id: int) -> UnitView | None:
        with Session(self.engine) as session:
            row = self._unit_row(session, job_id, unit_id)
            return _to_unit_view(row) if row is not None else None

    def require_unit(self, job_id: str, unit_id: int) -> UnitView:
        unit = self.get_unit(job_id, unit_id)
        if unit is None:
            raise UnitNotFoundError(job_id, unit_id)
        return unit

    def list_units(self, job_id: str) -> list[UnitView]:
        with Session(self.engine) as session:
            return [_to_unit_view(row) for row in self._unit_rows(session, job_id)]

    def update_unit(  # noqa: PLR0913
        self,
        job_id: str,
        unit_id: int,
        *,
        status: UnitStatus | None = None,
        iteration: int | None = None,
        score: float | None = _UNSET,
        content: str | None = None,
        compliance: dict[str, Any] | None = None,
        insights: str | None = _UNSET,
        awaiting_approval: bool | None = None,
        expected_status: Collection[UnitStatus] | None = None,
    ) -> UnitView | None:
        """Apply one unit change under its version token.

        The row is re-read on conflict and the change re-applied. Returns
        ``None`` when the unit is not in ``expected_status``.
        """

        for _ in range(_MAX_WRITE_ATTEMPTS):
            with Session(self.engine) as session:
                row = self._unit_row(session, job_id, unit_id)
                if row is None:
                    raise UnitNotFoundError(job_id, unit_id)
                observed = UnitStatus(row.status)
                if expected_status is not None and observed not in expected_status:
                    return None

                now = to_db_datetime(self.clock())
                values: dict[str, Any] = {"version": row.version + 1, "updated_at": now}
                if status is not None:
                    values["status"] = status.value
                if iteration is not None:
                    values["iteration"] = iteration
                if score is not _UNSET:
                    values["score"] = score
                if content is not None:
                    values["content"] = content
                if compliance is not None:
                    values["compliance_json"] = dump_json(compliance)
                if insights is not _UNSET:
                    values["insights"] = insights
                if awaiting_approval is not None:
                    values["awaiting_approval"] = awaiting_approval

                result = session.exec(
                    sa_update(ProposalUnit)
                    .where(
                        col(ProposalUnit.id) == row.id,
                        col(ProposalUnit.version) == row.version,
                    )
                    .values(**values),
                )
                if result.rowcount != 1:
                    session.rollback()
                    logger.debug("Unit %s/%s version conflict, re-reading", job_id, unit_id)
                    continue
                session.exec(
                    sa_update(ProposalJob)
                    .where(
                        col(ProposalJob.job_id) == job_id,
                        col(ProposalJob.status).not_in(
                            [item.value for item in TERMINAL_JOB_STATUSES],
                        ),
                    )
                    .values(updated_at=now),
                )
                session.commit()
                updated = self._unit_row(session, job_id, unit_id)

            if status is not None and status != observed:
                logger.info(
                    "Job %s unit %s: %s -> %s",
                    job_id,
                    unit_id,
                    observed.value,
                    status.value,
                )
            return _to_unit_view(updated) if updated is not None else None
        raise ConcurrentUpdateError(f"Unit {unit_id} of job {job_id} kept changing during update")

    # -- decisions ------------------------------------------------------------

    def record_decision(self, payload: DecisionPayload) -> bool:
        """Archive a decision once per ``(job_id, unit_id, iteration)``."""

        with Session(self.engine) as session:
            session.add(
                UnitDecision(
                    job_id=payload.job_id,
                    unit_id=payload.unit_id,
                    iteration=payload.iteration,
                    decision=payload.decision.value,
                    feedback=payload.feedback,
                    final_score=payload.final_score,
                    created_at=to_db_datetime(self.clock()),
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.info(
                    "Duplicate decision for job %s unit %s iteration %s ignored",
                    payload.job_id,
                    payload.unit_id,
                    payload.iteration,
                )
                return False
        return True

    def list_decisions(self, job_id: str, *, unit_id: int | None = None) -> list[DecisionRecord]:
        with Session(self.engine) as session:
            statement = (
                select(UnitDecision)
                .where(UnitDecision.job_id == job_id)
                .order_by(col(UnitDecision.unit_id).asc(), col(UnitDecision.iteration).asc())
            )
            if unit_id is not None:
                statement = statement.where(UnitDecision.unit_id == unit_id)
            rows = session.exec(statement).all()
        return [
            DecisionRecord(
                job_id=row.job_id,
                unit_id=row.unit_id,
                iteration=row.iteration,
                decision=Decision(row.decision),
                feedback=row.feedback,
                final_score=row.final_score,
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]

    # -- internals ------------------------------------------------------------

    def _unit_row(self, session: Session, job_id: str, unit_id: int) -> ProposalUnit | None:
        return session.exec(
            select(ProposalUnit).where(
                ProposalUnit.job_id == job_id,
                ProposalUnit.unit_id == unit_id,
            ),
        ).one_or_none()

    def _unit_rows(self, session: Session, job_id: str) -> list[ProposalUnit]:
        return list(
            session.exec(
                select(ProposalUnit)
                .where(ProposalUnit.job_id == job_id)
                .order_by(col(ProposalUnit.unit_id).asc()),
            ).all(),
        )


def _to_unit_view(row: ProposalUnit) -> UnitView:
    return UnitView(
        job_id=row.job_id,
        unit_id=row.unit_id,
        name=row.name,
        status=UnitStatus(row.status),
        iteration=row.iteration,
        score=row.score,
        content=row.content,
        compliance=load_json_object(row.compliance_json),
        insights=row.insights,
        awaiting_approval=row.awaiting_approval,
        progress_start=row.progress_start,
        progress_end=row.progress_end,
        version=row.version,
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_job_view(row: ProposalJob, units: list[ProposalUnit]) -> JobView:
    return JobView(
        job_id=row.job_id,
        status=JobStatus(row.status),
        progress_percent=row.progress_percent,
        current_step=row.current_step,
        input=load_json_object(row.input_json),
        preparation=load_json_object(row.preparation_json) if row.preparation_json else None,
        assembly_status=PhaseStatus(row.assembly_status) if row.assembly_status else None,
        final_scoring_status=(
            PhaseStatus(row.final_scoring_status) if row.final_scoring_status else None
        ),
        final_score=row.final_score,
        assembled_document=row.assembled_document,
        error_message=row.error_message,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        units=[_to_unit_view(unit) for unit in units],
    )
