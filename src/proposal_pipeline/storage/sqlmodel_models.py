"""SQLModel ORM tables for job records and the durable step runtime."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class ProposalJob(SQLModel, table=True):
    __tablename__ = "proposal_jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_proposal_jobs_status_updated", "status", "updated_at"),)

    job_id: str = Field(primary_key=True)
    status: str = Field(index=True)
    progress_percent: int = 0
    current_step: str | None = None
    input_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    preparation_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    assembly_status: str | None = None
    final_scoring_status: str | None = None
    final_score: float | None = None
    assembled_document: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ProposalUnit(SQLModel, table=True):
    __tablename__ = "proposal_units"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("job_id", "unit_id", name="uq_proposal_units_job_unit"),
    )

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("proposal_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    unit_id: int
    name: str
    status: str
    iteration: int = 1
    score: float | None = None
    content: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    compliance_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    insights: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    awaiting_approval: bool = False
    progress_start: int = 0
    progress_end: int = 0
    version: int = 1
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UnitDecision(SQLModel, table=True):
    __tablename__ = "unit_decisions"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "job_id",
            "unit_id",
            "iteration",
            name="uq_unit_decisions_job_unit_iteration",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("proposal_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    unit_id: int
    iteration: int
    decision: str
    feedback: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    final_score: float | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RuntimeEvent(SQLModel, table=True):
    __tablename__ = "runtime_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_runtime_events_pending", "dispatched_at", "seq"),)

    seq: int | None = Field(default=None, primary_key=True)
    event_id: str = Field(unique=True, index=True)
    name: str = Field(index=True)
    job_id: str | None = Field(default=None, index=True)
    payload_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    dispatched_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class RuntimeRun(SQLModel, table=True):
    __tablename__ = "runtime_runs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_runtime_runs_function_job", "function_id", "job_id"),)

    run_id: str = Field(primary_key=True)
    function_id: str = Field(index=True)
    job_id: str | None = Field(default=None, index=True)
    event_id: str
    status: str = Field(index=True)
    cancel_requested: bool = False
    executions: int = 0
    deadline_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    heartbeat_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    result_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RuntimeStep(SQLModel, table=True):
    __tablename__ = "runtime_steps"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("run_id", "step_name", name="uq_runtime_steps_run_step"),
    )

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(
        sa_column=Column(
            ForeignKey("runtime_runs.run_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    step_name: str
    status: str
    attempts: int = 0
    result_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RuntimeWait(SQLModel, table=True):
    __tablename__ = "runtime_waits"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("run_id", "step_name", name="uq_runtime_waits_run_step"),
        Index("idx_runtime_waits_pending_event", "status", "event_name"),
    )

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(
        sa_column=Column(
            ForeignKey("runtime_runs.run_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    step_name: str
    kind: str
    event_name: str | None = None
    job_id: str | None = None
    match_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    status: str
    matched_event_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
