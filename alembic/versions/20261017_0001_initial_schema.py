"""Create job record store and durable runtime tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "proposal_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("progress_percent", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("current_step", sa.String(), nullable=True),
        sa.Column("input_json", sa.Text(), nullable=False),
        sa.Column("preparation_json", sa.Text(), nullable=True),
        sa.Column("assembly_status", sa.String(), nullable=True),
        sa.Column("final_scoring_status", sa.String(), nullable=True),
        sa.Column("final_score", sa.Float(), nullable=True),
        sa.Column("assembled_document", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_proposal_jobs_status", "proposal_jobs", ["status"])
    op.create_index(
        "idx_proposal_jobs_status_updated",
        "proposal_jobs",
        ["status", "updated_at"],
    )

    op.create_table(
        "proposal_units",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("unit_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("iteration", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("score", sa.Float(), nullable=True),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("compliance_json", sa.Text(), nullable=True),
        sa.Column("insights", sa.Text(), nullable=True),
        sa.Column(
            "awaiting_approval",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("progress_start", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("progress_end", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["job_id"], ["proposal_jobs.job_id"], ondelete="CASCADE"),
        sa.UniqueConstraint("job_id", "unit_id", name="uq_proposal_units_job_unit"),
    )
    op.create_index("ix_proposal_units_job_id", "proposal_units", ["job_id"])

    op.create_table(
        "unit_decisions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("unit_id", sa.Integer(), nullable=False),
        sa.Column("iteration", sa.Integer(), nullable=False),
        sa.Column("decision", sa.String(), nullable=False),
        sa.Column("feedback", sa.Text(), nullable=True),
        sa.Column("final_score", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["job_id"], ["proposal_jobs.job_id"], ondelete="CASCADE"),
        sa.UniqueConstraint(
            "job_id",
            "unit_id",
            "iteration",
            name="uq_unit_decisions_job_unit_iteration",
        ),
    )
    op.create_index("ix_unit_decisions_job_id", "unit_decisions", ["job_id"])

    op.create_table(
        "runtime_events",
        sa.Column("seq", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("seq"),
    )
    op.create_index("ix_runtime_events_event_id", "runtime_events", ["event_id"], unique=True)
    op.create_index("ix_runtime_events_name", "runtime_events", ["name"])
    op.create_index("ix_runtime_events_job_id", "runtime_events", ["job_id"])
    op.create_index(
        "idx_runtime_events_pending",
        "runtime_events",
        ["dispatched_at", "seq"],
    )

    op.create_table(
        "runtime_runs",
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("function_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column(
            "cancel_requested",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("executions", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("deadline_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index("ix_runtime_runs_function_id", "runtime_runs", ["function_id"])
    op.create_index("ix_runtime_runs_job_id", "runtime_runs", ["job_id"])
    op.create_index("ix_runtime_runs_status", "runtime_runs", ["status"])
    op.create_index(
        "idx_runtime_runs_function_job",
        "runtime_runs",
        ["function_id", "job_id"],
    )

    op.create_table(
        "runtime_steps",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("step_name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["run_id"], ["runtime_runs.run_id"], ondelete="CASCADE"),
        sa.UniqueConstraint("run_id", "step_name", name="uq_runtime_steps_run_step"),
    )
    op.create_index("ix_runtime_steps_run_id", "runtime_steps", ["run_id"])

    op.create_table(
        "runtime_waits",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("step_name", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("event_name", sa.String(), nullable=True),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("match_json", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("matched_event_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["run_id"], ["runtime_runs.run_id"], ondelete="CASCADE"),
        sa.UniqueConstraint("run_id", "step_name", name="uq_runtime_waits_run_step"),
    )
    op.create_index("ix_runtime_waits_run_id", "runtime_waits", ["run_id"])
    op.create_index(
        "idx_runtime_waits_pending_event",
        "runtime_waits",
        ["status", "event_name"],
    )


def downgrade() -> None:
    op.drop_table("runtime_waits")
    op.drop_table("runtime_steps")
    op.drop_table("runtime_runs")
    op.drop_table("runtime_events")
    op.drop_table("unit_decisions")
    op.drop_table("proposal_units")
    op.drop_table("proposal_jobs")
