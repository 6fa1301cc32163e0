"""Controllers for pipeline CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from proposal_pipeline.config import Settings
from proposal_pipeline.pipeline import events
from proposal_pipeline.pipeline.app import PipelineApp, build_pipeline
from proposal_pipeline.pipeline.models import JobStatus, UnitSpec
from proposal_pipeline.pipeline.prefect_flow import serve_stall_monitor
from proposal_pipeline.pipeline.stall_monitor import sweep_stalled_jobs
from proposal_pipeline.storage.alembic_runner import current_revision


@dataclass(slots=True)
class DbInitCommand:
    """CLI input for schema migration."""

    db_path: Path | None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for the runtime worker."""

    db_path: Path | None
    once: bool
    max_cycles: int = 1000


@dataclass(slots=True)
class JobCreateCommand:
    """CLI input for creating a job and requesting its generation."""

    db_path: Path | None
    input_path: Path
    units: tuple[str, ...]
    request: bool


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobInspectCommand:
    db_path: Path | None
    job_id: str
    show_document: bool = False


@dataclass(slots=True)
class JobDecisionCommand:
    """CLI input for one human review decision."""

    db_path: Path | None
    job_id: str
    unit_id: int
    iteration: int
    decision: str
    feedback: str | None
    final_score: float | None


@dataclass(slots=True)
class JobCancelCommand:
    db_path: Path | None
    job_id: str
    reason: str


@dataclass(slots=True)
class MonitorSweepCommand:
    db_path: Path | None
    stale_after_seconds: int | None


class PipelineCliController:
    """Coordinates worker, job and monitor CLI operations."""

    def init_db(self, command: DbInitCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _pipeline(settings):
            pass
        revision = current_revision(settings.db_path)
        return [f"Schema is up to date: {settings.db_path} (revision {revision})"]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _pipeline(settings) as app:
            if command.once:
                recovered = app.runtime.recover_interrupted_runs()
                cycles = app.runtime.run_until_idle(max_cycles=command.max_cycles)
                return [f"Worker idle after {cycles} cycle(s); recovered={recovered}"]
            app.runtime.run_forever()
        return ["Worker stopped"]

    def create_job(self, command: JobCreateCommand) -> list[str]:
        settings = _settings(command.db_path)
        job_input = json.loads(command.input_path.read_text("utf-8"))
        if not isinstance(job_input, dict):
            raise ValueError(f"{command.input_path} must contain a JSON object.")
        units = [UnitSpec(name=name) for name in command.units] or None
        with _pipeline(settings) as app:
            job = app.service.create_job(job_input, units=units)
            lines = [f"Job created: job_id={job.job_id} units={len(job.units)}"]
            if command.request:
                event_id = app.service.request_generation(job.job_id)
                lines.append(f"Generation requested: event_id={event_id}")
        return lines

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = JobStatus(command.status.strip().lower()) if command.status else None
        with _pipeline(settings) as app:
            jobs = app.jobs.query_jobs(status=status, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} status={job.status.value} progress={job.progress_percent}% "
                f"updated_at={job.updated_at.isoformat()} step={job.current_step or '-'}",
            )
        return lines

    def inspect_job(self, command: JobInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _pipeline(settings) as app:
            job = app.jobs.get_job(command.job_id)
            if job is None:
                return [f"Job not found: {command.job_id}"]
            decisions = app.jobs.list_decisions(command.job_id)
            runs = app.runtime_store.list_runs(job_id=command.job_id)

        lines = [
            f"Job: {job.job_id}",
            f"Status: {job.status.value}",
            f"Progress: {job.progress_percent}%",
            f"Step: {job.current_step or '-'}",
            f"Assembly: {_value(job.assembly_status)}",
            f"Final scoring: {_value(job.final_scoring_status)}",
            f"Final score: {job.final_score if job.final_score is not None else '-'}",
            f"Error: {job.error_message or '-'}",
            f"Units: {len(job.units)}",
        ]
        for unit in job.units:
            lines.append(
                f"  {unit.unit_id}. {unit.name} status={unit.status.value} "
                f"iteration={unit.iteration} score={_score(unit.score)} "
                f"awaiting_approval={unit.awaiting_approval}",
            )
        lines.append(f"Decisions: {len(decisions)}")
        for decision in decisions:
            lines.append(
                f"  unit={decision.unit_id} iteration={decision.iteration} "
                f"decision={decision.decision.value} feedback={decision.feedback or '-'}",
            )
        lines.append(f"Runs: {len(runs)}")
        for run in runs:
            lines.append(
                f"  {run.run_id} function={run.function_id} status={run.status.value} "
                f"executions={run.executions}",
            )
        if command.show_document and job.assembled_document:
            lines.append("")
            lines.extend(job.assembled_document.splitlines())
        return lines

    def decide(self, command: JobDecisionCommand) -> list[str]:
        settings = _settings(command.db_path)
        payload: dict[str, Any] = {
            "job_id": command.job_id,
            "unit_id": command.unit_id,
            "iteration": command.iteration,
            "decision": command.decision,
            "feedback": command.feedback,
            "final_score": command.final_score,
        }
        with _pipeline(settings) as app:
            event_id = app.service.submit_decision(payload)
        return [f"Decision submitted: event_id={event_id}"]

    def cancel(self, command: JobCancelCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _pipeline(settings) as app:
            cancelled = app.service.cancel(command.job_id, reason=command.reason)
        if not cancelled:
            return [f"Job already finished: {command.job_id}"]
        return [f"Job cancelled: {command.job_id}"]

    def sweep(self, command: MonitorSweepCommand) -> list[str]:
        settings = _settings(command.db_path)
        if command.stale_after_seconds is not None:
            settings.stall_monitor.stale_after_seconds = command.stale_after_seconds
        with _pipeline(settings) as app:
            stalled = sweep_stalled_jobs(
                app.jobs,
                stale_after=settings.stall_monitor.stale_after,
                on_stalled=lambda item: app.runtime.send_event(
                    events.GENERATION_CANCELLED,
                    {"job_id": item.job_id, "reason": "stalled"},
                ),
            )
        lines = [f"Stalled jobs failed: {len(stalled)}"]
        lines.extend(f"  {item.job_id} {item.message}" for item in stalled)
        return lines

    def serve_monitor(self, command: DbInitCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _pipeline(settings):
            pass
        serve_stall_monitor(settings)
        return ["Stall monitor deployment stopped"]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _value(item: Any) -> str:
    return item.value if item is not None else "-"


def _score(score: float | None) -> str:
    return f"{score:.1f}" if score is not None else "-"


@contextmanager
def _pipeline(settings: Settings) -> Iterator[PipelineApp]:
    app = build_pipeline(settings)
    app.init_schema()
    try:
        yield app
    finally:
        app.close()
