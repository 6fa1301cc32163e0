"""CLI entrypoint for proposal-pipeline."""

import logging
from pathlib import Path

import rich_click as click

from proposal_pipeline import __version__
from proposal_pipeline.pipeline.controllers import (
    DbInitCommand,
    JobCancelCommand,
    JobCreateCommand,
    JobDecisionCommand,
    JobInspectCommand,
    JobListCommand,
    MonitorSweepCommand,
    PipelineCliController,
    WorkerCommand,
)
from proposal_pipeline.pipeline.models import InvalidDecisionError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = PipelineCliController()

_JOB_STATUSES = [
    "draft",
    "intake",
    "validating",
    "blocked",
    "processing",
    "review",
    "completed",
    "failed",
    "cancelled",
]


@click.group()
@click.version_option(version=__version__, prog_name="proposal-pipeline")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Root logging level.",
)
def proposal_pipeline(log_level: str) -> None:
    """Proposal generation pipeline CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@proposal_pipeline.group()
def db() -> None:
    """Database commands."""


@db.command("init")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def db_init(db_path: Path | None) -> None:
    """Apply schema migrations."""

    _emit_lines(CONTROLLER.init_db(DbInitCommand(db_path=db_path)))


@proposal_pipeline.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run until idle and exit, or loop until SIGINT/SIGTERM.",
)
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=1000,
    show_default=True,
    help="Cycle cap for --once.",
)
def worker(db_path: Path | None, once: bool, max_cycles: int) -> None:
    """Run the durable runtime worker with every pipeline function registered."""

    _emit_lines(
        CONTROLLER.run_worker(WorkerCommand(db_path=db_path, once=once, max_cycles=max_cycles)),
    )


@proposal_pipeline.group()
def jobs() -> None:
    """Job commands."""


@jobs.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--input",
    "input_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="JSON file with the job input (title, requirements, ...).",
)
@click.option(
    "--unit",
    "units",
    multiple=True,
    help="Unit name. Can be repeated; defaults to PROPOSAL_PIPELINE_UNITS.",
)
@click.option(
    "--request/--no-request",
    default=True,
    show_default=True,
    help="Emit generation.requested right away.",
)
def jobs_create(
    db_path: Path | None,
    input_path: Path,
    units: tuple[str, ...],
    request: bool,
) -> None:
    """Create a job and optionally request its generation."""

    _emit_lines(
        CONTROLLER.create_job(
            JobCreateCommand(
                db_path=db_path,
                input_path=input_path,
                units=units,
                request=request,
            ),
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(_JOB_STATUSES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List jobs, oldest heartbeat first."""

    _emit_lines(CONTROLLER.list_jobs(JobListCommand(db_path=db_path, status=status, limit=limit)))


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--document/--no-document", default=False, help="Print the assembled document.")
@click.argument("job_id")
def jobs_inspect(db_path: Path | None, document: bool, job_id: str) -> None:
    """Show a job with its units, decisions and runtime runs."""

    _emit_lines(
        CONTROLLER.inspect_job(
            JobInspectCommand(db_path=db_path, job_id=job_id, show_document=document),
        ),
    )


@jobs.command("decide")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--unit-id", type=click.IntRange(min=1), required=True, help="Unit id.")
@click.option("--iteration", type=click.IntRange(min=1), required=True, help="Unit iteration.")
@click.option(
    "--decision",
    type=click.Choice(["approved", "iterate"], case_sensitive=False),
    required=True,
    help="Review decision.",
)
@click.option("--feedback", default=None, help="Reviewer feedback, required to iterate.")
@click.option(
    "--final-score",
    type=click.FloatRange(min=0, max=100),
    default=None,
    help="Final unit score, required to approve.",
)
@click.argument("job_id")
def jobs_decide(  # noqa: PLR0913
    db_path: Path | None,
    unit_id: int,
    iteration: int,
    decision: str,
    feedback: str | None,
    final_score: float | None,
    job_id: str,
) -> None:
    """Submit a human decision for a unit awaiting approval."""

    command = JobDecisionCommand(
        db_path=db_path,
        job_id=job_id,
        unit_id=unit_id,
        iteration=iteration,
        decision=decision.lower(),
        feedback=feedback,
        final_score=final_score,
    )
    try:
        lines = CONTROLLER.decide(command)
    except (InvalidDecisionError, LookupError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@jobs.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--reason", default="cancelled by user", show_default=True, help="Reason.")
@click.argument("job_id")
def jobs_cancel(db_path: Path | None, reason: str, job_id: str) -> None:
    """Cancel a job and tear down its runs."""

    _emit_lines(CONTROLLER.cancel(JobCancelCommand(db_path=db_path, job_id=job_id, reason=reason)))


@proposal_pipeline.group()
def monitor() -> None:
    """Stall monitor commands."""


@monitor.command("sweep")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--stale-after-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Override PROPOSAL_PIPELINE_STALL_AFTER_SECONDS.",
)
def monitor_sweep(db_path: Path | None, stale_after_seconds: int | None) -> None:
    """Run one stall sweep now."""

    _emit_lines(
        CONTROLLER.sweep(
            MonitorSweepCommand(db_path=db_path, stale_after_seconds=stale_after_seconds),
        ),
    )


@monitor.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def monitor_serve(db_path: Path | None) -> None:
    """Serve the stall monitor as a Prefect deployment on its cron."""

    _emit_lines(CONTROLLER.serve_monitor(DbInitCommand(db_path=db_path)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    proposal_pipeline()
