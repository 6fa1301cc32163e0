"""Prefect deployment of the stall monitor.

The worker already runs the sweep on its runtime schedule; this flow lets
an operator run it from a separate Prefect-served process, so stalls are
still caught when the worker itself is the thing that wedged.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path

from prefect import flow, task

from proposal_pipeline.config import Settings
from proposal_pipeline.pipeline import events
from proposal_pipeline.pipeline.repository import JobRepository
from proposal_pipeline.pipeline.stall_monitor import sweep_stalled_jobs
from proposal_pipeline.runtime import RuntimeRepository

logger = logging.getLogger(__name__)

_SWEEP_RETRIES = 2
_SWEEP_RETRY_DELAY = 30


@task(retries=_SWEEP_RETRIES, retry_delay_seconds=_SWEEP_RETRY_DELAY)
def sweep_task(db_path: Path, stale_after_seconds: int) -> list[str]:
    """Run one sweep against ``db_path``; returns the failed job ids."""

    jobs = JobRepository(db_path)
    runtime_store = RuntimeRepository(db_path)
    try:
        stalled = sweep_stalled_jobs(
            jobs,
            stale_after=timedelta(seconds=stale_after_seconds),
            on_stalled=lambda item: runtime_store.add_event(
                name=events.GENERATION_CANCELLED,
                payload={"job_id": item.job_id, "reason": "stalled"},
            ),
        )
    finally:
        jobs.close()
        runtime_store.close()
    return [item.job_id for item in stalled]


@flow(name="proposal-stall-monitor")
def stall_monitor_flow(db_path: str, stale_after_seconds: int) -> list[str]:
    failed = sweep_task(Path(db_path), stale_after_seconds)
    logger.info("Stall monitor flow finished: %d job(s) failed", len(failed))
    return failed


def serve_stall_monitor(settings: Settings) -> None:
    """Serve the flow on the configured cron until interrupted."""

    stall_monitor_flow.serve(
        name="proposal-stall-monitor",
        cron=settings.stall_monitor.cron,
        parameters={
            "db_path": str(settings.db_path),
            "stale_after_seconds": settings.stall_monitor.stale_after_seconds,
        },
    )
