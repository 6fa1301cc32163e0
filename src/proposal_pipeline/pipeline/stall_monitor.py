"""Out-of-band sweep that force-fails jobs with no recent progress."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from proposal_pipeline.config import StallMonitorSettings
from proposal_pipeline.pipeline import events
from proposal_pipeline.pipeline.models import JobStatus
from proposal_pipeline.pipeline.repository import JobRepository
from proposal_pipeline.runtime import DurableRuntime

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StalledJob:
    """Job the sweep moved to ``failed``."""

    job_id: str
    last_step: str | None
    updated_at: datetime
    message: str


def sweep_stalled_jobs(
    repository: JobRepository,
    *,
    stale_after: timedelta,
    now: datetime | None = None,
    on_stalled: Callable[[StalledJob], None] | None = None,
) -> list[StalledJob]:
    """Fail every ``processing`` job whose heartbeat is older than ``stale_after``.

    The write is conditional on the job still being ``processing`` with the
    heartbeat observed by the query, so a job that made progress between the
    query and the write is left alone.
    """

    threshold = (now or repository.clock()) - stale_after
    minutes = int(stale_after.total_seconds() // 60)
    stalled: list[StalledJob] = []
    for job in repository.query_jobs(status=JobStatus.PROCESSING, updated_before=threshold):
        last_step = job.current_step or "unknown"
        message = f"Job stalled - no activity for {minutes}+ minutes (last step: {last_step})"
        if not repository.update_job(
            job.job_id,
            status=JobStatus.FAILED,
            current_step=message,
            error_message=message,
            expected_status={JobStatus.PROCESSING},
            updated_before=threshold,
        ):
            continue
        logger.warning("Job %s marked failed by stall monitor: %s", job.job_id, message)
        item = StalledJob(
            job_id=job.job_id,
            last_step=job.current_step,
            updated_at=job.updated_at,
            message=message,
        )
        stalled.append(item)
        if on_stalled is not None:
            on_stalled(item)
    if stalled:
        logger.info("Stall sweep failed %d job(s)", len(stalled))
    return stalled


def register_stall_monitor(
    runtime: DurableRuntime,
    repository: JobRepository,
    settings: StallMonitorSettings,
) -> None:
    """Run the sweep on the runtime's own schedule and cancel the stalled runs."""

    def _cancel(item: StalledJob) -> None:
        runtime.send_event(
            events.GENERATION_CANCELLED,
            {"job_id": item.job_id, "reason": "stalled"},
        )

    def _sweep(now: datetime) -> None:
        sweep_stalled_jobs(
            repository,
            stale_after=settings.stale_after,
            now=now,
            on_stalled=_cancel,
        )

    runtime.on_schedule(events.STALL_MONITOR_SCHEDULE, settings.cron, _sweep)
