"""Request-side operations: the inbound events a web layer would emit."""

from __future__ import annotations

import logging
from typing import Any

from proposal_pipeline.config import PipelineSettings
from proposal_pipeline.pipeline import events
from proposal_pipeline.pipeline.models import (
    DecisionPayload,
    InvalidDecisionError,
    JobCreate,
    JobStatus,
    JobView,
    UnitSpec,
    UnitStatus,
)
from proposal_pipeline.pipeline.repository import JobRepository
from proposal_pipeline.runtime import DurableRuntime

logger = logging.getLogger(__name__)


class PipelineService:
    """Creates jobs and forwards requests, decisions and cancellations."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        runtime: DurableRuntime,
        settings: PipelineSettings,
    ) -> None:
        self.repository = repository
        self.runtime = runtime
        self.settings = settings

    def create_job(
        self,
        job_input: dict[str, Any],
        *,
        units: list[UnitSpec] | None = None,
        job_id: str | None = None,
    ) -> JobView:
        return self.repository.create_job(
            JobCreate(
                input=job_input,
                units=units if units is not None else self.settings.unit_specs(),
                job_id=job_id,
            ),
        )

    def request_generation(self, job_id: str) -> str:
        job = self.repository.require_job(job_id)
        return self.runtime.send_event(
            events.GENERATION_REQUESTED,
            {"job_id": job.job_id, "input": job.input},
        )

    def submit_decision(self, payload: dict[str, Any]) -> str:
        """Validate a human decision against the unit's current turn and emit it.

        Raises ``InvalidDecisionError`` for malformed payloads, finished jobs,
        units that are not awaiting approval and a stale ``iteration``.
        """

        decision = DecisionPayload.parse(payload)
        job = self.repository.require_job(decision.job_id)
        if job.terminal:
            raise InvalidDecisionError(f"Job {job.job_id} is already {job.status.value}")
        unit = job.unit(decision.unit_id)
        if unit.status != UnitStatus.AWAITING_APPROVAL or not unit.awaiting_approval:
            raise InvalidDecisionError(
                f"Unit {unit.unit_id} of job {unit.job_id} is {unit.status.value}, "
                "not awaiting approval",
            )
        if unit.iteration != decision.iteration:
            raise InvalidDecisionError(
                f"Decision targets iteration {decision.iteration}, "
                f"unit is on iteration {unit.iteration}",
            )
        logger.info(
            "Decision %s for job %s unit %s iteration %s",
            decision.decision.value,
            decision.job_id,
            decision.unit_id,
            decision.iteration,
        )
        return self.runtime.send_event(events.UNIT_DECISION, decision.to_payload())

    def cancel(self, job_id: str, *, reason: str = "cancelled by user") -> bool:
        """Cancel a non-terminal job; returns ``False`` when it already finished."""

        cancelled = self.repository.update_job(
            job_id,
            status=JobStatus.CANCELLED,
            current_step=f"Cancelled: {reason}",
        )
        if cancelled:
            self.runtime.send_event(
                events.GENERATION_CANCELLED,
                {"job_id": job_id, "reason": reason},
            )
        return cancelled
