"""Pipeline coordinator: the phase graph of one proposal job."""

from __future__ import annotations

import logging
from typing import Any

from proposal_pipeline.config import PipelineSettings
from proposal_pipeline.pipeline import events
from proposal_pipeline.pipeline.context import ContextCache
from proposal_pipeline.pipeline.models import (
    ACTIVE_JOB_STATUSES,
    PRE_PROCESSING_JOB_STATUSES,
    BlockedUnitPolicy,
    JobStatus,
    PhaseStatus,
    PreparationFailedError,
    UnitStatus,
)
from proposal_pipeline.pipeline.repository import UNIT_PROGRESS_START, JobRepository
from proposal_pipeline.pipeline.unit_review import unit_payload
from proposal_pipeline.runtime import (
    DurableRuntime,
    FunctionSpec,
    RunCancelled,
    RuntimeEventView,
    StepContext,
)

logger = logging.getLogger(__name__)

CLAIMED_PROGRESS = 5
COMPLETED_PROGRESS = 100

CLAIMED = "claimed"
DUPLICATE = "duplicate"
SKIPPED = "skipped"


class ProposalCoordinator:
    """Sequences preparation, unit fan-out, convergence, assembly and scoring.

    One run per ``generation.requested`` event. A second request for a job
    that is already being processed finishes as ``duplicate`` without
    touching the job. Preparation failure fails the job; assembly and final
    scoring failures only annotate it, and the job still completes.
    """

    def __init__(
        self,
        *,
        repository: JobRepository,
        cache: ContextCache,
        settings: PipelineSettings,
    ) -> None:
        self.repository = repository
        self.cache = cache
        self.settings = settings

    def register(self, runtime: DurableRuntime) -> None:
        runtime.register(
            FunctionSpec(
                function_id=events.COORDINATOR_FUNCTION,
                trigger=events.GENERATION_REQUESTED,
                handler=self.run,
                cancel_on=events.GENERATION_CANCELLED,
                timeout=self.settings.max_job_duration,
                on_cancel=self.on_cancel,
            ),
        )

    def run(self, ctx: StepContext, event: RuntimeEventView) -> dict[str, Any]:
        job_id = str(event.payload["job_id"])
        claim = ctx.run("check-existing-job", self._claim_job, job_id)
        if claim != CLAIMED:
            logger.info("Generation request for job %s ignored: %s", job_id, claim)
            return {"job_id": job_id, "status": claim}

        try:
            return self._run_phases(ctx, job_id)
        except RunCancelled:
            self.cache.release(job_id)
            raise
        except Exception as error:
            logger.error("Job %s failed: %s", job_id, error)
            self.repository.update_job(
                job_id,
                status=JobStatus.FAILED,
                current_step=f"Error: {error}",
                error_message=str(error),
            )
            self.cache.release(job_id)
            raise

    def on_cancel(self, job_id: str, payload: dict[str, Any]) -> None:
        reason = payload.get("reason") or "cancellation requested"
        self.repository.update_job(
            job_id,
            status=JobStatus.CANCELLED,
            current_step=f"Cancelled: {reason}",
        )
        self.cache.release(job_id)

    # -- phases ---------------------------------------------------------------

    def _run_phases(self, ctx: StepContext, job_id: str) -> dict[str, Any]:
        ctx.send_event("start-preparation", events.PREPARATION_START, {"job_id": job_id})
        prepared = ctx.wait_for_event(
            "wait-for-preparation",
            events.PREPARATION_COMPLETE,
            match={"job_id": job_id},
            timeout=self.settings.preparation_timeout,
        )
        if prepared is None:
            minutes = self.settings.preparation_timeout_seconds // 60
            raise PreparationFailedError(f"Preparation timed out after {minutes} minutes")
        if not prepared.get("success"):
            raise PreparationFailedError(
                f"Preparation failed: {prepared.get('error') or 'unknown error'}",
            )

        units = ctx.run("load-units", self._load_units, job_id)
        for unit in units:
            ctx.send_event(f"dispatch-unit-{unit['unit_id']}", events.UNIT_GENERATE, unit)
        ctx.run("mark-units-dispatched", self._mark_units_dispatched, job_id, len(units))

        progress, converged = ctx.poll(
            "wait-all-approvals",
            lambda: self._convergence(job_id),
            interval=self.settings.convergence_poll,
            timeout=self.settings.convergence_ceiling,
        )
        if not converged:
            logger.warning(
                "Job %s: convergence ceiling reached with %d/%d unit(s) resolved",
                job_id,
                len(progress["resolved"]),
                progress["total"],
            )
        ctx.run("apply-unit-policy", self._apply_unit_policy, job_id)

        ctx.send_event("start-assembly", events.ASSEMBLY_START, {"job_id": job_id})
        assembled = ctx.wait_for_event(
            "wait-for-assembly",
            events.ASSEMBLY_COMPLETE,
            match={"job_id": job_id},
            timeout=self.settings.assembly_timeout,
        )
        if assembled is None or not assembled.get("success"):
            reason = "timed out" if assembled is None else assembled.get("error") or "failed"
            ctx.run("mark-assembly-failed", self._mark_assembly_failed, job_id, reason)
        else:
            ctx.send_event("start-final-scoring", events.SCORING_START, {"job_id": job_id})
            scored = ctx.wait_for_event(
                "wait-for-final-scoring",
                events.SCORING_COMPLETE,
                match={"job_id": job_id},
                timeout=self.settings.scoring_timeout,
            )
            if scored is None or not scored.get("success"):
                reason = "timed out" if scored is None else scored.get("error") or "failed"
                ctx.run("mark-scoring-failed", self._mark_scoring_failed, job_id, reason)

        ctx.cancel_job_runs("release-unit-reviews", events.UNIT_REVIEW_FUNCTION)
        return ctx.run("complete-job", self._complete_job, job_id)

    # -- steps ----------------------------------------------------------------

    def _claim_job(self, job_id: str) -> str:
        job = self.repository.require_job(job_id)
        if job.terminal:
            return SKIPPED
        if job.progress_percent > 0 and job.status not in PRE_PROCESSING_JOB_STATUSES:
            return DUPLICATE
        claimed = self.repository.update_job(
            job_id,
            status=JobStatus.PROCESSING,
            progress_percent=CLAIMED_PROGRESS,
            current_step="Starting generation",
            expected_status=PRE_PROCESSING_JOB_STATUSES | {JobStatus.BLOCKED},
        )
        if claimed:
            return CLAIMED
        current = self.repository.require_job(job_id)
        return SKIPPED if current.terminal else DUPLICATE

    def _load_units(self, job_id: str) -> list[dict[str, Any]]:
        return [unit_payload(unit) for unit in self.repository.list_units(job_id)]

    def _mark_units_dispatched(self, job_id: str, count: int) -> None:
        self.repository.update_job(
            job_id,
            progress_percent=UNIT_PROGRESS_START,
            current_step=f"Generating {count} unit(s)",
        )

    def _convergence(self, job_id: str) -> tuple[dict[str, Any], bool]:
        units = self.repository.list_units(job_id)
        resolved = sorted(unit.unit_id for unit in units if unit.resolved)
        return {"resolved": resolved, "total": len(units)}, len(resolved) == len(units)

    def _apply_unit_policy(self, job_id: str) -> list[int]:
        """Mark blocked units skipped under the skip policy; returns the skipped ids."""

        if self.settings.blocked_unit_policy != BlockedUnitPolicy.SKIP:
            return []
        skipped: list[int] = []
        for unit in self.repository.list_units(job_id):
            updated = self.repository.update_unit(
                job_id,
                unit.unit_id,
                status=UnitStatus.SKIPPED,
                expected_status={UnitStatus.BLOCKED},
            )
            if updated is not None:
                skipped.append(unit.unit_id)
        if skipped:
            logger.info("Job %s: skipped blocked unit(s) %s", job_id, skipped)
        return skipped

    def _mark_assembly_failed(self, job_id: str, reason: str) -> None:
        logger.warning("Job %s: assembly %s; completing without a document", job_id, reason)
        self.repository.update_job(
            job_id,
            assembly_status=PhaseStatus.FAILED,
            final_scoring_status=PhaseStatus.SKIPPED,
            current_step=f"Assembly {reason}",
        )

    def _mark_scoring_failed(self, job_id: str, reason: str) -> None:
        logger.warning("Job %s: final scoring %s; completing without a score", job_id, reason)
        self.repository.update_job(
            job_id,
            final_scoring_status=PhaseStatus.FAILED,
            current_step=f"Final scoring {reason}",
        )

    def _complete_job(self, job_id: str) -> dict[str, Any]:
        self.repository.update_job(
            job_id,
            status=JobStatus.COMPLETED,
            progress_percent=COMPLETED_PROGRESS,
            current_step="Completed",
            expected_status=ACTIVE_JOB_STATUSES,
        )
        self.cache.release(job_id)
        job = self.repository.require_job(job_id)
        return {
            "job_id": job_id,
            "status": job.status.value,
            "assembly_status": job.assembly_status.value if job.assembly_status else None,
            "final_scoring_status": (
                job.final_scoring_status.value if job.final_scoring_status else None
            ),
        }
