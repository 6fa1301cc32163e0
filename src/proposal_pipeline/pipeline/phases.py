"""Collaborator functions for preparation, assembly and final scoring.

Each function reacts to one outbound coordinator event and always answers
with the matching completion event, reporting ``success=False`` instead of
staying silent when its own steps fail.
"""

from __future__ import annotations

import logging
from typing import Any

from proposal_pipeline.config import PipelineSettings
from proposal_pipeline.generation import ContentGenerator, GenerationMode, GenerationRequest
from proposal_pipeline.pipeline import events
from proposal_pipeline.pipeline.context import ContextCache, JobContext
from proposal_pipeline.pipeline.models import (
    InvalidJobInputError,
    JobView,
    PhaseStatus,
    UnitStatus,
)
from proposal_pipeline.pipeline.prompts import DOCUMENT_CRITERIA, analysis_prompt
from proposal_pipeline.pipeline.repository import JobRepository
from proposal_pipeline.runtime import (
    DurableRuntime,
    FunctionSpec,
    RuntimeEventView,
    StepContext,
    StepFailedError,
)

logger = logging.getLogger(__name__)

PREPARATION_STARTED_PROGRESS = 10
PREPARATION_DONE_PROGRESS = 25
ASSEMBLY_DONE_PROGRESS = 90
SCORING_DONE_PROGRESS = 95


class PhaseCollaborators:
    """Preparation, assembly and final scoring as durable functions."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        generator: ContentGenerator,
        cache: ContextCache,
        settings: PipelineSettings,
    ) -> None:
        self.repository = repository
        self.generator = generator
        self.cache = cache
        self.settings = settings

    def register(self, runtime: DurableRuntime) -> None:
        for function_id, trigger, handler in (
            (events.PREPARATION_FUNCTION, events.PREPARATION_START, self.prepare),
            (events.ASSEMBLY_FUNCTION, events.ASSEMBLY_START, self.assemble),
            (events.FINAL_SCORING_FUNCTION, events.SCORING_START, self.score_document),
        ):
            runtime.register(
                FunctionSpec(
                    function_id=function_id,
                    trigger=trigger,
                    handler=handler,
                    cancel_on=events.GENERATION_CANCELLED,
                ),
            )

    # -- preparation ----------------------------------------------------------

    def prepare(self, ctx: StepContext, event: RuntimeEventView) -> dict[str, Any]:
        job_id = str(event.payload["job_id"])
        try:
            ctx.run("mark-preparing", self._mark_preparing, job_id)
            job_input = ctx.run("validate-input", self._validate_input, job_id)
            analysis = ctx.run("analyze-request", self._analyze, job_id, job_input)
            ctx.run("store-preparation", self._store_preparation, job_id, analysis)
        except StepFailedError as error:
            logger.error("Preparation failed for job %s: %s", job_id, error.message)
            ctx.send_event(
                "report-failure",
                events.PREPARATION_COMPLETE,
                {"job_id": job_id, "success": False, "error": error.message},
            )
            return {"success": False, "error": error.message}
        ctx.send_event(
            "report-success",
            events.PREPARATION_COMPLETE,
            {"job_id": job_id, "success": True},
        )
        return {"success": True}

    def _mark_preparing(self, job_id: str) -> None:
        self.repository.update_job(
            job_id,
            progress_percent=PREPARATION_STARTED_PROGRESS,
            current_step="Preparing proposal inputs",
        )

    def _validate_input(self, job_id: str) -> dict[str, Any]:
        job = self.repository.require_job(job_id)
        title = job.input.get("title")
        if not isinstance(title, str) or not title.strip():
            raise InvalidJobInputError("Job input requires a non-empty 'title'.")
        requirements = job.input.get("requirements", [])
        if not isinstance(requirements, list):
            raise InvalidJobInputError("Job input 'requirements' must be a list.")
        return job.input

    def _analyze(self, job_id: str, job_input: dict[str, Any]) -> str:
        return self.generator.generate(
            GenerationRequest(
                mode=GenerationMode.ANALYSIS,
                prompt=analysis_prompt(job_input),
                job_id=job_id,
            ),
        )

    def _store_preparation(self, job_id: str, analysis: str) -> None:
        job = self.repository.require_job(job_id)
        preparation = {"analysis": analysis, "unit_count": len(job.units)}
        self.repository.update_job(
            job_id,
            preparation=preparation,
            progress_percent=PREPARATION_DONE_PROGRESS,
            current_step="Preparation complete",
        )
        self.cache.store(JobContext(job_id=job_id, input=job.input, preparation=preparation))

    # -- assembly -------------------------------------------------------------

    def assemble(self, ctx: StepContext, event: RuntimeEventView) -> dict[str, Any]:
        job_id = str(event.payload["job_id"])
        try:
            degraded = ctx.run("assemble-document", self._assemble, job_id)
        except StepFailedError as error:
            ctx.send_event(
                "report-failure",
                events.ASSEMBLY_COMPLETE,
                {"job_id": job_id, "success": False, "error": error.message},
            )
            return {"success": False, "error": error.message}
        ctx.send_event(
            "report-assembled",
            events.ASSEMBLY_COMPLETE,
            {"job_id": job_id, "success": True, "degraded_units": degraded},
        )
        return {"success": True, "degraded_units": degraded}

    def _assemble(self, job_id: str) -> list[int]:
        job = self.repository.require_job(job_id)
        document, degraded = render_document(job)
        self.repository.update_job(
            job_id,
            assembled_document=document,
            assembly_status=PhaseStatus.COMPLETED,
            progress_percent=ASSEMBLY_DONE_PROGRESS,
            current_step="Document assembled",
        )
        if degraded:
            logger.warning("Job %s assembled with degraded units %s", job_id, degraded)
        return degraded

    # -- final scoring --------------------------------------------------------

    def score_document(self, ctx: StepContext, event: RuntimeEventView) -> dict[str, Any]:
        job_id = str(event.payload["job_id"])
        try:
            score = ctx.run("score-document", self._score_document, job_id)
        except StepFailedError as error:
            ctx.send_event(
                "report-failure",
                events.SCORING_COMPLETE,
                {"job_id": job_id, "success": False, "error": error.message},
            )
            return {"success": False, "error": error.message}
        ctx.send_event(
            "report-scored",
            events.SCORING_COMPLETE,
            {"job_id": job_id, "success": True, "score": score},
        )
        return {"success": True, "score": score}

    def _score_document(self, job_id: str) -> float:
        job = self.repository.require_job(job_id)
        if not job.assembled_document:
            raise InvalidJobInputError(f"Job {job_id} has no assembled document to score.")
        result = self.generator.score(
            job_id=job_id,
            content=job.assembled_document,
            criteria=DOCUMENT_CRITERIA,
        )
        self.repository.update_job(
            job_id,
            final_score=result.score,
            final_scoring_status=PhaseStatus.COMPLETED,
            progress_percent=SCORING_DONE_PROGRESS,
            current_step="Final scoring complete",
        )
        return result.score


def render_document(job: JobView) -> tuple[str, list[int]]:
    """Join unit contents in unit order; returns the document and degraded unit ids."""

    title = job.input.get("title") or job.job_id
    parts = [f"# {title}"]
    degraded: list[int] = []
    for unit in job.units:
        if unit.status == UnitStatus.SKIPPED:
            continue
        parts.append(f"## {unit.unit_id}. {unit.name}")
        if unit.status != UnitStatus.APPROVED:
            degraded.append(unit.unit_id)
            parts.append(f"> Degraded: section ended as {unit.status.value}, not approved.")
        parts.append((unit.content or "").strip() or "_No content generated._")
    return "\n\n".join(parts) + "\n", degraded
