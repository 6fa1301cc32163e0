"""Per-unit generation and the review/iterate/approve state machine."""

from __future__ import annotations

import logging
from typing import Any

from proposal_pipeline.config import PipelineSettings
from proposal_pipeline.generation import ContentGenerator, GenerationMode, GenerationRequest
from proposal_pipeline.pipeline import events
from proposal_pipeline.pipeline.context import ContextCache
from proposal_pipeline.pipeline.models import (
    Decision,
    DecisionPayload,
    UnitStatus,
    UnitView,
)
from proposal_pipeline.pipeline.prompts import (
    consult_prompt,
    draft_prompt,
    rewrite_prompt,
    unit_criteria,
)
from proposal_pipeline.pipeline.repository import JobRepository
from proposal_pipeline.runtime import (
    DurableRuntime,
    FunctionSpec,
    RuntimeEventView,
    StepContext,
    StepFailedError,
)

logger = logging.getLogger(__name__)


class UnitReviewMachine:
    """Drives one unit from generation to a resolved state.

    ``unit.generate`` produces the first draft and reports it as
    ``unit.generated``, which requests review through ``unit.consult``. The
    review run then loops
    score -> (consult) -> await decision -> approve | rewrite, one named step
    per transition and iteration, so a replay after a crash resumes exactly
    where the unit stopped. A unit reaches ``approved`` only through an
    approving decision; exhausting the iteration ceiling blocks it.
    """

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
        runtime.register(
            FunctionSpec(
                function_id=events.UNIT_GENERATION_FUNCTION,
                trigger=events.UNIT_GENERATE,
                handler=self.generate_unit,
                cancel_on=events.GENERATION_CANCELLED,
                concurrency=self.settings.unit_concurrency,
            ),
        )
        runtime.register(
            FunctionSpec(
                function_id=events.UNIT_HANDOFF_FUNCTION,
                trigger=events.UNIT_GENERATED,
                handler=self.hand_off_unit,
                cancel_on=events.GENERATION_CANCELLED,
            ),
        )
        runtime.register(
            FunctionSpec(
                function_id=events.UNIT_REVIEW_FUNCTION,
                trigger=events.UNIT_CONSULT,
                handler=self.review_unit,
                cancel_on=events.GENERATION_CANCELLED,
            ),
        )

    # -- generation -----------------------------------------------------------

    def generate_unit(self, ctx: StepContext, event: RuntimeEventView) -> dict[str, Any]:
        job_id = str(event.payload["job_id"])
        unit_id = int(event.payload["unit_id"])
        started = ctx.run("mark-generating", self._mark_generating, job_id, unit_id)
        if not started:
            logger.info("Job %s unit %s is not pending; generation skipped", job_id, unit_id)
            return {"unit_id": unit_id, "status": "skipped"}
        try:
            content = ctx.run("generate-content", self._generate_draft, job_id, unit_id)
            ctx.run("store-content", self._store_content, job_id, unit_id, content)
        except StepFailedError as error:
            ctx.run("block-unit", self._block, job_id, unit_id, error.message)
            ctx.send_event(
                "report-failure",
                events.UNIT_GENERATED,
                {"job_id": job_id, "unit_id": unit_id, "success": False, "error": error.message},
            )
            return {"unit_id": unit_id, "status": UnitStatus.BLOCKED.value}
        ctx.send_event(
            "report-generated",
            events.UNIT_GENERATED,
            {"job_id": job_id, "unit_id": unit_id, "success": True},
        )
        return {"unit_id": unit_id, "status": UnitStatus.READY_FOR_SCORING.value}

    def hand_off_unit(self, ctx: StepContext, event: RuntimeEventView) -> dict[str, Any]:
        """Request scoring for a freshly drafted unit reported by ``unit.generated``."""

        job_id = str(event.payload["job_id"])
        unit_id = int(event.payload["unit_id"])
        if not event.payload.get("success"):
            return {"unit_id": unit_id, "review_requested": False}
        ready = ctx.run("check-ready", self._ready_for_scoring, job_id, unit_id)
        if not ready:
            logger.info("Job %s unit %s is not ready for scoring; review skipped", job_id, unit_id)
            return {"unit_id": unit_id, "review_requested": False}
        ctx.send_event(
            "request-review",
            events.UNIT_CONSULT,
            {"job_id": job_id, "unit_id": unit_id, "iteration": 1},
        )
        return {"unit_id": unit_id, "review_requested": True}

    def _ready_for_scoring(self, job_id: str, unit_id: int) -> bool:
        unit = self.repository.require_unit(job_id, unit_id)
        return unit.status == UnitStatus.READY_FOR_SCORING and unit.iteration == 1

    def _mark_generating(self, job_id: str, unit_id: int) -> bool:
        updated = self.repository.update_unit(
            job_id,
            unit_id,
            status=UnitStatus.GENERATING,
            expected_status={UnitStatus.PENDING, UnitStatus.GENERATING},
        )
        if updated is None:
            return False
        self.repository.update_job(
            job_id,
            progress_percent=updated.progress_start,
            current_step=f"Generating {updated.name}",
        )
        return True

    def _generate_draft(self, job_id: str, unit_id: int) -> str:
        unit = self.repository.require_unit(job_id, unit_id)
        return self.generator.generate(
            GenerationRequest(
                mode=GenerationMode.DRAFT,
                prompt=draft_prompt(self.cache.get(job_id), unit),
                job_id=job_id,
                unit_id=unit_id,
            ),
        )

    def _store_content(self, job_id: str, unit_id: int, content: str) -> None:
        unit = self.repository.update_unit(
            job_id,
            unit_id,
            status=UnitStatus.READY_FOR_SCORING,
            content=content,
        )
        if unit is not None:
            self.repository.update_job(
                job_id,
                progress_percent=(unit.progress_start + unit.progress_end) // 2,
                current_step=f"{unit.name} drafted",
            )

    # -- review loop ----------------------------------------------------------

    def review_unit(self, ctx: StepContext, event: RuntimeEventView) -> dict[str, Any]:
        job_id = str(event.payload["job_id"])
        unit_id = int(event.payload["unit_id"])
        iteration = int(event.payload.get("iteration", 1))

        while True:
            try:
                score = ctx.run(f"score-{iteration}", self._score, job_id, unit_id)
            except StepFailedError as error:
                ctx.run(f"block-{iteration}", self._block, job_id, unit_id, error.message)
                return self._outcome(unit_id, UnitStatus.BLOCKED, iteration)

            if score < self.settings.consult_score_threshold:
                try:
                    ctx.run(f"consult-{iteration}", self._consult, job_id, unit_id)
                except StepFailedError as error:
                    logger.warning(
                        "Job %s unit %s: consultation unavailable: %s",
                        job_id,
                        unit_id,
                        error.message,
                    )

            since = ctx.event_cursor(f"decision-cursor-{iteration}")
            ctx.run(f"await-approval-{iteration}", self._await_approval, job_id, unit_id)
            decision = self._next_decision(ctx, job_id, unit_id, iteration, since)
            if decision is None:
                reason = (
                    f"No decision within {self.settings.decision_timeout_seconds // 3600} hours"
                )
                ctx.run(f"decision-timeout-{iteration}", self._block, job_id, unit_id, reason)
                return self._outcome(unit_id, UnitStatus.BLOCKED, iteration)

            if decision["decision"] == Decision.APPROVED.value:
                ctx.run(
                    f"approve-{iteration}",
                    self._approve,
                    job_id,
                    unit_id,
                    decision["final_score"],
                )
                return self._outcome(unit_id, UnitStatus.APPROVED, iteration)

            if iteration >= self.settings.max_iterations:
                reason = f"Iteration limit of {self.settings.max_iterations} reached"
                ctx.run(f"exhausted-{iteration}", self._block, job_id, unit_id, reason)
                return self._outcome(unit_id, UnitStatus.BLOCKED, iteration)

            iteration += 1
            ctx.run(
                f"begin-iteration-{iteration}",
                self._begin_iteration,
                job_id,
                unit_id,
                iteration,
            )
            try:
                ctx.run(
                    f"rewrite-{iteration}",
                    self._rewrite,
                    job_id,
                    unit_id,
                    decision["feedback"],
                )
            except StepFailedError as error:
                ctx.run(f"block-{iteration}", self._block, job_id, unit_id, error.message)
                return self._outcome(unit_id, UnitStatus.BLOCKED, iteration)

    def _next_decision(
        self,
        ctx: StepContext,
        job_id: str,
        unit_id: int,
        iteration: int,
        since: int,
    ) -> dict[str, Any] | None:
        """First well-formed decision for ``iteration``; malformed ones are skipped."""

        attempt = 1
        while True:
            suffix = str(iteration) if attempt == 1 else f"{iteration}-{attempt}"
            received = ctx.wait_for_event(
                f"decision-{suffix}",
                events.UNIT_DECISION,
                match={"job_id": job_id, "unit_id": unit_id, "iteration": iteration},
                timeout=self.settings.decision_timeout,
                since_seq=since,
            )
            if received is None:
                return None
            try:
                return ctx.run(f"consume-decision-{suffix}", self._consume_decision, received)
            except StepFailedError as error:
                logger.warning(
                    "Job %s unit %s: ignoring malformed decision for iteration %s: %s",
                    job_id,
                    unit_id,
                    iteration,
                    error.message,
                )
                attempt += 1

    def _score(self, job_id: str, unit_id: int) -> float:
        unit = self.repository.require_unit(job_id, unit_id)
        self.repository.update_unit(job_id, unit_id, status=UnitStatus.SCORING)
        criteria = unit_criteria(unit)
        result = self.generator.score(
            job_id=job_id,
            content=unit.content or "",
            criteria=criteria,
        )
        self.repository.update_unit(
            job_id,
            unit_id,
            score=result.score,
            compliance={"criteria": criteria, **result.to_payload()},
        )
        logger.info(
            "Job %s unit %s iteration %s scored %.1f",
            job_id,
            unit_id,
            unit.iteration,
            result.score,
        )
        return result.score

    def _consult(self, job_id: str, unit_id: int) -> str:
        unit = self.repository.require_unit(job_id, unit_id)
        insights = self.generator.generate(
            GenerationRequest(
                mode=GenerationMode.CONSULT,
                prompt=consult_prompt(unit, unit.compliance),
                job_id=job_id,
                unit_id=unit_id,
            ),
        )
        self.repository.update_unit(job_id, unit_id, insights=insights)
        return insights

    def _await_approval(self, job_id: str, unit_id: int) -> None:
        self.repository.update_unit(
            job_id,
            unit_id,
            status=UnitStatus.AWAITING_APPROVAL,
            awaiting_approval=True,
        )
        self.repository.refresh_review_status(job_id)

    def _consume_decision(self, received: dict[str, Any]) -> dict[str, Any]:
        decision = DecisionPayload.parse(received)
        self.repository.record_decision(decision)
        return decision.to_payload()

    def _approve(self, job_id: str, unit_id: int, final_score: float | None) -> None:
        unit = self.repository.update_unit(
            job_id,
            unit_id,
            status=UnitStatus.APPROVED,
            awaiting_approval=False,
            score=final_score,
        )
        self.repository.refresh_review_status(job_id)
        if unit is not None:
            self.repository.update_job(
                job_id,
                progress_percent=unit.progress_end,
                current_step=f"{unit.name} approved",
            )

    def _begin_iteration(self, job_id: str, unit_id: int, iteration: int) -> None:
        self.repository.update_unit(
            job_id,
            unit_id,
            status=UnitStatus.ITERATING,
            iteration=iteration,
            awaiting_approval=False,
        )
        self.repository.refresh_review_status(job_id)

    def _rewrite(self, job_id: str, unit_id: int, feedback: str) -> None:
        unit = self.repository.require_unit(job_id, unit_id)
        content = self.generator.generate(
            GenerationRequest(
                mode=GenerationMode.REWRITE,
                prompt=rewrite_prompt(
                    self.cache.get(job_id),
                    unit,
                    feedback=feedback,
                    insights=unit.insights,
                ),
                job_id=job_id,
                unit_id=unit_id,
            ),
        )
        self.repository.update_unit(
            job_id,
            unit_id,
            status=UnitStatus.READY_FOR_SCORING,
            content=content,
            insights=None,
        )

    def _block(self, job_id: str, unit_id: int, reason: str) -> None:
        logger.warning("Job %s unit %s blocked: %s", job_id, unit_id, reason)
        self.repository.update_unit(
            job_id,
            unit_id,
            status=UnitStatus.BLOCKED,
            awaiting_approval=False,
            insights=reason,
        )
        self.repository.refresh_review_status(job_id)

    @staticmethod
    def _outcome(unit_id: int, status: UnitStatus, iteration: int) -> dict[str, Any]:
        return {"unit_id": unit_id, "status": status.value, "iteration": iteration}


def unit_payload(unit: UnitView) -> dict[str, Any]:
    """``unit.generate`` payload for one unit."""

    return {
        "job_id": unit.job_id,
        "unit_id": unit.unit_id,
        "name": unit.name,
        "progress_start": unit.progress_start,
        "progress_end": unit.progress_end,
    }
