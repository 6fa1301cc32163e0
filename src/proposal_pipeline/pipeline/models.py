"""Domain models for proposal jobs, units and review decisions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Job lifecycle states."""

    DRAFT = "draft"
    INTAKE = "intake"
    VALIDATING = "validating"
    BLOCKED = "blocked"
    PROCESSING = "processing"
    REVIEW = "review"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
PRE_PROCESSING_JOB_STATUSES = frozenset({JobStatus.DRAFT, JobStatus.INTAKE, JobStatus.VALIDATING})
ACTIVE_JOB_STATUSES = frozenset({JobStatus.PROCESSING, JobStatus.REVIEW})


class UnitStatus(str, Enum):
    """Per-unit review state machine states."""

    PENDING = "pending"
    GENERATING = "generating"
    READY_FOR_SCORING = "ready_for_scoring"
    SCORING = "scoring"
    AWAITING_APPROVAL = "awaiting_approval"
    ITERATING = "iterating"
    APPROVED = "approved"
    BLOCKED = "blocked"
    SKIPPED = "skipped"


RESOLVED_UNIT_STATUSES = frozenset({UnitStatus.APPROVED, UnitStatus.BLOCKED, UnitStatus.SKIPPED})


class Decision(str, Enum):
    APPROVED = "approved"
    ITERATE = "iterate"


class PhaseStatus(str, Enum):
    """Outcome annotation for the degradable assembly and scoring phases."""

    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class BlockedUnitPolicy(str, Enum):
    """How the coordinator treats blocked units once convergence is reached."""

    DEGRADE = "degrade"
    SKIP = "skip"


class JobNotFoundError(LookupError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class UnitNotFoundError(LookupError):
    def __init__(self, job_id: str, unit_id: int) -> None:
        super().__init__(f"Unit {unit_id} not found in job {job_id}")
        self.job_id = job_id
        self.unit_id = unit_id


class ConcurrentUpdateError(RuntimeError):
    """Optimistic concurrency conflict that survived the re-read loop."""


class PreparationFailedError(RuntimeError):
    """Preparation did not complete; fatal to the whole job."""


class InvalidDecisionError(ValueError):
    """Malformed or out-of-turn review decision."""

    transient = False


class InvalidJobInputError(ValueError):
    """Job input cannot be prepared."""

    transient = False


@dataclass(slots=True)
class UnitSpec:
    """One unit to establish at job creation."""

    name: str
    criteria: str = ""


@dataclass(slots=True)
class JobCreate:
    """Input payload for creating a job with its units."""

    input: dict[str, Any]
    units: list[UnitSpec]
    job_id: str | None = None
    status: JobStatus = JobStatus.DRAFT


@dataclass(slots=True)
class UnitView:
    """Readable unit row."""

    job_id: str
    unit_id: int
    name: str
    status: UnitStatus
    iteration: int
    score: float | None
    content: str | None
    compliance: dict[str, Any]
    insights: str | None
    awaiting_approval: bool
    progress_start: int
    progress_end: int
    version: int
    updated_at: datetime

    @property
    def resolved(self) -> bool:
        return self.status in RESOLVED_UNIT_STATUSES


@dataclass(slots=True)
class JobView:
    """Readable job with its units in unit order."""

    job_id: str
    status: JobStatus
    progress_percent: int
    current_step: str | None
    input: dict[str, Any]
    preparation: dict[str, Any] | None
    assembly_status: PhaseStatus | None
    final_scoring_status: PhaseStatus | None
    final_score: float | None
    assembled_document: str | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime
    units: list[UnitView] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def unit(self, unit_id: int) -> UnitView:
        for unit in self.units:
            if unit.unit_id == unit_id:
                return unit
        raise UnitNotFoundError(self.job_id, unit_id)


@dataclass(slots=True)
class DecisionRecord:
    """Archived human decision for one unit iteration."""

    job_id: str
    unit_id: int
    iteration: int
    decision: Decision
    feedback: str | None
    final_score: float | None
    created_at: datetime


@dataclass(slots=True)
class DecisionPayload:
    """Validated ``unit.decision`` event payload."""

    job_id: str
    unit_id: int
    iteration: int
    decision: Decision
    feedback: str | None = None
    final_score: float | None = None

    @classmethod
    def parse(cls, payload: dict[str, Any]) -> DecisionPayload:
        """Validate a raw payload; feedback is required to iterate, a score to approve."""

        try:
            decision = Decision(payload.get("decision"))
        except ValueError as error:
            raise InvalidDecisionError(
                f"Unknown decision: {payload.get('decision')!r}",
            ) from error
        job_id = payload.get("job_id")
        if not isinstance(job_id, str) or not job_id.strip():
            raise InvalidDecisionError(f"Invalid job_id: {job_id!r}")
        unit_id = payload.get("unit_id")
        iteration = payload.get("iteration")
        if isinstance(unit_id, bool) or not isinstance(unit_id, int) or unit_id < 1:
            raise InvalidDecisionError(f"Invalid unit_id: {unit_id!r}")
        if isinstance(iteration, bool) or not isinstance(iteration, int) or iteration < 1:
            raise InvalidDecisionError(f"Invalid iteration: {iteration!r}")

        feedback = payload.get("feedback")
        if feedback is not None and not isinstance(feedback, str):
            raise InvalidDecisionError("feedback must be a string")
        final_score = payload.get("final_score")
        if final_score is not None:
            if isinstance(final_score, bool) or not isinstance(final_score, int | float):
                raise InvalidDecisionError("final_score must be a number")
            final_score = float(final_score)

        if decision == Decision.ITERATE and not (feedback and feedback.strip()):
            raise InvalidDecisionError("feedback is required to iterate")
        if decision == Decision.APPROVED and final_score is None:
            raise InvalidDecisionError("final_score is required to approve")

        return cls(
            job_id=job_id,
            unit_id=unit_id,
            iteration=iteration,
            decision=decision,
            feedback=feedback,
            final_score=final_score,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "unit_id": self.unit_id,
            "iteration": self.iteration,
            "decision": self.decision.value,
            "feedback": self.feedback,
            "final_score": self.final_score,
        }
