"""Content generation collaborator boundary."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol


class GenerationMode(str, Enum):
    """What a generation request asks the collaborator to produce."""

    ANALYSIS = "analysis"
    DRAFT = "draft"
    REWRITE = "rewrite"
    CONSULT = "consult"
    SCORE = "score"


class GenerationError(RuntimeError):
    """Collaborator failure with retryability hint.

    A low score is a normal result and never raises this.
    """

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class GenerationRequest:
    """Inputs for one generation call."""

    mode: GenerationMode
    prompt: str
    job_id: str
    unit_id: int | None = None
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ScoreResult:
    """Quality score with a compliance breakdown."""

    score: float
    strengths: list[str] = field(default_factory=list)
    gaps: list[str] = field(default_factory=list)
    requirement_scores: dict[str, float] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "strengths": list(self.strengths),
            "gaps": list(self.gaps),
            "requirement_scores": dict(self.requirement_scores),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ScoreResult:
        """Validate a decoded score object."""

        raw_score = payload.get("score")
        if isinstance(raw_score, bool) or not isinstance(raw_score, int | float):
            raise GenerationError("Score payload has no numeric 'score'.", transient=False)
        score = float(raw_score)
        if not 0 <= score <= 100:  # noqa: PLR2004
            raise GenerationError(f"Score {score} is outside 0..100.", transient=False)
        requirement_scores = payload.get("requirement_scores") or {}
        if not isinstance(requirement_scores, dict):
            raise GenerationError("'requirement_scores' must be an object.", transient=False)
        return cls(
            score=score,
            strengths=[str(item) for item in payload.get("strengths") or []],
            gaps=[str(item) for item in payload.get("gaps") or []],
            requirement_scores={
                str(key): float(value) for key, value in requirement_scores.items()
            },
        )


class ContentGenerator(Protocol):
    """Protocol implemented by content generation backends."""

    def generate(self, request: GenerationRequest) -> str:
        """Return generated text or raise :class:`GenerationError`."""

    def score(self, *, job_id: str, content: str, criteria: str) -> ScoreResult:
        """Score content against criteria or raise :class:`GenerationError`."""
