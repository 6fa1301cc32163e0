"""Prompt builders for the generation collaborator."""

from __future__ import annotations

import json
from typing import Any

from proposal_pipeline.pipeline.context import JobContext
from proposal_pipeline.pipeline.models import UnitView

DEFAULT_UNIT_CRITERIA = (
    "Score how well the section answers the solicitation: completeness, "
    "specificity, compliance with stated requirements and clarity."
)
DOCUMENT_CRITERIA = (
    "Score the assembled proposal as a whole: consistency between sections, "
    "coverage of every requirement and overall persuasiveness."
)


def analysis_prompt(job_input: dict[str, Any]) -> str:
    return (
        "Analyze the proposal request below. List the evaluation criteria, "
        "mandatory requirements and the win themes each section must support.\n\n"
        f"{json.dumps(job_input, ensure_ascii=False, indent=2, sort_keys=True)}\n"
    )


def draft_prompt(context: JobContext, unit: UnitView) -> str:
    return (
        f"Write the '{unit.name}' section of the proposal.\n\n"
        f"{context.summary()}\n\n"
        f"Evaluation criteria: {unit_criteria(unit)}\n"
    )


def rewrite_prompt(
    context: JobContext,
    unit: UnitView,
    *,
    feedback: str,
    insights: str | None,
) -> str:
    parts = [
        f"Revise the '{unit.name}' section (iteration {unit.iteration}).",
        context.summary(),
        f"Reviewer feedback:\n{feedback}",
    ]
    if insights:
        parts.append(f"Improvement notes:\n{insights}")
    parts.append(f"Current draft:\n{unit.content or ''}")
    return "\n\n".join(parts) + "\n"


def consult_prompt(unit: UnitView, compliance: dict[str, Any]) -> str:
    gaps = compliance.get("gaps") or []
    gap_lines = "\n".join(f"- {gap}" for gap in gaps) or "- none reported"
    return (
        f"The '{unit.name}' section scored {unit.score}. Suggest concrete, "
        "prioritized improvements that would raise the score.\n\n"
        f"Reported gaps:\n{gap_lines}\n\n"
        f"Section:\n{unit.content or ''}\n"
    )


def unit_criteria(unit: UnitView) -> str:
    criteria = unit.compliance.get("criteria")
    return criteria if isinstance(criteria, str) and criteria else DEFAULT_UNIT_CRITERIA
