"""Content generation collaborator implementations."""

from proposal_pipeline.generation.base import (
    ContentGenerator,
    GenerationError,
    GenerationMode,
    GenerationRequest,
    ScoreResult,
)
from proposal_pipeline.generation.cli_backend import CliContentGenerator

__all__ = [
    "CliContentGenerator",
    "ContentGenerator",
    "GenerationError",
    "GenerationMode",
    "GenerationRequest",
    "ScoreResult",
]
