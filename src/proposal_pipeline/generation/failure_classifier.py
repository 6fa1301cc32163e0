"""Deterministic generation failure classification for step retry policy."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TIMEOUT = "timeout"
    TRANSIENT = "transient"
    NON_RETRYABLE = "non_retryable"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"


_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "model is not available",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "timed out",
)

_TRANSIENT_CLASSES = frozenset({FailureClass.TIMEOUT, FailureClass.TRANSIENT})


@dataclass(slots=True)
class GenerationFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None

    @property
    def transient(self) -> bool:
        return self.failure_class in _TRANSIENT_CLASSES

    def describe(self) -> str:
        if self.matched_pattern is None:
            return self.matched_rule
        return f"{self.matched_rule} ({self.matched_pattern!r})"


def classify_generation_failure(
    *,
    exit_code: int,
    timed_out: bool,
    stdout: str,
    stderr: str,
    transient_exit_codes: tuple[int, ...],
) -> GenerationFailureClassification:
    """Classify a failed collaborator call into a deterministic retry class.

    Account problems (quota, auth, unknown model) win over transient hints.
    """

    if timed_out:
        return GenerationFailureClassification(
            failure_class=FailureClass.TIMEOUT,
            matched_rule="timeout",
            matched_pattern=None,
        )

    haystack = f"{stderr}\n{stdout}".lower()
    rules: tuple[tuple[str, tuple[str, ...], FailureClass], ...] = (
        ("billing_or_quota", _BILLING_OR_QUOTA_PATTERNS, FailureClass.BILLING_OR_QUOTA),
        ("access_or_auth", _ACCESS_OR_AUTH_PATTERNS, FailureClass.ACCESS_OR_AUTH),
        ("model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS, FailureClass.MODEL_NOT_AVAILABLE),
        ("rate_limit", _RATE_LIMIT_PATTERNS, FailureClass.TRANSIENT),
        ("network", _NETWORK_PATTERNS, FailureClass.TRANSIENT),
    )
    for rule, patterns, failure_class in rules:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return GenerationFailureClassification(
                failure_class=failure_class,
                matched_rule=rule,
                matched_pattern=pattern,
            )

    if exit_code in transient_exit_codes:
        return GenerationFailureClassification(
            failure_class=FailureClass.TRANSIENT,
            matched_rule="transient_exit_code",
            matched_pattern=None,
        )

    return GenerationFailureClassification(
        failure_class=FailureClass.NON_RETRYABLE,
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
