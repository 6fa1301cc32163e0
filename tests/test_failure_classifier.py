from __future__ import annotations

import allure
import pytest

from proposal_pipeline.generation.failure_classifier import (
    FailureClass,
    classify_generation_failure,
)

pytestmark = [
    allure.epic("Generation"),
    allure.feature("Failure classification"),
]


def _classify(*, exit_code: int = 1, stderr: str = "", stdout: str = "", timed_out=False):
    return classify_generation_failure(
        exit_code=exit_code,
        timed_out=timed_out,
        stdout=stdout,
        stderr=stderr,
        transient_exit_codes=(137, 143),
    )


def test_classifier_prefers_quota_over_transient_exit_code() -> None:
    classified = _classify(exit_code=137, stderr="Quota exceeded for this project")

    assert classified.failure_class == FailureClass.BILLING_OR_QUOTA
    assert classified.matched_rule == "billing_or_quota"
    assert classified.matched_pattern == "quota"
    assert not classified.transient


def test_timeout_wins_over_output() -> None:
    classified = _classify(timed_out=True, stderr="invalid api key")

    assert classified.failure_class == FailureClass.TIMEOUT
    assert classified.transient
    assert classified.describe() == "timeout"


@pytest.mark.parametrize(
    ("stderr", "failure_class", "transient"),
    [
        ("HTTP 429 too many requests, please retry", FailureClass.TRANSIENT, True),
        ("curl: could not resolve host", FailureClass.TRANSIENT, True),
        ("403 Forbidden", FailureClass.ACCESS_OR_AUTH, False),
        ("error: unknown model 'gpt-9'", FailureClass.MODEL_NOT_AVAILABLE, False),
    ],
)
def test_classifier_maps_stderr_patterns(stderr, failure_class, transient) -> None:
    classified = _classify(stderr=stderr)

    assert classified.failure_class == failure_class
    assert classified.transient is transient


def test_killed_process_without_hints_is_transient() -> None:
    classified = _classify(exit_code=143)

    assert classified.failure_class == FailureClass.TRANSIENT
    assert classified.matched_rule == "transient_exit_code"


def test_classifier_falls_back_to_non_retryable() -> None:
    classified = _classify(exit_code=2, stdout="fatal: unsupported syntax in prompt template")

    assert classified.failure_class == FailureClass.NON_RETRYABLE
    assert classified.matched_rule == "fallback_non_retryable"
    assert classified.describe() == "fallback_non_retryable"


def test_describe_names_the_matched_pattern() -> None:
    classified = _classify(stderr="connection reset by peer")

    assert classified.describe() == "network ('connection reset')"
