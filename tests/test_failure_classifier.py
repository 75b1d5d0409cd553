from __future__ import annotations

import subprocess

import allure
import pytest

from context_relay.orchestrator.errors import ProcessorError
from context_relay.orchestrator.failure_classifier import (
    SESSION_FAILURE_CLASSIFIER_VERSION,
    classify_session_failure,
    orphaned_session_classification,
)
from context_relay.orchestrator.models import RETRYABLE_FAILURE_CLASSES, FailureClass

pytestmark = [
    allure.epic("Execution"),
    allure.feature("Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert SESSION_FAILURE_CLASSIFIER_VERSION == 1


def test_context_overflow_wins_over_processor_flags() -> None:
    classified = classify_session_failure(
        ProcessorError("Prompt is too long: 210000 tokens > 200000", transient=True),
    )
    assert classified.failure_class == FailureClass.CONTEXT_OVERFLOW
    assert classified.matched_rule == "context_overflow"
    assert classified.matched_pattern == "prompt is too long"


@pytest.mark.parametrize(
    "error",
    [TimeoutError("took too long"), subprocess.TimeoutExpired(cmd="agent", timeout=5)],
)
def test_timeouts_are_retryable(error: BaseException) -> None:
    classified = classify_session_failure(error)
    assert classified.failure_class == FailureClass.TIMEOUT
    assert classified.failure_class in RETRYABLE_FAILURE_CLASSES


def test_missing_resource_is_not_retried() -> None:
    classified = classify_session_failure(FileNotFoundError("notes/a.txt"))
    assert classified.failure_class == FailureClass.PROCESSOR_NON_RETRYABLE
    assert classified.reason_code == "resource_unavailable"
    assert classified.failure_class not in RETRYABLE_FAILURE_CLASSES


def test_rate_limit_text_is_transient_even_without_flag() -> None:
    classified = classify_session_failure(
        ProcessorError("HTTP 429 Too Many Requests", transient=False),
    )
    assert classified.failure_class == FailureClass.PROCESSOR_TRANSIENT
    assert classified.matched_rule == "rate_limit_transient"


def test_processor_error_follows_transient_flag() -> None:
    transient = classify_session_failure(ProcessorError("exit code 75", transient=True))
    permanent = classify_session_failure(ProcessorError("exit code 3", transient=False))

    assert transient.failure_class == FailureClass.PROCESSOR_TRANSIENT
    assert transient.matched_rule == "transient_flag"
    assert permanent.failure_class == FailureClass.PROCESSOR_NON_RETRYABLE
    assert permanent.matched_rule == "processor_error"


def test_connection_errors_are_transient() -> None:
    classified = classify_session_failure(ConnectionResetError("peer went away"))
    assert classified.failure_class == FailureClass.PROCESSOR_TRANSIENT


def test_unexpected_exceptions_fall_back_to_session_crash() -> None:
    classified = classify_session_failure(KeyError("missing"))
    assert classified.failure_class == FailureClass.SESSION_CRASH
    assert classified.reason_code == "unexpected_keyerror"
    assert classified.matched_rule == "fallback_session_crash"


def test_orphaned_session_details_are_serializable() -> None:
    details = orphaned_session_classification().to_details()
    assert details == {
        "classifier_version": 1,
        "failure_class": "session_crash",
        "reason_code": "orphaned_session",
        "matched_rule": "recovery_replay",
        "matched_pattern": None,
    }
