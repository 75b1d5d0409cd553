"""Deterministic session failure classification for retry policy."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass

from context_relay.orchestrator.errors import ProcessorError
from context_relay.orchestrator.models import FailureClass

SESSION_FAILURE_CLASSIFIER_VERSION = 1

_CONTEXT_OVERFLOW_PATTERNS: tuple[str, ...] = (
    "context length",
    "context window",
    "maximum context",
    "prompt is too long",
    "too many tokens",
    "token limit",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "network error",
    "could not resolve host",
    "dns",
)


@dataclass(slots=True)
class SessionFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for ledger records."""

        return {
            "classifier_version": SESSION_FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_session_failure(error: BaseException) -> SessionFailureClassification:  # noqa: PLR0911
    """Classify an exception raised inside a worker session."""

    haystack = str(error).lower()

    pattern = _first_match(haystack, _CONTEXT_OVERFLOW_PATTERNS)
    if pattern is not None:
        return SessionFailureClassification(
            failure_class=FailureClass.CONTEXT_OVERFLOW,
            reason_code="context_overflow",
            matched_rule="context_overflow",
            matched_pattern=pattern,
        )

    if isinstance(error, TimeoutError | subprocess.TimeoutExpired):
        return SessionFailureClassification(
            failure_class=FailureClass.TIMEOUT,
            reason_code="processor_timeout",
            matched_rule="timeout_exception",
            matched_pattern=None,
        )

    if isinstance(error, FileNotFoundError | PermissionError | IsADirectoryError):
        return SessionFailureClassification(
            failure_class=FailureClass.PROCESSOR_NON_RETRYABLE,
            reason_code="resource_unavailable",
            matched_rule="resource_unavailable",
            matched_pattern=None,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return SessionFailureClassification(
            failure_class=FailureClass.PROCESSOR_TRANSIENT,
            reason_code="rate_limit_transient",
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    if isinstance(error, ProcessorError):
        pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
        if error.transient or pattern is not None:
            return SessionFailureClassification(
                failure_class=FailureClass.PROCESSOR_TRANSIENT,
                reason_code="processor_transient",
                matched_rule="transient_flag" if pattern is None else "generic_transient",
                matched_pattern=pattern,
            )
        return SessionFailureClassification(
            failure_class=FailureClass.PROCESSOR_NON_RETRYABLE,
            reason_code="processor_non_retryable",
            matched_rule="processor_error",
            matched_pattern=None,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or isinstance(error, ConnectionError):
        return SessionFailureClassification(
            failure_class=FailureClass.PROCESSOR_TRANSIENT,
            reason_code="processor_transient",
            matched_rule="generic_transient",
            matched_pattern=pattern,
        )

    return SessionFailureClassification(
        failure_class=FailureClass.SESSION_CRASH,
        reason_code=f"unexpected_{type(error).__name__.lower()}",
        matched_rule="fallback_session_crash",
        matched_pattern=None,
    )


def orphaned_session_classification() -> SessionFailureClassification:
    """Classification for a session lost with the previous orchestrator process."""

    return SessionFailureClassification(
        failure_class=FailureClass.SESSION_CRASH,
        reason_code="orphaned_session",
        matched_rule="recovery_replay",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
