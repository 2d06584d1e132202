"""Deterministic invocation failure classification for the loop retry policy."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from work_loop.errors import (
    AbortedError,
    AgentNotInstalledError,
    AgentReportedError,
    InvocationError,
    InvocationTimeoutError,
    ProcessFailureError,
    VerificationFailedError,
)


class FailureDisposition(str, Enum):
    """What the loop does with the task after a failed invocation."""

    RETRY = "retry"
    BLOCK = "block"
    TERMINATE = "terminate"


_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "not logged in",
    "please run /login",
    "credentials",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "credit balance is too low",
    "insufficient",
    "billing",
    "payment",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    disposition: FailureDisposition
    reason_code: str
    matched_pattern: str | None = None


def classify_invocation_failure(error: InvocationError) -> FailureClassification:
    """Map an invocation error to the task-status consequence."""

    if isinstance(error, AbortedError):
        return FailureClassification(FailureDisposition.TERMINATE, "aborted")
    if isinstance(error, AgentNotInstalledError):
        return FailureClassification(FailureDisposition.TERMINATE, "agent_not_installed")
    if isinstance(error, AgentReportedError):
        # error_max_turns, overloaded and rate-limit results retry under the attempt budget.
        return _classify_by_patterns(str(error), fallback="agent_reported_error")
    if isinstance(error, InvocationTimeoutError):
        return FailureClassification(FailureDisposition.RETRY, "timeout")
    if isinstance(error, VerificationFailedError):
        return FailureClassification(FailureDisposition.RETRY, "verification_failed")
    if isinstance(error, ProcessFailureError):
        return _classify_by_patterns(error.diagnostic, fallback="process_failure")
    if error.transient:
        return FailureClassification(FailureDisposition.RETRY, "transient")
    return FailureClassification(FailureDisposition.BLOCK, "non_retryable")


def _classify_by_patterns(message: str, *, fallback: str) -> FailureClassification:
    haystack = message.lower()
    for reason_code, patterns in (
        ("access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
        ("model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS),
        ("billing_or_quota", _BILLING_OR_QUOTA_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(FailureDisposition.BLOCK, reason_code, pattern)
    return FailureClassification(FailureDisposition.RETRY, fallback)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
