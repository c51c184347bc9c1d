"""Deterministic inference failure classification for the retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from photo_studio.orchestrator.errors import (
    InferenceTimeoutError,
    TaskError,
    TerminalTaskError,
    TransientTaskError,
)

INFERENCE_FAILURE_CLASSIFIER_VERSION = 1

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
)
_CONTENT_POLICY_PATTERNS: tuple[str, ...] = (
    "safety",
    "content policy",
    "moderation",
    "blocked",
)
_INVALID_INPUT_PATTERNS: tuple[str, ...] = (
    "invalid image",
    "unsupported image",
    "no face detected",
    "prompt is empty",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "deadline exceeded",
)


@dataclass(slots=True)
class InferenceFailureClassification:
    """Normalized failure classification result."""

    retryable: bool
    reason_code: str
    matched_pattern: str | None

    def to_error(self, message: str, *, task_id: str | None = None) -> TaskError:
        if self.reason_code == "timeout":
            return InferenceTimeoutError(message, task_id=task_id, code=self.reason_code)
        if self.retryable:
            return TransientTaskError(message, task_id=task_id, code=self.reason_code)
        return TerminalTaskError(message, task_id=task_id, code=self.reason_code)


def classify_inference_failure(
    message: str | None,
    *,
    timed_out: bool = False,
) -> InferenceFailureClassification:
    """Classify an inference error message into a retry class."""

    if timed_out:
        return InferenceFailureClassification(
            retryable=False,
            reason_code="timeout",
            matched_pattern=None,
        )

    haystack = (message or "").lower()
    for reason_code, patterns in (
        ("billing_or_quota", _BILLING_OR_QUOTA_PATTERNS),
        ("access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
        ("content_policy", _CONTENT_POLICY_PATTERNS),
        ("invalid_input", _INVALID_INPUT_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return InferenceFailureClassification(
                retryable=False,
                reason_code=reason_code,
                matched_pattern=pattern,
            )

    pattern = _first_match(haystack, _TIMEOUT_PATTERNS)
    if pattern is not None:
        return InferenceFailureClassification(
            retryable=False,
            reason_code="timeout",
            matched_pattern=pattern,
        )

    return InferenceFailureClassification(
        retryable=True,
        reason_code="inference_transient",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
