"""Deterministic classification of non-zero worker exits."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

WORKER_FAILURE_CLASSIFIER_VERSION = 1


class WorkerFailureClass(str, Enum):
    """Normalized failure classes for non-zero worker exits."""

    ACCESS_OR_AUTH = "access_or_auth"
    BILLING_OR_QUOTA = "billing_or_quota"
    MODEL_NOT_AVAILABLE = "model_not_available"
    RATE_LIMITED = "rate_limited"
    BACKEND_TRANSIENT = "backend_transient"
    UNCLASSIFIED_EXIT = "unclassified_exit"


_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "billing",
    "payment required",
    "insufficient credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "invalid api key",
    "api key not valid",
    "authentication failed",
    "not logged in",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "network error",
    "could not resolve host",
)

_RULES: tuple[tuple[WorkerFailureClass, tuple[str, ...]], ...] = (
    (WorkerFailureClass.BILLING_OR_QUOTA, _BILLING_OR_QUOTA_PATTERNS),
    (WorkerFailureClass.ACCESS_OR_AUTH, _ACCESS_OR_AUTH_PATTERNS),
    (WorkerFailureClass.MODEL_NOT_AVAILABLE, _MODEL_NOT_AVAILABLE_PATTERNS),
    (WorkerFailureClass.RATE_LIMITED, _RATE_LIMIT_PATTERNS),
    (WorkerFailureClass.BACKEND_TRANSIENT, _GENERIC_TRANSIENT_PATTERNS),
)


@dataclass(slots=True)
class WorkerFailureClassification:
    """Normalized classification result."""

    failure_class: WorkerFailureClass
    matched_rule: str
    matched_pattern: str | None

    @property
    def worker_unavailable(self) -> bool:
        """Whether the exit means the worker never did the work."""

        return self.failure_class is not WorkerFailureClass.UNCLASSIFIED_EXIT

    @property
    def transient(self) -> bool:
        return self.failure_class in {
            WorkerFailureClass.RATE_LIMITED,
            WorkerFailureClass.BACKEND_TRANSIENT,
        }


def classify_worker_failure(
    *,
    exit_code: int,
    stderr: str,
    transient_exit_codes: tuple[int, ...] = (137, 143),
) -> WorkerFailureClassification:
    """Classify a non-zero worker exit from its stderr.

    Only stderr is inspected: stdout carries generated content, which can
    legitimately mention authentication, quotas or HTTP status codes.
    """

    haystack = stderr.lower()
    for failure_class, patterns in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return WorkerFailureClassification(
                failure_class=failure_class,
                matched_rule=failure_class.value,
                matched_pattern=pattern,
            )

    if exit_code in transient_exit_codes:
        return WorkerFailureClassification(
            failure_class=WorkerFailureClass.BACKEND_TRANSIENT,
            matched_rule="transient_exit_code",
            matched_pattern=None,
        )

    return WorkerFailureClassification(
        failure_class=WorkerFailureClass.UNCLASSIFIED_EXIT,
        matched_rule="fallback_parse_output",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
