"""Deterministic agent failure classification for the retry policy."""

from __future__ import annotations

from dataclasses import dataclass

_NETWORK_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "connection reset",
    "econnreset",
    "etimedout",
    "econnrefused",
    "socket hang up",
    "network error",
    "request timed out",
    "connection timed out",
    "temporarily unavailable",
)
_CAPACITY_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "503",
    "overloaded",
    "rate limit",
    "too many requests",
)


@dataclass(frozen=True, slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    transient: bool
    matched_rule: str
    matched_pattern: str | None


def classify_agent_failure(*, stdout: str, stderr: str) -> FailureClassification:
    """Decide whether a failed agent invocation is worth retrying.

    Only network and capacity errors are transient. The supervisor's own
    wall-clock ``Timed out after`` message is not matched, so a hung agent is
    never re-run.
    """

    haystack = _normalize_text(stdout=stdout, stderr=stderr)

    pattern = _first_match(haystack, _NETWORK_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            transient=True,
            matched_rule="network_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _CAPACITY_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            transient=True,
            matched_rule="capacity_transient",
            matched_pattern=pattern,
        )

    return FailureClassification(
        transient=False,
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _normalize_text(*, stdout: str, stderr: str) -> str:
    return f"{stderr}\n{stdout}".lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
