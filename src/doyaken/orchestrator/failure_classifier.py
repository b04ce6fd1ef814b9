"""Deterministic agent failure classification for the retry policy."""

from __future__ import annotations

import re
from dataclasses import dataclass

from doyaken.orchestrator.models import FailureClass

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "ratelimit",
    "rate-limit",
    "too many requests",
    "overloaded",
    "capacity",
    "quota",
    "resource_exhausted",
)
_RATE_LIMIT_STATUS_CODES = re.compile(r"\b(429|502|503|504)\b")


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None

    def to_details(self) -> dict[str, object]:
        return {
            "failure_class": self.failure_class.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_agent_failure(
    *,
    exit_code: int,
    timed_out: bool,
    stdout: str,
    stderr: str,
) -> FailureClassification:
    """Classify a failed agent invocation into a retry class."""

    if timed_out:
        return FailureClassification(
            failure_class=FailureClass.TIMEOUT,
            matched_rule="timeout",
            matched_pattern=None,
        )

    haystack = _normalize_text(stdout=stdout, stderr=stderr)
    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is None:
        code = _RATE_LIMIT_STATUS_CODES.search(haystack)
        pattern = code.group(1) if code else None
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.RATE_LIMITED,
            matched_rule="rate_limited",
            matched_pattern=pattern,
        )

    return FailureClassification(
        failure_class=FailureClass.NON_ZERO_EXIT,
        matched_rule=f"exit_code_{exit_code}",
        matched_pattern=None,
    )


def summarize_failure(*, exit_code: int, timed_out: bool, stderr: str, stdout: str) -> str:
    """Short human summary used as error context for the next attempt."""

    if timed_out:
        return "Agent timed out"
    tail = (stderr.strip() or stdout.strip()).splitlines()[-5:]
    detail = " | ".join(line.strip() for line in tail if line.strip())
    suffix = f": {detail}" if detail else ""
    return f"Agent exited with code {exit_code}{suffix}"[:1_000]


def _normalize_text(*, stdout: str, stderr: str) -> str:
    return f"{stderr}\n{stdout}".lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
