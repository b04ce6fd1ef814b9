from __future__ import annotations

import allure

from doyaken.orchestrator.failure_classifier import classify_agent_failure, summarize_failure
from doyaken.orchestrator.models import FailureClass

pytestmark = [
    allure.epic("Retry/Fallback Controller"),
    allure.feature("Failure Classification"),
]


def test_timeout_wins_over_output_patterns() -> None:
    classified = classify_agent_failure(
        exit_code=124,
        timed_out=True,
        stdout="",
        stderr="rate limit exceeded",
    )
    assert classified.failure_class == FailureClass.TIMEOUT
    assert classified.matched_rule == "timeout"


def test_rate_limit_phrase_is_detected() -> None:
    classified = classify_agent_failure(
        exit_code=1,
        timed_out=False,
        stdout="",
        stderr="Error: Too Many Requests, slow down",
    )
    assert classified.failure_class == FailureClass.RATE_LIMITED
    assert classified.matched_pattern == "too many requests"


def test_overloaded_status_code_is_rate_limited() -> None:
    classified = classify_agent_failure(
        exit_code=1,
        timed_out=False,
        stdout="upstream returned HTTP 503",
        stderr="",
    )
    assert classified.failure_class == FailureClass.RATE_LIMITED
    assert classified.matched_pattern == "503"


def test_status_code_must_be_a_whole_word() -> None:
    classified = classify_agent_failure(
        exit_code=2,
        timed_out=False,
        stdout="",
        stderr="wrote 14290 bytes then crashed",
    )
    assert classified.failure_class == FailureClass.NON_ZERO_EXIT
    assert classified.matched_rule == "exit_code_2"
    assert classified.to_details()["failure_class"] == "non_zero_exit"


def test_summarize_failure_keeps_last_lines() -> None:
    stderr = "\n".join(f"line {index}" for index in range(10))

    summary = summarize_failure(exit_code=3, timed_out=False, stderr=stderr, stdout="ignored")

    assert summary.startswith("Agent exited with code 3: line 5")
    assert summary.endswith("line 9")
    assert summarize_failure(exit_code=124, timed_out=True, stderr="", stdout="") == (
        "Agent timed out"
    )
