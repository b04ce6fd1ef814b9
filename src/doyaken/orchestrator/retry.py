"""Retry and model fallback around the single-shot phase executor."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass

from doyaken.orchestrator.agents import ModelLadder
from doyaken.orchestrator.errors import PhaseFatal, PipelineCancelled
from doyaken.orchestrator.executor import PhaseExecutor
from doyaken.orchestrator.models import (
    AttemptVerdict,
    FailureClass,
    PhaseDefinition,
    PhaseOutcome,
    PhaseState,
    PhaseStatus,
    RetryPolicy,
    TaskDescriptor,
)
from doyaken.orchestrator.reporter import ModelFallback, ProgressReporter, RetryScheduled

logger = logging.getLogger(__name__)

_PLAIN_RETRY_CLASSES = frozenset(
    {
        FailureClass.TIMEOUT,
        FailureClass.NON_ZERO_EXIT,
        FailureClass.QUALITY_GATE_FAILED,
    },
)


@dataclass(slots=True)
class RetryDecision:
    """What to do after one failed attempt."""

    verdict: AttemptVerdict
    reason: str
    downgrade: bool = False


def decide_retry(  # noqa: PLR0911
    outcome: PhaseOutcome,
    *,
    policy: RetryPolicy,
    attempts: int,
    malformed_count: int,
    ladder: ModelLadder,
    fallback_enabled: bool,
) -> RetryDecision:
    """Map a phase outcome to SUCCESS, RETRYABLE or FATAL.

    ``attempts`` counts attempts made in this run including the current one;
    ``malformed_count`` counts malformed outputs including the current one.
    """

    if outcome.ok:
        return RetryDecision(AttemptVerdict.SUCCESS, "phase succeeded")
    failure_class = outcome.failure_class
    if failure_class == FailureClass.RATE_LIMITED and fallback_enabled:
        if ladder.at_lowest:
            return RetryDecision(
                AttemptVerdict.FATAL,
                f"rate limited at lowest model tier {ladder.current}",
            )
        return RetryDecision(AttemptVerdict.RETRYABLE, "rate limited", downgrade=True)
    if failure_class == FailureClass.MALFORMED_OUTPUT:
        if malformed_count > policy.malformed_output_retries:
            return RetryDecision(AttemptVerdict.FATAL, "malformed output repeated")
        if attempts >= policy.max_attempts:
            return RetryDecision(AttemptVerdict.FATAL, "retry budget exhausted")
        return RetryDecision(AttemptVerdict.RETRYABLE, "malformed output")
    if failure_class in _PLAIN_RETRY_CLASSES or failure_class == FailureClass.RATE_LIMITED:
        if attempts >= policy.max_attempts:
            return RetryDecision(AttemptVerdict.FATAL, "retry budget exhausted")
        return RetryDecision(AttemptVerdict.RETRYABLE, failure_class.value)
    return RetryDecision(AttemptVerdict.FATAL, f"unexpected failure {failure_class}")


def compute_retry_delay(
    *,
    retry_number: int,
    base_seconds: float,
    max_seconds: float,
    rng: random.Random,
) -> float:
    """Full-jitter exponential backoff capped at ``max_seconds``."""

    max_delay = min(max_seconds, base_seconds * (2 ** max(retry_number - 1, 0)))
    return rng.uniform(0, max_delay)


class RetryController:
    """Drive one phase to SUCCESS or FATAL.

    Rate limits step the model ladder down one tier (never up); timeouts,
    non-zero exits and failed quality gates retry with backoff until the
    attempt budget is spent; malformed output gets one more chance.
    """

    def __init__(
        self,
        *,
        executor: PhaseExecutor,
        reporter: ProgressReporter | None = None,
        shutdown_requested: Callable[[], bool] | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.executor = executor
        self.reporter = reporter
        self.shutdown_requested = shutdown_requested
        self._random = rng or random.Random()  # noqa: S311
        self._sleep = sleep

    def run_phase(  # noqa: PLR0913
        self,
        phase: PhaseDefinition,
        task: TaskDescriptor,
        *,
        state: PhaseState,
        ladder: ModelLadder,
        run_id: str,
        fallback_enabled: bool = True,
        previous_summary: str | None = None,
        before_attempt: Callable[[PhaseState], None] | None = None,
        after_attempt: Callable[[PhaseState], None] | None = None,
    ) -> PhaseOutcome:
        """Run attempts until success; raise PhaseFatal or PipelineCancelled otherwise.

        ``state`` is updated in place after every attempt so the caller can
        checkpoint it from ``after_attempt``.
        """

        policy = phase.retry_policy
        attempts = 0
        malformed_count = 0
        error_context = state.last_error if state.failure_class else None

        while True:
            if self._stop_requested():
                raise PipelineCancelled(phase.name)
            attempts += 1
            state.attempts += 1
            state.model = ladder.current
            state.status = PhaseStatus.RUNNING
            if before_attempt is not None:
                before_attempt(state)

            outcome = self.executor.run(
                phase,
                task,
                model=ladder.current,
                attempt=state.attempts,
                run_id=run_id,
                error_context=error_context,
                previous_summary=previous_summary,
            )
            state.failure_class = outcome.failure_class
            state.last_error = outcome.error_summary

            if outcome.failure_class == FailureClass.CANCELLED:
                raise PipelineCancelled(phase.name)
            if outcome.failure_class == FailureClass.MALFORMED_OUTPUT:
                malformed_count += 1

            decision = decide_retry(
                outcome,
                policy=policy,
                attempts=attempts,
                malformed_count=malformed_count,
                ladder=ladder,
                fallback_enabled=fallback_enabled,
            )
            if decision.verdict == AttemptVerdict.SUCCESS:
                if after_attempt is not None:
                    after_attempt(state)
                return outcome

            if decision.verdict == AttemptVerdict.FATAL:
                state.status = PhaseStatus.FAILED
                if after_attempt is not None:
                    after_attempt(state)
                logger.info("Phase %s fatal: %s", phase.name, decision.reason)
                raise PhaseFatal(
                    phase=phase.name,
                    failure_class=outcome.failure_class.value if outcome.failure_class else "",
                    error_summary=outcome.error_summary or decision.reason,
                    attempts=state.attempts,
                    retries=state.retries,
                )

            state.retries += 1
            if decision.downgrade:
                previous_model = ladder.current
                next_model = ladder.downgrade()
                if next_model is not None:
                    state.model = next_model
                    logger.info("Model fallback %s -> %s", previous_model, next_model)
                    self._emit(
                        ModelFallback(
                            task_id=task.id,
                            phase=phase.name,
                            from_model=previous_model,
                            to_model=next_model,
                        ),
                    )
            delay = compute_retry_delay(
                retry_number=attempts,
                base_seconds=policy.base_delay_seconds,
                max_seconds=policy.max_delay_seconds,
                rng=self._random,
            )
            self._emit(
                RetryScheduled(
                    task_id=task.id,
                    phase=phase.name,
                    attempt=state.attempts,
                    failure_class=outcome.failure_class or FailureClass.NON_ZERO_EXIT,
                    delay_seconds=delay,
                    error=outcome.error_summary,
                ),
            )
            if after_attempt is not None:
                after_attempt(state)
            self._sleep_with_stop(delay)
            error_context = outcome.error_summary

    def _sleep_with_stop(self, seconds: float) -> None:
        remaining = seconds
        while remaining > 0 and not self._stop_requested():
            step = min(0.1, remaining)
            self._sleep(step)
            remaining -= step

    def _stop_requested(self) -> bool:
        return self.shutdown_requested is not None and self.shutdown_requested()

    def _emit(self, event: RetryScheduled | ModelFallback) -> None:
        if self.reporter is not None:
            self.reporter.emit(event)
