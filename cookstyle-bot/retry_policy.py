"""Bounded, blocking retry of one repository task inside the worker that owns it."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, replace

from discovery import RepositoryTask
from processor import ProcessingOutcome
from result_cache import Cache

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAY = 1.0


@dataclass(frozen=True)
class RetryState:
    """Per-attempt context handed to the task body.

    A new value is built for every attempt; nothing about the retry budget is
    shared or mutated between attempts.
    """

    attempts_remaining: int
    attempt_number: int = 1

    @property
    def exhausted(self) -> bool:
        return self.attempts_remaining <= 0

    def decrement(self) -> RetryState:
        return replace(
            self,
            attempts_remaining=max(0, self.attempts_remaining - 1),
            attempt_number=self.attempt_number + 1,
        )


AttemptBody = Callable[[RepositoryTask, RetryState], ProcessingOutcome]


class RetryCoordinator:
    def __init__(
        self,
        cache: Cache | None = None,
        delay: float = DEFAULT_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
        should_stop: Callable[[], bool] | None = None,
    ):
        self.cache = cache
        self.delay = delay
        self._sleep = sleep
        self._should_stop = should_stop

    def attempt(self, task: RepositoryTask, retries_remaining: int, body: AttemptBody) -> ProcessingOutcome:
        """Run *body* until it returns a non-error outcome or the budget runs out.

        Between attempts the task's cache entry is invalidated so the next
        attempt re-analyzes from scratch. Outcomes marked non-retryable end the
        loop immediately. At most ``retries_remaining + 1`` attempts are made.
        """
        state = RetryState(attempts_remaining=max(0, retries_remaining))
        while True:
            outcome = self._run_once(task, state, body)
            if not outcome.is_error:
                if state.attempt_number > 1:
                    logger.info("%s succeeded on attempt %d", task.name, state.attempt_number)
                return outcome
            if not outcome.retryable:
                logger.warning("%s failed with a terminal error: %s", task.name, outcome.error_detail)
                return outcome
            if state.exhausted:
                logger.error(
                    "%s failed after %d attempt(s): %s",
                    task.name, state.attempt_number, outcome.error_detail,
                )
                return outcome
            if self._should_stop is not None and self._should_stop():
                logger.info("Not retrying %s: run is stopping", task.name)
                return outcome

            logger.warning(
                "%s attempt %d failed (%s); retrying in %.1fs, %d retr%s left",
                task.name, state.attempt_number, outcome.error_detail, self.delay,
                state.attempts_remaining, "y" if state.attempts_remaining == 1 else "ies",
            )
            if self.cache is not None:
                self.cache.invalidate(task.name)
            if self.delay > 0:
                self._sleep(self.delay)
            state = state.decrement()

    @staticmethod
    def _run_once(task: RepositoryTask, state: RetryState, body: AttemptBody) -> ProcessingOutcome:
        try:
            return body(task, state)
        except Exception as exc:
            logger.exception("Unhandled error processing %s", task.name)
            return ProcessingOutcome.failed(f"{type(exc).__name__}: {exc}", retryable=True)
