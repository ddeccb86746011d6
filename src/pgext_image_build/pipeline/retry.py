"""
Whole-run retries for transient source fetch failures.

The core never retries. A caller that wants another attempt reruns the
entire pipeline with a fresh run id; only `SourceFetchError` qualifies.
"""

from __future__ import annotations

from typing import Callable

import structlog
from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_attempt
from tenacity.wait import wait_base

from pgext_image_build.core import SourceFetchError

from .report import RunReport

log = structlog.get_logger(__name__)

RETRYABLE_ERRORS: frozenset[str] = frozenset({SourceFetchError.__name__})


class DeterministicExponentialBackoff(wait_base):
    def __init__(self, *, base: float = 2.0, cap: float = 30.0) -> None:
        self._base = float(base)
        self._cap = float(cap)

    def __call__(self, retry_state) -> float:
        n = retry_state.attempt_number
        if n < 1:
            return 0.0
        return min(self._cap, self._base * (2 ** (n - 1)))


class RetryableRunFailure(Exception):
    def __init__(self, report: RunReport) -> None:
        self.report = report
        super().__init__(f"run {report.run_id} failed: {report.failure}")


def is_retryable(report: RunReport) -> bool:
    err = report.failure
    return err is not None and err.exc_type in RETRYABLE_ERRORS


def run_with_retries(
    run: Callable[[], RunReport],
    *,
    max_attempts: int,
    backoff_base: float = 2.0,
    backoff_cap: float = 30.0,
) -> RunReport:
    """
    Call `run` until it succeeds, fails for a non-retryable reason, or
    `max_attempts` runs have been made. Returns the last report.
    """

    def _before_sleep(retry_state) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        sleep = retry_state.next_action.sleep if retry_state.next_action else None
        failure = exc.report.failure if isinstance(exc, RetryableRunFailure) else None
        log.warning(
            "run.retry",
            attempt=retry_state.attempt_number,
            sleep_s=sleep,
            stage=failure.stage if failure else None,
            error=failure.message if failure else None,
        )

    retrying = Retrying(
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=DeterministicExponentialBackoff(base=backoff_base, cap=backoff_cap),
        retry=retry_if_exception_type(RetryableRunFailure),
        reraise=False,
        before_sleep=_before_sleep,
    )

    try:
        for attempt in retrying:
            with attempt:
                report = run()
                if is_retryable(report):
                    raise RetryableRunFailure(report)
                return report
    except RetryError as re:
        last = re.last_attempt.exception()
        assert isinstance(last, RetryableRunFailure)
        log.error(
            "run.retries_exhausted",
            attempts=re.last_attempt.attempt_number,
            run_id=last.report.run_id,
        )
        return last.report

    raise AssertionError("unreachable")
