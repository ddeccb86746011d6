from __future__ import annotations

from pgext_image_build.core import BuildError, SourceFetchError, stage_error_from_exc
from pgext_image_build.pipeline.report import RunReport
from pgext_image_build.pipeline.retry import is_retryable, run_with_retries
from pgext_image_build.pipeline.stage import StageResult


def _report(run_id: str, exc: Exception | None) -> RunReport:
    stage = StageResult(stage="stage-a", status="success")
    if exc is not None:
        stage = StageResult(stage="stage-a", status="failed", error=stage_error_from_exc(exc))
    return RunReport.from_results(
        [stage],
        image_dir="/img",
        run_id=run_id,
        pipeline="abc",
        started_at_utc="t0",
        finished_at_utc="t1",
        duration_ms=1,
    )


def test_fetch_failures_are_retried_until_success() -> None:
    outcomes = [
        _report("r1", SourceFetchError("net down", stage="stage-a", step="fetch")),
        _report("r2", SourceFetchError("net down", stage="stage-a", step="fetch")),
        _report("r3", None),
    ]
    calls: list[str] = []

    def run() -> RunReport:
        r = outcomes[len(calls)]
        calls.append(r.run_id)
        return r

    report = run_with_retries(run, max_attempts=3, backoff_base=0)
    assert calls == ["r1", "r2", "r3"]
    assert report.status == "success"
    assert report.image_dir == "/img"


def test_other_failures_are_not_retried() -> None:
    calls: list[int] = []

    def run() -> RunReport:
        calls.append(1)
        return _report("r1", BuildError("make failed", stage="stage-a", step="build"))

    report = run_with_retries(run, max_attempts=5, backoff_base=0)
    assert len(calls) == 1
    assert not is_retryable(report)
    assert report.failure is not None and report.failure.exc_type == "BuildError"


def test_last_report_is_returned_when_attempts_run_out() -> None:
    calls: list[int] = []

    def run() -> RunReport:
        calls.append(1)
        return _report(f"r{len(calls)}", SourceFetchError("gone", stage="stage-a", step="fetch"))

    report = run_with_retries(run, max_attempts=2, backoff_base=0)
    assert len(calls) == 2
    assert report.run_id == "r2"
    assert is_retryable(report)
