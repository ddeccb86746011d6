from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from pgext_image_build.core import (
    StageCancelled,
    StageError,
    monotonic_ms,
    stage_error_from_exc,
    utc_now_iso,
)

from .context import RunContext
from .events import EventType

SUCCESS = "success"
FAILED = "failed"
CANCELLED = "cancelled"
SKIPPED = "skipped"


def human_ms(ms: int) -> str:
    return f"{ms} ms" if ms < 1000 else f"{ms / 1000:.2f} s"


@dataclass(slots=True)
class StageOutput:
    """What a stage hands back to the runner when it completes."""

    values: dict[str, Any] = field(default_factory=dict)
    metrics: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    artifacts: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class StageResult:
    stage: str
    status: str
    started_at_utc: Optional[str] = None
    finished_at_utc: Optional[str] = None
    duration_ms: int = 0

    outputs: dict[str, Any] = field(default_factory=dict)
    metrics: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    artifacts: list[dict[str, Any]] = field(default_factory=list)
    error: Optional[StageError] = None

    @property
    def ok(self) -> bool:
        return self.status == SUCCESS


class Stage(Protocol):
    @property
    def stage_id(self) -> str: ...

    def run(self, ctx: RunContext) -> StageOutput: ...


def skipped_result(stage_id: str) -> StageResult:
    return StageResult(stage=stage_id, status=SKIPPED)


@dataclass(slots=True)
class _Timer:
    started_at: str = field(default_factory=utc_now_iso)
    t0: int = field(default_factory=monotonic_ms)

    def close(self, stage: str, status: str, **kw: Any) -> StageResult:
        return StageResult(
            stage=stage,
            status=status,
            started_at_utc=self.started_at,
            finished_at_utc=utc_now_iso(),
            duration_ms=monotonic_ms() - self.t0,
            **kw,
        )


def run_stage(
    *,
    ctx: RunContext,
    stage: Stage,
    index: int | None = None,
    total: int | None = None,
) -> StageResult:
    """
    Run one stage to completion and fold the outcome into a StageResult.

    Stage errors never escape: a cancelled stage yields status "cancelled",
    any other exception yields "failed" with the error record attached.
    """
    name = stage.stage_id
    log = ctx.stage_logger(name)
    if index is not None and total is not None:
        log = log.bind(position=f"{index}/{total}")

    timer = _Timer()
    ctx.emit(EventType.STAGE_START, stage=name)
    log.info("Stage starting")

    try:
        out = stage.run(ctx)
    except StageCancelled as e:
        res = timer.close(name, CANCELLED, error=stage_error_from_exc(e))
        ctx.emit(EventType.STAGE_CANCELLED, stage=name, step=e.step)
        log.warning("Stage cancelled", step=e.step)
        return res
    except Exception as e:
        err = stage_error_from_exc(e)
        res = timer.close(name, FAILED, error=err)
        ctx.emit(
            EventType.STAGE_FAILED,
            stage=name,
            step=err.step,
            exc_type=err.exc_type,
            message=err.message,
            duration_ms=res.duration_ms,
        )
        log.error("Stage failed", step=err.step, took=human_ms(res.duration_ms), error=err.message)
        log.debug("Stage traceback", traceback=err.traceback)
        return res

    for w in out.warnings:
        ctx.emit(EventType.STAGE_WARN, stage=name, message=w)
        log.warning(w)

    res = timer.close(
        name,
        SUCCESS,
        outputs=dict(out.values),
        metrics=dict(out.metrics),
        warnings=list(out.warnings),
        artifacts=list(out.artifacts),
    )
    ctx.emit(EventType.STAGE_SUCCESS, stage=name, duration_ms=res.duration_ms, metrics=res.metrics)
    extra: dict[str, Any] = {"artifacts": len(res.artifacts)} if res.artifacts else {}
    log.info(
        "Stage succeeded",
        took=human_ms(res.duration_ms),
        outputs=sorted(res.outputs),
        warnings=len(res.warnings),
        **extra,
    )
    return res
