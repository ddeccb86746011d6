from __future__ import annotations

import contextvars
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any

from pgext_image_build.core import (
    ILogger,
    RunProvenance,
    WorkLayout,
    configure_logging,
    get_logger,
    monotonic_ms,
    new_run_id,
    remove_tree,
    utc_now_iso,
)

from .assembler import AssembleStage
from .backend import StageBackend
from .context import RunContext
from .events import EventSink, EventType
from .executor import BuildStage, stage_root
from .plan import PipelinePlan
from .report import RunReport
from .stage import FAILED, StageResult, human_ms, run_stage, skipped_result


@dataclass(slots=True)
class RunnerConfig:
    # None means one worker per build stage.
    max_parallel: int | None = None
    keep_stage_dirs: bool = False
    overwrite: bool = True


def default_logger() -> ILogger:
    configure_logging()
    return get_logger("pipeline")


class PipelineRunner:
    """
    Runs every build stage in parallel, waits for all of them, then
    assembles. The assembler runs only when every build stage succeeded.

      stage A ─┐
      stage B ─┼─ barrier ─> assemble
      stage C ─┘
    """

    def __init__(
        self,
        *,
        plan: PipelinePlan,
        layout: WorkLayout,
        backend: StageBackend,
        cfg: RunnerConfig | None = None,
        logger: ILogger | None = None,
    ) -> None:
        self.plan = plan
        self.layout = layout
        self.backend = backend
        self.cfg = cfg or RunnerConfig()
        self.logger: ILogger = logger or default_logger()

    def _run_one(
        self, ctx: RunContext, stage: BuildStage, index: int, total: int
    ) -> StageResult:
        if ctx.cancel.is_set():
            return skipped_result(stage.stage_id)
        res = run_stage(ctx=ctx, stage=stage, index=index, total=total)
        if res.status == FAILED:
            # siblings see this at their next checkpoint
            ctx.cancel.set()
        return res

    def _run_builds(self, ctx: RunContext) -> list[StageResult]:
        stages = [BuildStage(plan=sp) for sp in self.plan.stages]
        total = len(stages) + 1
        workers = self.cfg.max_parallel or len(stages)

        futures: dict[Future[StageResult], str] = {}
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="stage") as pool:
            for idx, st in enumerate(stages, start=1):
                # carry structlog context vars (run_id) into the worker
                run = contextvars.copy_context().run
                fut = pool.submit(run, self._run_one, ctx, st, idx, total)
                futures[fut] = st.stage_id

            pending = set(futures)
            stopping = False
            while pending:
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                if stopping or not ctx.cancel.is_set():
                    continue
                stopping = True
                failed = [
                    futures[f]
                    for f in done
                    if not f.cancelled() and f.result().status == FAILED
                ]
                self.logger.error(
                    "Cancelling remaining stages",
                    failed_stage=failed[0] if failed else None,
                )
                for f in pending:
                    f.cancel()

        by_id: dict[str, StageResult] = {}
        for fut, stage_id in futures.items():
            by_id[stage_id] = skipped_result(stage_id) if fut.cancelled() else fut.result()
        return [by_id[st.stage_id] for st in stages]

    def _teardown(self, ctx: RunContext) -> None:
        if self.cfg.keep_stage_dirs:
            return
        for sp in self.plan.stages:
            self.backend.teardown(root=stage_root(ctx, sp))
        remove_tree(self.layout.run_work(ctx.run_id))

    def run(
        self,
        *,
        run_id: str | None = None,
        meta: dict[str, Any] | None = None,
        cancel: threading.Event | None = None,
    ) -> RunReport:
        """
        Execute the pipeline and write events.jsonl and run_report.json.

        Setting `cancel` stops the run: stages not yet started are skipped,
        running ones stop at their next step.
        """
        meta = meta or {}
        rid = run_id or new_run_id()
        events_path = self.layout.events_jsonl(rid)
        sink = EventSink(events_path, run_id=rid)

        ctx = RunContext(
            run_id=rid,
            layout=self.layout,
            backend=self.backend,
            logger=self.logger,
            events=sink,
            cancel=cancel if cancel is not None else threading.Event(),
            meta=meta,
        )

        started_at = utc_now_iso()
        t0 = monotonic_ms()
        prov = RunProvenance(run_id=rid, started_at_utc=started_at)

        self.logger.info(
            "Pipeline starting",
            run_id=rid,
            pipeline=self.plan.name,
            stages=[s.name for s in self.plan.stages],
            image=self.plan.assembly.image_name,
        )
        ctx.emit(
            EventType.RUN_START,
            pipeline=self.plan.name,
            parameters=self.plan.parameters.to_dict(),
            cache_keys={s.name: s.cache_key for s in self.plan.stages},
            provenance=prov.to_dict(),
            **meta,
        )

        try:
            results = self._run_builds(ctx)
            if all(r.ok for r in results):
                asm = AssembleStage(plan=self.plan, overwrite=self.cfg.overwrite)
                results.append(
                    run_stage(ctx=ctx, stage=asm, index=len(results) + 1, total=len(results) + 1)
                )
            else:
                results.append(skipped_result(AssembleStage(plan=self.plan).stage_id))
        finally:
            self._teardown(ctx)

        duration = monotonic_ms() - t0
        asm_result = results[-1]
        report = RunReport.from_results(
            results,
            image_dir=asm_result.outputs.get("image_dir"),
            run_id=rid,
            pipeline=self.plan.name,
            started_at_utc=started_at,
            finished_at_utc=utc_now_iso(),
            duration_ms=duration,
            parameters=self.plan.parameters.to_dict(),
            warnings=list(self.plan.warnings),
            events_jsonl=str(events_path),
            meta={**meta, "provenance": prov.to_dict()},
        )

        report_json = self.layout.run_report_json(rid)
        report.write_json(report_json)

        ctx.emit(
            EventType.RUN_FINISH,
            status=report.status,
            duration_ms=duration,
            report_json=str(report_json),
        )

        log_fields: dict[str, object] = {
            "duration": human_ms(duration),
            "report": str(report_json),
            "status": report.status,
        }
        if report.failure is not None:
            log_fields["failed_stage"] = report.failure.stage
            log_fields["failed_step"] = report.failure.step
        self.logger.info("Run complete", **log_fields)
        return report
