from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from pgext_image_build.core import (
    DEFAULT_PIPELINE,
    BuildPipelineError,
    WorkLayout,
    atomic_write_text,
    bind,
    clear_bindings,
    configure_logging,
    get_logger,
    load_settings,
    new_run_id,
)
from pgext_image_build.definition import PipelineSpec, resolve_pipeline
from pgext_image_build.definition.models import format_param
from pgext_image_build.pipeline.backend import LocalBackend
from pgext_image_build.pipeline.parameters import parse_overrides, resolve_parameters
from pgext_image_build.pipeline.plan import PipelinePlan, plan_pipeline
from pgext_image_build.pipeline.report import RunReport
from pgext_image_build.pipeline.retry import run_with_retries
from pgext_image_build.pipeline.runner import PipelineRunner, RunnerConfig
from pgext_image_build.render.dockerfile import render_dockerfile

console = Console()

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_DEFINITION = 2


def _int_at_least(minimum: int):
    def parse(text: str) -> int:
        try:
            n = int(text)
        except ValueError:
            raise argparse.ArgumentTypeError(f"expected an integer, got {text!r}") from None
        if n < minimum:
            raise argparse.ArgumentTypeError(f"must be at least {minimum}, got {n}")
        return n

    return parse



@dataclass(frozen=True, slots=True)
class _CommonArgs:
    cmd: str
    pipeline: str
    params: dict[str, str]


def _add_common_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--pipeline",
        default=DEFAULT_PIPELINE,
        help=(
            "Pipeline definition: a JSON file path or a built-in name "
            f"(default: {DEFAULT_PIPELINE})."
        ),
    )
    p.add_argument(
        "--param",
        action="append",
        dest="params",
        default=[],
        metavar="NAME=VALUE",
        help="Override a declared parameter (repeatable). Later values win.",
    )


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="pgext-image-build")
    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("plan", help="Resolve parameters and show stages, pins and cache keys")
    _add_common_args(sp)

    sp = sub.add_parser("params", help="List declared parameters and their resolved values")
    _add_common_args(sp)

    sp = sub.add_parser("dockerfile", help="Render the pipeline as a multi-stage Dockerfile")
    _add_common_args(sp)
    sp.add_argument("--out", default=None, help="Write to this file instead of stdout")

    sp = sub.add_parser("build", help="Run every stage, then assemble the image")
    _add_common_args(sp)
    sp.add_argument(
        "--output",
        default=None,
        help="Directory the image is published under (default: PGEXT_IMAGE_OUTPUT_ROOT)",
    )
    sp.add_argument(
        "--retries",
        type=_int_at_least(0),
        default=0,
        help="Rerun the whole pipeline up to N more times on source fetch failures",
    )
    sp.add_argument(
        "--max-parallel",
        type=_int_at_least(1),
        default=None,
        help="Maximum concurrent stages (default: one per stage)",
    )
    sp.add_argument(
        "--keep-stage-dirs",
        action="store_true",
        help="Leave stage roots on disk after the run",
    )

    return p


def _common(args: argparse.Namespace) -> _CommonArgs:
    return _CommonArgs(
        cmd=str(args.cmd),
        pipeline=str(args.pipeline),
        params=parse_overrides(args.params or []),
    )


def _print_definition_error(e: BuildPipelineError) -> None:
    console.print(Panel(Text(str(e), style="red"), title="Definition error"))


def _cmd_params(spec: PipelineSpec, common: _CommonArgs) -> int:
    params = resolve_parameters(spec.parameters, common.params)
    tbl = Table(title=f"Parameters - {spec.name}", show_header=True)
    tbl.add_column("name")
    tbl.add_column("type")
    tbl.add_column("scope")
    tbl.add_column("value")
    tbl.add_column("description")
    for p in spec.parameters:
        if p.name in params.values:
            value = format_param(params.values[p.name])
            if p.name in common.params:
                value = f"[bold]{value}[/bold] (override)"
        else:
            value = "[red]unresolved[/red]"
        tbl.add_row(p.name, p.type.value, p.scope, value, p.description or "")
    console.print(tbl)
    return EXIT_OK


def _print_plan(plan: PipelinePlan) -> None:
    tbl = Table(title=f"Plan - {plan.name}", show_header=True)
    tbl.add_column("stage")
    tbl.add_column("base")
    tbl.add_column("source")
    tbl.add_column("cache key")
    tbl.add_column("artifacts", justify="right")
    for s in plan.stages:
        source = s.source.describe()
        if not s.source.reproducible:
            source = f"[yellow]{source}[/yellow]"
        tbl.add_row(s.name, s.base, source, s.cache_key[:12], str(len(s.contract.rules)))
    console.print(tbl)

    asm = plan.assembly
    info = Table(show_header=False, box=None)
    info.add_row("image", asm.image_name)
    info.add_row("base", asm.base)
    info.add_row("user", asm.user)
    for k, v in sorted(asm.labels.items()):
        info.add_row(k, v)
    console.print(Panel(info, title="Assembly"))

    for w in plan.warnings:
        console.print(f"[yellow]warning:[/yellow] {w}")


def _cmd_build(plan: PipelinePlan, common: _CommonArgs, args: argparse.Namespace) -> int:
    s = load_settings()
    log = get_logger("pgext_image_build")

    layout = WorkLayout(
        work_root=Path(s.work_root),
        output_root=Path(args.output) if args.output else Path(s.output_root),
        run_root=Path(s.run_root),
    )
    runner = PipelineRunner(
        plan=plan,
        layout=layout,
        backend=LocalBackend(
            base_roots=s.base_roots,
            host_binds=s.sandbox_host_binds,
            bwrap=s.sandbox_bwrap,
        ),
        cfg=RunnerConfig(
            max_parallel=args.max_parallel or s.max_parallel,
            keep_stage_dirs=bool(args.keep_stage_dirs or s.keep_stage_dirs),
        ),
        logger=log,
    )

    meta: dict[str, object] = {
        "pipeline_ref": common.pipeline,
        "overrides": dict(sorted(common.params.items())),
    }

    def _attempt() -> RunReport:
        run_id = new_run_id()
        clear_bindings()
        bind(run_id=run_id, command=common.cmd, pipeline=plan.name)
        console.print(
            Panel.fit(
                Text(
                    f"pgext-image-build - {common.cmd}\nrun_id={run_id}\nimage={plan.assembly.image_name}",
                    style="bold",
                ),
                title="Run",
            )
        )
        with console.status("[bold]building[/]", spinner="dots"):
            return runner.run(run_id=run_id, meta=meta)

    report = run_with_retries(_attempt, max_attempts=1 + args.retries)

    tbl = Table(title="Result", show_header=True, box=None)
    tbl.add_column("stage")
    tbl.add_column("status")
    tbl.add_column("duration", justify="right")
    for r in report.stages:
        color = {"success": "green", "failed": "red"}.get(r.status, "yellow")
        tbl.add_row(r.stage, f"[{color}]{r.status}[/{color}]", f"{r.duration_ms} ms")
    console.print(tbl)

    if report.failure is not None:
        console.print(Panel(Text(report.failure.message, style="red"), title="Failure"))
    if report.image_dir:
        console.print(f"image: {report.image_dir}")
    console.print(f"report: {layout.run_report_json(report.run_id)}")
    return report.exit_code


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    s = load_settings()
    configure_logging(level=s.log_level, fmt=s.log_format)

    try:
        common = _common(args)
        spec = resolve_pipeline(common.pipeline)
        if common.cmd == "params":
            return _cmd_params(spec, common)
        if common.cmd == "dockerfile":
            text = render_dockerfile(spec, resolve_parameters(spec.parameters, common.params))
            if args.out:
                atomic_write_text(Path(args.out), text)
                console.print(f"wrote {args.out}")
            else:
                print(text, end="")
            return EXIT_OK

        plan = plan_pipeline(spec, common.params)
    except BuildPipelineError as e:
        _print_definition_error(e)
        return EXIT_DEFINITION

    if common.cmd == "plan":
        _print_plan(plan)
        return EXIT_OK
    return _cmd_build(plan, common, args)


if __name__ == "__main__":
    raise SystemExit(main())
