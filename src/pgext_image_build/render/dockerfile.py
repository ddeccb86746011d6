"""
Render a pipeline definition as the equivalent multi-stage Dockerfile.

Templates are emitted unrendered: `${NAME}` placeholders become Docker
build-arg references, with the resolved parameter values as `ARG`
defaults. The stage root is the container filesystem itself, so
`${STAGE_ROOT}` collapses to the empty string.
"""

from __future__ import annotations

import posixpath

from pgext_image_build.definition.models import (
    ASSEMBLER_NAME,
    PinnedRevision,
    PipelineSpec,
    StageSpec,
    format_param,
)
from pgext_image_build.pipeline.parameters import ParameterSet, resolve_parameters
from pgext_image_build.pipeline.plan import CHECKOUT_ROOT

_STAGE_ROOT_REFS = ("${STAGE_ROOT}", "$STAGE_ROOT")


def _strip_stage_root(script: str) -> str:
    for ref in _STAGE_ROOT_REFS:
        script = script.replace(ref, "")
    return script


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _arg_line(params: ParameterSet, name: str, *, with_default: bool) -> str:
    if with_default and name in params.values:
        return f"ARG {name}={format_param(params.values[name])}"
    return f"ARG {name}"


def _stage_args(spec: PipelineSpec, params: ParameterSet, owner: str) -> list[str]:
    lines: list[str] = []
    for name in spec.visible_parameters(owner):
        p = spec.parameter_map[name]
        # stage-scoped parameters are declared with their default in the stage
        lines.append(_arg_line(params, name, with_default=not p.is_global))
    return lines


def _render_stage(spec: PipelineSpec, params: ParameterSet, stage: StageSpec) -> list[str]:
    out: list[str] = []
    if stage.description:
        out.append(f"# {stage.description}")
    out.append(f"FROM {stage.base} AS {stage.name}")
    out.append("")
    args = _stage_args(spec, params, stage.name)
    if args:
        out.extend(args)
        out.append("")
    out.append("USER root")
    out.append("")

    for op in stage.setup:
        out.append(f"# {op.describe()}")
        out.append(f"RUN {_strip_stage_root(op.script())}")
    if stage.setup:
        out.append("")

    src = stage.source
    if isinstance(src, PinnedRevision):
        checkout = posixpath.join("/", CHECKOUT_ROOT, src.checkout)
        out.append(f"WORKDIR /{CHECKOUT_ROOT}")
        out.append(
            f"RUN git clone --branch {src.revision} --depth 1 {src.repository} {src.checkout}"
        )
        out.append("")
        workdir = posixpath.join(checkout, stage.build.workdir) if stage.build.workdir else checkout
        out.append(f"WORKDIR {workdir}")
    else:
        out.append(f"# {src.package}: latest available from {src.index} (not pinned)")
        if stage.build.workdir:
            out.append(f"WORKDIR /{stage.build.workdir}")

    for k, v in sorted(stage.build.env.items()):
        out.append(f"ENV {k}={_quote(v)}")
    out.append(f"RUN {_strip_stage_root(stage.build.command)}")
    return out


def _render_assembly(spec: PipelineSpec, params: ParameterSet) -> list[str]:
    asm = spec.assembly
    out: list[str] = ["# Final image", f"FROM {asm.base}", ""]
    args = _stage_args(spec, params, ASSEMBLER_NAME)
    if args:
        out.extend(args)
        out.append("")
    out.append("USER root")
    out.append("")

    for stage in spec.stages:
        for rule in stage.artifacts:
            dest = rule.dest if rule.dest.endswith("/") else rule.dest + "/"
            out.append(f"COPY --from={stage.name} {rule.source} {dest}")
    out.append("")
    out.append(f"USER {asm.user}")
    out.append("")
    for key, value in sorted(asm.labels.items()):
        out.append(f"LABEL {key}={_quote(value)}")
    return out


def render_dockerfile(spec: PipelineSpec, params: ParameterSet | None = None) -> str:
    """
    Multi-stage Dockerfile text for `spec`. Parameter defaults come from
    `params` (defaults only when omitted).
    """
    params = params or resolve_parameters(spec.parameters)

    lines: list[str] = [f"# {spec.name}"]
    if spec.description:
        lines.append(f"# {spec.description}")
    lines.append("")

    for p in spec.parameters:
        if p.is_global:
            lines.append(_arg_line(params, p.name, with_default=True))
    lines.append("")

    for stage in spec.stages:
        lines.extend(_render_stage(spec, params, stage))
        lines.append("")

    lines.extend(_render_assembly(spec, params))
    return "\n".join(lines) + "\n"
