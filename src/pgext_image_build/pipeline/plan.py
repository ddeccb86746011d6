from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Mapping, Optional

import structlog

from pgext_image_build.core import fingerprint
from pgext_image_build.definition.models import (
    ASSEMBLER_NAME,
    LatestFromIndex,
    PinnedRevision,
    PipelineSpec,
    StageSpec,
)

from .contracts import ArtifactContract, check_overlaps, resolve_contract
from .metadata import validate_labels, validate_user
from .parameters import Bindings, ParameterSet, resolve_parameters

log = structlog.get_logger(__name__)

# Checkouts live here inside the stage filesystem.
CHECKOUT_ROOT = "tmp"


@dataclass(frozen=True, slots=True)
class SetupStep:
    kind: str
    description: str
    script: str


@dataclass(frozen=True, slots=True)
class SourcePlan:
    kind: str
    reproducible: bool
    repository: Optional[str] = None
    revision: Optional[str] = None
    checkout: Optional[str] = None
    package: Optional[str] = None
    index: Optional[str] = None

    def describe(self) -> str:
        if self.kind == "pinned_revision":
            return f"{self.repository}@{self.revision}"
        return f"{self.package} (latest from {self.index})"

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True, slots=True)
class StagePlan:
    """
    A stage with every template resolved. Built before anything executes.
    """

    name: str
    base: str
    bindings: Bindings
    setup: tuple[SetupStep, ...]
    source: SourcePlan
    build_command: str
    build_workdir: str
    build_env: dict[str, str]
    contract: ArtifactContract
    cache_key: str

    @property
    def checkout_rel(self) -> Optional[str]:
        if self.source.checkout is None:
            return None
        return f"{CHECKOUT_ROOT}/{self.source.checkout}"


@dataclass(frozen=True, slots=True)
class AssemblyPlan:
    base: str
    image_name: str
    user: str
    labels: dict[str, str]


@dataclass(frozen=True, slots=True)
class PipelinePlan:
    name: str
    parameters: ParameterSet
    stages: tuple[StagePlan, ...]
    assembly: AssemblyPlan
    warnings: tuple[str, ...] = field(default_factory=tuple)

    @property
    def stage_map(self) -> dict[str, StagePlan]:
        return {s.name: s for s in self.stages}


def _plan_source(stage: StageSpec, b: Bindings) -> SourcePlan:
    src = stage.source
    if isinstance(src, PinnedRevision):
        return SourcePlan(
            kind=src.kind,
            reproducible=True,
            repository=b.render(src.repository, where="source.repository"),
            revision=b.render(src.revision, where="source.revision"),
            checkout=src.checkout,
        )
    assert isinstance(src, LatestFromIndex)
    return SourcePlan(
        kind=src.kind,
        reproducible=False,
        package=b.render(src.package, where="source.package"),
        index=src.index,
    )


def stage_cache_key(
    *,
    base: str,
    parameters: Mapping[str, Any],
    source: SourcePlan,
    setup: tuple[SetupStep, ...],
    build_command: str,
    build_workdir: str,
    build_env: Mapping[str, str],
) -> str:
    """
    Key a stage by its own inputs only: base, visible parameters, source
    revision and the commands it runs. Never shared across stages.
    """
    return fingerprint(
        {
            "base": base,
            "parameters": dict(parameters),
            "source": source.to_dict(),
            "setup": [s.script for s in setup],
            "build": {
                "command": build_command,
                "workdir": build_workdir,
                "env": dict(build_env),
            },
        }
    )


def plan_stage(spec: PipelineSpec, stage: StageSpec, params: ParameterSet) -> StagePlan:
    b = params.bindings(stage.name, spec.visible_parameters(stage.name))

    base = b.render(stage.base, where="base")
    setup = tuple(
        SetupStep(
            kind=op.kind,
            description=b.render(op.describe(), where=f"setup[{i}]", shell=True),
            script=b.render(op.script(), where=f"setup[{i}]", shell=True),
        )
        for i, op in enumerate(stage.setup)
    )
    source = _plan_source(stage, b)
    build_command = b.render(stage.build.command, where="build.command", shell=True)
    build_workdir = b.render(stage.build.workdir, where="build.workdir")
    build_env = b.render_all(stage.build.env, where="build.env")
    contract = resolve_contract(stage, b)

    key = stage_cache_key(
        base=base,
        parameters=b.values,
        source=source,
        setup=setup,
        build_command=build_command,
        build_workdir=build_workdir,
        build_env=build_env,
    )

    return StagePlan(
        name=stage.name,
        base=base,
        bindings=b,
        setup=setup,
        source=source,
        build_command=build_command,
        build_workdir=build_workdir,
        build_env=build_env,
        contract=contract,
        cache_key=key,
    )


def plan_assembly(spec: PipelineSpec, params: ParameterSet) -> AssemblyPlan:
    asm = spec.assembly
    b = params.bindings(ASSEMBLER_NAME, spec.visible_parameters(ASSEMBLER_NAME))
    # checked again at finalize; a bad user or label fails the plan first
    user = validate_user(b.render(asm.user, where="assembly.user"), step="plan")
    labels = validate_labels(b.render_all(asm.labels, where="assembly.labels"), step="plan")
    return AssemblyPlan(
        base=b.render(asm.base, where="assembly.base"),
        image_name=b.render(asm.image_name, where="assembly.image_name"),
        user=user,
        labels=labels,
    )


def plan_pipeline(
    spec: PipelineSpec, overrides: Mapping[str, Any] | None = None
) -> PipelinePlan:
    """
    Resolve parameters once, render every stage and check the contracts.
    Any definition defect surfaces here, before a single stage runs.
    """
    params = resolve_parameters(spec.parameters, overrides)
    stages = tuple(plan_stage(spec, s, params) for s in spec.stages)
    check_overlaps([s.contract for s in stages])
    assembly = plan_assembly(spec, params)

    warnings: list[str] = []
    for s in stages:
        if not s.source.reproducible:
            msg = (
                f"stage {s.name}: {s.source.package} version is whatever "
                f"{s.source.index} serves at build time (not reproducible)"
            )
            warnings.append(msg)
            log.warning("plan.unpinned_source", stage=s.name, package=s.source.package)

    return PipelinePlan(
        name=spec.name,
        parameters=params,
        stages=stages,
        assembly=assembly,
        warnings=tuple(warnings),
    )
