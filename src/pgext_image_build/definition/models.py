from __future__ import annotations

import shlex
from enum import StrEnum
from functools import cached_property
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    model_validator,
)

GLOBAL_SCOPE = "global"
ASSEMBLER_NAME = "assemble"

PARAM_NAME_PATTERN = r"^[A-Z][A-Z0-9_]*$"

ParamName = Annotated[
    str,
    StringConstraints(min_length=1, max_length=64, pattern=PARAM_NAME_PATTERN),
]
StageName = Annotated[
    str,
    StringConstraints(
        min_length=2, max_length=64, pattern=r"^[a-z0-9][a-z0-9_\-]*[a-z0-9]$"
    ),
]
NonEmpty = Annotated[str, StringConstraints(min_length=1)]
AbsPath = Annotated[str, StringConstraints(min_length=2, pattern=r"^/")]

# Revisions that float with the upstream repository.
FLOATING_REVISIONS = frozenset({"latest", "head", "HEAD"})

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


class ParamType(StrEnum):
    STR = "str"
    INT = "int"
    BOOL = "bool"


ParamValue = Union[str, int, bool]


def coerce_param(kind: ParamType, raw: object) -> ParamValue:
    """
    Coerce `raw` to the declared parameter type. Raises ValueError.
    """
    if kind is ParamType.BOOL:
        if isinstance(raw, bool):
            return raw
        s = str(raw).strip().lower()
        if s in _TRUE:
            return True
        if s in _FALSE:
            return False
        raise ValueError(f"not a boolean: {raw!r}")

    if kind is ParamType.INT:
        if isinstance(raw, bool):
            raise ValueError(f"not an integer: {raw!r}")
        if isinstance(raw, int):
            return raw
        try:
            return int(str(raw).strip(), 10)
        except ValueError:
            raise ValueError(f"not an integer: {raw!r}") from None

    if isinstance(raw, bool):
        return "true" if raw else "false"
    s = str(raw)
    if not s:
        raise ValueError("empty string")
    return s


def format_param(value: ParamValue) -> str:
    """Render a resolved value the way it is substituted into templates."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class ParameterSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: ParamName
    type: ParamType = ParamType.STR
    default: Optional[ParamValue] = None
    scope: str = GLOBAL_SCOPE
    description: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _coerce_default(cls, data: Any) -> Any:
        if not isinstance(data, dict) or data.get("default") is None:
            return data
        try:
            kind = ParamType(data.get("type", ParamType.STR))
        except ValueError:
            # left for field validation to report
            return data
        try:
            coerced = coerce_param(kind, data["default"])
        except ValueError as e:
            raise ValueError(f"parameter {data.get('name')}: bad default: {e}") from e
        return {**data, "default": coerced}

    @property
    def is_global(self) -> bool:
        return self.scope == GLOBAL_SCOPE


class RegisterRepository(BaseModel):
    """
    Register an apt package source and its signing key inside the stage
    filesystem. The same operation type serves every stage that needs it.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["register_repository"] = "register_repository"
    name: StageName
    url: NonEmpty
    signing_key_url: NonEmpty
    suite: NonEmpty = "$(lsb_release -cs)"
    component: NonEmpty = "main"

    def script(self) -> str:
        list_path = f"${{STAGE_ROOT}}/etc/apt/sources.list.d/{self.name}.list"
        key_path = f"${{STAGE_ROOT}}/etc/apt/trusted.gpg.d/{self.name}.gpg"
        return (
            f'mkdir -p "$(dirname "{list_path}")" "$(dirname "{key_path}")" && '
            f'echo "deb {self.url} {self.suite} {self.component}" > "{list_path}" && '
            f"curl -fsSL {shlex.quote(self.signing_key_url)} "
            f'| gpg --batch --yes --dearmor -o "{key_path}"'
        )

    def describe(self) -> str:
        return f"register repository {self.name} ({self.url})"


class InstallPackages(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["install_packages"] = "install_packages"
    packages: list[NonEmpty] = Field(..., min_length=1)

    def script(self) -> str:
        pkgs = " ".join(self.packages)
        return (
            "apt-get update && "
            f"apt-get install -y --no-install-recommends {pkgs} && "
            'rm -rf "${STAGE_ROOT}/var/lib/apt/lists"/*'
        )

    def describe(self) -> str:
        return f"install {len(self.packages)} package(s)"


class RunSetup(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["run"] = "run"
    command: NonEmpty

    def script(self) -> str:
        return self.command

    def describe(self) -> str:
        return f"run {self.command.split()[0]}"


SetupOperation = Annotated[
    Union[RegisterRepository, InstallPackages, RunSetup],
    Field(discriminator="kind"),
]


class PinnedRevision(BaseModel):
    """
    Exact source pin: one tag or branch, fetched as a depth-1 checkout.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["pinned_revision"] = "pinned_revision"
    repository: NonEmpty
    revision: NonEmpty
    checkout: StageName

    @model_validator(mode="after")
    def _no_floating(self) -> "PinnedRevision":
        if self.revision.strip() in FLOATING_REVISIONS:
            raise ValueError(
                f"revision {self.revision!r} floats; pin a tag or branch "
                "or declare latest_from_index explicitly"
            )
        return self

    @property
    def reproducible(self) -> bool:
        return True


class LatestFromIndex(BaseModel):
    """
    Version selection deferred to a package index: whatever it serves at
    build time. Not reproducible.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["latest_from_index"] = "latest_from_index"
    package: NonEmpty
    index: NonEmpty

    @property
    def reproducible(self) -> bool:
        return False


SourceRef = Annotated[
    Union[PinnedRevision, LatestFromIndex],
    Field(discriminator="kind"),
]


class BuildSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    command: NonEmpty
    # relative to the checkout (pinned sources) or the stage root
    workdir: str = ""
    env: dict[ParamName, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _relative_workdir(self) -> "BuildSpec":
        if self.workdir.startswith("/") or ".." in self.workdir.split("/"):
            raise ValueError(f"build.workdir must be relative: {self.workdir!r}")
        return self


class ArtifactRule(BaseModel):
    """
    Files matching `source` (a glob inside the stage filesystem) are copied
    into the `dest` directory of the final image.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    source: AbsPath
    dest: AbsPath

    @model_validator(mode="after")
    def _validate(self) -> "ArtifactRule":
        if self.source.endswith("/"):
            raise ValueError(f"artifact source must name files: {self.source!r}")
        if ".." in self.source.split("/") or ".." in self.dest.split("/"):
            raise ValueError("artifact paths must not contain '..'")
        return self


class StageSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: StageName
    description: Optional[str] = None
    base: NonEmpty
    args: list[ParamName] = Field(default_factory=list)
    setup: list[SetupOperation] = Field(default_factory=list)
    source: SourceRef
    build: BuildSpec
    artifacts: list[ArtifactRule] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _validate(self) -> "StageSpec":
        if self.name == ASSEMBLER_NAME:
            raise ValueError(f"stage name {ASSEMBLER_NAME!r} is reserved")
        if len(self.args) != len(set(self.args)):
            raise ValueError(f"duplicate args in stage {self.name}")
        return self


class AssemblySpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    base: NonEmpty
    image_name: NonEmpty
    args: list[ParamName] = Field(default_factory=list)
    user: NonEmpty
    labels: dict[str, str] = Field(default_factory=dict)


class PipelineSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    spec_version: int = Field(..., ge=1)
    name: NonEmpty
    description: Optional[str] = None
    parameters: list[ParameterSpec] = Field(default_factory=list)
    stages: list[StageSpec] = Field(..., min_length=1)
    assembly: AssemblySpec

    @model_validator(mode="after")
    def _validate(self) -> "PipelineSpec":
        names = [p.name for p in self.parameters]
        if len(names) != len(set(names)):
            dupes = sorted({x for x in names if names.count(x) > 1})
            raise ValueError(f"duplicate parameter name(s): {dupes}")

        stage_ids = [s.name for s in self.stages]
        if len(stage_ids) != len(set(stage_ids)):
            dupes = sorted({x for x in stage_ids if stage_ids.count(x) > 1})
            raise ValueError(f"duplicate stage name(s): {dupes}")

        scopes = {GLOBAL_SCOPE, *stage_ids}
        for p in self.parameters:
            if p.scope not in scopes:
                raise ValueError(
                    f"parameter {p.name} is scoped to unknown stage {p.scope!r}"
                )

        by_name = {p.name: p for p in self.parameters}
        for owner, args in [(s.name, s.args) for s in self.stages] + [
            (ASSEMBLER_NAME, self.assembly.args)
        ]:
            for a in args:
                p = by_name.get(a)
                if p is None:
                    raise ValueError(f"{owner}: arg {a} is not a declared parameter")
                if not p.is_global and p.scope != owner:
                    raise ValueError(
                        f"{owner}: arg {a} is scoped to stage {p.scope!r}"
                    )
        return self

    @cached_property
    def stage_map(self) -> dict[str, StageSpec]:
        return {s.name: s for s in self.stages}

    @cached_property
    def parameter_map(self) -> dict[str, ParameterSpec]:
        return {p.name: p for p in self.parameters}

    def visible_parameters(self, owner: str) -> list[str]:
        """
        Names a stage (or the assembler) may reference: its declared args
        plus parameters scoped to it. Sorted.
        """
        if owner == ASSEMBLER_NAME:
            declared = set(self.assembly.args)
        else:
            declared = set(self.stage_map[owner].args)
        declared.update(p.name for p in self.parameters if p.scope == owner)
        return sorted(declared)
