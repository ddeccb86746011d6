from .loader import (
    builtin_names,
    load_builtin,
    load_pipeline,
    parse_pipeline,
    resolve_pipeline,
    schema_for_pipeline,
)
from .models import (
    ASSEMBLER_NAME,
    GLOBAL_SCOPE,
    ArtifactRule,
    AssemblySpec,
    BuildSpec,
    InstallPackages,
    LatestFromIndex,
    ParameterSpec,
    ParamType,
    PinnedRevision,
    PipelineSpec,
    RegisterRepository,
    RunSetup,
    StageSpec,
)

__all__ = [
    "ASSEMBLER_NAME",
    "GLOBAL_SCOPE",
    "ArtifactRule",
    "AssemblySpec",
    "BuildSpec",
    "InstallPackages",
    "LatestFromIndex",
    "ParameterSpec",
    "ParamType",
    "PinnedRevision",
    "PipelineSpec",
    "RegisterRepository",
    "RunSetup",
    "StageSpec",
    "builtin_names",
    "load_builtin",
    "load_pipeline",
    "parse_pipeline",
    "resolve_pipeline",
    "schema_for_pipeline",
]
