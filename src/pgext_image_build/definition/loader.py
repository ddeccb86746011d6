from __future__ import annotations

import json
from functools import lru_cache
from importlib.resources import files
from pathlib import Path
from typing import Any, Final

import jsonschema
from pydantic import TypeAdapter, ValidationError

from pgext_image_build.core import PipelineDefinitionError, read_json

from .models import PipelineSpec

PKG: Final[str] = "pgext_image_build.definition"
BUILTIN_DIR: Final[str] = "builtin"


def _format_pydantic(e: ValidationError) -> str:
    lines: list[str] = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        lines.append(f"- {loc}: {err.get('msg')}")
    return "\n".join(lines)


@lru_cache(maxsize=1)
def schema_for_pipeline() -> dict[str, Any]:
    return TypeAdapter(PipelineSpec).json_schema()


def parse_pipeline(raw: dict[str, Any], *, origin: str = "<memory>") -> PipelineSpec:
    """
    Validate a decoded pipeline definition: JSON schema first (shape),
    then the pydantic models (cross-field rules).
    """
    try:
        jsonschema.validate(instance=raw, schema=schema_for_pipeline())
    except jsonschema.ValidationError as e:
        path = ".".join(str(p) for p in e.absolute_path) or "<root>"
        raise PipelineDefinitionError(
            f"{origin}: schema violation at {path}: {e.message}"
        ) from e

    try:
        return PipelineSpec.model_validate(raw)
    except ValidationError as e:
        raise PipelineDefinitionError(
            f"{origin}: invalid pipeline definition:\n{_format_pydantic(e)}"
        ) from e


def load_pipeline(path: Path) -> PipelineSpec:
    path = Path(path)
    try:
        raw = read_json(path)
    except FileNotFoundError as e:
        raise PipelineDefinitionError(f"pipeline definition not found: {path}") from e
    except json.JSONDecodeError as e:
        raise PipelineDefinitionError(f"{path}: not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise PipelineDefinitionError(
            f"{path}: expected a JSON object, got {type(raw).__name__}"
        )
    return parse_pipeline(raw, origin=str(path))


def builtin_names() -> list[str]:
    root = files(PKG).joinpath(BUILTIN_DIR)
    return sorted(
        p.name.removesuffix(".json") for p in root.iterdir() if p.name.endswith(".json")
    )


def load_builtin(name: str) -> PipelineSpec:
    res = files(PKG).joinpath(BUILTIN_DIR, f"{name}.json")
    if not res.is_file():
        raise PipelineDefinitionError(
            f"unknown built-in pipeline {name!r} (available: {builtin_names()})"
        )
    try:
        raw = json.loads(res.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise PipelineDefinitionError(f"built-in {name}: not valid JSON: {e}") from e
    return parse_pipeline(raw, origin=f"builtin:{name}")


def resolve_pipeline(ref: str | Path) -> PipelineSpec:
    """
    Resolve a pipeline reference.

    Priority:
      1) an existing file path
      2) a built-in definition name
    """
    p = Path(ref).expanduser()
    if p.is_file():
        return load_pipeline(p)
    if str(ref).endswith(".json"):
        raise PipelineDefinitionError(f"pipeline definition not found: {p}")
    return load_builtin(str(ref))
