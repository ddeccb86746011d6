import json
from pathlib import Path
from typing import Any

from .fs import atomic_write_text


def stable_json_dumps(obj: Any, *, indent: int | None = 2) -> str:
    """
    Deterministic JSON: sorted keys, and compact separators when `indent`
    is None.
    """
    separators = (",", ":") if indent is None else None
    return json.dumps(
        obj, sort_keys=True, ensure_ascii=False, indent=indent, separators=separators
    )


def atomic_write_json(path: Path, obj: Any, *, indent: int = 2) -> None:
    atomic_write_text(path, stable_json_dumps(obj, indent=indent) + "\n")


def read_json(path: Path) -> Any:
    return json.loads(Path(path).read_text(encoding="utf-8"))
