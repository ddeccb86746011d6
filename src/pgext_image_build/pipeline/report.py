from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

from pgext_image_build.core import StageError, atomic_write_json

from .stage import FAILED, SUCCESS, StageResult


@dataclass(slots=True)
class RunReport:
    """
    Outcome of one pipeline run, written as run_report.json.

    `image_dir` is set only when the run succeeded: a failed run never
    points at an image.
    """

    run_id: str
    pipeline: str
    status: str
    started_at_utc: str
    finished_at_utc: str
    duration_ms: int

    stages: list[StageResult] = field(default_factory=list)
    parameters: dict[str, Any] = field(default_factory=dict)
    image_dir: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
    events_jsonl: Optional[str] = None
    meta: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_results(
        cls,
        results: list[StageResult],
        *,
        image_dir: str | None = None,
        **fields: Any,
    ) -> "RunReport":
        ok = bool(results) and all(r.ok for r in results)
        return cls(
            status=SUCCESS if ok else FAILED,
            stages=list(results),
            image_dir=image_dir if ok else None,
            **fields,
        )

    @property
    def exit_code(self) -> int:
        return 0 if self.status == SUCCESS else 1

    @property
    def failure(self) -> Optional[StageError]:
        """The root-cause error; cancellations it triggered are ignored."""
        return next(
            (r.error for r in self.stages if r.status == FAILED and r.error is not None),
            None,
        )

    def stage(self, name: str) -> StageResult:
        for r in self.stages:
            if r.stage == name:
                return r
        raise KeyError(name)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def write_json(self, path: Path) -> None:
        atomic_write_json(Path(path), self.to_dict())
