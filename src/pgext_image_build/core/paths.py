from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True, slots=True)
class WorkLayout:
    """
    Canonical path layout for a build:

      {work_root}/{run_id}/{stage}-{cache_key[:12]}/rootfs/
      {run_root}/{run_id}/events.jsonl
      {run_root}/{run_id}/run_report.json
      {output_root}/{image_name}/
    """

    work_root: Path
    output_root: Path
    run_root: Path

    def run_work(self, run_id: str) -> Path:
        return self.work_root / run_id

    def stage_dir(self, run_id: str, stage: str, cache_key: str) -> Path:
        return self.run_work(run_id) / f"{stage}-{cache_key[:12]}"

    def stage_rootfs(self, run_id: str, stage: str, cache_key: str) -> Path:
        return self.stage_dir(run_id, stage, cache_key) / "rootfs"

    def run_dir(self, run_id: str) -> Path:
        return self.run_root / run_id

    def events_jsonl(self, run_id: str) -> Path:
        return self.run_dir(run_id) / "events.jsonl"

    def run_report_json(self, run_id: str) -> Path:
        return self.run_dir(run_id) / "run_report.json"

    def image_dir(self, image_name: str) -> Path:
        return self.output_root / image_name
