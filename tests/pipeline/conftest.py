from __future__ import annotations

import copy
import threading
from pathlib import Path
from typing import Any, Callable, Mapping

import pytest

from pgext_image_build.core import CommandResult, WorkLayout, get_logger
from pgext_image_build.definition import PipelineSpec, parse_pipeline
from pgext_image_build.pipeline.plan import PipelinePlan
from pgext_image_build.pipeline.runner import PipelineRunner, RunnerConfig


class ScriptedBackend:
    """
    In-memory stand-in for shell and git.

    `files[stage]` is written into the stage root whenever that stage runs a
    script. `fail[stage] = (needle, rc)` makes any script containing `needle`
    exit with `rc`. Revisions in `missing_revisions` cannot be fetched.
    """

    def __init__(
        self,
        *,
        files: Mapping[str, Mapping[str, bytes]] | None = None,
        fail: Mapping[str, tuple[str, int]] | None = None,
        missing_revisions: set[str] | None = None,
        base_files: Mapping[str, bytes] | None = None,
    ) -> None:
        self.files = {k: dict(v) for k, v in (files or {}).items()}
        self.fail = dict(fail or {})
        self.missing_revisions = set(missing_revisions or ())
        self.base_files = dict(base_files or {})

        self._lock = threading.Lock()
        self._stage_by_root: dict[Path, str] = {}
        self.scripts: dict[str, list[str]] = {}
        self.envs: dict[str, list[dict[str, str]]] = {}
        self.fetches: dict[str, tuple[str, str]] = {}
        self.torn_down: list[Path] = []

    def provision(self, *, stage: str, base: str, root: Path) -> None:
        root.mkdir(parents=True, exist_ok=True)
        for rel, data in self.base_files.items():
            p = root / rel.lstrip("/")
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_bytes(data)
        with self._lock:
            self._stage_by_root[root] = stage

    def run(
        self, *, root: Path, script: str, cwd: Path, env: Mapping[str, str]
    ) -> CommandResult:
        stage = self._stage_by_root[root]
        with self._lock:
            self.scripts.setdefault(stage, []).append(script)
            self.envs.setdefault(stage, []).append(dict(env))

        needle, rc = self.fail.get(stage, (None, 0))
        if needle is not None and needle in script:
            return CommandResult(("sh",), rc, "", f"{needle}: failed\n")

        for rel, data in self.files.get(stage, {}).items():
            p = root / rel.lstrip("/")
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_bytes(data)
        return CommandResult(("sh",), 0, "", "")

    def fetch(
        self, *, root: Path, repository: str, revision: str, dest: Path
    ) -> CommandResult:
        stage = self._stage_by_root[root]
        with self._lock:
            self.fetches[stage] = (repository, revision)
        if revision in self.missing_revisions:
            return CommandResult(
                ("git",), 128, "", f"fatal: Remote branch {revision} not found\n"
            )
        dest.mkdir(parents=True, exist_ok=True)
        return CommandResult(("git",), 0, "", "")

    def teardown(self, *, root: Path) -> None:
        self.torn_down.append(root)


def three_stage_definition() -> dict[str, Any]:
    """Stages a, b, c; each ships one library and one SQL file."""

    def stage(name: str, lib: str, version_param: str) -> dict[str, Any]:
        return {
            "name": name,
            "base": "builder:${PG_MAJOR}",
            "args": ["PG_MAJOR"],
            "setup": [{"kind": "install_packages", "packages": ["build-essential"]}],
            "source": {
                "kind": "pinned_revision",
                "repository": f"https://example.invalid/{name}.git",
                "revision": "v${" + version_param + "}",
                "checkout": name,
            },
            "build": {"command": f"make install-{name}"},
            "artifacts": [
                {"source": f"/usr/lib/postgresql/${{PG_MAJOR}}/lib/{lib}*.so", "dest": "/usr/lib/postgresql/${PG_MAJOR}/lib"},
                {"source": f"/usr/share/postgresql/${{PG_MAJOR}}/extension/{lib}--*.sql", "dest": "/usr/share/postgresql/${PG_MAJOR}/extension"},
            ],
        }

    return {
        "spec_version": 1,
        "name": "abc",
        "parameters": [
            {"name": "PG_MAJOR", "type": "int", "default": 17},
            {"name": "A_VERSION", "default": "1.0.0", "scope": "stage-a"},
            {"name": "B_VERSION", "default": "2.0.0", "scope": "stage-b"},
            {"name": "C_VERSION", "default": "3.0.0", "scope": "stage-c"},
        ],
        "stages": [
            stage("stage-a", "libA", "A_VERSION"),
            stage("stage-b", "libB", "B_VERSION"),
            stage("stage-c", "libC", "C_VERSION"),
        ],
        "assembly": {
            "base": "runtime:${PG_MAJOR}",
            "image_name": "abc-pg${PG_MAJOR}",
            "args": ["PG_MAJOR"],
            "user": "26",
            "labels": {"org.opencontainers.image.title": "abc for PostgreSQL ${PG_MAJOR}"},
        },
    }


def three_stage_files(pg_major: int = 17) -> dict[str, dict[str, bytes]]:
    lib = f"/usr/lib/postgresql/{pg_major}/lib"
    ext = f"/usr/share/postgresql/{pg_major}/extension"
    return {
        "stage-a": {f"{lib}/libA.so": b"A-so", f"{ext}/libA--1.0.sql": b"A-sql"},
        "stage-b": {f"{lib}/libB-2.0.so": b"B-so", f"{ext}/libB--2.0.sql": b"B-sql"},
        "stage-c": {f"{lib}/libC.so": b"C-so", f"{ext}/libC--3.0.sql": b"C-sql"},
    }


@pytest.fixture
def abc_spec() -> PipelineSpec:
    return parse_pipeline(copy.deepcopy(three_stage_definition()))


@pytest.fixture
def layout(tmp_path: Path) -> WorkLayout:
    return WorkLayout(
        work_root=tmp_path / "work",
        output_root=tmp_path / "images",
        run_root=tmp_path / "runs",
    )


@pytest.fixture
def make_runner(layout: WorkLayout) -> Callable[..., PipelineRunner]:
    def _make(plan: PipelinePlan, backend: Any, **cfg: Any) -> PipelineRunner:
        return PipelineRunner(
            plan=plan,
            layout=layout,
            backend=backend,
            cfg=RunnerConfig(**cfg),
            logger=get_logger("tests"),
        )

    return _make


@pytest.fixture
def backend_cls() -> type[ScriptedBackend]:
    return ScriptedBackend


@pytest.fixture
def abc_files() -> dict[str, dict[str, bytes]]:
    return three_stage_files()
