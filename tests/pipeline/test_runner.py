from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Callable, Mapping

from pgext_image_build.core import WorkLayout, get_logger
from pgext_image_build.definition import PipelineSpec, load_builtin
from pgext_image_build.pipeline.context import RunContext
from pgext_image_build.pipeline.events import EventSink
from pgext_image_build.pipeline.executor import BuildStage
from pgext_image_build.pipeline.plan import plan_pipeline
from pgext_image_build.pipeline.runner import PipelineRunner
from pgext_image_build.pipeline.stage import run_stage


def _builtin_files(pg: int = 17) -> dict[str, dict[str, bytes]]:
    lib = f"/usr/lib/postgresql/{pg}/lib"
    ext = f"/usr/share/postgresql/{pg}/extension"
    return {
        "pgvector-builder": {
            f"{lib}/vector.so": b"vector",
            f"{ext}/vector--0.8.1.sql": b"create extension vector",
            f"{ext}/vector.control": b"default_version = '0.8.1'",
        },
        "pgvectorscale-builder": {
            f"{lib}/vectorscale-0.9.0.so": b"vectorscale",
            f"{ext}/vectorscale--0.9.0.sql": b"create extension vectorscale",
            f"{ext}/vectorscale.control": b"default_version = '0.9.0'",
        },
        "timescaledb-builder": {
            f"{lib}/timescaledb-2.22.0.so": b"tsdb",
            f"{lib}/timescaledb.so": b"tsdb loader",
            f"{ext}/timescaledb--2.22.0.sql": b"create extension timescaledb",
            f"{ext}/timescaledb.control": b"default_version = '2.22.0'",
        },
    }


def test_builtin_scenario_pg17_pgvector_081(
    backend_cls, make_runner: Callable[..., PipelineRunner], layout: WorkLayout
) -> None:
    plan = plan_pipeline(
        load_builtin("timescaledb-vector"), {"PG_MAJOR": 17, "PGVECTOR_VERSION": "0.8.1"}
    )
    pgvector = plan.stage_map["pgvector-builder"]
    assert pgvector.source.revision == "v0.8.1"
    assert len(pgvector.contract.rules) == 3
    assert plan.assembly.image_name == "cnpg-timescaledb-vector-pg17"
    assert any("timescaledb-2-postgresql-17" in w for w in plan.warnings)

    backend = backend_cls(files=_builtin_files())
    report = make_runner(plan, backend).run(run_id="scenario")

    assert report.status == "success", report.failure
    assert report.exit_code == 0
    assert [s.stage for s in report.stages] == [
        "pgvector-builder",
        "pgvectorscale-builder",
        "timescaledb-builder",
        "assemble",
    ]
    assert backend.fetches["pgvector-builder"] == (
        "https://github.com/pgvector/pgvector.git",
        "v0.8.1",
    )
    assert "timescaledb-builder" not in backend.fetches
    assert report.stage("pgvector-builder").metrics["files_matched"] == 3
    assert report.stage("timescaledb-builder").warnings

    # stage-scoped parameters reach the build as environment
    env = backend.envs["pgvectorscale-builder"][-1]
    assert env["RUSTFLAGS"] == "-C target-cpu=x86-64-v3 -C target-feature=+avx2,+fma"
    assert env["PGRX_VERSION"] == "0.16.1"
    assert "PGVECTOR_VERSION" not in env

    image = Path(report.image_dir or "")
    assert image == layout.image_dir("cnpg-timescaledb-vector-pg17")
    rootfs = image / "rootfs"
    assert (rootfs / "usr/lib/postgresql/17/lib/vector.so").read_bytes() == b"vector"
    assert (rootfs / "usr/share/postgresql/17/extension/vector--0.8.1.sql").is_file()
    assert (rootfs / "usr/lib/postgresql/17/lib/timescaledb.so").is_file()

    config = json.loads((image / "image.json").read_text())
    assert config["config"]["User"] == "26"
    assert config["config"]["Labels"]["org.opencontainers.image.description"].startswith(
        "PostgreSQL 17 with TimescaleDB"
    )
    manifest = json.loads((image / "manifest.json").read_text())
    assert manifest["run_id"] == "scenario"
    assert len(manifest["artifacts"]) == 10
    sums = (image / "sha256sums.txt").read_text().splitlines()
    assert len(sums) == 10
    assert all(line.split("  ")[1].startswith("rootfs/usr/") for line in sums)

    # stage roots are gone, run records stay
    assert not layout.run_work("scenario").exists()
    run_report = json.loads(layout.run_report_json("scenario").read_text())
    assert run_report["status"] == "success"
    events = [
        json.loads(x)["type"]
        for x in layout.events_jsonl("scenario").read_text().splitlines()
    ]
    assert events[0] == "run.env"
    assert "run.start" in events and events[-1] == "run.finish"
    assert events.count("contract.verified") == 3
    assert "image.published" in events


def test_empty_match_fails_stage_and_publishes_nothing(
    abc_spec: PipelineSpec,
    abc_files: dict[str, dict[str, bytes]],
    backend_cls,
    make_runner: Callable[..., PipelineRunner],
    layout: WorkLayout,
) -> None:
    files = dict(abc_files)
    files["stage-a"] = {
        k: v for k, v in abc_files["stage-a"].items() if not k.endswith(".so")
    }
    plan = plan_pipeline(abc_spec)
    report = make_runner(plan, backend_cls(files=files)).run(run_id="empty")

    assert report.status == "failed"
    assert report.exit_code == 1
    failure = report.failure
    assert failure is not None
    assert failure.exc_type == "ContractUnsatisfiedError"
    assert failure.stage == "stage-a"
    assert failure.step == "verify"
    assert "libA*.so" in failure.message

    assert report.stage("assemble").status == "skipped"
    assert report.image_dir is None
    assert not layout.image_dir("abc-pg17").exists()
    assert not layout.output_root.exists() or not any(layout.output_root.iterdir())


def test_fetch_failure_is_reported_with_stage_and_step(
    abc_spec: PipelineSpec,
    abc_files: dict[str, dict[str, bytes]],
    backend_cls,
    make_runner: Callable[..., PipelineRunner],
) -> None:
    plan = plan_pipeline(abc_spec, {"B_VERSION": "9.9.9"})
    backend = backend_cls(files=abc_files, missing_revisions={"v9.9.9"})
    report = make_runner(plan, backend, max_parallel=1).run()

    failure = report.failure
    assert failure is not None
    assert failure.exc_type == "SourceFetchError"
    assert (failure.stage, failure.step) == ("stage-b", "fetch")
    assert "exit 128" in failure.message
    assert report.stage("stage-a").status in {"success", "cancelled"}
    assert report.stage("assemble").status == "skipped"


def test_setup_and_build_failures_map_to_their_errors(
    abc_spec: PipelineSpec,
    abc_files: dict[str, dict[str, bytes]],
    backend_cls,
    make_runner: Callable[..., PipelineRunner],
) -> None:
    plan = plan_pipeline(abc_spec)

    report = make_runner(
        plan, backend_cls(files=abc_files, fail={"stage-c": ("apt-get", 100)})
    ).run()
    assert report.failure is not None
    assert report.failure.exc_type == "SetupError"
    assert report.failure.step == "setup"

    report = make_runner(
        plan, backend_cls(files=abc_files, fail={"stage-a": ("make install-stage-a", 2)})
    ).run()
    assert report.failure is not None
    assert report.failure.exc_type == "BuildError"
    assert (report.failure.stage, report.failure.step) == ("stage-a", "build")


def test_cancelled_stage_stops_between_steps(
    abc_spec: PipelineSpec, abc_files: dict[str, dict[str, bytes]], backend_cls, layout: WorkLayout
) -> None:
    plan = plan_pipeline(abc_spec)
    backend = backend_cls(files=abc_files)
    ctx = RunContext(
        run_id="cancel",
        layout=layout,
        backend=backend,
        logger=get_logger("tests"),
        events=EventSink(layout.events_jsonl("cancel"), run_id="cancel"),
    )
    ctx.cancel.set()

    result = run_stage(ctx=ctx, stage=BuildStage(plan=plan.stage_map["stage-a"]))
    assert result.status == "cancelled"
    assert result.error is not None and result.error.step == "provision"
    assert "stage-a" not in backend.scripts
    assert [e.type for e in ctx.events.read()] == ["run.env", "stage.start", "stage.cancelled"]


def test_changing_one_stage_version_leaves_others_untouched(
    abc_spec: PipelineSpec,
    abc_files: dict[str, dict[str, bytes]],
    backend_cls,
    make_runner: Callable[..., PipelineRunner],
) -> None:
    p1 = plan_pipeline(abc_spec)
    p2 = plan_pipeline(abc_spec, {"A_VERSION": "1.1.0"})

    a1, a2 = p1.stage_map["stage-a"], p2.stage_map["stage-a"]
    assert a1.source.revision == "v1.0.0" and a2.source.revision == "v1.1.0"
    assert a1.cache_key != a2.cache_key
    for name in ("stage-b", "stage-c"):
        assert p1.stage_map[name].cache_key == p2.stage_map[name].cache_key
        assert p1.stage_map[name].source == p2.stage_map[name].source

    b1, b2 = backend_cls(files=abc_files), backend_cls(files=abc_files)
    r1 = make_runner(p1, b1, overwrite=True).run(run_id="one")
    r2 = make_runner(p2, b2, overwrite=True).run(run_id="two")
    assert r1.status == "success"
    assert r2.status == "success"

    def others(report) -> list[dict]:
        return [a for a in report.stage("assemble").artifacts if a["stage"] != "stage-a"]

    assert others(r1) == others(r2)
    assert b1.fetches["stage-b"] == b2.fetches["stage-b"]
    assert b1.fetches["stage-a"] != b2.fetches["stage-a"]


def test_failure_skips_stages_that_have_not_started(
    abc_spec: PipelineSpec,
    abc_files: dict[str, dict[str, bytes]],
    backend_cls,
    make_runner: Callable[..., PipelineRunner],
) -> None:
    plan = plan_pipeline(abc_spec)
    backend = backend_cls(files=abc_files, fail={"stage-a": ("make install-stage-a", 2)})
    report = make_runner(plan, backend, max_parallel=1).run(run_id="serial")

    assert report.failure is not None
    assert (report.failure.stage, report.failure.exc_type) == ("stage-a", "BuildError")
    assert [s.status for s in report.stages] == ["failed", "skipped", "skipped", "skipped"]
    assert set(backend.fetches) == {"stage-a"}


def test_failure_cancels_running_siblings(
    abc_spec: PipelineSpec,
    abc_files: dict[str, dict[str, bytes]],
    backend_cls,
    make_runner: Callable[..., PipelineRunner],
) -> None:
    cancel = threading.Event()
    started = threading.Semaphore(0)

    class Gated(backend_cls):
        # stage-b and stage-c park after provisioning until the run is cancelled
        def provision(self, *, stage: str, base: str, root: Path) -> None:
            super().provision(stage=stage, base=base, root=root)
            if stage != "stage-a":
                started.release()
                cancel.wait(timeout=10)

        def run(self, *, root: Path, script: str, cwd: Path, env: Mapping[str, str]):
            if "make install-stage-a" in script:
                assert started.acquire(timeout=10) and started.acquire(timeout=10)
            return super().run(root=root, script=script, cwd=cwd, env=env)

    plan = plan_pipeline(abc_spec)
    backend = Gated(files=abc_files, fail={"stage-a": ("make install-stage-a", 2)})
    report = make_runner(plan, backend, max_parallel=3).run(run_id="parallel", cancel=cancel)

    assert cancel.is_set()
    assert report.status == "failed"
    assert report.failure is not None and report.failure.stage == "stage-a"
    for name in ("stage-b", "stage-c"):
        rec = report.stage(name)
        assert rec.status == "cancelled"
        assert rec.error is not None and rec.error.step == "setup"
    assert report.stage("assemble").status == "skipped"
    assert set(backend.fetches) == {"stage-a"}


def test_external_cancel_skips_every_stage(
    abc_spec: PipelineSpec,
    abc_files: dict[str, dict[str, bytes]],
    backend_cls,
    make_runner: Callable[..., PipelineRunner],
    layout: WorkLayout,
) -> None:
    cancel = threading.Event()
    cancel.set()
    backend = backend_cls(files=abc_files)
    report = make_runner(plan_pipeline(abc_spec), backend).run(run_id="stopped", cancel=cancel)

    assert report.status == "failed"
    assert report.failure is None
    assert {s.status for s in report.stages} == {"skipped"}
    assert backend.scripts == {}
    assert not layout.image_dir("abc-pg17").exists()
