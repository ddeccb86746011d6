"""
Build stage execution: provision, setup, fetch, build, verify.

A stage either completes every step or raises; there is no partial success
and nothing is retried here.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from pgext_image_build.core import (
    BuildError,
    SetupError,
    SourceFetchError,
    StageCancelled,
)

from .context import RunContext
from .contracts import verify_contract
from .events import EventType
from .plan import StagePlan
from .stage import StageOutput


def _checkpoint(ctx: RunContext, stage: str, step: str) -> None:
    if ctx.cancel.is_set():
        raise StageCancelled("run cancelled", stage=stage, step=step)


def stage_root(ctx: RunContext, plan: StagePlan) -> Path:
    return ctx.layout.stage_rootfs(ctx.run_id, plan.name, plan.cache_key)


@dataclass(slots=True)
class BuildStage:
    """
    One isolated build. Adapts a StagePlan to the runner's Stage protocol.
    """

    plan: StagePlan

    @property
    def stage_id(self) -> str:
        return self.plan.name

    def run(self, ctx: RunContext) -> StageOutput:
        plan = self.plan
        log = ctx.stage_logger(plan.name)
        root = stage_root(ctx, plan)
        env = plan.bindings.as_env()
        warnings: list[str] = []

        _checkpoint(ctx, plan.name, "provision")
        try:
            ctx.backend.provision(stage=plan.name, base=plan.base, root=root)
        except OSError as e:
            raise SetupError(
                f"cannot provision base {plan.base}: {e}", stage=plan.name, step="provision"
            ) from e

        for i, op in enumerate(plan.setup):
            _checkpoint(ctx, plan.name, "setup")
            ctx.emit(EventType.SETUP_START, stage=plan.name, index=i, op=op.description)
            res = ctx.backend.run(root=root, script=op.script, cwd=root, env=env)
            if not res.ok:
                raise SetupError(
                    f"setup[{i}] {op.description} failed",
                    stage=plan.name,
                    step="setup",
                    returncode=res.returncode,
                    stderr_tail=res.stderr_tail(),
                )
            ctx.emit(EventType.SETUP_FINISH, stage=plan.name, index=i)

        _checkpoint(ctx, plan.name, "fetch")
        src = plan.source
        if plan.checkout_rel is not None:
            ctx.emit(
                EventType.FETCH_START,
                stage=plan.name,
                repository=src.repository,
                revision=src.revision,
            )
            res = ctx.backend.fetch(
                root=root,
                repository=str(src.repository),
                revision=str(src.revision),
                dest=root / plan.checkout_rel,
            )
            if not res.ok:
                raise SourceFetchError(
                    f"cannot fetch {src.repository} at {src.revision}",
                    stage=plan.name,
                    step="fetch",
                    returncode=res.returncode,
                    stderr_tail=res.stderr_tail(),
                )
            ctx.emit(EventType.FETCH_FINISH, stage=plan.name, revision=src.revision)
            build_cwd = root / plan.checkout_rel / plan.build_workdir
        else:
            msg = f"{src.package} is taken from {src.index} at build time; version not pinned"
            warnings.append(msg)
            ctx.emit(EventType.FETCH_DEFERRED, stage=plan.name, package=src.package, index=src.index)
            build_cwd = root / plan.build_workdir

        _checkpoint(ctx, plan.name, "build")
        ctx.emit(EventType.BUILD_START, stage=plan.name, cwd=str(build_cwd))
        res = ctx.backend.run(
            root=root,
            script=plan.build_command,
            cwd=build_cwd,
            env={**env, **plan.build_env},
        )
        if not res.ok:
            raise BuildError(
                "build command failed",
                stage=plan.name,
                step="build",
                returncode=res.returncode,
                stderr_tail=res.stderr_tail(),
            )
        ctx.emit(EventType.BUILD_FINISH, stage=plan.name)

        _checkpoint(ctx, plan.name, "verify")
        matches = verify_contract(root, plan.contract)
        matched = sum(len(v) for v in matches.values())
        ctx.emit(EventType.CONTRACT_VERIFIED, stage=plan.name, files=matched)
        log.debug("stage.contract_ok", patterns=len(matches), files=matched)

        return StageOutput(
            values={
                "root": str(root),
                "cache_key": plan.cache_key,
                "source": src.to_dict(),
            },
            metrics={
                "setup_ops": len(plan.setup),
                "patterns": len(matches),
                "files_matched": matched,
            },
            warnings=warnings,
        )
