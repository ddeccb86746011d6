from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pgext_image_build.core import (
    atomic_dir_commit,
    atomic_write_json,
    make_tmp_dir_for,
    remove_tree,
    utc_now_iso,
    write_sha256_sum_txt,
)
from pgext_image_build.definition.models import ASSEMBLER_NAME

from .context import RunContext
from .contracts import Artifact, ArtifactExtractor
from .events import EventType
from .executor import stage_root
from .metadata import finalize_metadata
from .plan import PipelinePlan
from .stage import StageOutput

IMAGE_ROOTFS = "rootfs"
IMAGE_CONFIG = "image.json"
IMAGE_MANIFEST = "manifest.json"
IMAGE_SHA256SUMS = "sha256sums.txt"


@dataclass(frozen=True, slots=True)
class FinalImage:
    path: Path
    name: str
    config: dict[str, Any]
    artifacts: tuple[Artifact, ...]

    @property
    def rootfs(self) -> Path:
        return self.path / IMAGE_ROOTFS


def _build_manifest(
    *, ctx: RunContext, plan: PipelinePlan, config: dict[str, Any], artifacts: list[Artifact]
) -> dict[str, Any]:
    return {
        "manifest_version": 1,
        "pipeline": plan.name,
        "image_name": plan.assembly.image_name,
        "run_id": ctx.run_id,
        "created_at_utc": utc_now_iso(),
        "parameters": plan.parameters.to_dict(),
        "image": config,
        "stages": [
            {
                "name": s.name,
                "base": s.base,
                "cache_key": s.cache_key,
                "source": s.source.to_dict(),
            }
            for s in plan.stages
        ],
        "artifacts": [a.to_dict() for a in artifacts],
        "warnings": list(plan.warnings),
    }


@dataclass(slots=True)
class AssembleStage:
    """
    Final stage: base runtime + contract-matched artifacts + metadata.

    Everything is staged in a temp dir beside the output and swapped in
    only after every contract is satisfied.
    """

    plan: PipelinePlan
    overwrite: bool = True

    @property
    def stage_id(self) -> str:
        return ASSEMBLER_NAME

    def run(self, ctx: RunContext) -> StageOutput:
        image = self.assemble(ctx)
        return StageOutput(
            values={
                "image_dir": str(image.path),
                "image_name": image.name,
                "user": image.config["config"]["User"],
            },
            metrics={
                "artifacts": len(image.artifacts),
                "bytes": sum(a.bytes for a in image.artifacts),
            },
            artifacts=[a.to_dict() for a in image.artifacts],
        )

    def assemble(self, ctx: RunContext) -> FinalImage:
        asm = self.plan.assembly
        final_dir = ctx.layout.image_dir(asm.image_name)
        tmp_dir = make_tmp_dir_for(final_dir)
        try:
            rootfs = tmp_dir / IMAGE_ROOTFS
            ctx.backend.provision(stage=ASSEMBLER_NAME, base=asm.base, root=rootfs)

            extractor = ArtifactExtractor(rootfs)
            for sp in self.plan.stages:
                written = extractor.extract(stage_root(ctx, sp), sp.contract)
                for a in written:
                    ctx.emit(
                        EventType.ARTIFACT_EXTRACTED,
                        stage=ASSEMBLER_NAME,
                        owner=a.stage,
                        dest=a.dest,
                        sha256=a.sha256,
                    )
            artifacts = extractor.artifacts

            config = finalize_metadata(base=asm.base, user=asm.user, labels=asm.labels)
            config["artifacts"] = [a.dest for a in artifacts]
            atomic_write_json(tmp_dir / IMAGE_CONFIG, config)
            ctx.emit(EventType.IMAGE_FINALIZED, stage=ASSEMBLER_NAME, user=config["config"]["User"])

            manifest = _build_manifest(
                ctx=ctx, plan=self.plan, config=config, artifacts=artifacts
            )
            atomic_write_json(tmp_dir / IMAGE_MANIFEST, manifest)
            write_sha256_sum_txt(
                tmp_dir / IMAGE_SHA256SUMS,
                {f"{IMAGE_ROOTFS}{a.dest}": a.sha256 for a in artifacts},
            )

            atomic_dir_commit(tmp_dir=tmp_dir, final_dir=final_dir, overwrite=self.overwrite)
        except BaseException:
            remove_tree(tmp_dir)
            raise

        ctx.emit(EventType.IMAGE_PUBLISHED, stage=ASSEMBLER_NAME, path=str(final_dir))
        return FinalImage(
            path=final_dir,
            name=asm.image_name,
            config=config,
            artifacts=tuple(artifacts),
        )
