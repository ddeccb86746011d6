"""
Artifact contracts: what each build stage promises to leave behind, and the
copy of those files into the final image.

Source patterns are absolute paths inside the stage filesystem; the file
name part may carry glob wildcards so version-suffixed names still match.
Matched files land in the rule's destination directory under their own
name.
"""

from __future__ import annotations

import fnmatch
import posixpath
from dataclasses import dataclass
from itertools import combinations
from pathlib import Path
from typing import Iterable, Sequence

from pgext_image_build.core import (
    ContractOverlapError,
    ContractUnsatisfiedError,
    copy_or_hardlink,
    relpath_posix,
    sha256_file,
)
from pgext_image_build.definition.models import StageSpec

from .parameters import Bindings

_WILDCARDS = "*?["


@dataclass(frozen=True, slots=True)
class ResolvedRule:
    source: str
    dest: str

    @property
    def source_name(self) -> str:
        return posixpath.basename(self.source)

    @property
    def dest_pattern(self) -> str:
        return posixpath.join(self.dest, self.source_name)


@dataclass(frozen=True, slots=True)
class ArtifactContract:
    stage: str
    rules: tuple[ResolvedRule, ...]


@dataclass(frozen=True, slots=True)
class Artifact:
    """
    A concrete file moved from a stage into the image.
    """

    stage: str
    source: str
    dest: str
    bytes: int
    sha256: str

    def to_dict(self) -> dict[str, object]:
        return {
            "stage": self.stage,
            "source": self.source,
            "dest": self.dest,
            "bytes": self.bytes,
            "sha256": self.sha256,
        }


def resolve_contract(stage: StageSpec, bindings: Bindings) -> ArtifactContract:
    rules: list[ResolvedRule] = []
    for i, rule in enumerate(stage.artifacts):
        source = bindings.render(rule.source, where=f"artifacts[{i}].source")
        dest = bindings.render(rule.dest, where=f"artifacts[{i}].dest")
        rules.append(
            ResolvedRule(
                source=posixpath.normpath(source), dest=posixpath.normpath(dest)
            )
        )
    return ArtifactContract(stage=stage.name, rules=tuple(rules))


def _is_literal(name: str) -> bool:
    return not any(c in name for c in _WILDCARDS)


def _literal_prefix(name: str) -> str:
    for i, c in enumerate(name):
        if c in _WILDCARDS:
            return name[:i]
    return name


def _literal_suffix(name: str) -> str:
    last = max(name.rfind("*"), name.rfind("?"), name.rfind("]"))
    return name[last + 1 :]


def names_may_overlap(a: str, b: str) -> bool:
    """
    Conservative test whether two file name globs can match the same name.
    False positives are possible, false negatives are not for `*`/`?` globs.
    """
    if _is_literal(a) and _is_literal(b):
        return a == b
    if _is_literal(a):
        return fnmatch.fnmatchcase(a, b)
    if _is_literal(b):
        return fnmatch.fnmatchcase(b, a)

    pa, pb = _literal_prefix(a), _literal_prefix(b)
    sa, sb = _literal_suffix(a), _literal_suffix(b)
    prefixes_ok = pa.startswith(pb) or pb.startswith(pa)
    suffixes_ok = sa.endswith(sb) or sb.endswith(sa)
    return prefixes_ok and suffixes_ok


def check_overlaps(contracts: Sequence[ArtifactContract]) -> None:
    """
    Refuse a pipeline where two stages may write the same image file.
    Runs before any stage executes.
    """
    for ca, cb in combinations(contracts, 2):
        for ra in ca.rules:
            for rb in cb.rules:
                if ra.dest != rb.dest:
                    continue
                if names_may_overlap(ra.source_name, rb.source_name):
                    raise ContractOverlapError(
                        f"destination {ra.dest_pattern} of stage {ca.stage} "
                        f"overlaps {rb.dest_pattern} of stage {cb.stage}",
                        stage=cb.stage,
                        step="plan",
                    )


def match_rule(stage_root: Path, rule: ResolvedRule) -> list[Path]:
    rel = rule.source.lstrip("/")
    return sorted(p for p in Path(stage_root).glob(rel) if p.is_file())


def verify_contract(
    stage_root: Path, contract: ArtifactContract, *, step: str = "verify"
) -> dict[str, list[Path]]:
    """
    Every rule must match at least one file. Returns the matches per source.
    """
    out: dict[str, list[Path]] = {}
    for rule in contract.rules:
        matches = match_rule(stage_root, rule)
        if not matches:
            raise ContractUnsatisfiedError(
                f"artifact pattern {rule.source} matched no files",
                stage=contract.stage,
                step=step,
                pattern=rule.source,
            )
        out[rule.source] = matches
    return out


class ArtifactExtractor:
    """
    Copies contract-matched files from stage roots into one image root.

    Tracks which stage wrote each destination so a collision between stages
    is caught even when the load-time check could not see it. Files the base
    runtime already carries are replaced.
    """

    def __init__(self, image_root: Path) -> None:
        self.image_root = Path(image_root)
        self._owners: dict[str, Artifact] = {}

    @property
    def artifacts(self) -> list[Artifact]:
        return [self._owners[k] for k in sorted(self._owners)]

    def extract(self, stage_root: Path, contract: ArtifactContract) -> list[Artifact]:
        matches = verify_contract(stage_root, contract, step="extract")
        written: list[Artifact] = []
        for rule in contract.rules:
            for src in matches[rule.source]:
                written.append(self._copy(stage_root, contract.stage, src, rule))
        return written

    def _copy(
        self, stage_root: Path, stage: str, src: Path, rule: ResolvedRule
    ) -> Artifact:
        dest_rel = posixpath.join(rule.dest, src.name).lstrip("/")
        digest = sha256_file(src)
        art = Artifact(
            stage=stage,
            source="/" + relpath_posix(src, stage_root),
            dest="/" + dest_rel,
            bytes=digest.bytes,
            sha256=digest.sha256,
        )

        prev = self._owners.get(dest_rel)
        if prev is not None:
            if prev.sha256 == art.sha256:
                return prev
            raise ContractOverlapError(
                f"{art.dest} already written by stage {prev.stage} with different content",
                stage=stage,
                step="extract",
            )

        dst = self.image_root / dest_rel
        if dst.exists() or dst.is_symlink():
            dst.unlink()
        copy_or_hardlink(src, dst)
        self._owners[dest_rel] = art
        return art


def extract_all(
    image_root: Path, stages: Iterable[tuple[Path, ArtifactContract]]
) -> list[Artifact]:
    """
    Extract every stage's contract into `image_root`. The result is sorted
    by destination, so stage order does not show in it.
    """
    ex = ArtifactExtractor(image_root)
    for stage_root, contract in stages:
        ex.extract(stage_root, contract)
    return ex.artifacts
