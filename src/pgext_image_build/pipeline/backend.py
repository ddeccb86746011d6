from __future__ import annotations

import posixpath
import shutil
from pathlib import Path
from typing import Mapping, Protocol, Sequence

import structlog

from pgext_image_build.core import (
    CommandResult,
    relpath_posix,
    remove_tree,
    run_command,
    seed_tree,
)

log = structlog.get_logger(__name__)

# Inside the sandbox the stage root is `/`, so `${STAGE_ROOT}/etc` is `/etc`.
SANDBOX_STAGE_ROOT = ""
SANDBOX_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

# Host files every stage may read; bound read-only, skipped when absent.
HOST_READONLY = ("/etc/resolv.conf",)


class StageBackend(Protocol):
    """
    The only coupling between the orchestrator and the tools that do the
    actual work (shell, package manager, version control, build tool).
    Every call is scoped to one stage root.
    """

    def provision(self, *, stage: str, base: str, root: Path) -> None: ...

    def run(
        self, *, root: Path, script: str, cwd: Path, env: Mapping[str, str]
    ) -> CommandResult: ...

    def fetch(
        self, *, root: Path, repository: str, revision: str, dest: Path
    ) -> CommandResult: ...

    def teardown(self, *, root: Path) -> None: ...


class LocalBackend:
    """
    Runs stages as root filesystems on the local machine.

    A base environment reference listed in `base_roots` names an unpacked
    root filesystem that is copied into the stage root; any other reference
    starts from an empty root. Every script runs under bubblewrap with the
    stage root mounted as `/`, as uid 0 in a private user namespace, so a
    stage sees neither the host nor any sibling stage. Package installs and
    `make install` therefore land in the stage root.

    `host_binds` lists host directories bound read-only at the same path
    (a toolchain shared by every stage, e.g. `/bin` and `/lib` in tests).
    """

    def __init__(
        self,
        *,
        base_roots: Mapping[str, Path] | None = None,
        host_binds: Sequence[str | Path] = (),
        bwrap: str = "bwrap",
    ) -> None:
        self.base_roots = {k: Path(v) for k, v in (base_roots or {}).items()}
        self.host_binds = [str(p) for p in host_binds]
        self.bwrap = shutil.which(bwrap) or bwrap

    def provision(self, *, stage: str, base: str, root: Path) -> None:
        root.mkdir(parents=True, exist_ok=True)
        src = self.base_roots.get(base)
        if src is None:
            log.debug("backend.base_unmapped", stage=stage, base=base)
            return
        if not src.is_dir():
            raise FileNotFoundError(f"base environment {base!r} maps to missing dir {src}")
        seed_tree(src, root)
        log.debug("backend.base_seeded", stage=stage, base=base, src=str(src))

    def sandbox_argv(self, *, root: Path, script: str, cwd: Path) -> list[str]:
        root, cwd = Path(root).resolve(), Path(cwd).resolve()
        inner_cwd = posixpath.normpath(posixpath.join("/", relpath_posix(cwd, root)))
        argv = [
            self.bwrap,
            "--unshare-all",
            "--share-net",
            "--uid", "0",
            "--gid", "0",
            "--die-with-parent",
            "--bind", str(root), "/",
            "--proc", "/proc",
            "--dev", "/dev",
        ]
        for p in (*HOST_READONLY, *self.host_binds):
            argv += ["--ro-bind-try", p, p]
        argv += ["--chdir", inner_cwd, "/bin/sh", "-ec", script]
        return argv

    def sandbox_env(self, env: Mapping[str, str]) -> dict[str, str]:
        return {
            "PATH": SANDBOX_PATH,
            "HOME": "/root",
            "LANG": "C.UTF-8",
            **env,
            "STAGE_ROOT": SANDBOX_STAGE_ROOT,
        }

    def run(
        self, *, root: Path, script: str, cwd: Path, env: Mapping[str, str]
    ) -> CommandResult:
        cwd.mkdir(parents=True, exist_ok=True)
        return run_command(
            self.sandbox_argv(root=root, script=script, cwd=cwd),
            env=self.sandbox_env(env),
            inherit_env=False,
        )

    def fetch(
        self, *, root: Path, repository: str, revision: str, dest: Path
    ) -> CommandResult:
        # git runs on the host but only ever writes below the stage root
        dest.parent.mkdir(parents=True, exist_ok=True)
        return run_command(
            [
                "git",
                "clone",
                "--quiet",
                "--branch",
                revision,
                "--depth",
                "1",
                repository,
                str(dest),
            ],
            cwd=root,
            env={"GIT_TERMINAL_PROMPT": "0"},
        )

    def teardown(self, *, root: Path) -> None:
        remove_tree(root)
