from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from pgext_image_build.pipeline.backend import LocalBackend

# Read-only host toolchain for sandboxed test stages. /usr/lib stays
# writable so stages can install into /usr/lib/postgresql.
HOST_TOOLCHAIN = ["/bin", "/sbin", "/lib", "/lib32", "/lib64", "/usr/bin"]


@pytest.fixture(scope="session")
def sandbox_binds(tmp_path_factory: pytest.TempPathFactory) -> list[str]:
    if shutil.which("bwrap") is None:
        pytest.skip("bubblewrap is not installed")

    root = tmp_path_factory.mktemp("sandbox-check")
    res = LocalBackend(host_binds=HOST_TOOLCHAIN).run(
        root=root, script="echo ok > /ok && cat /ok", cwd=root, env={}
    )
    if not res.ok or res.stdout.strip() != "ok":
        pytest.skip(f"bubblewrap cannot create a sandbox here: {res.stderr_tail()}")
    assert (Path(root) / "ok").read_text().strip() == "ok"
    return list(HOST_TOOLCHAIN)
