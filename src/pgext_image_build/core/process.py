from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence


@dataclass(frozen=True, slots=True)
class CommandResult:
    command: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def stderr_tail(self, *, lines: int = 20) -> str:
        tail = self.stderr.strip().splitlines()[-lines:]
        return "\n".join(tail)


def run_command(
    command: Sequence[str],
    *,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    inherit_env: bool = True,
) -> CommandResult:
    """Execute a subprocess command and capture its output."""

    process_env = os.environ.copy() if inherit_env else {}
    if env:
        process_env.update(env)

    try:
        result = subprocess.run(
            list(command),
            cwd=str(cwd) if cwd else None,
            env=process_env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            check=False,
        )
    except OSError as e:
        # Missing executable or unusable cwd; report like a shell would.
        return CommandResult(
            command=tuple(command), returncode=127, stdout="", stderr=str(e)
        )

    return CommandResult(
        command=tuple(command),
        returncode=result.returncode,
        stdout=result.stdout,
        stderr=result.stderr,
    )


def run_shell(
    script: str,
    *,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    return run_command(["/bin/sh", "-ec", script], cwd=cwd, env=env)
