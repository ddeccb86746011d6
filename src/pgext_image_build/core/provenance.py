from __future__ import annotations

import os
import platform
import uuid
from dataclasses import asdict, dataclass, field
from importlib.metadata import PackageNotFoundError, version

DIST_NAME = "pgext-image-build"


def new_run_id() -> str:
    return uuid.uuid4().hex


def installed_version() -> str:
    try:
        return version(DIST_NAME)
    except PackageNotFoundError:
        return "0+unknown"


@dataclass(frozen=True, slots=True)
class RunProvenance:
    """
    Who built an image, where, and with which orchestrator version.
    """

    run_id: str
    started_at_utc: str
    tool_version: str = field(default_factory=installed_version)
    hostname: str = field(default_factory=platform.node)
    pid: int = field(default_factory=os.getpid)
    python: str = field(default_factory=platform.python_version)

    def to_dict(self) -> dict[str, object]:
        return asdict(self)
