from __future__ import annotations

import json
import os
import platform
import socket
import threading
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pgext_image_build.core import utc_now_iso


class EventType(str, Enum):
    RUN_ENV = "run.env"
    RUN_START = "run.start"
    RUN_FINISH = "run.finish"

    STAGE_START = "stage.start"
    STAGE_WARN = "stage.warn"
    STAGE_SUCCESS = "stage.success"
    STAGE_FAILED = "stage.failed"
    STAGE_CANCELLED = "stage.cancelled"

    SETUP_START = "setup.start"
    SETUP_FINISH = "setup.finish"
    FETCH_START = "fetch.start"
    FETCH_FINISH = "fetch.finish"
    FETCH_DEFERRED = "fetch.deferred"
    BUILD_START = "build.start"
    BUILD_FINISH = "build.finish"
    CONTRACT_VERIFIED = "contract.verified"

    ARTIFACT_EXTRACTED = "artifact.extracted"
    IMAGE_FINALIZED = "image.finalized"
    IMAGE_PUBLISHED = "image.published"


@dataclass(frozen=True, slots=True)
class Event:
    type: str
    ts_utc: str
    run_id: str
    stage: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)


class EventSink:
    """
    Append-only events.jsonl for one run. Stage worker threads share it.
    """

    def __init__(self, path: Path, *, run_id: str) -> None:
        self.path = Path(path)
        self.run_id = run_id
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

        self.emit(
            make_event(
                event_type=EventType.RUN_ENV,
                run_id=run_id,
                hostname=socket.gethostname(),
                pid=os.getpid(),
                cwd=str(Path.cwd()),
                python=platform.python_version(),
            )
        )

    def emit(self, event: Event) -> None:
        line = json.dumps(asdict(event), ensure_ascii=False, default=str)
        with self._lock, self.path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    def read(self) -> list[Event]:
        with self._lock:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        return [Event(**json.loads(x)) for x in lines if x.strip()]


def make_event(
    *,
    event_type: EventType | str,
    run_id: str,
    stage: Optional[str] = None,
    **data: Any,
) -> Event:
    return Event(
        type=EventType(event_type).value,
        ts_utc=utc_now_iso(),
        run_id=run_id,
        stage=stage,
        data=dict(data),
    )
