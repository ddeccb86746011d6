from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any

from pgext_image_build.core import ILogger, WorkLayout

from .backend import StageBackend
from .events import EventSink, EventType, make_event


@dataclass(slots=True)
class RunContext:
    """
    Context shared across stages for a single pipeline run.

    Holds nothing a stage can mutate for another stage: the backend is
    stateless per call, the sink serializes writes, and `cancel` only ever
    goes from clear to set.
    """

    run_id: str
    layout: WorkLayout
    backend: StageBackend
    logger: ILogger
    events: EventSink
    cancel: threading.Event = field(default_factory=threading.Event)

    # optional free-form metadata
    meta: dict[str, Any] = field(default_factory=dict)

    def stage_logger(self, stage: str) -> ILogger:
        return self.logger.bind(stage=stage)

    def emit(self, event: EventType, *, stage: str | None = None, **kw: object) -> None:
        # debug only; the sink keeps the full record
        self.logger.debug(event.value, stage=stage, **kw)
        self.events.emit(make_event(event_type=event, run_id=self.run_id, stage=stage, **kw))
