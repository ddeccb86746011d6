from __future__ import annotations

import logging
import sys
from typing import Any, Protocol, runtime_checkable

import structlog
from rich.logging import RichHandler
from structlog.contextvars import bind_contextvars, clear_contextvars, merge_contextvars

_CONFIGURED = False


@runtime_checkable
class ILogger(Protocol):
    def debug(self, event: str, **kw: Any) -> Any: ...
    def info(self, event: str, **kw: Any) -> Any: ...
    def warning(self, event: str, **kw: Any) -> Any: ...
    def error(self, event: str, **kw: Any) -> Any: ...
    def exception(self, event: str, **kw: Any) -> Any: ...
    def bind(self, **kw: Any) -> "ILogger": ...


def _handler(fmt: str) -> tuple[logging.Handler, Any]:
    """Root handler plus the final structlog renderer for `fmt`."""
    if fmt == "console":
        handler: logging.Handler = RichHandler(
            rich_tracebacks=True,
            markup=False,
            show_time=False,
            show_path=False,
        )
        return handler, structlog.processors.KeyValueRenderer(
            sort_keys=True, key_order=["event", "stage"], drop_missing=True
        )
    return logging.StreamHandler(stream=sys.stdout), structlog.processors.JSONRenderer()


def configure_logging(*, level: str = "INFO", fmt: str = "console") -> None:
    """
    Route structlog through stdlib logging once per process. Later calls
    are no-ops.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    lvl = level.upper()
    handler, renderer = _handler(fmt)
    handler.setFormatter(logging.Formatter("%(message)s"))
    handler.setLevel(lvl)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(lvl)
    root.addHandler(handler)

    structlog.configure(
        processors=[
            merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(lvl),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _CONFIGURED = True


def get_logger(name: str = "pgext_image_build") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind(**values: Any) -> None:
    bind_contextvars(**values)


def clear_bindings() -> None:
    clear_contextvars()
