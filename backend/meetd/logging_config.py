"""Structured logging for meetd.

Uses structlog's ProcessorFormatter so every ``logging.getLogger(__name__)``
call site gets the same rendering. ``text`` is the colored console format for
development, ``json`` emits one JSON object per line.
"""

import logging
import sys

import structlog

_NOISE_LOGGERS = (
    "uvicorn.access",
    "httpx",
    "httpcore",
)


def _build_processors(time_fmt: str) -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        structlog.stdlib.ExtraAdder(),
    ]


def configure_logging(level: str = "INFO", fmt: str = "text") -> None:
    if fmt == "json":
        pre_chain = _build_processors(time_fmt="iso")
        renderer = structlog.processors.JSONRenderer()
    else:
        pre_chain = _build_processors(time_fmt="%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=pre_chain,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
