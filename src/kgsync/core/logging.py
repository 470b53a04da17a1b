"""
Logging setup shared by every sync stream.

Modules log through ``get_logger(__name__)`` using snake_case event names
and keyword fields (``stream``, ``chunk_index``, ``cursor``).  Stream loops
bind their identity once with :class:`LogContext`, so every line emitted
while a cycle runs carries the stream name without threading it through
each call.

Output is JSON when stdout is not a terminal, coloured console lines
otherwise.  JSON lines use dotted ECS-style keys (``@timestamp``,
``log.level``, ``service.name``) so they index cleanly in a log store.

Example:
    >>> configure_logging(level="DEBUG", json_format=False)
    >>> log = get_logger(__name__)
    >>> with LogContext(stream="agents:295"):
    ...     log.info("cycle_started", cursor=100)
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Chatty client libraries; their per-request lines duplicate our transport events.
NOISY_LIBRARIES = ("httpx", "httpcore", "hpack")

_service = "kgsync"


def _stamp_service(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service.name", _service)
    return event_dict


def _ecs_keys(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Rename the timestamp and level keys to their ECS spellings."""
    for plain, dotted in (("timestamp", "@timestamp"), ("level", "log.level")):
        if plain in event_dict:
            event_dict[dotted] = event_dict.pop(plain)
    return event_dict


def _processors(json_format: bool, add_timestamp: bool) -> list[Processor]:
    chain: list[Processor] = []
    if add_timestamp:
        chain.append(structlog.processors.TimeStamper(fmt="iso", utc=True))
    chain += [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _stamp_service,
    ]
    if json_format:
        chain += [_ecs_keys, structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        chain.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return chain


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "kgsync",
    add_timestamp: bool = True,
) -> None:
    """Install the structlog pipeline and route it through stdlib logging.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR).
        json_format: Force JSON (True) or console (False); None picks JSON
            unless stdout is a terminal.
        service: Value of the ``service.name`` field.
        add_timestamp: Prefix each event with a UTC ISO timestamp.
    """
    global _service
    _service = service
    threshold = logging.getLevelName(level.upper())
    if not isinstance(threshold, int):
        raise ValueError(f"Unknown log level: {level!r}")
    if json_format is None:
        json_format = not sys.stdout.isatty()

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=threshold, force=True)
    for name in NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(max(threshold, logging.WARNING))

    structlog.configure(
        processors=_processors(json_format, add_timestamp),
        wrapper_class=structlog.make_filtering_bound_logger(threshold),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> Any:
    return structlog.get_logger(name)


def bind_context(**fields: Any) -> None:
    """Attach fields to every event logged from the current task."""
    structlog.contextvars.bind_contextvars(**fields)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Bind fields for the duration of a ``with`` or ``async with`` block.

    Keys bound here are removed on exit; fields bound elsewhere survive.
    """

    def __init__(self, **fields: Any):
        self.fields = fields

    def __enter__(self) -> LogContext:
        bind_context(**self.fields)
        return self

    def __exit__(self, *exc_info: Any) -> None:
        unbind_context(*self.fields)

    async def __aenter__(self) -> LogContext:
        return self.__enter__()

    async def __aexit__(self, *exc_info: Any) -> None:
        self.__exit__(*exc_info)


__all__ = [
    "NOISY_LIBRARIES",
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    "LogContext",
]
