"""structlog setup for processes embedding itemcore.

Every stdlib ``logging.getLogger(__name__)`` record is routed through a
structlog ``ProcessorFormatter``, so library modules keep plain stdlib
loggers.  Records carry the embedding service's name and the active OTel
trace/span ids.

Console output is ``text`` (coloured, for development) or ``json`` (one
object per line).  With a ``log_root`` the same records are also appended as
JSON lines to ``<log_root>/itemcore/<service>.log``.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from opentelemetry import trace

if TYPE_CHECKING:
    from itemcore.config import CoreConfig

_service_context: ContextVar[str | None] = ContextVar("itemcore_service", default=None)

# asyncpg and alembic are chatty at INFO
_NOISE_LOGGERS = (
    "asyncpg",
    "alembic.runtime.migration",
)

_LOG_DIR = "itemcore"
_ZERO_TRACE = "0" * 32
_ZERO_SPAN = "0" * 16


def set_service_context(name: str) -> None:
    _service_context.set(name)


def get_service_context() -> str | None:
    return _service_context.get()


def add_service_context(logger, method_name: str, event_dict: dict) -> dict:  # noqa: ARG001
    """structlog processor: stamp the current service name."""
    event_dict["service"] = _service_context.get()
    return event_dict


def add_otel_context(logger, method_name: str, event_dict: dict) -> dict:  # noqa: ARG001
    """structlog processor: stamp ``trace_id``/``span_id``, zeroed outside a span."""
    ctx = trace.get_current_span().get_span_context()
    has_span = bool(ctx and ctx.trace_id)
    event_dict["trace_id"] = format(ctx.trace_id, "032x") if has_span else _ZERO_TRACE
    event_dict["span_id"] = format(ctx.span_id, "016x") if has_span else _ZERO_SPAN
    return event_dict


def _pre_chain(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_service_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(renderer, time_fmt: str) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=_pre_chain(time_fmt),
    )


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | str | None = None,
    service_name: str | None = None,
) -> None:
    """Install structured handlers on the root logger.

    Calling it again replaces the previous handlers rather than adding to
    them.  *service_name* is bound to the current context and names the log
    file; it defaults to ``itemcore``.
    """
    if service_name:
        set_service_context(service_name)

    time_fmt = "iso" if fmt == "json" else "%H:%M:%S"
    renderer = (
        structlog.processors.JSONRenderer() if fmt == "json" else structlog.dev.ConsoleRenderer()
    )
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, time_fmt))

    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers = [console]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        log_dir = Path(log_root) / _LOG_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / f"{service_name or 'itemcore'}.log")
        file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), "iso"))
        file_handler.setLevel(logging.DEBUG)
        root.addHandler(file_handler)

    # direct structlog.get_logger() callers share the console pre-chain
    structlog.configure(
        processors=[*_pre_chain(time_fmt), structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def configure_from_config(config: CoreConfig) -> None:
    """Apply the ``[itemcore.logging]`` section of a loaded config."""
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
        service_name=config.service_name,
    )
