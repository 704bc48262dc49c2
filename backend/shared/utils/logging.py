"""
Structured logging for the meet reconciler.

structlog renders every record, including those from stdlib loggers used by
third-party libraries. A run binds its session id so every line of that run
can be grepped out of a shared log stream.
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, Optional

import structlog
from shared.config import LogFormat, Settings, get_settings

_NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "aiosqlite", "sqlalchemy.engine")


def _pre_chain() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def _console(settings: Settings) -> bool:
    if settings.log_format == LogFormat.AUTO:
        return settings.environment.value == "dev"
    return settings.log_format == LogFormat.CONSOLE


def _handler(stream_or_path: Any, renderer: structlog.types.Processor) -> logging.Handler:
    if isinstance(stream_or_path, Path):
        stream_or_path.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(stream_or_path, encoding="utf-8")
    else:
        handler = logging.StreamHandler(stream_or_path)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=_pre_chain(),
        )
    )
    return handler


def setup_logging(
    service_name: str,
    extra_context: dict[str, Any] | None = None,
    settings: Optional[Settings] = None,
) -> None:
    """
    Configure structlog and the stdlib root logger for one process.

    Args:
        service_name: Component identifier bound to every line (e.g. "reconciler").
        extra_context: Additional static fields bound to every line.
        settings: Defaults to the cached root settings.
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=[*_pre_chain(), structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    stdout_renderer: structlog.types.Processor = (
        structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
        if _console(settings)
        else structlog.processors.JSONRenderer()
    )
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(_handler(sys.stdout, stdout_renderer))
    if settings.log_file is not None:
        # the file is always JSON lines, whatever the console shows
        root.addHandler(_handler(Path(settings.log_file), structlog.processors.JSONRenderer()))
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        service=service_name,
        instance_id=settings.instance_id,
        **(extra_context or {}),
    )


def bind_session(session_id: str, mode: str) -> None:
    """Attach the running session to every subsequent log line."""
    structlog.contextvars.bind_contextvars(session_id=session_id, mode=mode)


def unbind_session() -> None:
    structlog.contextvars.unbind_contextvars("session_id", "mode")


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
