"""Structured logging for courier.

Every module logs through ``logging.getLogger(__name__)``; ``configure_logging``
routes those records through a structlog ``ProcessorFormatter`` so they come
out as coloured console lines (``text``) or JSON lines (``json``).

Each record carries the service name, the active OTel trace and span ids and
any ``structlog.contextvars`` bindings.  The orchestrator binds
``account_id``, ``provider``, ``resource_id`` and ``run_id`` for the length of
a run.  Token material is scrubbed by :class:`CredentialRedactionFilter` on
every handler.

With ``log_root`` set, JSON copies are written to
``{log_root}/courier/{service}.log`` (application) and
``{log_root}/http/{service}.log`` (httpx and httpcore).
"""

from __future__ import annotations

import logging
import re
import sys
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace


_service_context: ContextVar[str | None] = ContextVar("courier_service", default=None)


def set_service_context(name: str) -> None:
    """Tag records from the current context with *name*."""
    _service_context.set(name)


def get_service_context() -> str | None:
    return _service_context.get()


def add_service_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    event_dict["service"] = _service_context.get()
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Add ``trace_id`` and ``span_id`` (zeroed outside a span)."""
    span = trace.get_current_span()
    ctx = span.get_span_context()
    if ctx and ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = "0" * 32
        event_dict["span_id"] = "0" * 16
    return event_dict


_REDACTED = "[REDACTED]"

_REDACTION_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._~+/=-]+"), rf"\1{_REDACTED}"),
    (
        re.compile(
            r"(?i)([\"']?\b(?:access_token|refresh_token|client_secret|id_token|code)[\"']?"
            r"\s*[=:]\s*[\"']?)[^\s\"'&,}]+"
        ),
        rf"\1{_REDACTED}",
    ),
)


def redact(text: str) -> str:
    """Scrub bearer tokens and OAuth secret parameters from *text*."""
    for pattern, replacement in _REDACTION_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class CredentialRedactionFilter(logging.Filter):
    """Rewrite log records so token material never reaches a handler.

    The message is rendered with its args first so that secrets passed as
    ``%s`` arguments are scrubbed too.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            rendered = record.getMessage()
        except (TypeError, ValueError):
            rendered = str(record.msg)
        scrubbed = redact(rendered)
        if scrubbed != rendered:
            record.msg = scrubbed
            record.args = None
        return True


_NOISE_LOGGERS = (
    "httpx",
    "httpcore",
    "asyncio",
)

# Subdirectories of log_root.
_DIR_APP = "courier"
_DIR_HTTP = "http"


def _pre_chain(
    time_fmt: str,
) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_service_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _json_file_handler(path: Path, processors: list) -> logging.FileHandler:
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=processors,
    )
    handler = logging.FileHandler(path)
    handler.setFormatter(formatter)
    handler.addFilter(CredentialRedactionFilter())
    handler.setLevel(logging.DEBUG)
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    service_name: str | None = None,
) -> None:
    """Configure structured logging for the process.

    Parameters
    ----------
    level:
        Root log level (e.g. "DEBUG", "INFO", "WARNING").
    fmt:
        Output format: ``"text"`` for colored console, ``"json"`` for JSON lines.
    log_root:
        Root directory for structured log files.  When set, creates::

            {log_root}/courier/{service_name}.log   application logs
            {log_root}/http/{service_name}.log      transport logs

    service_name:
        Service identity. Set in the ContextVar and used for file naming.
    """
    if service_name:
        set_service_context(service_name)

    if fmt == "json":
        console_processors = _pre_chain(time_fmt="iso")
        renderer = structlog.processors.JSONRenderer()
    else:
        console_processors = _pre_chain(time_fmt="%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=console_processors,
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(CredentialRedactionFilter())

    root = logging.getLogger()
    # Reconfiguring replaces handlers instead of stacking them.
    root.handlers.clear()
    root.addHandler(console_handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        log_root = Path(log_root)
        file_processors = _pre_chain(time_fmt="iso")
        log_name = service_name or "courier"

        for subdir in (_DIR_APP, _DIR_HTTP):
            (log_root / subdir).mkdir(parents=True, exist_ok=True)

        root.addHandler(
            _json_file_handler(log_root / _DIR_APP / f"{log_name}.log", file_processors)
        )

        http_handler = _json_file_handler(log_root / _DIR_HTTP / f"{log_name}.log", file_processors)
        for name in _NOISE_LOGGERS:
            logging.getLogger(name).addHandler(http_handler)

    # Direct structlog.get_logger() callers share the console pre-chain.
    structlog.configure(
        processors=[
            *console_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
