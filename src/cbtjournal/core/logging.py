"""Logging setup for the calendar CLI.

Call sites keep using ``logging.getLogger(__name__)``; structlog's
ProcessorFormatter renders the records. The console prints ``text`` (colored,
for humans) or ``json`` (one object per line). With ``log_root`` set, every
record is also appended as JSON to ``{log_root}/{session}.log``.

Each record carries the ``session`` bound through ``structlog.contextvars``
and, inside an OpenTelemetry span, its ``trace_id``/``span_id``. OAuth
credentials (bearer tokens, ``ya29.`` access tokens, refresh tokens, client
secrets) are masked before anything is rendered, exception text included.
"""

from __future__ import annotations

import io
import logging
import re
import sys
from pathlib import Path
from typing import TextIO

import structlog
from opentelemetry import trace

REDACTED = "[REDACTED]"

_SECRET_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;&]+)"),
        rf"\1={REDACTED}",
    ),
    (
        re.compile(
            r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)"""
            r"""(['"]).*?\2"""
        ),
        rf'\1"{REDACTED}"',
    ),
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/\-]{8,}=*"), f"Bearer {REDACTED}"),
    (re.compile(r"\bya29\.[A-Za-z0-9._\-]+"), REDACTED),
)

# Chatty transport libraries; their warnings still reach the root handlers.
_NOISE_LOGGERS = ("httpx", "httpcore", "asyncpg")

DEFAULT_LOG_NAME = "cbtjournal"


def redact_secrets(text: str) -> str:
    """Mask credential-looking values in *text*."""
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


# ---------------------------------------------------------------------------
# Structlog processors
# ---------------------------------------------------------------------------


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Add ``trace_id`` and ``span_id`` when an OTel span is recording."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def redact_event(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Run :func:`redact_secrets` over every string value of the event."""
    for key, value in event_dict.items():
        if isinstance(value, str) and not key.startswith("_"):
            event_dict[key] = redact_secrets(value)
    return event_dict


def _redacted_traceback(sio: TextIO, exc_info: structlog.types.ExcInfo) -> None:
    buffer = io.StringIO()
    structlog.dev.plain_traceback(buffer, exc_info)
    sio.write(redact_secrets(buffer.getvalue()))


def _pre_chain(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
        redact_event,
    ]


def _json_formatter(pre_chain: list) -> structlog.stdlib.ProcessorFormatter:
    # Tracebacks are rendered to text first so they pass through redaction.
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            redact_event,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=pre_chain,
    )


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | str | None = None,
    session_name: str | None = None,
) -> None:
    """Install the console handler (and optional JSON file) on the root logger.

    Parameters
    ----------
    level:
        Root log level name; unknown names fall back to INFO.
    fmt:
        ``"text"`` or ``"json"`` for the console.
    log_root:
        Directory for the JSON log file; no file is written when unset.
    session_name:
        Bound as ``session`` on every record and used as the log file name.
    """
    if session_name:
        structlog.contextvars.bind_contextvars(session=session_name)

    if fmt == "json":
        pre_chain = _pre_chain(time_fmt="iso")
        console_formatter = _json_formatter(pre_chain)
    else:
        pre_chain = _pre_chain(time_fmt="%H:%M:%S")
        console_formatter = structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.dev.ConsoleRenderer(exception_formatter=_redacted_traceback),
            ],
            foreign_pre_chain=pre_chain,
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(console_formatter)

    root = logging.getLogger()
    # Reconfiguring replaces handlers; only the log file is ours to close.
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            handler.close()
    root.handlers.clear()
    root.addHandler(console_handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        log_dir = Path(log_root)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / f"{session_name or DEFAULT_LOG_NAME}.log")
        file_handler.setFormatter(_json_formatter(_pre_chain(time_fmt="iso")))
        root.addHandler(file_handler)

    structlog.configure(
        processors=[
            *pre_chain,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
