"""Structured log lines for the voice pipeline.

Log lines are written as ``message | key=value | ...``. Lines emitted while a
session is bound with ``bound_session_id`` carry that session's ID, and every
value is passed through ``redact_secrets`` so model credentials never reach the
logs.
"""

import logging
import re
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

_session_id_var: ContextVar[str | None] = ContextVar("stockcount_session_id", default=None)

SECRET_PATTERNS = [
    (re.compile(r"sk-proj-[A-Za-z0-9_\-]+"), "sk-proj-***REDACTED***"),
    (re.compile(r"sk-[A-Za-z0-9_\-]{8,}"), "sk-***REDACTED***"),
    # Azure style "api-key" headers and query parameters
    (
        re.compile(r"(api[-_]key[\"']?\s*[:=]\s*[\"']?)[^\s,;&\"']+", re.IGNORECASE),
        r"\1***REDACTED***",
    ),
    (
        re.compile(r"(Authorization[:=\s]+(?:Bearer\s+)?)([^\s,;]+)", re.IGNORECASE),
        r"\1***REDACTED***",
    ),
]


def redact_secrets(text: Any) -> str:
    """Mask API keys and credential headers in ``text``.

    ``None`` becomes an empty string and other values are stringified first.
    """
    if text is None:
        return ""
    text = str(text)
    for pattern, replacement in SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


@contextmanager
def bound_session_id(session_id: str) -> Iterator[str]:
    """Tag every structured log line written inside the block with ``session_id``.

    The previous value is restored on exit, so nested and concurrent sessions
    (each asyncio task has its own context) do not leak into each other.
    """
    token = _session_id_var.set(session_id)
    try:
        yield session_id
    finally:
        _session_id_var.reset(token)


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    **fields: Any,
) -> None:
    """Write ``message`` followed by the bound session ID and ``fields``.

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, logging.ERROR, etc.)
        message: Log message
        **fields: Structured fields such as item, tier or error
    """
    if not logger.isEnabledFor(level):
        return

    parts = [message]
    session_id = _session_id_var.get()
    if session_id:
        parts.append(f"session_id={session_id}")
    parts.extend(f"{key}={redact_secrets(value)}" for key, value in fields.items())

    logger.log(level, " | ".join(parts))


def log_info(logger: logging.Logger, message: str, **fields: Any) -> None:
    log_with_context(logger, logging.INFO, message, **fields)


def log_warning(logger: logging.Logger, message: str, **fields: Any) -> None:
    log_with_context(logger, logging.WARNING, message, **fields)


def log_error(logger: logging.Logger, message: str, **fields: Any) -> None:
    log_with_context(logger, logging.ERROR, message, **fields)


def log_debug(logger: logging.Logger, message: str, **fields: Any) -> None:
    log_with_context(logger, logging.DEBUG, message, **fields)
