"""Logging utilities for the agent.

Provides:
- Log level selection from the CLI's -v/-q counters
- Request ID context management for correlating one GetSecrets call
- Structured logging helpers
- Redaction of secret-bearing values before they reach a log line
"""

import logging
import re
import uuid
from contextvars import ContextVar
from typing import Any

# Context variable for request ID (thread-safe and async-safe)
_request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

DEFAULT_VERBOSITY = 3

# Verbosity -> level. 0 disables logging entirely.
VERBOSITY_LEVELS = {
    0: logging.CRITICAL + 10,
    1: logging.ERROR,
    2: logging.WARNING,
    3: logging.INFO,
    4: logging.DEBUG,
}

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"

# Setting keys whose values are secrets (psk, private-key, preshared-key, password, ...)
SECRET_KEY_PATTERN = re.compile(
    r"(psk|private-key|preshared-key|password|secret|wep-key|(^|-)pin$)",
    re.IGNORECASE,
)

REDACTED = "***REDACTED***"


def verbosity_to_level(verbose: int = 0, quiet: int = 0) -> int:
    """Combine -v and -q counts into a logging level.

    Args:
        verbose: Number of times -v was given
        quiet: Number of times -q was given

    Returns:
        A logging level; the default is INFO
    """
    verbosity = max(0, DEFAULT_VERBOSITY + verbose - quiet)
    return VERBOSITY_LEVELS[min(verbosity, max(VERBOSITY_LEVELS))]


def configure_logging(verbose: int = 0, quiet: int = 0) -> int:
    """Configure the root logger for the agent process.

    No timestamps are emitted; the agent runs under systemd which adds its own.

    Returns:
        The level that was configured
    """
    level = verbosity_to_level(verbose, quiet)
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)
    return level


def is_secret_key(key: str) -> bool:
    """Check whether a setting key names a secret value."""
    return bool(SECRET_KEY_PATTERN.search(key))


def redact_settings(value: Any) -> Any:
    """Return a copy of a (nested) settings structure with secret values masked.

    Works on the plain dict/list shapes produced by the D-Bus codec; anything
    stored under a key that looks like a secret is replaced.
    """
    if isinstance(value, dict):
        return {
            key: REDACTED if isinstance(key, str) and is_secret_key(key) else redact_settings(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(redact_settings(item) for item in value)
    return value


def set_request_id(request_id: str | None = None) -> str:
    """Set the request ID for the current context.

    Args:
        request_id: Optional request ID (generates one if not provided)

    Returns:
        The request ID that was set
    """
    if request_id is None:
        request_id = uuid.uuid4().hex[:12]

    _request_id_var.set(request_id)
    return request_id


def get_request_id() -> str | None:
    """Get the request ID for the current context."""
    return _request_id_var.get()


def clear_request_id() -> None:
    """Clear the request ID from the current context."""
    _request_id_var.set(None)


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    **kwargs: Any,
) -> None:
    """Log a message with structured context (request_id, connection fields, etc.).

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, logging.ERROR, etc.)
        message: Log message
        **kwargs: Additional structured fields to include
    """
    if not logger.isEnabledFor(level):
        return

    parts = [message]

    request_id = get_request_id()
    if request_id:
        parts.append(f"request_id={request_id}")

    for key, value in kwargs.items():
        if value is None:
            continue
        safe_value = REDACTED if is_secret_key(key) else redact_settings(value)
        parts.append(f"{key}={safe_value}")

    logger.log(level, " | ".join(parts))


def log_info(logger: logging.Logger, message: str, **kwargs: Any) -> None:
    """Log an info message with structured context."""
    log_with_context(logger, logging.INFO, message, **kwargs)


def log_warning(logger: logging.Logger, message: str, **kwargs: Any) -> None:
    """Log a warning message with structured context."""
    log_with_context(logger, logging.WARNING, message, **kwargs)


def log_error(logger: logging.Logger, message: str, **kwargs: Any) -> None:
    """Log an error message with structured context."""
    log_with_context(logger, logging.ERROR, message, **kwargs)


def log_debug(logger: logging.Logger, message: str, **kwargs: Any) -> None:
    """Log a debug message with structured context."""
    log_with_context(logger, logging.DEBUG, message, **kwargs)
