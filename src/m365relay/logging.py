"""Structured logging configuration for the relay."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import MutableMapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

# Record attributes rendered as context by both formatters
CONTEXT_FIELDS = ("pair", "tenant", "operation")

# Placeholder written in place of tokens and passwords
REDACTED = "[show secrets = false]"


def redact(value: str | None, show_secrets: bool = False) -> str:
    """Return a secret for logging, or a placeholder unless secrets are shown.

    Args:
        value: The secret value (token, password, app secret).
        show_secrets: When True the value is returned unchanged.

    Returns:
        The value itself or the redaction placeholder.
    """
    if show_secrets:
        return value or ""
    return REDACTED


class StructuredFormatter(logging.Formatter):
    """Formatter that outputs structured log messages.

    Includes timestamp, level, component, message, and any extra context.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with structured output.

        Args:
            record: The log record to format.

        Returns:
            Formatted log string.
        """
        # Extract component from logger name (e.g., "m365relay.worker" -> "worker")
        component = record.name.split(".")[-1] if "." in record.name else record.name

        timestamp = datetime.fromtimestamp(record.created, tz=UTC).strftime("%Y-%m-%d %H:%M:%S.%f")[
            :-3
        ]

        parts = [
            f"{timestamp}",
            f"[{record.levelname:8}]",
            f"[{component:12}]",
        ]

        context_parts = []
        for key in CONTEXT_FIELDS:
            if hasattr(record, key):
                context_parts.append(f"{key}={getattr(record, key)}")

        if context_parts:
            parts.append(f"[{' '.join(context_parts)}]")

        parts.append(record.getMessage())

        if record.exc_info:
            parts.append(self.formatException(record.exc_info))

        return " ".join(parts)


class JSONFormatter(logging.Formatter):
    """Formatter that outputs JSON log messages for machine parsing."""

    def format(self, record: logging.LogRecord) -> str:
        component = record.name.split(".")[-1] if "." in record.name else record.name

        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "component": component,
            "message": record.getMessage(),
        }

        for key in CONTEXT_FIELDS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data)


class ContextAdapter(logging.LoggerAdapter[logging.Logger]):
    """Logger adapter that adds context to all log messages.

    Usage:
        logger = get_logger(__name__)
        pair_logger = logger.with_context(pair="mtp-incidents", operation="Incidents")
        pair_logger.info("Polling")
    """

    def process(
        self, msg: str, kwargs: MutableMapping[str, Any]
    ) -> tuple[str, MutableMapping[str, Any]]:
        extra = kwargs.get("extra", {})
        if self.extra is not None:
            extra.update(self.extra)
        kwargs["extra"] = extra
        return msg, kwargs


class RelayLogger(logging.Logger):
    """Custom logger with context support."""

    def with_context(self, **context: Any) -> ContextAdapter:
        """Create a logger adapter with additional context.

        Args:
            **context: Context fields to add to all log messages.

        Returns:
            ContextAdapter with the specified context.
        """
        return ContextAdapter(self, context)


logging.setLoggerClass(RelayLogger)


def get_logger(name: str) -> RelayLogger:
    """Get a logger with the custom RelayLogger class.

    Args:
        name: Logger name (typically __name__).

    Returns:
        RelayLogger instance.
    """
    return logging.getLogger(name)  # type: ignore[return-value]


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: Path | None = None,
    replace_handlers: bool = True,
) -> None:
    """Configure logging for the application.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR).
        json_format: If True, output JSON-formatted logs.
        log_file: Optional file that receives a copy of every record.
        replace_handlers: If True, remove existing handlers before adding new ones.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    if replace_handlers:
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

    formatter: logging.Formatter = JSONFormatter() if json_format else StructuredFormatter()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(numeric_level)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    logging.getLogger("m365relay").setLevel(numeric_level)
    # httpx logs every request line at INFO
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))


__all__ = [
    "REDACTED",
    "ContextAdapter",
    "JSONFormatter",
    "RelayLogger",
    "StructuredFormatter",
    "get_logger",
    "redact",
    "setup_logging",
]
