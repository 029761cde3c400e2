"""
Structured logging with key=value and JSON output support.

Wraps the standard library ``logging`` module so that every message is an
event name followed by structured fields, in one of two formats:
human-readable key=value pairs (default) or JSON for log aggregators.

Values containing spaces, equals signs, or quotes are escaped and wrapped in
double quotes. Long values (gateway error pages, routing responses) are
truncated to a configurable maximum length.

``StructuredFormatter`` is a stdlib ``logging.Formatter`` that reads the
``structured_kv`` extra field attached by ``Logger``. Installed on the root
handler by the CLI, it also formats plain ``logging.getLogger()`` calls from
the utils layer with the same ``level name message`` prefix.

Examples:
    ```python
    from uptimebrotr.core.logger import Logger

    logger = Logger("monitor")
    logger.info("probe_completed", probe="comment_fetch", latency=1.2)
    # Output: probe_completed probe=comment_fetch latency=1.2

    gateway_logger = logger.bind(target="https://ipfs.io")
    gateway_logger.warning("probe_failed", reason="timed out")
    # Output: probe_failed target=https://ipfs.io reason="timed out"
    ```
"""

from __future__ import annotations

import datetime
import json
import logging
from typing import Any, ClassVar


def truncate(value: Any, max_value_length: int | None) -> Any:
    """Shorten the string form of *value* past *max_value_length* characters."""
    text = str(value)
    if not max_value_length or len(text) <= max_value_length:
        return value
    return text[:max_value_length] + f"...<truncated {len(text) - max_value_length} chars>"


def format_kv_pairs(
    kwargs: dict[str, Any],
    max_value_length: int | None = 1000,
    prefix: str = " ",
) -> str:
    """Format a dictionary as space-separated key=value pairs.

    Values are truncated to ``max_value_length`` characters, and values
    containing whitespace, equals signs, or quotes are escaped and quoted.

    Returns:
        Formatted string, e.g. ``' key1=value1 key2="value with spaces"'``,
        or an empty string if *kwargs* is empty.
    """
    if not kwargs:
        return ""

    parts = []
    for k, v in kwargs.items():
        s = str(truncate(v, max_value_length))
        if not s or " " in s or "=" in s or '"' in s or "'" in s:
            escaped = s.replace("\\", "\\\\").replace('"', '\\"')
            parts.append(f'{k}="{escaped}"')
        else:
            parts.append(f"{k}={s}")

    return prefix + " ".join(parts)


class StructuredFormatter(logging.Formatter):
    """Formats all log records as ``level name message key=value ...``."""

    def format(self, record: logging.LogRecord) -> str:
        base = f"{record.levelname.lower()} {record.name} {record.getMessage()}"
        extra: dict[str, Any] = getattr(record, "structured_kv", {})
        if extra:
            base += format_kv_pairs(extra)
        if record.exc_info:
            base += "\n" + self.formatException(record.exc_info)
        return base


class Logger:
    """Structured logger that appends keyword arguments as extra fields.

    All public methods mirror the standard logging API with an added
    ``**kwargs`` parameter. [bind()][uptimebrotr.core.logger.Logger.bind]
    returns a logger that prepends fixed context fields to every message,
    which probes use to tag lines with the target under test.
    """

    _DEFAULT_MAX_VALUE_LENGTH: ClassVar[int] = 1000

    def __init__(
        self,
        name: str,
        *,
        json_output: bool = False,
        max_value_length: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Initialize a structured logger.

        Args:
            name: Logger name, typically the service or probe name.
            json_output: If True, emit JSON objects instead of key=value pairs.
            max_value_length: Maximum character length for individual values
                before truncation. Defaults to 1000.
            context: Fields prepended to every message.
        """
        if max_value_length is None:
            max_value_length = self._DEFAULT_MAX_VALUE_LENGTH
        self._logger = logging.getLogger(name)
        self._json_output = json_output
        self._max_value_length = max_value_length
        self._context: dict[str, Any] = dict(context or {})

    @property
    def name(self) -> str:
        """Name of the underlying stdlib logger."""
        return self._logger.name

    def bind(self, **context: Any) -> Logger:
        """Return a logger with *context* fields added to every message."""
        return Logger(
            self._logger.name,
            json_output=self._json_output,
            max_value_length=self._max_value_length,
            context={**self._context, **context},
        )

    def _format_json(self, msg: str, level: str, kwargs: dict[str, Any]) -> str:
        record = {
            "timestamp": datetime.datetime.now(datetime.UTC).isoformat(),
            "level": level,
            "service": self._logger.name,
            "message": msg,
            **kwargs,
        }
        return json.dumps(record, default=str)

    def _make_extra(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        if not kwargs:
            return {}
        return {
            "structured_kv": {k: truncate(v, self._max_value_length) for k, v in kwargs.items()}
        }

    def _log(self, level: int, name: str, msg: str, kwargs: dict[str, Any], **options: Any) -> None:
        fields = {**self._context, **kwargs}
        if self._json_output:
            self._logger.log(level, self._format_json(msg, name, fields), **options)
        else:
            self._logger.log(level, msg, extra=self._make_extra(fields), **options)

    def debug(self, msg: str, **kwargs: Any) -> None:
        """Log a DEBUG level message with optional key=value pairs."""
        self._log(logging.DEBUG, "debug", msg, kwargs)

    def info(self, msg: str, **kwargs: Any) -> None:
        """Log an INFO level message with optional key=value pairs."""
        self._log(logging.INFO, "info", msg, kwargs)

    def warning(self, msg: str, **kwargs: Any) -> None:
        """Log a WARNING level message with optional key=value pairs."""
        self._log(logging.WARNING, "warning", msg, kwargs)

    def error(self, msg: str, **kwargs: Any) -> None:
        """Log an ERROR level message with optional key=value pairs."""
        self._log(logging.ERROR, "error", msg, kwargs)

    def critical(self, msg: str, **kwargs: Any) -> None:
        """Log a CRITICAL level message with optional key=value pairs."""
        self._log(logging.CRITICAL, "critical", msg, kwargs)

    def exception(self, msg: str, **kwargs: Any) -> None:
        """Log an ERROR level message with the current exception traceback."""
        self._log(logging.ERROR, "error", msg, kwargs, exc_info=True)
