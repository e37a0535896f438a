# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Logging configuration with redaction of container environment values.

Values passed into sandboxed containers through ``-e KEY=VALUE`` often
carry tokens. The runtime registers them with ``SecretFilter`` so they
never reach log output.

Usage:
    # In entry points
    from tuprwre.logging import configure_logging
    configure_logging(level=logging.INFO)

    # In library modules
    import logging
    logger = logging.getLogger(__name__)
"""

import logging
import re
from typing import ClassVar


REDACTED = "[REDACTED]"

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class SecretFilter(logging.Filter):
    """Logging filter that redacts registered values from log records.

    Registration is process-wide: every handler carrying a SecretFilter
    redacts every registered value.

    Example:
        SecretFilter.register_secret("ghp_abc123")
        logger.info("env: %s", "TOKEN=ghp_abc123")
        # Output: "env: TOKEN=[REDACTED]"
    """

    _secrets: ClassVar[set[str]] = set()
    _pattern: ClassVar[re.Pattern[str] | None] = None

    def filter(self, record: logging.LogRecord) -> bool:
        """Redact registered values in the message and its arguments.

        Returns:
            Always True (records are modified, never suppressed).
        """
        pattern = self._pattern
        if pattern is not None:
            record.msg = pattern.sub(REDACTED, str(record.msg))
            if isinstance(record.args, tuple):
                record.args = tuple(
                    pattern.sub(REDACTED, arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )
        return True

    @classmethod
    def register_secret(cls, secret: str) -> None:
        """Register a value to redact. Empty strings are ignored."""
        if secret and secret not in cls._secrets:
            cls._secrets.add(secret)
            cls._rebuild_pattern()

    @classmethod
    def clear_secrets(cls) -> None:
        """Clear all registered values. Primarily for testing."""
        cls._secrets.clear()
        cls._pattern = None

    @classmethod
    def _rebuild_pattern(cls) -> None:
        # Longest first so overlapping values are redacted whole.
        ordered = sorted(cls._secrets, key=len, reverse=True)
        cls._pattern = re.compile("|".join(re.escape(s) for s in ordered))


def configure_logging(
    level: int = logging.INFO,
    format_string: str | None = None,
    add_secret_filter: bool = True,
) -> None:
    """Configure the root logger with a single stderr handler.

    Args:
        level: The logging level.
        format_string: Custom format string. If None, uses the default.
        add_secret_filter: Whether to attach a SecretFilter.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(format_string or DEFAULT_FORMAT))

    if add_secret_filter:
        handler.addFilter(SecretFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for existing_handler in root_logger.handlers[:]:
        root_logger.removeHandler(existing_handler)

    root_logger.addHandler(handler)
