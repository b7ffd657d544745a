#!/usr/bin/env python3
"""
Severity-tagged console output and logging setup.

Console lines look like::

    NPP-WP: The MariaDB database is ready! Proceeding...
    NPP-WP-FATAL: Missing required environment variable(s): NPP_UID

Formatting is a pure function of (tag, severity, message, color); nothing
here keeps process-wide mutable state.
"""

from __future__ import annotations

import enum
import logging
import os
import sys
from dataclasses import dataclass
from typing import TextIO

from .config_constants import DEFAULT_LOG_LEVEL, ENV_NO_COLOR


logger = logging.getLogger(__name__)

# Color codes for output
RESET = '\033[0m'
BOLD = '\033[1m'
GREEN = '\033[0;32m'
YELLOW = '\033[0;33m'
RED = '\033[0;31m'
CYAN = '\033[0;36m'
LIGHT_CYAN = '\033[0;96m'


class Severity(enum.Enum):
    INFO = "info"
    SUCCESS = "success"
    WARN = "warn"
    FATAL = "fatal"


_SEVERITY_COLORS = {
    Severity.INFO: GREEN,
    Severity.SUCCESS: GREEN,
    Severity.WARN: YELLOW,
    Severity.FATAL: RED,
}


def color_enabled(stream: TextIO | None = None, environ: dict | None = None) -> bool:
    """Colors are on for TTYs unless NO_COLOR is set."""
    env = os.environ if environ is None else environ
    if env.get(ENV_NO_COLOR):
        return False
    stream = stream or sys.stdout
    return bool(getattr(stream, "isatty", lambda: False)())


def highlight(value: object, color: bool, code: str = LIGHT_CYAN) -> str:
    """Wrap a value (path, variable name, host:port) in a highlight color."""
    if not color:
        return str(value)
    return f"{code}{value}{RESET}"


def format_line(tag: str, severity: Severity, message: str, color: bool = False) -> str:
    """
    Build one console line.

    FATAL lines get a ``-FATAL`` suffix on the tag so operators can grep for
    them regardless of color.
    """
    label = f"{tag}-FATAL:" if severity is Severity.FATAL else f"{tag}:"
    if not color:
        return f"{label} {message}"
    return f"{_SEVERITY_COLORS[severity]}{BOLD}{label}{RESET} {message}"


@dataclass(frozen=True)
class Console:
    """Prints severity-tagged lines for one service tag."""

    tag: str
    color: bool = False
    stream: TextIO | None = None

    def emit(self, severity: Severity, message: str) -> None:
        print(format_line(self.tag, severity, message, self.color), file=self.stream or sys.stdout, flush=True)

    def info(self, message: str) -> None:
        self.emit(Severity.INFO, message)

    def success(self, message: str) -> None:
        self.emit(Severity.SUCCESS, message)

    def warn(self, message: str) -> None:
        self.emit(Severity.WARN, message)

    def fatal(self, message: str) -> None:
        self.emit(Severity.FATAL, message)

    def hl(self, value: object, code: str = LIGHT_CYAN) -> str:
        return highlight(value, self.color, code)


def configure_logging(log_level: str = DEFAULT_LOG_LEVEL) -> None:
    """
    Configure logging module with specified level.
    """
    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR
    }

    level = level_map.get(str(log_level).upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format='[%(levelname)s] %(message)s',
        stream=sys.stderr,
        force=True
    )

    # mysql.connector is chatty at DEBUG
    logging.getLogger("mysql.connector").setLevel(max(level, logging.WARNING))

    if level == logging.DEBUG:
        logger.debug(f"Logging configured: {str(log_level).upper()} (comprehensive tracing enabled)")
