#!/usr/bin/env python3
"""
Console line formatting and logging setup tests.
"""

import dataclasses
import io
import logging
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from nppseq.console import (  # noqa: E402
    RED,
    RESET,
    Console,
    Severity,
    color_enabled,
    configure_logging,
    format_line,
    highlight,
)


class TestFormatLine:
    def test_plain_info_line(self):
        assert format_line("NPP-WP", Severity.INFO, "hello") == "NPP-WP: hello"

    def test_fatal_gets_suffix(self):
        assert format_line("NPP-WP", Severity.FATAL, "boom") == "NPP-WP-FATAL: boom"

    def test_color_wraps_label_only(self):
        line = format_line("NPP", Severity.FATAL, "boom", color=True)

        assert line.startswith(RED)
        assert "NPP-FATAL:" in line
        assert line.endswith(f"{RESET} boom")

    def test_highlight_without_color_is_plain(self):
        assert highlight(Path("/var/www"), False) == "/var/www"
        assert highlight("x", True).endswith(RESET)


class TestColorEnabled:
    def test_no_color_wins(self):
        class Tty(io.StringIO):
            def isatty(self):
                return True

        assert color_enabled(Tty(), {"NO_COLOR": "1"}) is False
        assert color_enabled(Tty(), {}) is True

    def test_non_tty_stream(self):
        assert color_enabled(io.StringIO(), {}) is False


class TestConsole:
    def test_each_severity_writes_one_line(self):
        stream = io.StringIO()
        console = Console("NPP-NGINX", stream=stream)

        console.info("a")
        console.success("b")
        console.warn("c")
        console.fatal("d")

        assert stream.getvalue().splitlines() == [
            "NPP-NGINX: a",
            "NPP-NGINX: b",
            "NPP-NGINX: c",
            "NPP-NGINX-FATAL: d",
        ]

    def test_console_is_immutable(self):
        console = Console("NPP")

        with pytest.raises(dataclasses.FrozenInstanceError):
            console.tag = "other"


class TestConfigureLogging:
    def test_level_is_applied(self):
        configure_logging("debug")
        assert logging.getLogger().level == logging.DEBUG

        configure_logging("WARNING")
        assert logging.getLogger().level == logging.WARNING

    def test_unknown_level_falls_back_to_info(self):
        configure_logging("TRACE")
        assert logging.getLogger().level == logging.INFO
