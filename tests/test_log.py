"""Tests for the logging setup."""

from __future__ import annotations

import logging

from rewrite_bridge.log import TRACE, ColoredFormatter, CustomLogger, setup_logging


class TestLogging:
    def test_trace_level_registered(self) -> None:
        assert logging.getLevelName(TRACE) == "TRACE"
        assert isinstance(logging.getLogger("rewrite_bridge.test_log_probe"), CustomLogger)

    def test_setup_is_idempotent(self) -> None:
        root = "rewrite_bridge_setup_probe"
        logger = setup_logging("info", root=root)
        setup_logging(logging.DEBUG, root=root)
        marked = [h for h in logger.handlers if getattr(h, "_rewrite_bridge", False)]
        assert len(marked) == 1
        assert logger.level == logging.DEBUG
        assert logger.propagate is False

    def test_unknown_level_falls_back_to_info(self) -> None:
        logger = setup_logging("loud", root="rewrite_bridge_level_probe")
        assert logger.level == logging.INFO

    def test_formatter_colours_level(self) -> None:
        record = logging.LogRecord("x", logging.WARNING, __file__, 1, "careful %s", ("now",), None)
        out = ColoredFormatter("%(levelname)s %(message)s").format(record)
        assert ColoredFormatter.WARNING in out
        assert "careful now" in out
