from __future__ import annotations

import logging
from typing import Any, TextIO

TRACE: int = 5


class CustomLogger(logging.Logger):
    def trace(self, message: object, *args: Any, stacklevel: int = 1, **kwargs: Any) -> None:
        if self.isEnabledFor(TRACE):
            self._log(TRACE, message, args, **kwargs, stacklevel=stacklevel + 1)


logging.setLoggerClass(CustomLogger)
logging.addLevelName(TRACE, "TRACE")


class ColoredFormatter(logging.Formatter):
    RESET: str = "\033[0m"
    TRACE: str = "\033[0;37m"
    DEBUG: str = "\033[2;34m"
    INFO: str = "\033[34m"
    WARNING: str = "\033[1;33m"
    ERROR: str = "\033[1;31m"
    CRITICAL: str = "\033[1;37;41m"

    def format(self, record: logging.LogRecord) -> str:
        colors: dict[int, str] = {
            TRACE: ColoredFormatter.TRACE,
            logging.DEBUG: ColoredFormatter.RESET,
            logging.INFO: ColoredFormatter.INFO,
            logging.WARNING: ColoredFormatter.WARNING,
            logging.ERROR: ColoredFormatter.ERROR,
            logging.CRITICAL: ColoredFormatter.CRITICAL,
        }
        colour = colors.get(record.levelno, ColoredFormatter.RESET)
        record.asctime = self.formatTime(record, datefmt='%Y-%m-%d %H:%M:%S,%f')[:-3]  # Keep only milliseconds
        record.msg = f"{colour}{record.msg}{ColoredFormatter.RESET}"
        record.levelname = f"{colour}{record.levelname:<8}{ColoredFormatter.RESET}"
        return super().format(record)


def setup_logging(level: int | str = logging.DEBUG, root: str = "rewrite_bridge") -> logging.Logger:
    """Attach the coloured console handler to the package logger tree.

    Idempotent: calling it twice does not duplicate handlers.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger: logging.Logger = logging.getLogger(root)
    logger.setLevel(level)
    logger.propagate = False

    if not any(getattr(h, "_rewrite_bridge", False) for h in logger.handlers):
        ch: logging.StreamHandler[TextIO] = logging.StreamHandler()
        ch.setLevel(level)
        ch.setFormatter(ColoredFormatter('%(asctime)s | %(levelname)-8s | %(name)s | %(funcName)s[%(lineno)d] | %(message)s'))
        ch._rewrite_bridge = True  # type: ignore[attr-defined]
        logger.addHandler(ch)
    else:
        for h in logger.handlers:
            h.setLevel(level)

    # Noisy third parties
    logging.getLogger("mitmproxy").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    return logger
