"""Logging setup shared by the CLI, the supervisor and the explorer service."""

from __future__ import annotations

import logging
from pathlib import Path

_ROOT = "autoscope"
_CONSOLE_FORMAT = "[autoscope] %(levelname)s %(message)s"
_FILE_FORMAT = "%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s"

# Libraries that log each request or connection at INFO.
_CHATTY = ("httpx", "httpcore", "uvicorn.access")


def get_logger(name: str | None = None) -> logging.Logger:
    """Return ``autoscope.<name>``, or the package logger when no name is given."""
    return logging.getLogger(f"{_ROOT}.{name}" if name else _ROOT)


def configure_logging(*, verbose: bool = False, log_file: Path | None = None) -> logging.Logger:
    """Route autoscope logs to stderr and, optionally, to ``log_file``.

    Calling this again replaces the handlers installed by a previous call.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logger = logging.getLogger(_ROOT)
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
    logger.addHandler(console)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        sink = logging.FileHandler(log_file, encoding="utf-8")
        sink.setFormatter(logging.Formatter(_FILE_FORMAT))
        logger.addHandler(sink)

    for name in _CHATTY:
        logging.getLogger(name).setLevel(logging.DEBUG if verbose else logging.WARNING)
    return logger


__all__ = ["configure_logging", "get_logger"]
