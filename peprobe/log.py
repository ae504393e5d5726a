"""
Diagnostic sink for probing.

The parser only ever writes leveled text messages ("debug", "info", "warn") to a
Consumer. Callers decide where they go: a stdlib logger (the default), a list
(tests, embedding), or a rich console handler (the CLI).
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional, Tuple

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "peprobe"

_LOGGING_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

OnMessage = Callable[[str, str], None]


class Consumer:
    def __init__(self, on_message: Optional[OnMessage] = None) -> None:
        self.on_message = on_message

    def emit(self, level: str, message: str) -> None:
        if self.on_message is not None:
            self.on_message(level, message)

    def debug(self, message: str) -> None:
        self.emit("debug", message)

    def info(self, message: str) -> None:
        self.emit("info", message)

    def warn(self, message: str) -> None:
        self.emit("warn", message)


def logging_consumer(logger: Optional[logging.Logger] = None) -> Consumer:
    log = logger or logging.getLogger(LOGGER_NAME)

    def on_message(level: str, message: str) -> None:
        log.log(_LOGGING_LEVELS.get(level, logging.INFO), message)

    return Consumer(on_message)


def collecting_consumer() -> Tuple[Consumer, List[Tuple[str, str]]]:
    messages: List[Tuple[str, str]] = []
    return Consumer(lambda level, message: messages.append((level, message))), messages


def setup_logging(level: str = "info", *, console: Optional[Console] = None) -> logging.Logger:
    """Attach a RichHandler to the peprobe logger (idempotent)."""
    log = logging.getLogger(LOGGER_NAME)
    log.setLevel(_LOGGING_LEVELS.get(level.lower(), logging.INFO))
    if not any(isinstance(h, RichHandler) for h in log.handlers):
        handler = RichHandler(
            console=console or Console(stderr=True),
            show_time=False,
            show_path=False,
            markup=False,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
        log.addHandler(handler)
    return log
