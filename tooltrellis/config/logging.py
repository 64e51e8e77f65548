"""
Logging configuration and setup.

Console output is colorised, an optional file handler records function and
line numbers, and noisy third-party loggers (LiteLLM, httpx, MCP) are capped
at WARNING unless the application itself runs at DEBUG.
"""

import logging
import sys
from pathlib import Path
from typing import Any, MutableMapping

from tooltrellis.config.settings import Settings

_THIRD_PARTY_LOGGERS = ("LiteLLM", "litellm", "httpx", "httpcore", "mcp")


class ColoredFormatter(logging.Formatter):
    """Formatter that adds color to console output."""

    # ANSI color codes
    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        """Format a copy of the record so other handlers see the plain level name."""
        color = self.COLORS.get(record.levelname)
        if color is None:
            return super().format(record)
        colored = logging.makeLogRecord(record.__dict__)
        colored.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(colored)


class TurnLoggerAdapter(logging.LoggerAdapter):
    """Prefixes every message with the id of the turn it belongs to."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        return f"[turn {self.extra['turn_id']}] {msg}", kwargs


def turn_logger(logger: logging.Logger, turn_id: str) -> TurnLoggerAdapter:
    """Wrap a module logger so concurrent turns can be told apart in the output."""
    return TurnLoggerAdapter(logger, {"turn_id": turn_id})


def setup_logging(settings: Settings) -> None:
    """
    Configure logging based on settings.

    Args:
        settings: Application settings containing log configuration
    """
    level = getattr(logging, settings.log_level)

    root_logger = logging.getLogger("tooltrellis")
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(
        ColoredFormatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root_logger.addHandler(console_handler)

    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        file_handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        root_logger.addHandler(file_handler)

    root_logger.propagate = False

    third_party_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in _THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(third_party_level)

    root_logger.info(f"Logging initialized - Level: {settings.log_level}")
    if settings.log_file:
        root_logger.info(f"Logging to file: {settings.log_file}")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    if name == "tooltrellis" or name.startswith("tooltrellis."):
        return logging.getLogger(name)
    return logging.getLogger(f"tooltrellis.{name}")
