"""Structured logging with console and file output targets."""

import logging
import sys
from pathlib import Path
from typing import Dict, Optional
from datetime import datetime

import structlog
from rich.console import Console
from rich.logging import RichHandler


class SimpleConsoleRenderer:
    """Simple console renderer with minimal formatting."""

    def __call__(self, logger, name, event_dict):
        """Render log event to a simple string."""
        timestamp = datetime.now().strftime("%H:%M:%S")
        level = event_dict.get("level", "info").upper()
        event = event_dict.get("event", "")

        # Format: [HH:MM:SS] LEVEL  message | key=value
        output = f"[{timestamp}] {level:<7} {event}"

        skip_keys = {"event", "level", "timestamp", "logger"}
        extras = {k: v for k, v in event_dict.items() if k not in skip_keys}
        if extras:
            extras_str = " ".join(f"{k}={v}" for k, v in extras.items())
            output += f" | {extras_str}"

        return output


_loggers: Dict[str, "Logger"] = {}

_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class Logger:
    """Structured logger bound to a stdlib logger hierarchy."""

    def __init__(
        self,
        name: str,
        level: str = "INFO",
        log_file: Optional[str] = None,
        rich_console: bool = False,
    ):
        self.name = name
        self.level = level
        self.log_file = log_file
        self.rich_console = rich_console
        self._logger: Optional[structlog.stdlib.BoundLogger] = None

    def setup(self) -> structlog.stdlib.BoundLogger:
        """Setup structured logger with processors."""
        if self.log_file:
            Path(self.log_file).parent.mkdir(parents=True, exist_ok=True)

        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.stdlib.filter_by_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

        level = getattr(logging, self.level.upper())
        stdlib_logger = logging.getLogger(self.name)
        stdlib_logger.setLevel(level)
        stdlib_logger.handlers.clear()

        if self.rich_console:
            console_handler: logging.Handler = RichHandler(
                console=Console(stderr=False),
                show_path=False,
                rich_tracebacks=True,
            )
            console_formatter = structlog.stdlib.ProcessorFormatter(
                processor=structlog.dev.ConsoleRenderer(colors=False),
            )
        else:
            console_handler = logging.StreamHandler(sys.stdout)
            console_formatter = structlog.stdlib.ProcessorFormatter(
                processor=SimpleConsoleRenderer(),
            )
        console_handler.setLevel(level)
        console_handler.setFormatter(console_formatter)
        stdlib_logger.addHandler(console_handler)

        # File handler only records ERROR and above
        if self.log_file:
            file_handler = logging.FileHandler(self.log_file, encoding="utf-8")
            file_handler.setLevel(logging.ERROR)
            file_handler.setFormatter(
                structlog.stdlib.ProcessorFormatter(
                    processor=structlog.processors.JSONRenderer(),
                )
            )
            stdlib_logger.addHandler(file_handler)

        self._logger = structlog.get_logger(self.name)
        return self._logger

    def get(self) -> structlog.stdlib.BoundLogger:
        """Get the logger instance."""
        if self._logger is None:
            self._logger = structlog.get_logger(self.name)
        return self._logger


def setup_logger(
    name: str = "pluginbroker",
    level: str = "INFO",
    log_file: Optional[str] = None,
    rich_console: bool = False,
) -> structlog.stdlib.BoundLogger:
    """Setup and register a logger.

    Module loggers are children of ``name`` in the stdlib hierarchy, so
    configuring the package root once covers every module.
    """
    logger = Logger(name, level, log_file, rich_console)
    _loggers[name] = logger
    return logger.setup()


def get_logger(name: str = "pluginbroker") -> structlog.stdlib.BoundLogger:
    """Get a logger by name."""
    if name not in _loggers:
        _loggers[name] = Logger(name)
    return _loggers[name].get()


def update_log_level(level: str) -> None:
    """Update log level for all configured loggers."""
    level_upper = level.upper()
    if level_upper not in _LEVELS:
        raise ValueError(f"Invalid log level: {level}")

    for logger_instance in _loggers.values():
        logger_instance.level = level_upper
        stdlib_logger = logging.getLogger(logger_instance.name)
        stdlib_logger.setLevel(getattr(logging, level_upper))
        for handler in stdlib_logger.handlers:
            # Keep the file handler at ERROR
            if isinstance(handler, logging.FileHandler):
                continue
            handler.setLevel(getattr(logging, level_upper))
