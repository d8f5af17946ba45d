"""Logging configuration for cadence.

The library only creates module loggers; applications (and the CLI) call
configure_logging() once at startup.

Log records use event-style messages (``cron_entry_fired``) with structured
fields passed through ``extra`` under dotted keys (``cron.entry_id``). The
JSONL handler writes those fields out; console formatters show the message.

Levels:
- DEBUG: per-firing detail, loop wake-ups
- INFO: lifecycle, registrations
- WARNING: skipped ticks, stop grace expiry
- ERROR: handler failures
"""

import json
import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TextIO

LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def structured_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Return the dotted ``extra`` keys attached to a record."""
    return {k: v for k, v in record.__dict__.items() if "." in k}


class ComponentFormatter(logging.Formatter):
    """Formatter that extracts component name from logger path.

    - cadence.scheduler -> scheduler
    - cadence.parser -> parser
    """

    def format(self, record: logging.LogRecord) -> str:
        parts = record.name.split(".")
        if len(parts) >= 2 and parts[0] == "cadence":
            record.component = parts[1]
        else:
            record.component = parts[0]
        return super().format(record)


class JSONLHandler(logging.Handler):
    """Handler that appends one JSON object per record to a file.

    Inspectable with standard tools (cat, grep, jq).
    """

    def __init__(self, path: Path):
        super().__init__()
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file: TextIO | None = None

    def emit(self, record: logging.LogRecord) -> None:
        try:
            parts = record.name.split(".")
            component = parts[1] if len(parts) >= 2 and parts[0] == "cadence" else parts[0]

            entry: dict[str, Any] = {
                "ts": datetime.now(UTC).isoformat(),
                "level": record.levelname,
                "component": component,
                "logger": record.name,
                "message": record.getMessage(),
            }

            if record.exc_info:
                formatter = self.formatter or logging.Formatter()
                entry["exception"] = formatter.formatException(record.exc_info)

            if fields := structured_fields(record):
                entry["extra"] = fields

            if self._file is None:
                self._file = self._path.open("a", encoding="utf-8")
            self._file.write(json.dumps(entry, default=str) + "\n")
            self._file.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        if self._file:
            self._file.close()
            self._file = None
        super().close()


def resolve_level(level: str | None) -> str:
    """Resolve a level name, falling back to CADENCE_LOG_LEVEL, then INFO."""
    if level is None:
        level = os.environ.get("CADENCE_LOG_LEVEL", "INFO")
    level = level.upper()
    if level not in LEVELS:
        level = "INFO"
    return level


def configure_logging(
    level: str | None = None,
    use_rich: bool = False,
    log_file: Path | None = None,
) -> None:
    """Configure logging for cadence.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR).
            If None, uses CADENCE_LOG_LEVEL env var or INFO.
        use_rich: Use Rich handler for colorful console output.
        log_file: Also write records as JSON lines to this file.
    """
    log_level = getattr(logging, resolve_level(level))

    handlers: list[logging.Handler] = []

    if use_rich:
        from rich.logging import RichHandler

        console_handler: logging.Handler = RichHandler(
            rich_tracebacks=False,
            show_path=False,
            show_time=True,
            markup=False,
        )
        console_handler.setFormatter(ComponentFormatter("%(component)s | %(message)s"))
    else:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%H:%M:%S",
            )
        )
    handlers.append(console_handler)

    if log_file is not None:
        file_handler = JSONLHandler(log_file)
        file_handler.setLevel(log_level)
        handlers.append(file_handler)

    logging.basicConfig(
        level=log_level,
        handlers=handlers,
        force=True,
    )
