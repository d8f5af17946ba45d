"""Error types raised by the scheduler.

Registration errors (ParseError, InvalidHandlerError) are raised synchronously
to the caller. InvocationError is never raised to callers: it is built at the
invocation boundary and handed to logging and the ``on_error`` hook.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any


class CadenceError(Exception):
    """Base class for scheduler errors."""


class ParseError(CadenceError, ValueError):
    """Expression is empty or does not match the selected dialect."""

    def __init__(self, message: str, expression: str = "") -> None:
        super().__init__(message)
        self.expression = expression


class InvalidHandlerError(CadenceError, TypeError):
    """Handler is not a command handler, query handler, or niladic callable."""

    def __init__(self, handler: Any) -> None:
        super().__init__(
            f"unsupported handler type {type(handler).__name__!r}: expected an "
            "object with execute(ctx, message), an object with "
            "query(ctx, message), or a zero-argument callable"
        )
        self.handler = handler


class InvocationError(CadenceError):
    """A handler invocation failed."""

    def __init__(
        self,
        entry_id: int,
        scheduled_at: datetime,
        cause: BaseException,
    ) -> None:
        super().__init__(
            f"entry {entry_id} failed at {scheduled_at.isoformat()}: "
            f"{type(cause).__name__}: {cause}"
        )
        self.entry_id = entry_id
        self.scheduled_at = scheduled_at
        self.cause = cause
        self.__cause__ = cause


class ConfigError(CadenceError):
    """Configuration error."""
