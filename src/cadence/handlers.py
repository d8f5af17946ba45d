"""Handler shapes and the adapter that normalizes them.

Three shapes are accepted, checked in this order:

- command handler: an object with ``execute(ctx, message)``
- query handler: an object with ``query(ctx, message)``; the result is discarded
- niladic function: any callable invocable with no arguments

Each may be a plain function or a coroutine function. Coroutines run on the
scheduler's event loop; plain functions run on a daemon thread of their own
so a blocking handler never stalls the dispatch loop or other entries.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from cadence.errors import InvalidHandlerError

TICK_MESSAGE_TYPE = "cadence.tick"


@runtime_checkable
class Message(Protocol):
    """Payload handed to command and query handlers.

    The scheduler never inspects messages; ``type`` is a discriminator for
    handlers that dispatch on it.
    """

    @property
    def type(self) -> str: ...


@dataclass(frozen=True)
class TickMessage:
    """Default message when the registration supplies none."""

    entry_id: int
    scheduled_at: datetime
    type: str = TICK_MESSAGE_TYPE


@dataclass(frozen=True)
class HandlerOptions:
    """Per-registration options.

    Attributes:
        expression: Cron expression in the scheduler's dialect.
        message: Message passed to command/query handlers. Defaults to a
            TickMessage built per firing.
        name: Label used in log records; defaults to the handler's name.
        skip_if_running: Skip a tick while the previous run of this entry is
            still in flight. Overlapping runs are allowed by default.
    """

    expression: str
    message: Message | None = None
    name: str | None = None
    skip_if_running: bool = False


class RunContext:
    """Per-invocation context passed to command and query handlers.

    Every context launched during one scheduler run shares that run's cancel
    signal, which ``CronScheduler.stop()`` sets. Handlers are expected to poll
    ``cancelled`` (or block on ``wait``) at convenient points; nothing is
    interrupted forcibly.
    """

    def __init__(
        self,
        entry_id: int,
        scheduled_at: datetime,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.entry_id = entry_id
        self.scheduled_at = scheduled_at
        self._cancel_event = cancel_event or threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` elapses. Returns ``cancelled``.

        Intended for synchronous handlers, which run on their own threads.
        """
        return self._cancel_event.wait(timeout)

    def __repr__(self) -> str:
        return (
            f"RunContext(entry_id={self.entry_id}, "
            f"scheduled_at={self.scheduled_at.isoformat()}, "
            f"cancelled={self.cancelled})"
        )


@runtime_checkable
class CommandHandler(Protocol):
    def execute(self, ctx: RunContext, message: Message) -> Any: ...


@runtime_checkable
class QueryHandler(Protocol):
    def query(self, ctx: RunContext, message: Message) -> Any: ...


class HandlerKind(Enum):
    COMMAND = "command"
    QUERY = "query"
    FUNCTION = "function"


@dataclass(frozen=True)
class Invoker:
    """A handler resolved to one uniform ``fire(ctx, message)`` call.

    Exceptions raised by the handler propagate out of ``fire``; the
    scheduler catches and reports them at the dispatch boundary.
    """

    kind: HandlerKind
    target: Callable[..., Any]
    is_async: bool
    handler: Any

    @property
    def name(self) -> str:
        return getattr(self.target, "__qualname__", None) or repr(self.handler)

    async def fire(self, ctx: RunContext, message: Message) -> None:
        args: tuple[Any, ...] = ()
        if self.kind is not HandlerKind.FUNCTION:
            args = (ctx, message)

        if self.is_async:
            await self.target(*args)
            return

        result = await _run_in_thread(self.target, args, name=f"cadence-{self.name}")
        if inspect.isawaitable(result):
            await result


def _resolve(future: asyncio.Future[Any], result: Any, error: BaseException | None) -> None:
    # The awaiting task may have been cancelled by stop()
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)


async def _run_in_thread(
    target: Callable[..., Any], args: tuple[Any, ...], name: str
) -> Any:
    """Run ``target(*args)`` on its own daemon thread and await the outcome.

    One thread per invocation, so a hung handler never starves other entries
    of workers and never holds up interpreter shutdown.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future[Any] = loop.create_future()

    def worker() -> None:
        result: Any = None
        error: BaseException | None = None
        try:
            result = target(*args)
        except BaseException as e:
            error = e
        try:
            loop.call_soon_threadsafe(_resolve, future, result, error)
        except RuntimeError:
            # Loop closed while the handler was still running
            pass

    threading.Thread(target=worker, name=name, daemon=True).start()
    return await future


def _is_coroutine_callable(fn: Callable[..., Any]) -> bool:
    if inspect.iscoroutinefunction(fn):
        return True
    call = getattr(fn, "__call__", None)
    return call is not None and inspect.iscoroutinefunction(call)


def _accepts_arguments(fn: Callable[..., Any], count: int) -> bool:
    """Whether ``fn`` can be called with exactly ``count`` positional arguments."""
    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        # Some builtins carry no signature metadata
        return True
    try:
        signature.bind(*([None] * count))
    except TypeError:
        return False
    return True


def adapt_handler(handler: Any) -> Invoker:
    """Resolve ``handler`` to an Invoker.

    Raises:
        InvalidHandlerError: If ``handler`` matches none of the supported shapes.
    """
    # A class is never a handler; its unbound execute/query would misfire
    if handler is None or isinstance(handler, type):
        raise InvalidHandlerError(handler)

    execute = getattr(handler, "execute", None)
    if callable(execute):
        if not _accepts_arguments(execute, 2):
            raise InvalidHandlerError(handler)
        return Invoker(
            kind=HandlerKind.COMMAND,
            target=execute,
            is_async=_is_coroutine_callable(execute),
            handler=handler,
        )

    query = getattr(handler, "query", None)
    if callable(query):
        if not _accepts_arguments(query, 2):
            raise InvalidHandlerError(handler)
        return Invoker(
            kind=HandlerKind.QUERY,
            target=query,
            is_async=_is_coroutine_callable(query),
            handler=handler,
        )

    if callable(handler) and _accepts_arguments(handler, 0):
        return Invoker(
            kind=HandlerKind.FUNCTION,
            target=handler,
            is_async=_is_coroutine_callable(handler),
            handler=handler,
        )

    raise InvalidHandlerError(handler)
