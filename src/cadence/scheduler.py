"""Cron scheduler: the dispatch loop and its public facade.

The dispatch loop is one asyncio task. Each cycle it finds the earliest
``next_run`` in the registry, sleeps until then (or until a registration,
removal or stop wakes it), and launches every due entry as its own task so a
slow handler never delays its siblings or the next wait.

Example:
    scheduler = CronScheduler(parser=Dialect.SECONDS)
    scheduler.add_handler(HandlerOptions(expression="*/5 * * * * *"), poll)

    await scheduler.start()
    ...
    await scheduler.stop()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections import Counter
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Any

from cadence.config import SchedulerConfig
from cadence.errors import ConfigError, InvocationError, ParseError
from cadence.handlers import (
    HandlerOptions,
    Message,
    RunContext,
    TickMessage,
    adapt_handler,
)
from cadence.parser import Dialect, parse, utcnow
from cadence.registry import Entry, EntryID, EntryRegistry

logger = logging.getLogger(__name__)

DEFAULT_STOP_GRACE_SECONDS = 5.0

# Pause after an unexpected failure in the loop's own bookkeeping
LOOP_ERROR_BACKOFF_SECONDS = 1.0

ErrorHook = Callable[[InvocationError], Any]
Clock = Callable[[], datetime]


class SchedulerState(Enum):
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"


class CronScheduler:
    """Runs registered handlers on cron schedules until stopped.

    Args:
        parser: Dialect for every expression registered on this instance.
        timezone: IANA zone in which field expressions are evaluated.
        stop_grace_seconds: How long ``stop()`` waits for in-flight
            invocations before cancelling the ones still pending.
        on_error: Called with an InvocationError whenever a handler fails.
            May be a coroutine function.
        clock: Source of the current time; aware UTC datetimes.
    """

    def __init__(
        self,
        *,
        parser: Dialect | str = Dialect.STANDARD,
        timezone: str = "UTC",
        stop_grace_seconds: float = DEFAULT_STOP_GRACE_SECONDS,
        on_error: ErrorHook | None = None,
        clock: Clock | None = None,
    ) -> None:
        try:
            self._dialect = Dialect(parser)
        except ValueError as e:
            raise ConfigError(f"unknown parser dialect {parser!r}") from e
        # Validate once so a bad zone fails here, not on the first add_handler
        try:
            parse("@hourly", self._dialect, timezone)
        except ParseError as e:
            raise ConfigError(f"invalid scheduler timezone {timezone!r}") from e
        self._timezone = timezone
        self._stop_grace = max(0.0, float(stop_grace_seconds))
        self._on_error = on_error
        self._clock = clock or utcnow

        self._registry = EntryRegistry()
        self._state = SchedulerState.CREATED
        self._task: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wake: asyncio.Event | None = None
        self._cancel = threading.Event()
        self._lifecycle = asyncio.Lock()
        self._inflight: set[asyncio.Task[None]] = set()
        self._running_by_entry: Counter[EntryID] = Counter()

    @classmethod
    def from_config(cls, config: SchedulerConfig, **kwargs: Any) -> CronScheduler:
        return cls(
            parser=config.dialect,
            timezone=config.timezone,
            stop_grace_seconds=config.stop_grace_seconds,
            **kwargs,
        )

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is SchedulerState.RUNNING

    @property
    def dialect(self) -> Dialect:
        return self._dialect

    @property
    def timezone(self) -> str:
        return self._timezone

    def add_handler(self, options: HandlerOptions, handler: Any) -> EntryID:
        """Register ``handler`` to run on ``options.expression``.

        The handler shape is checked before the expression is parsed; on any
        error nothing is registered.

        Raises:
            InvalidHandlerError: If the handler has no supported shape.
            ParseError: If the expression is empty or invalid for the dialect.
        """
        invoker = adapt_handler(handler)
        schedule = parse(options.expression, self._dialect, self._timezone)
        entry_id = self._registry.insert(schedule, invoker, options, now=self._clock())

        entry = self._registry.get(entry_id)
        logger.info(
            "cron_entry_added",
            extra={
                "cron.entry_id": entry_id,
                "cron.entry_name": options.name or invoker.name,
                "cron.expression": options.expression,
                "cron.handler_kind": invoker.kind.value,
                "cron.next_run": entry.next_run.isoformat() if entry else None,
            },
        )
        self._notify()
        return entry_id

    def remove_handler(self, entry_id: EntryID) -> bool:
        """Unregister an entry. Runs already launched are left to finish."""
        removed = self._registry.remove(entry_id)
        if removed:
            logger.info("cron_entry_removed", extra={"cron.entry_id": entry_id})
            self._notify()
        return removed

    def entries(self) -> list[Entry]:
        """Registered entries, soonest first."""
        return self._registry.snapshot()

    def entry(self, entry_id: EntryID) -> Entry | None:
        return self._registry.get(entry_id)

    def status(self) -> dict[str, Any]:
        next_wake = self._registry.next_wake()
        return {
            "state": self._state.value,
            "dialect": self._dialect.value,
            "timezone": self._timezone,
            "entries": len(self._registry),
            "next_wake": next_wake.isoformat() if next_wake else None,
            "in_flight": len(self._inflight),
        }

    async def start(self) -> None:
        """Start the dispatch loop. No-op while already running.

        Pending fire times are recomputed from now, so ticks that passed
        while the scheduler was not running are not replayed. A start issued
        while ``stop()`` is winding down waits for it to finish first.
        """
        async with self._lifecycle:
            if self._state is SchedulerState.RUNNING:
                logger.debug("cron_scheduler_already_running")
                return

            self._loop = asyncio.get_running_loop()
            self._wake = asyncio.Event()
            self._cancel = threading.Event()
            self._registry.rebase(self._clock())
            self._state = SchedulerState.RUNNING
            self._task = asyncio.create_task(
                self._run(self._wake), name="cadence-dispatch"
            )
        logger.info(
            "cron_scheduler_started",
            extra={
                "cron.dialect": self._dialect.value,
                "cron.timezone": self._timezone,
                "cron.entries": len(self._registry),
            },
        )

    async def stop(self) -> None:
        """Stop the dispatch loop and wind down in-flight invocations.

        Waits for the loop to exit, cancels the shared RunContext signal,
        then waits up to ``stop_grace_seconds`` for in-flight invocations.
        Invocations still pending after that are cancelled; synchronous
        handlers already running on their own thread finish in the background.
        """
        # A handler stopping the scheduler during another stop returns at once
        if self._state is not SchedulerState.RUNNING:
            return

        async with self._lifecycle:
            if self._state is not SchedulerState.RUNNING:
                return

            self._state = SchedulerState.STOPPED
            if self._wake is not None:
                self._wake.set()

            task, self._task = self._task, None
            if task is not None:
                await task

            self._cancel.set()

            current = asyncio.current_task()
            pending = {t for t in self._inflight if t is not current}
            if pending:
                _, pending = await asyncio.wait(pending, timeout=self._stop_grace)
            if pending:
                logger.warning(
                    "cron_stop_grace_expired",
                    extra={
                        "cron.in_flight": len(pending),
                        "cron.grace_seconds": self._stop_grace,
                    },
                )
                for t in pending:
                    t.cancel()

        logger.info("cron_scheduler_stopped", extra={"cron.entries": len(self._registry)})

    async def __aenter__(self) -> CronScheduler:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    def _notify(self) -> None:
        """Wake the dispatch loop so it recomputes its deadline."""
        loop, wake = self._loop, self._wake
        if self._state is not SchedulerState.RUNNING or loop is None or wake is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            wake.set()
        elif not loop.is_closed():
            loop.call_soon_threadsafe(wake.set)

    def _seconds_until_next_wake(self) -> float | None:
        next_wake = self._registry.next_wake()
        if next_wake is None:
            return None
        return (next_wake - self._clock()).total_seconds()

    async def _run(self, wake: asyncio.Event) -> None:
        while self._state is SchedulerState.RUNNING:
            try:
                # Clear before reading the registry so a concurrent add is
                # never lost between the read and the wait
                wake.clear()
                timeout = self._seconds_until_next_wake()
                if timeout is None or timeout > 0:
                    try:
                        await asyncio.wait_for(wake.wait(), timeout)
                    except TimeoutError:
                        pass
                else:
                    await asyncio.sleep(0)

                if self._state is not SchedulerState.RUNNING:
                    break
                self._fire_due()
            except Exception:
                logger.exception("cron_dispatch_error")
                # Back off, but let stop() cut the pause short
                wake.clear()
                try:
                    await asyncio.wait_for(wake.wait(), LOOP_ERROR_BACKOFF_SECONDS)
                except TimeoutError:
                    pass

        logger.debug("cron_dispatch_loop_exited")

    def _fire_due(self) -> None:
        now = self._clock()
        for entry in self._registry.snapshot():
            if not entry.is_due(now):
                break  # snapshot is ordered by next_run

            scheduled = entry.next_run
            following = entry.schedule.next(scheduled)

            if entry.options.skip_if_running and self._running_by_entry[entry.id]:
                logger.warning(
                    "cron_entry_skipped",
                    extra={
                        "cron.entry_id": entry.id,
                        "cron.entry_name": entry.name,
                        "cron.scheduled_at": scheduled.isoformat(),
                    },
                )
                self._registry.update_next_run(entry.id, following)
                continue

            self._launch(entry, scheduled)
            self._registry.update_next_run(entry.id, following, prev_run=scheduled)

    def _launch(self, entry: Entry, scheduled: datetime) -> None:
        ctx = RunContext(entry.id, scheduled, self._cancel)
        message: Message = entry.options.message or TickMessage(entry.id, scheduled)

        task = asyncio.create_task(
            self._invoke(entry, ctx, message), name=f"cadence-entry-{entry.id}"
        )
        self._inflight.add(task)
        self._running_by_entry[entry.id] += 1
        task.add_done_callback(partial(self._finished, entry.id))

        logger.debug(
            "cron_entry_fired",
            extra={
                "cron.entry_id": entry.id,
                "cron.entry_name": entry.name,
                "cron.scheduled_at": scheduled.isoformat(),
            },
        )

    def _finished(self, entry_id: EntryID, task: asyncio.Task[None]) -> None:
        self._inflight.discard(task)
        self._running_by_entry[entry_id] -= 1
        if self._running_by_entry[entry_id] <= 0:
            del self._running_by_entry[entry_id]

    async def _invoke(self, entry: Entry, ctx: RunContext, message: Message) -> None:
        try:
            await entry.invoker.fire(ctx, message)
        except Exception as e:
            await self._report(entry, InvocationError(entry.id, ctx.scheduled_at, e))

    async def _report(self, entry: Entry, error: InvocationError) -> None:
        logger.error(
            "cron_entry_failed",
            exc_info=error.cause,
            extra={
                "cron.entry_id": entry.id,
                "cron.entry_name": entry.name,
                "cron.scheduled_at": error.scheduled_at.isoformat(),
                "error.message": str(error.cause),
            },
        )
        if self._on_error is None:
            return
        try:
            result = self._on_error(error)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(
                "cron_error_hook_failed", extra={"cron.entry_id": entry.id}
            )
