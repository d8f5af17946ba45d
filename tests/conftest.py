"""Shared test fixtures and factories."""

import threading
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from cadence.handlers import Message, RunContext

# =============================================================================
# Clock
# =============================================================================


class FakeClock:
    """Manually advanced clock for driving the dispatch loop deterministically."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def epoch() -> datetime:
    return datetime(2026, 1, 15, 0, 0, 0, tzinfo=UTC)


@pytest.fixture
def clock(epoch: datetime) -> FakeClock:
    return FakeClock(epoch)


# =============================================================================
# Handlers
# =============================================================================


class CountingCommandHandler:
    """Command handler that records every execution."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.execution_count = 0
        self.messages: list[Message] = []
        self.contexts: list[RunContext] = []

    def execute(self, ctx: RunContext, message: Message) -> None:
        with self._lock:
            self.execution_count += 1
            self.messages.append(message)
            self.contexts.append(ctx)


class CountingQueryHandler:
    """Query handler that returns the running count."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.query_count = 0

    def query(self, ctx: RunContext, message: Message) -> Any:
        with self._lock:
            self.query_count += 1
            return self.query_count


class FailingCommandHandler:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error or RuntimeError("boom")
        self.attempts = 0

    def execute(self, ctx: RunContext, message: Message) -> None:
        self.attempts += 1
        raise self.error


class Counter:
    """Thread-safe call counter usable as a niladic function."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.count = 0

    def __call__(self) -> None:
        with self._lock:
            self.count += 1


@pytest.fixture
def command_handler() -> CountingCommandHandler:
    return CountingCommandHandler()


@pytest.fixture
def query_handler() -> CountingQueryHandler:
    return CountingQueryHandler()


@pytest.fixture
def counter() -> Counter:
    return Counter()


# =============================================================================
# CLI
# =============================================================================


@pytest.fixture
def cli_runner():
    """Create a Typer CLI test runner with colors disabled."""
    from typer.testing import CliRunner

    return CliRunner(env={"NO_COLOR": "1"})
