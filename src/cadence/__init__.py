"""cadence: in-process recurring-job scheduler.

Public API:
- CronScheduler: Dispatch loop and registration facade
- HandlerOptions: Per-registration options (expression, message, overlap)
- Dialect: Standard (5-field) or Seconds (6-field) cron grammar
- parse / parse_duration: Expression and duration parsing

Handler contract:
- RunContext: Context passed to command/query handlers
- Message / TickMessage: Message protocol and the default message
- CommandHandler / QueryHandler: Protocols for the two object shapes

Errors:
- ParseError, InvalidHandlerError, InvocationError, ConfigError
"""

from cadence.config import SchedulerConfig, load_config
from cadence.errors import (
    CadenceError,
    ConfigError,
    InvalidHandlerError,
    InvocationError,
    ParseError,
)
from cadence.handlers import (
    CommandHandler,
    HandlerOptions,
    Message,
    QueryHandler,
    RunContext,
    TickMessage,
    adapt_handler,
)
from cadence.parser import (
    CronSchedule,
    Dialect,
    EverySchedule,
    Schedule,
    parse,
    parse_duration,
)
from cadence.registry import Entry, EntryID, EntryRegistry
from cadence.scheduler import CronScheduler, SchedulerState

__all__ = [
    "CadenceError",
    "CommandHandler",
    "ConfigError",
    "CronSchedule",
    "CronScheduler",
    "Dialect",
    "Entry",
    "EntryID",
    "EntryRegistry",
    "EverySchedule",
    "HandlerOptions",
    "InvalidHandlerError",
    "InvocationError",
    "Message",
    "ParseError",
    "QueryHandler",
    "RunContext",
    "Schedule",
    "SchedulerConfig",
    "SchedulerState",
    "TickMessage",
    "adapt_handler",
    "load_config",
    "parse",
    "parse_duration",
]
