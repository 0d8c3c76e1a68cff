"""Scheduler for paid, recurring agent invocations.

This package contains:
- Hire/Job records and the schedule/backoff arithmetic.
- Stores: in-memory and SQLAlchemy (PostgreSQL or SQLite), both with an atomic
  lease claim so several workers can share one database.
- The runtime that claims due jobs, invokes agent entrypoints on behalf of a
  payer wallet and applies the retry policy.
- A worker loop and a small FastMCP control surface (see ``mcp``).
"""

from agent_hires.scheduler.agent_card import (
    AgentCard,
    AgentEntrypoint,
    PaymentMethod,
    fetch_agent_card_with_entrypoints,
    parse_agent_card,
)
from agent_hires.scheduler.errors import (
    AgentCardError,
    AgentCardFetchError,
    HireCanceledError,
    HireNotFoundError,
    InvalidScheduleError,
    InvalidWalletRefError,
    InvokeError,
    SchedulerConfigurationError,
    SchedulerError,
    UnknownEntrypointError,
    WalletResolutionError,
)
from agent_hires.scheduler.extension import SchedulerExtension, SchedulerExtensionOptions, scheduler
from agent_hires.scheduler.invoke import create_http_invoke
from agent_hires.scheduler.runner import SchedulerWorker, create_scheduler_worker, run_scheduler_forever
from agent_hires.scheduler.runtime import SchedulerRuntime, create_scheduler_runtime
from agent_hires.scheduler.store import MemorySchedulerStore, SchedulerStore, create_memory_store
from agent_hires.scheduler.types import (
    AgentRef,
    CronSchedule,
    Hire,
    IntervalSchedule,
    InvokeArgs,
    Job,
    JobLease,
    JobRun,
    OnceSchedule,
    OperationResult,
    Schedule,
    TickSummary,
    WalletRef,
    schedule_from_dict,
)

__all__ = [
    "AgentCard",
    "AgentCardError",
    "AgentCardFetchError",
    "AgentEntrypoint",
    "AgentRef",
    "CronSchedule",
    "Hire",
    "HireCanceledError",
    "HireNotFoundError",
    "IntervalSchedule",
    "InvalidScheduleError",
    "InvalidWalletRefError",
    "InvokeArgs",
    "InvokeError",
    "Job",
    "JobLease",
    "JobRun",
    "MemorySchedulerStore",
    "OnceSchedule",
    "OperationResult",
    "PaymentMethod",
    "Schedule",
    "SchedulerConfigurationError",
    "SchedulerError",
    "SchedulerExtension",
    "SchedulerExtensionOptions",
    "SchedulerRuntime",
    "SchedulerStore",
    "SchedulerWorker",
    "TickSummary",
    "UnknownEntrypointError",
    "WalletRef",
    "WalletResolutionError",
    "create_http_invoke",
    "create_memory_store",
    "create_scheduler_runtime",
    "create_scheduler_worker",
    "fetch_agent_card_with_entrypoints",
    "parse_agent_card",
    "run_scheduler_forever",
    "schedule_from_dict",
    "scheduler",
]
