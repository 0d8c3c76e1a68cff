"""Attach a scheduler to a hosting agent runtime."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from agent_hires.scheduler.errors import SchedulerConfigurationError
from agent_hires.scheduler.invoke import create_http_invoke
from agent_hires.scheduler.runtime import SchedulerRuntime
from agent_hires.scheduler.store import SchedulerStore, create_memory_store
from agent_hires.scheduler.types import Clock, InvokeFn, WalletResolver


@dataclass
class SchedulerExtensionOptions:
    store: Optional[SchedulerStore] = None
    invoke: Optional[InvokeFn] = None
    wallet_resolver: Optional[WalletResolver] = None
    clock: Optional[Clock] = None
    default_max_retries: Optional[int] = None
    lease_ms: Optional[int] = None
    max_due_batch: Optional[int] = None
    agent_card_ttl_ms: Optional[int] = None
    default_concurrency: Optional[int] = None

    def runtime_kwargs(self) -> Dict[str, Any]:
        knobs = {
            "default_max_retries": self.default_max_retries,
            "lease_ms": self.lease_ms,
            "max_due_batch": self.max_due_batch,
            "agent_card_ttl_ms": self.agent_card_ttl_ms,
            "default_concurrency": self.default_concurrency,
        }
        return {k: v for k, v in knobs.items() if v is not None}


class SchedulerExtension:
    """Builds a ``SchedulerRuntime`` for an agent runtime.

    The host runtime must expose ``a2a`` and ``payments`` capabilities; the
    scheduler is attached as ``runtime.scheduler``.
    """

    name = "scheduler"

    def __init__(self, options: Optional[SchedulerExtensionOptions] = None):
        self.options = options or SchedulerExtensionOptions()

    def build(self, ctx: Any = None) -> Dict[str, Any]:
        # Filled in by on_build once the host runtime exists.
        return {"scheduler": None}

    def on_build(self, runtime: Any) -> SchedulerRuntime:
        if getattr(runtime, "a2a", None) is None:
            raise SchedulerConfigurationError("A2A runtime missing")
        if getattr(runtime, "payments", None) is None:
            raise SchedulerConfigurationError("Payments runtime missing")

        opts = self.options
        store = opts.store or create_memory_store(clock=opts.clock)
        scheduler = SchedulerRuntime(
            store,
            opts.invoke or create_http_invoke(),
            wallet_resolver=opts.wallet_resolver,
            clock=opts.clock,
            **opts.runtime_kwargs(),
        )
        runtime.scheduler = scheduler
        return scheduler


def scheduler(options: Optional[SchedulerExtensionOptions] = None) -> SchedulerExtension:
    return SchedulerExtension(options)
