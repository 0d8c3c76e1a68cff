"""Worker loop that drives a SchedulerRuntime on a timer."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Event
from typing import Any, Dict, Optional

from agent_hires.scheduler.runtime import SchedulerRuntime
from agent_hires.scheduler.types import TickSummary


logger = logging.getLogger(__name__)


@dataclass
class SchedulerRuntimeState:
    started_at_utc: str
    last_tick_at_utc: Optional[str] = None
    last_tick_summary: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0, tzinfo=None).isoformat() + "Z"


def new_runtime_state() -> SchedulerRuntimeState:
    return SchedulerRuntimeState(started_at_utc=_utc_now_iso())


class SchedulerWorker:
    """Calls ``recover_expired_leases()`` then ``tick()`` every ``interval_ms``."""

    def __init__(
        self,
        runtime: SchedulerRuntime,
        interval_ms: int = 5_000,
        worker_id: Optional[str] = None,
        concurrency: Optional[int] = None,
        recover_leases: bool = True,
    ):
        self.runtime = runtime
        self.interval_ms = max(1, int(interval_ms))
        self.worker_id = worker_id or runtime.worker_id
        self.concurrency = concurrency
        self.recover_leases = recover_leases
        self._task: Optional["asyncio.Task[None]"] = None
        self._stop: Optional[asyncio.Event] = None

    async def run_once(self) -> Dict[str, Any]:
        recovered = 0
        if self.recover_leases:
            recovered = await self.runtime.recover_expired_leases()
        summary: TickSummary = await self.runtime.tick(worker_id=self.worker_id, concurrency=self.concurrency)
        result = summary.to_dict()
        result["recovered"] = recovered
        return result

    async def run_forever(self, stop_event: asyncio.Event, state: Optional[SchedulerRuntimeState] = None) -> None:
        while not stop_event.is_set():
            started = time.monotonic()
            if state is not None:
                state.last_tick_at_utc = _utc_now_iso()
            try:
                result = await self.run_once()
                if state is not None:
                    state.last_tick_summary = result
                    state.last_error = None
                if result["claimed"] or result["recovered"]:
                    logger.info("Scheduler tick by %s: %s", self.worker_id, result)
            except Exception as exc:  # noqa: BLE001
                # A failed tick (e.g. the store is unreachable) is retried next interval.
                logger.exception("Scheduler tick failed")
                if state is not None:
                    state.last_error = str(exc)

            elapsed = time.monotonic() - started
            sleep_s = max(0.05, self.interval_ms / 1000.0 - elapsed)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=sleep_s)
            except asyncio.TimeoutError:
                pass

    def start(self, state: Optional[SchedulerRuntimeState] = None) -> "asyncio.Task[None]":
        if self._task is not None and not self._task.done():
            return self._task
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self.run_forever(self._stop, state))
        return self._task

    async def stop(self) -> None:
        if self._stop is not None:
            self._stop.set()
        if self._task is not None:
            await self._task
        self._task = None


def create_scheduler_worker(runtime: SchedulerRuntime, **options: Any) -> SchedulerWorker:
    return SchedulerWorker(runtime, **options)


def run_scheduler_forever(worker: SchedulerWorker, stop_event: Event, state: SchedulerRuntimeState) -> None:
    """Blocking loop for a background thread; returns once ``stop_event`` is set."""

    async def _main() -> None:
        async_stop = asyncio.Event()

        async def _watch_stop() -> None:
            while not stop_event.is_set():
                await asyncio.sleep(0.2)
            async_stop.set()

        watcher = asyncio.create_task(_watch_stop())
        try:
            await worker.run_forever(async_stop, state)
        finally:
            watcher.cancel()

    asyncio.run(_main())
