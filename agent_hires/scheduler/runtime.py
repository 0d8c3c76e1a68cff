"""Scheduler runtime: hire/job lifecycle and the tick state machine.

The runtime owns no timers or threads. A driver calls ``tick()`` (and
``recover_expired_leases()``) periodically. Mutual exclusion comes from the
store: ``claim_job`` takes a lease, and every later write is conditional on
the status and lease the runtime last read.

Job lifecycle::

    pending --claim--> leased --success--> pending (recurring) | completed (once)
                              --failure--> pending (backoff)   | failed (ceiling)
    leased --lease expired, recovered--> pending | failed
    pending --pause_job--> paused --resume_job--> pending
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import replace
from typing import Any, Callable, List, Optional, Tuple, Union

from agent_hires.scheduler.agent_card import AgentCard, fetch_agent_card_with_entrypoints
from agent_hires.scheduler.errors import (
    HireCanceledError,
    HireNotFoundError,
    SchedulerConfigurationError,
    UnknownEntrypointError,
    WalletResolutionError,
)
from agent_hires.scheduler.schedule import backoff_ms, initial_run_at, next_run_after_success
from agent_hires.scheduler.store import SchedulerStore, system_clock
from agent_hires.scheduler.types import (
    HIRE_ACTIVE,
    HIRE_CANCELED,
    HIRE_PAUSED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_LEASED,
    JOB_PAUSED,
    JOB_PENDING,
    JOB_TERMINAL_STATUSES,
    AgentRef,
    Clock,
    FetchAgentCardFn,
    Hire,
    InvokeArgs,
    InvokeFn,
    Job,
    JobRun,
    JsonObject,
    JsonValue,
    OperationResult,
    Schedule,
    TickSummary,
    WalletRef,
    WalletResolver,
    schedule_from_dict,
)


logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_LEASE_MS = 60_000
DEFAULT_MAX_DUE_BATCH = 50
DEFAULT_AGENT_CARD_TTL_MS = 300_000
DEFAULT_CONCURRENCY = 4

LEASE_EXPIRED_ERROR = "lease expired"

_SUCCEEDED = "succeeded"
_FAILED = "failed"
_SKIPPED = "skipped"

_TRANSITION_ATTEMPTS = 3


def new_worker_id() -> str:
    return f"worker-{uuid.uuid4().hex[:8]}"


def _describe(exc: BaseException) -> str:
    text = str(exc).strip()
    return text or type(exc).__name__


def _positive_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise SchedulerConfigurationError(f"{name} must be a positive integer, got {value!r}")
    return value


class SchedulerRuntime:
    def __init__(
        self,
        store: SchedulerStore,
        invoke: InvokeFn,
        *,
        wallet_resolver: Optional[WalletResolver] = None,
        fetch_agent_card: Optional[FetchAgentCardFn] = None,
        clock: Optional[Clock] = None,
        default_max_retries: int = DEFAULT_MAX_RETRIES,
        lease_ms: int = DEFAULT_LEASE_MS,
        max_due_batch: int = DEFAULT_MAX_DUE_BATCH,
        agent_card_ttl_ms: int = DEFAULT_AGENT_CARD_TTL_MS,
        default_concurrency: int = DEFAULT_CONCURRENCY,
        worker_id: Optional[str] = None,
    ):
        if store is None:
            raise SchedulerConfigurationError("A scheduler store is required")
        if invoke is None:
            raise SchedulerConfigurationError("An invoke function is required")

        self.store = store
        self._invoke = invoke
        self._wallet_resolver = wallet_resolver
        self._fetch_agent_card = fetch_agent_card or fetch_agent_card_with_entrypoints
        self._clock = clock or system_clock

        self.default_max_retries = _positive_int("default_max_retries", default_max_retries)
        self.lease_ms = _positive_int("lease_ms", lease_ms)
        self.max_due_batch = _positive_int("max_due_batch", max_due_batch)
        self.agent_card_ttl_ms = _positive_int("agent_card_ttl_ms", agent_card_ttl_ms)
        self.default_concurrency = _positive_int("default_concurrency", default_concurrency)
        self.worker_id = worker_id or new_worker_id()

    def now(self) -> int:
        return int(self._clock())

    # ------------------------------------------------------------------
    # Hires and jobs
    # ------------------------------------------------------------------

    def _max_retries(self, max_retries: Optional[int]) -> int:
        if max_retries is None:
            return self.default_max_retries
        if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 1:
            raise ValueError(f"max_retries must be a positive integer, got {max_retries!r}")
        return max_retries

    @staticmethod
    def _check_entrypoint(card: Optional[AgentCard], entrypoint_key: str) -> None:
        if card is not None and entrypoint_key not in card.entrypoints:
            raise UnknownEntrypointError(entrypoint_key, sorted(card.entrypoints))

    def _new_job(
        self,
        hire_id: str,
        entrypoint_key: str,
        schedule: Schedule,
        job_input: JsonValue,
        max_retries: int,
        idempotency_key: Optional[str],
        now: int,
    ) -> Job:
        return Job(
            id=str(uuid.uuid4()),
            hire_id=hire_id,
            entrypoint_key=entrypoint_key,
            input=job_input,
            schedule=schedule,
            next_run_at=initial_run_at(schedule, now),
            max_retries=max_retries,
            idempotency_key=idempotency_key,
        )

    async def create_hire(
        self,
        agent_card_url: str,
        wallet: Union[WalletRef, JsonObject],
        entrypoint_key: str,
        schedule: Union[Schedule, JsonObject],
        job_input: JsonValue = None,
        max_retries: Optional[int] = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[JsonObject] = None,
    ) -> Tuple[Hire, Job]:
        """Create an active hire and its first pending job.

        The agent card is resolved up front; ``AgentCardFetchError`` propagates
        when it cannot be, and nothing is persisted.
        """
        schedule = schedule_from_dict(schedule)
        wallet_ref = WalletRef.from_dict(wallet)
        retries = self._max_retries(max_retries)

        card = await self._fetch_agent_card(agent_card_url)
        self._check_entrypoint(card, entrypoint_key)

        now = self.now()
        hire = Hire(
            id=str(uuid.uuid4()),
            agent=AgentRef(agent_card_url=agent_card_url, card=card, cached_at=now),
            wallet=wallet_ref,
            status=HIRE_ACTIVE,
            metadata=dict(metadata or {}),
        )
        job = self._new_job(hire.id, entrypoint_key, schedule, job_input, retries, idempotency_key, now)

        await self.store.put_hire(hire)
        await self.store.put_job(job)
        logger.info(
            "Created hire %s (wallet %s -> %s), job %s next run at %s",
            hire.id,
            wallet_ref.id,
            agent_card_url,
            job.id,
            job.next_run_at,
        )
        return hire, job

    async def add_job(
        self,
        hire_id: str,
        entrypoint_key: str,
        schedule: Union[Schedule, JsonObject],
        job_input: JsonValue = None,
        max_retries: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> Job:
        schedule = schedule_from_dict(schedule)
        retries = self._max_retries(max_retries)

        hire = await self.store.get_hire(hire_id)
        if hire is None:
            raise HireNotFoundError(hire_id)
        if hire.status == HIRE_CANCELED:
            raise HireCanceledError(hire_id)
        self._check_entrypoint(hire.agent.card, entrypoint_key)

        job = self._new_job(hire.id, entrypoint_key, schedule, job_input, retries, idempotency_key, self.now())
        await self.store.put_job(job)
        logger.info("Added job %s to hire %s", job.id, hire.id)
        return job

    async def get_hire(self, hire_id: str) -> Optional[Hire]:
        return await self.store.get_hire(hire_id)

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self.store.get_job(job_id)

    async def _transition_hire(self, hire_id: str, target: str, allowed_from: Tuple[str, ...]) -> OperationResult:
        for _ in range(_TRANSITION_ATTEMPTS):
            hire = await self.store.get_hire(hire_id)
            if hire is None:
                return OperationResult.fail(f"Hire not found: {hire_id}")
            if hire.status == target:
                return OperationResult.ok()
            if hire.status not in allowed_from:
                return OperationResult.fail(f"Cannot move hire {hire_id} from {hire.status} to {target}")
            if await self.store.update_hire_status(hire_id, target, hire.status):
                logger.info("Hire %s: %s -> %s", hire_id, hire.status, target)
                return OperationResult.ok()
        return OperationResult.fail(f"Hire {hire_id} changed concurrently, retry")

    async def pause_hire(self, hire_id: str) -> OperationResult:
        return await self._transition_hire(hire_id, HIRE_PAUSED, (HIRE_ACTIVE,))

    async def resume_hire(self, hire_id: str) -> OperationResult:
        return await self._transition_hire(hire_id, HIRE_ACTIVE, (HIRE_PAUSED,))

    async def cancel_hire(self, hire_id: str) -> OperationResult:
        # Stores only return due jobs of active hires, so pending jobs of a
        # canceled hire are never claimed again.
        return await self._transition_hire(hire_id, HIRE_CANCELED, (HIRE_ACTIVE, HIRE_PAUSED))

    async def pause_job(self, job_id: str) -> OperationResult:
        job = await self.store.get_job(job_id)
        if job is None:
            return OperationResult.fail(f"Job not found: {job_id}")
        if job.status == JOB_PAUSED:
            return OperationResult.ok()
        if job.status in JOB_TERMINAL_STATUSES:
            return OperationResult.fail(f"Job {job_id} is {job.status}")
        if job.status == JOB_LEASED:
            # The invocation may already have paid; its outcome must land first.
            return OperationResult.fail(f"Job {job_id} is running")
        if not await self.store.update_job_if_unchanged(replace(job, status=JOB_PAUSED, lease=None), job):
            return OperationResult.fail(f"Job {job_id} changed concurrently, retry")
        logger.info("Job %s paused", job_id)
        return OperationResult.ok()

    async def resume_job(self, job_id: str, next_run_at: Optional[int] = None) -> OperationResult:
        job = await self.store.get_job(job_id)
        if job is None:
            return OperationResult.fail(f"Job not found: {job_id}")
        if job.status in JOB_TERMINAL_STATUSES:
            return OperationResult.fail(f"Job {job_id} is {job.status}")
        hire = await self.store.get_hire(job.hire_id)
        if hire is None:
            return OperationResult.fail(f"Hire not found: {job.hire_id}")
        if hire.status == HIRE_CANCELED:
            return OperationResult.fail(f"Hire is canceled: {hire.id}")

        if job.status == JOB_LEASED:
            return OperationResult.ok()
        if job.status == JOB_PENDING and next_run_at is None:
            return OperationResult.ok()

        run_at = self.now() if next_run_at is None else int(next_run_at)
        if not await self.store.update_job_if_unchanged(replace(job, status=JOB_PENDING, next_run_at=run_at), job):
            return OperationResult.fail(f"Job {job_id} changed concurrently, retry")
        logger.info("Job %s resumed, next run at %s", job_id, run_at)
        return OperationResult.ok()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def tick(self, worker_id: Optional[str] = None, concurrency: Optional[int] = None) -> TickSummary:
        """Claim and run due jobs.

        Jobs are claimed in ``next_run_at`` order until ``concurrency`` of them
        are held; each starts running as soon as it is claimed. A failure of one
        job is recorded on that job and never aborts the rest of the batch.
        """
        worker = worker_id or self.worker_id
        limit = _positive_int("concurrency", concurrency) if concurrency is not None else self.default_concurrency

        summary = TickSummary()
        due = await self.store.get_due_jobs(self.now(), self.max_due_batch)
        summary.due = len(due)

        tasks: List["asyncio.Task[str]"] = []
        for job in due:
            if len(tasks) >= limit:
                break
            try:
                claimed = await self.store.claim_job(job.id, worker, self.lease_ms, now=self.now())
            except Exception:  # noqa: BLE001
                logger.exception("Claiming job %s failed", job.id)
                continue
            if not claimed:
                logger.debug("Job %s already claimed by another worker", job.id)
                continue
            summary.claimed += 1
            tasks.append(asyncio.create_task(self._run_claimed_job(job.id, worker)))

        for outcome in await asyncio.gather(*tasks, return_exceptions=True):
            if outcome == _SUCCEEDED:
                summary.succeeded += 1
            elif outcome == _SKIPPED:
                summary.skipped += 1
            else:
                if isinstance(outcome, BaseException):
                    logger.error("Job execution raised: %r", outcome)
                summary.failed += 1
        return summary

    async def _run_claimed_job(self, job_id: str, worker_id: str) -> str:
        try:
            job = await self.store.get_job(job_id)
            if job is None or job.lease is None or job.lease.worker_id != worker_id:
                return _SKIPPED

            hire = await self.store.get_hire(job.hire_id)
            if hire is None or hire.status != HIRE_ACTIVE:
                await self._finish(job_id, worker_id, lambda current: replace(current, status=JOB_PENDING, lease=None))
                logger.info("Released job %s: hire %s is not active", job_id, job.hire_id)
                return _SKIPPED

            started_at = self.now()
            error: Optional[str] = None
            try:
                manifest = await self._resolve_agent_card(hire)
                connector = await self._resolve_wallet(hire.wallet)
                await self._invoke(
                    InvokeArgs(
                        manifest=manifest,
                        entrypoint_key=job.entrypoint_key,
                        input=job.input,
                        wallet_ref=hire.wallet,
                        wallet_connector=connector,
                        job_id=job.id,
                        idempotency_key=job.idempotency_key,
                    )
                )
            except Exception as exc:  # noqa: BLE001
                error = _describe(exc)
                logger.warning("Job %s (hire %s) failed: %s", job.id, hire.id, error)

            finished_at = self.now()
            if error is None:
                await self._finish(job_id, worker_id, lambda current: self._after_success(current, finished_at))
            else:
                await self._finish(job_id, worker_id, lambda current: self._after_failure(current, error, finished_at))

            await self._record_run(
                JobRun(
                    id=str(uuid.uuid4()),
                    job_id=job.id,
                    hire_id=hire.id,
                    worker_id=worker_id,
                    started_at=started_at,
                    finished_at=finished_at,
                    ok=error is None,
                    error=error,
                )
            )
            return _SUCCEEDED if error is None else _FAILED
        except Exception:  # noqa: BLE001
            # The lease stays in place and expires; recovery requeues the job.
            logger.exception("Unexpected error while running job %s", job_id)
            return _FAILED

    def _after_success(self, job: Job, now: int) -> Job:
        next_run = next_run_after_success(job.schedule, now)
        if next_run is None:
            logger.info("Job %s completed", job.id)
            return replace(job, status=JOB_COMPLETED, lease=None, last_error=None)
        logger.info("Job %s succeeded, next run at %s", job.id, next_run)
        return replace(job, status=JOB_PENDING, attempts=0, next_run_at=next_run, lease=None, last_error=None)

    def _after_failure(self, job: Job, error: str, now: int) -> Job:
        attempts = job.attempts + 1
        if attempts >= job.max_retries:
            logger.warning("Job %s failed permanently after %s attempts", job.id, attempts)
            return replace(job, status=JOB_FAILED, attempts=attempts, lease=None, last_error=error)
        delay = backoff_ms(attempts)
        return replace(
            job,
            status=JOB_PENDING,
            attempts=attempts,
            next_run_at=now + delay,
            lease=None,
            last_error=error,
        )

    async def _finish(self, job_id: str, worker_id: str, update: Callable[[Job], Job]) -> bool:
        """Write an outcome only while this worker still holds the lease."""
        current = await self.store.get_job(job_id)
        if (
            current is None
            or current.status != JOB_LEASED
            or current.lease is None
            or current.lease.worker_id != worker_id
        ):
            logger.warning("Dropping stale result for job %s from %s: lease no longer held", job_id, worker_id)
            return False
        if not await self.store.update_job_if_unchanged(update(current), current):
            logger.warning("Dropping stale result for job %s from %s: lease changed during write", job_id, worker_id)
            return False
        return True

    async def _resolve_agent_card(self, hire: Hire) -> AgentCard:
        now = self.now()
        if hire.agent.is_fresh(now, self.agent_card_ttl_ms):
            return hire.agent.card

        card = await self._fetch_agent_card(hire.agent.agent_card_url)
        try:
            agent = AgentRef(agent_card_url=hire.agent.agent_card_url, card=card, cached_at=now)
            await self.store.cache_agent_card(hire.id, agent)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not cache agent card for hire %s: %s", hire.id, exc)
        return card

    async def _resolve_wallet(self, wallet: WalletRef) -> Any:
        if self._wallet_resolver is None:
            return None
        try:
            return await self._wallet_resolver(wallet)
        except Exception as exc:  # noqa: BLE001
            raise WalletResolutionError(wallet.id, _describe(exc)) from exc

    async def _record_run(self, run: JobRun) -> None:
        record = getattr(self.store, "record_run", None)
        if record is None:
            return
        try:
            await record(run)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not record run for job %s: %s", run.job_id, exc)

    async def list_runs(self, limit: int = 50, job_id: Optional[str] = None) -> List[JobRun]:
        list_fn = getattr(self.store, "list_runs", None)
        if list_fn is None:
            return []
        return await list_fn(limit=limit, job_id=job_id)

    # ------------------------------------------------------------------
    # Crash recovery
    # ------------------------------------------------------------------

    async def recover_expired_leases(self) -> int:
        """Requeue jobs whose worker let the lease expire.

        Each recovery counts as a failed attempt; a job that reaches its retry
        ceiling this way is marked failed. Returns the number of jobs handled.
        """
        get_expired = getattr(self.store, "get_expired_leases", None)
        if get_expired is None:
            return 0

        now = self.now()
        recovered = 0
        for job in await get_expired(now):
            try:
                current = await self.store.get_job(job.id)
                if (
                    current is None
                    or current.status != JOB_LEASED
                    or current.lease is None
                    or current.lease.is_live(now)
                    or current.lease != job.lease
                ):
                    continue
                attempts = current.attempts + 1
                if attempts >= current.max_retries:
                    updated = replace(
                        current, status=JOB_FAILED, attempts=attempts, lease=None, last_error=LEASE_EXPIRED_ERROR
                    )
                else:
                    updated = replace(
                        current,
                        status=JOB_PENDING,
                        attempts=attempts,
                        next_run_at=now,
                        lease=None,
                        last_error=LEASE_EXPIRED_ERROR,
                    )
                if not await self.store.update_job_if_unchanged(updated, current):
                    continue
                recovered += 1
                logger.warning(
                    "Recovered job %s from expired lease of %s (attempt %s/%s, now %s)",
                    current.id,
                    current.lease.worker_id,
                    attempts,
                    current.max_retries,
                    updated.status,
                )
            except Exception:  # noqa: BLE001
                logger.exception("Recovering job %s failed", job.id)
        return recovered


def create_scheduler_runtime(store: SchedulerStore, invoke: InvokeFn, **options: Any) -> SchedulerRuntime:
    return SchedulerRuntime(store, invoke, **options)
