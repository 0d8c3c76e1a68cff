"""Store contract and the in-memory implementation.

``claim_job`` and the conditional writes (``update_job_if_unchanged``,
``update_hire_status``, ``cache_agent_card``) are the scheduler's only
mutual-exclusion primitives: every implementation must make each of them
atomic with respect to concurrent callers.
"""

from __future__ import annotations

import threading
import time
from dataclasses import replace
from typing import Dict, List, Optional, Protocol

from agent_hires.scheduler.types import (
    HIRE_ACTIVE,
    JOB_LEASED,
    JOB_PENDING,
    AgentRef,
    Clock,
    Hire,
    Job,
    JobLease,
    JobRun,
)


def system_clock() -> int:
    return int(time.time() * 1000)


class SchedulerStore(Protocol):
    async def put_hire(self, hire: Hire) -> None: ...

    async def get_hire(self, hire_id: str) -> Optional[Hire]: ...

    async def delete_hire(self, hire_id: str) -> None: ...

    async def put_job(self, job: Job) -> None: ...

    async def get_job(self, job_id: str) -> Optional[Job]: ...

    async def get_due_jobs(self, now: int, limit: int) -> List[Job]: ...

    async def claim_job(self, job_id: str, worker_id: str, lease_ms: int, now: Optional[int] = None) -> bool: ...

    async def update_hire_status(self, hire_id: str, status: str, expected_status: str) -> bool: ...

    async def cache_agent_card(self, hire_id: str, agent: AgentRef) -> None: ...

    async def update_job_if_unchanged(self, job: Job, expected: Job) -> bool: ...


# ``now`` passed to ``claim_job`` overrides the store clock; the runtime always
# passes its own so lease expiry and due times come from one clock.
#
# Optional capabilities, detected with hasattr():
#   async def get_expired_leases(self, now: int) -> List[Job]
#   async def record_run(self, run: JobRun) -> None
#   async def list_runs(self, limit: int = 50, job_id: Optional[str] = None) -> List[JobRun]


class MemorySchedulerStore:
    """Dict-backed store.

    A ``threading.Lock`` guards every operation, so one instance can be shared
    between the worker thread and request handlers on another event loop.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or system_clock
        self._lock = threading.Lock()
        self._hires: Dict[str, Hire] = {}
        self._jobs: Dict[str, Job] = {}
        self._runs: List[JobRun] = []

    async def put_hire(self, hire: Hire) -> None:
        with self._lock:
            self._hires[hire.id] = hire

    async def get_hire(self, hire_id: str) -> Optional[Hire]:
        with self._lock:
            return self._hires.get(hire_id)

    async def delete_hire(self, hire_id: str) -> None:
        with self._lock:
            self._hires.pop(hire_id, None)

    async def update_hire_status(self, hire_id: str, status: str, expected_status: str) -> bool:
        with self._lock:
            hire = self._hires.get(hire_id)
            if hire is None or hire.status != expected_status:
                return False
            self._hires[hire_id] = replace(hire, status=status)
            return True

    async def cache_agent_card(self, hire_id: str, agent: AgentRef) -> None:
        with self._lock:
            hire = self._hires.get(hire_id)
            if hire is not None:
                self._hires[hire_id] = replace(hire, agent=agent)

    async def put_job(self, job: Job) -> None:
        with self._lock:
            self._jobs[job.id] = job

    async def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    async def get_due_jobs(self, now: int, limit: int) -> List[Job]:
        with self._lock:
            due = []
            for job in self._jobs.values():
                if not job.is_due(now):
                    continue
                hire = self._hires.get(job.hire_id)
                if hire is None or hire.status != HIRE_ACTIVE:
                    continue
                due.append(job)
        due.sort(key=lambda j: j.next_run_at)
        return due[: max(0, int(limit))]

    async def claim_job(self, job_id: str, worker_id: str, lease_ms: int, now: Optional[int] = None) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JOB_PENDING:
                return False
            if now is None:
                now = self._clock()
            if job.has_live_lease(now):
                return False
            self._jobs[job_id] = replace(
                job,
                status=JOB_LEASED,
                lease=JobLease(worker_id=worker_id, expires_at=now + int(lease_ms)),
            )
            return True

    async def update_job_if_unchanged(self, job: Job, expected: Job) -> bool:
        """Write ``job`` only if the stored status and lease still match ``expected``."""
        with self._lock:
            current = self._jobs.get(job.id)
            if current is None or current.status != expected.status or current.lease != expected.lease:
                return False
            self._jobs[job.id] = job
            return True

    async def get_expired_leases(self, now: int) -> List[Job]:
        with self._lock:
            return [
                job
                for job in self._jobs.values()
                if job.status == JOB_LEASED and job.lease is not None and not job.lease.is_live(now)
            ]

    async def record_run(self, run: JobRun) -> None:
        with self._lock:
            self._runs.append(run)

    async def list_runs(self, limit: int = 50, job_id: Optional[str] = None) -> List[JobRun]:
        with self._lock:
            runs = [r for r in reversed(self._runs) if job_id is None or r.job_id == job_id]
        runs.sort(key=lambda r: r.started_at, reverse=True)
        return runs[: int(limit)]


def create_memory_store(clock: Optional[Clock] = None) -> MemorySchedulerStore:
    return MemorySchedulerStore(clock=clock)
