"""SQLAlchemy-backed scheduler store (PostgreSQL or SQLite)."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import and_, or_, select, update

from agent_hires.scheduler.agent_card import parse_agent_card
from agent_hires.scheduler.db import connection_lock, get_engine, get_sessionmaker
from agent_hires.scheduler.models import Base, HireRecord, JobRecord, JobRunRecord, dumps, loads
from agent_hires.scheduler.store import system_clock
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
    WalletRef,
    schedule_from_dict,
)


def init_db(database_url: str) -> None:
    engine = get_engine(database_url)
    Base.metadata.create_all(engine)


def _hire_from_row(row: HireRecord) -> Hire:
    card_raw = loads(row.agent_card_json)
    return Hire(
        id=row.id,
        agent=AgentRef(
            agent_card_url=row.agent_card_url,
            card=parse_agent_card(card_raw) if card_raw else None,
            cached_at=row.agent_cached_at,
        ),
        wallet=WalletRef.from_dict(loads(row.wallet_json, {})),
        status=row.status,
        metadata=loads(row.metadata_json, {}) or {},
    )


def _agent_values(agent: AgentRef) -> Dict[str, Any]:
    return {
        "agent_card_url": agent.agent_card_url,
        "agent_card_json": dumps(agent.card.model_dump(mode="json", exclude_none=True)) if agent.card else None,
        "agent_cached_at": agent.cached_at,
    }


def _apply_hire(row: HireRecord, hire: Hire) -> None:
    row.status = hire.status
    for key, value in _agent_values(hire.agent).items():
        setattr(row, key, value)
    row.wallet_json = dumps(hire.wallet.to_dict())
    row.metadata_json = dumps(hire.metadata or {})


def _job_from_row(row: JobRecord) -> Job:
    lease = None
    if row.lease_worker_id is not None and row.lease_expires_at is not None:
        lease = JobLease(worker_id=row.lease_worker_id, expires_at=int(row.lease_expires_at))
    return Job(
        id=row.id,
        hire_id=row.hire_id,
        entrypoint_key=row.entrypoint_key,
        input=loads(row.input_json),
        schedule=schedule_from_dict(loads(row.schedule_json)),
        next_run_at=int(row.next_run_at),
        attempts=int(row.attempts or 0),
        max_retries=int(row.max_retries),
        status=row.status,
        idempotency_key=row.idempotency_key,
        lease=lease,
        last_error=row.last_error,
    )


def _job_values(job: Job) -> Dict[str, Any]:
    return {
        "hire_id": job.hire_id,
        "entrypoint_key": job.entrypoint_key,
        "input_json": dumps(job.input),
        "schedule_json": dumps(job.schedule.to_dict()),
        "status": job.status,
        "next_run_at": int(job.next_run_at),
        "attempts": int(job.attempts),
        "max_retries": int(job.max_retries),
        "idempotency_key": job.idempotency_key,
        "lease_worker_id": job.lease.worker_id if job.lease else None,
        "lease_expires_at": job.lease.expires_at if job.lease else None,
        "last_error": job.last_error,
    }


def _apply_job(row: JobRecord, job: Job) -> None:
    for key, value in _job_values(job).items():
        setattr(row, key, value)


def _run_from_row(row: JobRunRecord) -> JobRun:
    return JobRun(
        id=row.id,
        job_id=row.job_id,
        hire_id=row.hire_id,
        worker_id=row.worker_id,
        started_at=int(row.started_at),
        finished_at=int(row.finished_at),
        ok=bool(row.ok),
        error=row.error,
    )


_T = TypeVar("_T")


class SqlSchedulerStore:
    """Scheduler store over a SQL database.

    Sessions are synchronous; every public coroutine hands its work to
    ``asyncio.to_thread`` so the event loop never blocks on the database.
    In-memory SQLite has a single shared connection, so calls against it are
    serialized.
    """

    def __init__(self, database_url: str, clock: Optional[Clock] = None, create_tables: bool = True):
        self.database_url = database_url
        self._clock = clock or system_clock
        if create_tables:
            init_db(database_url)
        self._connection_lock = connection_lock(database_url)

    async def _run(self, fn: Callable[..., _T], *args: Any) -> _T:
        lock = self._connection_lock
        if lock is None:
            return await asyncio.to_thread(fn, *args)

        def _locked() -> _T:
            with lock:
                return fn(*args)

        return await asyncio.to_thread(_locked)

    def _session(self):
        return get_sessionmaker(self.database_url)()

    # -- hires ---------------------------------------------------------------

    def _put_hire(self, hire: Hire) -> None:
        with self._session() as s:
            row = s.get(HireRecord, hire.id)
            if row is None:
                row = HireRecord(id=hire.id)
                s.add(row)
            _apply_hire(row, hire)
            s.commit()

    def _get_hire(self, hire_id: str) -> Optional[Hire]:
        with self._session() as s:
            row = s.get(HireRecord, hire_id)
            return _hire_from_row(row) if row else None

    def _delete_hire(self, hire_id: str) -> None:
        with self._session() as s:
            row = s.get(HireRecord, hire_id)
            if row is None:
                return
            s.delete(row)
            s.commit()

    def _update_hire_status(self, hire_id: str, status: str, expected_status: str) -> bool:
        stmt = (
            update(HireRecord)
            .where(HireRecord.id == hire_id)
            .where(HireRecord.status == expected_status)
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        with self._session() as s:
            result = s.execute(stmt)
            s.commit()
            return result.rowcount == 1

    def _cache_agent_card(self, hire_id: str, agent: AgentRef) -> None:
        stmt = (
            update(HireRecord)
            .where(HireRecord.id == hire_id)
            .values(**_agent_values(agent))
            .execution_options(synchronize_session=False)
        )
        with self._session() as s:
            s.execute(stmt)
            s.commit()

    async def put_hire(self, hire: Hire) -> None:
        await self._run(self._put_hire, hire)

    async def get_hire(self, hire_id: str) -> Optional[Hire]:
        return await self._run(self._get_hire, hire_id)

    async def delete_hire(self, hire_id: str) -> None:
        await self._run(self._delete_hire, hire_id)

    async def update_hire_status(self, hire_id: str, status: str, expected_status: str) -> bool:
        return await self._run(self._update_hire_status, hire_id, status, expected_status)

    async def cache_agent_card(self, hire_id: str, agent: AgentRef) -> None:
        await self._run(self._cache_agent_card, hire_id, agent)

    # -- jobs ----------------------------------------------------------------

    def _put_job(self, job: Job) -> None:
        with self._session() as s:
            row = s.get(JobRecord, job.id)
            if row is None:
                row = JobRecord(id=job.id)
                s.add(row)
            _apply_job(row, job)
            s.commit()

    def _get_job(self, job_id: str) -> Optional[Job]:
        with self._session() as s:
            row = s.get(JobRecord, job_id)
            return _job_from_row(row) if row else None

    def _get_due_jobs(self, now: int, limit: int) -> List[Job]:
        with self._session() as s:
            q = (
                select(JobRecord)
                .join(HireRecord, HireRecord.id == JobRecord.hire_id)
                .where(JobRecord.status == JOB_PENDING)
                .where(JobRecord.next_run_at <= now)
                .where(or_(JobRecord.lease_expires_at.is_(None), JobRecord.lease_expires_at <= now))
                .where(HireRecord.status == HIRE_ACTIVE)
                .order_by(JobRecord.next_run_at.asc(), JobRecord.id.asc())
                .limit(int(limit))
            )
            return [_job_from_row(row) for row in s.execute(q).scalars().all()]

    def _claim_job(self, job_id: str, worker_id: str, lease_ms: int, now: Optional[int]) -> bool:
        if now is None:
            now = self._clock()
        # Single conditional UPDATE: the row count tells whether this worker won.
        stmt = (
            update(JobRecord)
            .where(JobRecord.id == job_id)
            .where(JobRecord.status == JOB_PENDING)
            .where(or_(JobRecord.lease_expires_at.is_(None), JobRecord.lease_expires_at <= now))
            .values(
                status=JOB_LEASED,
                lease_worker_id=worker_id,
                lease_expires_at=now + int(lease_ms),
            )
            .execution_options(synchronize_session=False)
        )
        with self._session() as s:
            result = s.execute(stmt)
            s.commit()
            return result.rowcount == 1

    def _update_job_if_unchanged(self, job: Job, expected: Job) -> bool:
        lease = expected.lease
        stmt = (
            update(JobRecord)
            .where(JobRecord.id == job.id)
            .where(JobRecord.status == expected.status)
            .where(
                and_(JobRecord.lease_worker_id == lease.worker_id, JobRecord.lease_expires_at == lease.expires_at)
                if lease is not None
                else JobRecord.lease_worker_id.is_(None)
            )
            .values(**_job_values(job))
            .execution_options(synchronize_session=False)
        )
        with self._session() as s:
            result = s.execute(stmt)
            s.commit()
            return result.rowcount == 1

    def _get_expired_leases(self, now: int) -> List[Job]:
        with self._session() as s:
            q = (
                select(JobRecord)
                .where(JobRecord.status == JOB_LEASED)
                .where(JobRecord.lease_expires_at.is_not(None))
                .where(JobRecord.lease_expires_at <= now)
                .order_by(JobRecord.lease_expires_at.asc())
            )
            return [_job_from_row(row) for row in s.execute(q).scalars().all()]

    async def put_job(self, job: Job) -> None:
        await self._run(self._put_job, job)

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self._run(self._get_job, job_id)

    async def get_due_jobs(self, now: int, limit: int) -> List[Job]:
        return await self._run(self._get_due_jobs, now, limit)

    async def claim_job(self, job_id: str, worker_id: str, lease_ms: int, now: Optional[int] = None) -> bool:
        return await self._run(self._claim_job, job_id, worker_id, lease_ms, now)

    async def update_job_if_unchanged(self, job: Job, expected: Job) -> bool:
        return await self._run(self._update_job_if_unchanged, job, expected)

    async def get_expired_leases(self, now: int) -> List[Job]:
        return await self._run(self._get_expired_leases, now)

    # -- run history ---------------------------------------------------------

    def _record_run(self, run: JobRun) -> None:
        with self._session() as s:
            s.add(
                JobRunRecord(
                    id=run.id,
                    job_id=run.job_id,
                    hire_id=run.hire_id,
                    worker_id=run.worker_id,
                    started_at=run.started_at,
                    finished_at=run.finished_at,
                    ok=bool(run.ok),
                    error=run.error[:4000] if run.error else None,
                )
            )
            s.commit()

    def _list_runs(self, limit: int, job_id: Optional[str]) -> List[JobRun]:
        with self._session() as s:
            q = select(JobRunRecord).order_by(JobRunRecord.started_at.desc()).limit(int(limit))
            if job_id:
                q = q.where(JobRunRecord.job_id == str(job_id))
            return [_run_from_row(row) for row in s.execute(q).scalars().all()]

    async def record_run(self, run: JobRun) -> None:
        await self._run(self._record_run, run)

    async def list_runs(self, limit: int = 50, job_id: Optional[str] = None) -> List[JobRun]:
        return await self._run(self._list_runs, limit, job_id)
