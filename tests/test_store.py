import asyncio
from dataclasses import replace

import pytest

from agent_hires.scheduler.agent_card import parse_agent_card
from agent_hires.scheduler.db import connection_lock, dispose_engine
from agent_hires.scheduler.repo import SqlSchedulerStore
from agent_hires.scheduler.types import (
    AgentRef,
    Hire,
    IntervalSchedule,
    Job,
    JobLease,
    JobRun,
    OnceSchedule,
    WalletRef,
)

from conftest import AGENT_CARD, T0, WALLET


def _make_hire(hire_id="hire-1", status="active", with_card=True):
    return Hire(
        id=hire_id,
        agent=AgentRef(
            agent_card_url="https://agent.example.com",
            card=parse_agent_card(AGENT_CARD) if with_card else None,
            cached_at=T0 if with_card else None,
        ),
        wallet=WalletRef.from_dict(WALLET),
        status=status,
        metadata={"owner": "ops"},
    )


def _make_job(job_id, next_run_at=T0, hire_id="hire-1", **changes):
    job = Job(
        id=job_id,
        hire_id=hire_id,
        entrypoint_key="default",
        input={"job": job_id},
        schedule=IntervalSchedule(every_ms=60_000),
        next_run_at=next_run_at,
        max_retries=3,
    )
    return replace(job, **changes) if changes else job


@pytest.mark.asyncio
async def test_missing_records_read_as_none(any_store):
    assert await any_store.get_hire("nope") is None
    assert await any_store.get_job("nope") is None
    assert await any_store.claim_job("nope", "worker-a", 1_000) is False


@pytest.mark.asyncio
async def test_hire_and_job_round_trip(any_store):
    hire = _make_hire()
    job = _make_job("job-1", schedule=OnceSchedule(at=T0 + 5), idempotency_key="k", last_error="earlier")

    await any_store.put_hire(hire)
    await any_store.put_job(job)

    assert await any_store.get_hire(hire.id) == hire
    assert await any_store.get_job(job.id) == job

    updated = replace(hire, status="paused", agent=_make_hire(with_card=False).agent)
    await any_store.put_hire(updated)
    assert await any_store.get_hire(hire.id) == updated

    await any_store.delete_hire(hire.id)
    assert await any_store.get_hire(hire.id) is None
    await any_store.delete_hire(hire.id)


@pytest.mark.asyncio
async def test_due_jobs_are_ordered_limited_and_filtered(any_store):
    await any_store.put_hire(_make_hire("hire-1"))
    await any_store.put_hire(_make_hire("hire-2", status="paused"))
    await any_store.put_hire(_make_hire("hire-3", status="canceled"))

    await any_store.put_job(_make_job("late", T0 - 1_000))
    await any_store.put_job(_make_job("early", T0 - 3_000))
    await any_store.put_job(_make_job("middle", T0 - 2_000))
    await any_store.put_job(_make_job("future", T0 + 1))
    await any_store.put_job(_make_job("paused-job", T0 - 5_000, status="paused"))
    await any_store.put_job(_make_job("done", T0 - 5_000, status="completed"))
    await any_store.put_job(_make_job("paused-hire", T0 - 5_000, hire_id="hire-2"))
    await any_store.put_job(_make_job("canceled-hire", T0 - 5_000, hire_id="hire-3"))
    await any_store.put_job(_make_job("orphan", T0 - 5_000, hire_id="gone"))

    due = await any_store.get_due_jobs(T0, 10)
    assert [j.id for j in due] == ["early", "middle", "late"]

    limited = await any_store.get_due_jobs(T0, 2)
    assert [j.id for j in limited] == ["early", "middle"]


@pytest.mark.asyncio
async def test_claim_sets_a_lease_and_excludes_the_job_from_due(any_store, clock):
    await any_store.put_hire(_make_hire())
    await any_store.put_job(_make_job("job-1"))

    assert await any_store.claim_job("job-1", "worker-a", 30_000)
    claimed = await any_store.get_job("job-1")
    assert claimed.status == "leased"
    assert claimed.lease == JobLease(worker_id="worker-a", expires_at=T0 + 30_000)

    assert await any_store.claim_job("job-1", "worker-b", 30_000) is False
    assert await any_store.get_due_jobs(T0, 10) == []

    clock.advance(60_000)
    assert await any_store.claim_job("job-1", "worker-b", 30_000) is False


@pytest.mark.asyncio
async def test_concurrent_claims_have_exactly_one_winner(any_store):
    await any_store.put_hire(_make_hire())
    await any_store.put_job(_make_job("job-1"))

    results = await asyncio.gather(
        *(any_store.claim_job("job-1", f"worker-{i}", 30_000) for i in range(10))
    )

    assert results.count(True) == 1
    winner = f"worker-{results.index(True)}"
    assert (await any_store.get_job("job-1")).lease.worker_id == winner


@pytest.mark.asyncio
async def test_claim_uses_the_callers_clock_when_given(any_store):
    await any_store.put_hire(_make_hire())
    await any_store.put_job(_make_job("job-1", lease=JobLease(worker_id="old", expires_at=T0 + 5_000)))

    assert await any_store.claim_job("job-1", "worker-a", 1_000, now=T0 + 4_999) is False
    assert await any_store.claim_job("job-1", "worker-a", 1_000, now=T0 + 5_000)
    assert (await any_store.get_job("job-1")).lease == JobLease(worker_id="worker-a", expires_at=T0 + 6_000)


@pytest.mark.asyncio
async def test_job_update_requires_unchanged_status_and_lease(any_store):
    await any_store.put_hire(_make_hire())
    await any_store.put_job(_make_job("job-1"))
    pending = await any_store.get_job("job-1")
    assert await any_store.claim_job("job-1", "worker-a", 30_000, now=T0)
    leased = await any_store.get_job("job-1")

    assert await any_store.update_job_if_unchanged(replace(pending, status="paused"), pending) is False
    other_lease = replace(leased, lease=JobLease(worker_id="worker-b", expires_at=leased.lease.expires_at))
    assert await any_store.update_job_if_unchanged(replace(leased, status="completed", lease=None), other_lease) is False
    assert await any_store.get_job("job-1") == leased

    done = replace(leased, status="completed", lease=None, attempts=2, last_error="earlier")
    assert await any_store.update_job_if_unchanged(done, leased)
    assert await any_store.get_job("job-1") == done
    assert await any_store.update_job_if_unchanged(done, leased) is False

    missing = _make_job("nope")
    assert await any_store.update_job_if_unchanged(missing, missing) is False


@pytest.mark.asyncio
async def test_hire_status_update_requires_expected_status(any_store):
    await any_store.put_hire(_make_hire())

    assert await any_store.update_hire_status("hire-1", "paused", "canceled") is False
    assert (await any_store.get_hire("hire-1")).status == "active"
    assert await any_store.update_hire_status("hire-1", "paused", "active")
    assert (await any_store.get_hire("hire-1")).status == "paused"
    assert await any_store.update_hire_status("nope", "paused", "active") is False


@pytest.mark.asyncio
async def test_caching_a_card_leaves_hire_status_alone(any_store):
    await any_store.put_hire(_make_hire(status="canceled", with_card=False))
    agent = AgentRef(
        agent_card_url="https://agent.example.com",
        card=parse_agent_card(AGENT_CARD),
        cached_at=T0 + 1_000,
    )

    await any_store.cache_agent_card("hire-1", agent)
    hire = await any_store.get_hire("hire-1")
    assert hire.status == "canceled"
    assert hire.agent.cached_at == T0 + 1_000
    assert hire.agent.card.name == "Report Agent"
    assert hire.metadata == {"owner": "ops"}

    await any_store.cache_agent_card("nope", agent)
    assert await any_store.get_hire("nope") is None


@pytest.mark.asyncio
async def test_expired_leases_are_listed(any_store, clock):
    await any_store.put_hire(_make_hire())
    await any_store.put_job(_make_job("job-1"))
    await any_store.put_job(_make_job("job-2"))
    assert await any_store.claim_job("job-1", "worker-a", 10_000)
    assert await any_store.claim_job("job-2", "worker-a", 50_000)

    assert await any_store.get_expired_leases(T0 + 9_999) == []
    expired = await any_store.get_expired_leases(T0 + 10_000)
    assert [j.id for j in expired] == ["job-1"]


@pytest.mark.asyncio
async def test_runs_are_listed_newest_first(any_store):
    for i, ok in enumerate([True, False, True]):
        await any_store.record_run(
            JobRun(
                id=f"run-{i}",
                job_id="job-1" if i != 1 else "job-2",
                hire_id="hire-1",
                worker_id="worker-a",
                started_at=T0 + i * 1_000,
                finished_at=T0 + i * 1_000 + 10,
                ok=ok,
                error=None if ok else "boom",
            )
        )

    assert [r.id for r in await any_store.list_runs()] == ["run-2", "run-1", "run-0"]
    assert [r.id for r in await any_store.list_runs(limit=1)] == ["run-2"]
    only_job_1 = await any_store.list_runs(job_id="job-1")
    assert [r.id for r in only_job_1] == ["run-2", "run-0"]
    assert (await any_store.list_runs(job_id="job-2"))[0].error == "boom"


@pytest.mark.asyncio
async def test_sql_store_shares_state_between_instances(sql_store, clock):
    other = SqlSchedulerStore(sql_store.database_url, clock=clock, create_tables=False)
    await sql_store.put_hire(_make_hire())
    await sql_store.put_job(_make_job("job-1"))

    assert await other.claim_job("job-1", "worker-b", 1_000)
    assert await sql_store.claim_job("job-1", "worker-a", 1_000) is False
    assert (await sql_store.get_job("job-1")).lease.worker_id == "worker-b"


@pytest.mark.asyncio
async def test_in_memory_sqlite_serializes_the_shared_connection(clock):
    url = "sqlite://"
    try:
        store = SqlSchedulerStore(url, clock=clock)
        assert connection_lock(url) is not None
        await store.put_hire(_make_hire())
        await asyncio.gather(*(store.put_job(_make_job(f"job-{i}")) for i in range(5)))

        results = await asyncio.gather(
            *(store.claim_job(f"job-{i % 5}", f"worker-{i}", 30_000) for i in range(20)),
            *(store.get_due_jobs(T0, 10) for _ in range(5)),
        )

        claims = results[:20]
        assert claims.count(True) == 5
        for i in range(5):
            job = await store.get_job(f"job-{i}")
            assert job.status == "leased"
    finally:
        dispose_engine(url)


def test_pooled_sqlite_has_no_connection_lock(sql_store):
    assert connection_lock(sql_store.database_url) is None
