from __future__ import annotations

from threading import Event, Thread
from typing import Any, Dict, Optional

from fastmcp import FastMCP

from agent_hires.scheduler.config import SchedulerConfig
from agent_hires.scheduler.errors import SchedulerError
from agent_hires.scheduler.invoke import create_http_invoke
from agent_hires.scheduler.repo import SqlSchedulerStore
from agent_hires.scheduler.runner import (
    SchedulerWorker,
    new_runtime_state,
    run_scheduler_forever,
)
from agent_hires.scheduler.runtime import SchedulerRuntime


mcp = FastMCP("scheduler")

_STOP = Event()
_THREAD: Optional[Thread] = None
_STATE = new_runtime_state()
_RUNTIME: Optional[SchedulerRuntime] = None


def get_runtime() -> SchedulerRuntime:
    global _RUNTIME
    if _RUNTIME is None:
        cfg = SchedulerConfig.from_env()
        _RUNTIME = SchedulerRuntime(
            SqlSchedulerStore(cfg.database_url),
            create_http_invoke(timeout_seconds=cfg.invoke_timeout_seconds),
            **cfg.runtime_options(),
        )
    return _RUNTIME


def start_background_scheduler(cfg: SchedulerConfig) -> None:
    global _THREAD
    if _THREAD is not None and _THREAD.is_alive():
        return

    worker = SchedulerWorker(get_runtime(), interval_ms=cfg.tick_seconds * 1000)
    _THREAD = Thread(
        target=run_scheduler_forever,
        args=(worker, _STOP, _STATE),
        name="scheduler-loop",
        daemon=True,
    )
    _THREAD.start()


@mcp.tool
def scheduler_health() -> Dict[str, Any]:
    cfg = SchedulerConfig.from_env()
    alive = bool(_THREAD and _THREAD.is_alive())
    return {
        "ok": True,
        "service": "scheduler",
        "thread_alive": alive,
        "worker_id": get_runtime().worker_id,
        "tick_seconds": int(cfg.tick_seconds),
        "db": cfg.database_url.split(":", 1)[0],
        "started_at_utc": _STATE.started_at_utc,
        "last_tick_at_utc": _STATE.last_tick_at_utc,
        "last_tick_summary": _STATE.last_tick_summary,
        "last_error": _STATE.last_error,
    }


@mcp.tool
async def scheduler_create_hire(
    *,
    agent_card_url: str,
    wallet: Dict[str, Any],
    entrypoint_key: str,
    schedule: Dict[str, Any],
    job_input: Any = None,
    max_retries: Optional[int] = None,
    idempotency_key: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    try:
        hire, job = await get_runtime().create_hire(
            agent_card_url=str(agent_card_url),
            wallet=dict(wallet),
            entrypoint_key=str(entrypoint_key),
            schedule=dict(schedule),
            job_input=job_input,
            max_retries=max_retries,
            idempotency_key=idempotency_key,
            metadata=dict(metadata or {}),
        )
    except (SchedulerError, ValueError) as exc:
        return {"ok": False, "error": str(exc)}
    return {"ok": True, "hire": hire.to_dict(), "job": job.to_dict()}


@mcp.tool
async def scheduler_add_job(
    *,
    hire_id: str,
    entrypoint_key: str,
    schedule: Dict[str, Any],
    job_input: Any = None,
    max_retries: Optional[int] = None,
    idempotency_key: Optional[str] = None,
) -> Dict[str, Any]:
    try:
        job = await get_runtime().add_job(
            hire_id=str(hire_id),
            entrypoint_key=str(entrypoint_key),
            schedule=dict(schedule),
            job_input=job_input,
            max_retries=max_retries,
            idempotency_key=idempotency_key,
        )
    except (SchedulerError, ValueError) as exc:
        return {"ok": False, "error": str(exc)}
    return {"ok": True, "job": job.to_dict()}


@mcp.tool
async def scheduler_get_hire(hire_id: str) -> Dict[str, Any]:
    hire = await get_runtime().get_hire(str(hire_id))
    if not hire:
        return {"ok": False, "error": "not_found"}
    return {"ok": True, "hire": hire.to_dict()}


@mcp.tool
async def scheduler_get_job(job_id: str) -> Dict[str, Any]:
    job = await get_runtime().get_job(str(job_id))
    if not job:
        return {"ok": False, "error": "not_found"}
    return {"ok": True, "job": job.to_dict()}


@mcp.tool
async def scheduler_pause_hire(hire_id: str) -> Dict[str, Any]:
    return (await get_runtime().pause_hire(str(hire_id))).to_dict()


@mcp.tool
async def scheduler_resume_hire(hire_id: str) -> Dict[str, Any]:
    return (await get_runtime().resume_hire(str(hire_id))).to_dict()


@mcp.tool
async def scheduler_cancel_hire(hire_id: str) -> Dict[str, Any]:
    return (await get_runtime().cancel_hire(str(hire_id))).to_dict()


@mcp.tool
async def scheduler_pause_job(job_id: str) -> Dict[str, Any]:
    return (await get_runtime().pause_job(str(job_id))).to_dict()


@mcp.tool
async def scheduler_resume_job(job_id: str, next_run_at: Optional[int] = None) -> Dict[str, Any]:
    return (await get_runtime().resume_job(str(job_id), next_run_at=next_run_at)).to_dict()


@mcp.tool
async def scheduler_list_runs(limit: int = 50, job_id: Optional[str] = None) -> Dict[str, Any]:
    runs = await get_runtime().list_runs(limit=int(limit), job_id=str(job_id) if job_id else None)
    return {"ok": True, "runs": [r.to_dict() for r in runs]}


def run() -> None:
    cfg = SchedulerConfig.from_env()
    start_background_scheduler(cfg)
    # FastMCP signature differs across versions, so keep it permissive.
    try:
        mcp.run(transport="http", host=cfg.mcp_host, port=int(cfg.mcp_port))
    except TypeError:
        mcp.run(transport="http")


if __name__ == "__main__":
    run()
