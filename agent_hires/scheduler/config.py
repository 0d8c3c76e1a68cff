from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from agent_hires.config_utils import env_int, env_optional_str, env_str
from agent_hires.scheduler.runtime import (
    DEFAULT_AGENT_CARD_TTL_MS,
    DEFAULT_CONCURRENCY,
    DEFAULT_LEASE_MS,
    DEFAULT_MAX_DUE_BATCH,
    DEFAULT_MAX_RETRIES,
)


@dataclass(frozen=True)
class SchedulerConfig:
    """Runtime configuration for the scheduler service.

    DB selection:
    - SCHEDULER_DATABASE_URL: scheduler-specific DB URL (preferred)
    - PLATFORM_DATABASE_URL: shared DB URL
    - If neither is set, defaults to local SQLite at data/scheduler.db

    Runtime knobs (milliseconds unless noted):
    - SCHEDULER_DEFAULT_MAX_RETRIES (default: 3)
    - SCHEDULER_LEASE_MS (default: 60000)
    - SCHEDULER_MAX_DUE_BATCH (default: 50)
    - SCHEDULER_AGENT_CARD_TTL_MS (default: 300000)
    - SCHEDULER_DEFAULT_CONCURRENCY (default: 4)

    Loop:
    - SCHEDULER_TICK_SECONDS: how often the worker ticks (default: 5)
    - SCHEDULER_WORKER_ID: lease owner name (default: generated per process)
    - SCHEDULER_INVOKE_TIMEOUT_SECONDS: HTTP timeout per invocation (default: 30)

    MCP server:
    - SCHEDULER_MCP_HOST (default: 0.0.0.0)
    - SCHEDULER_MCP_PORT (default: 8010)

    Notes:
    - Several replicas may share one database; leases keep them from running
      the same job twice.
    """

    database_url: str
    tick_seconds: int

    default_max_retries: int
    lease_ms: int
    max_due_batch: int
    agent_card_ttl_ms: int
    default_concurrency: int

    worker_id: Optional[str]
    invoke_timeout_seconds: int

    mcp_host: str
    mcp_port: int

    @classmethod
    def from_env(cls) -> "SchedulerConfig":
        db_url = env_optional_str("SCHEDULER_DATABASE_URL") or env_optional_str("PLATFORM_DATABASE_URL")
        if not db_url:
            repo_root = Path(__file__).resolve().parents[2]
            data_dir = repo_root / "data"
            data_dir.mkdir(parents=True, exist_ok=True)
            db_url = f"sqlite:///{(data_dir / 'scheduler.db').as_posix()}"

        return cls(
            database_url=db_url,
            tick_seconds=env_int("SCHEDULER_TICK_SECONDS", 5, minimum=1),
            default_max_retries=env_int("SCHEDULER_DEFAULT_MAX_RETRIES", DEFAULT_MAX_RETRIES, minimum=1),
            lease_ms=env_int("SCHEDULER_LEASE_MS", DEFAULT_LEASE_MS, minimum=1),
            max_due_batch=env_int("SCHEDULER_MAX_DUE_BATCH", DEFAULT_MAX_DUE_BATCH, minimum=1),
            agent_card_ttl_ms=env_int("SCHEDULER_AGENT_CARD_TTL_MS", DEFAULT_AGENT_CARD_TTL_MS, minimum=1),
            default_concurrency=env_int("SCHEDULER_DEFAULT_CONCURRENCY", DEFAULT_CONCURRENCY, minimum=1),
            worker_id=env_optional_str("SCHEDULER_WORKER_ID"),
            invoke_timeout_seconds=env_int("SCHEDULER_INVOKE_TIMEOUT_SECONDS", 30, minimum=1),
            mcp_host=env_str("SCHEDULER_MCP_HOST", "0.0.0.0"),
            mcp_port=env_int("SCHEDULER_MCP_PORT", 8010, minimum=1),
        )

    def runtime_options(self) -> Dict[str, Any]:
        """Keyword arguments for ``SchedulerRuntime``."""
        return {
            "default_max_retries": self.default_max_retries,
            "lease_ms": self.lease_ms,
            "max_due_batch": self.max_due_batch,
            "agent_card_ttl_ms": self.agent_card_ttl_ms,
            "default_concurrency": self.default_concurrency,
            "worker_id": self.worker_id,
        }
