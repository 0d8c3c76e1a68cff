from __future__ import annotations

import json
import time
from typing import Any, Optional

from sqlalchemy import BigInteger, Boolean, Column, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base


Base = declarative_base()


def _now_ms() -> int:
    return int(time.time() * 1000)


class HireRecord(Base):
    __tablename__ = "scheduler_hires"

    id = Column(String(64), primary_key=True)
    status = Column(String(16), nullable=False, index=True)

    agent_card_url = Column(String(2048), nullable=False)
    agent_card_json = Column(Text, nullable=True)
    agent_cached_at = Column(BigInteger, nullable=True)

    # WalletRef metadata only; never key material.
    wallet_json = Column(Text, nullable=False)
    metadata_json = Column(Text, default="{}", nullable=False)

    created_at = Column(BigInteger, default=_now_ms, nullable=False)
    updated_at = Column(BigInteger, default=_now_ms, onupdate=_now_ms, nullable=False)


class JobRecord(Base):
    __tablename__ = "scheduler_jobs"

    id = Column(String(64), primary_key=True)
    hire_id = Column(String(64), nullable=False, index=True)

    entrypoint_key = Column(String(256), nullable=False)
    input_json = Column(Text, nullable=False, default="null")
    schedule_json = Column(Text, nullable=False)

    status = Column(String(16), nullable=False)
    next_run_at = Column(BigInteger, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, nullable=False)

    idempotency_key = Column(String(256), nullable=True)
    lease_worker_id = Column(String(128), nullable=True)
    lease_expires_at = Column(BigInteger, nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(BigInteger, default=_now_ms, nullable=False)
    updated_at = Column(BigInteger, default=_now_ms, onupdate=_now_ms, nullable=False)

    __table_args__ = (
        Index("ix_scheduler_jobs_status_next_run", "status", "next_run_at"),
        Index("ix_scheduler_jobs_status_lease", "status", "lease_expires_at"),
    )


class JobRunRecord(Base):
    __tablename__ = "scheduler_runs"

    id = Column(String(36), primary_key=True)
    job_id = Column(String(64), nullable=False, index=True)
    hire_id = Column(String(64), nullable=False)
    worker_id = Column(String(128), nullable=False)

    started_at = Column(BigInteger, nullable=False, index=True)
    finished_at = Column(BigInteger, nullable=False)

    ok = Column(Boolean, nullable=False)
    error = Column(Text, nullable=True)


def dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def loads(raw: Optional[str], default: Any = None) -> Any:
    if raw is None or raw == "":
        return default
    return json.loads(raw)
