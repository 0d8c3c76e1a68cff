"""Scheduler domain records.

Timestamps are integer epoch milliseconds throughout. Records are plain
dataclasses so stores can persist them via ``to_dict``/``from_dict`` and the
runtime can derive new versions with ``dataclasses.replace``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar, Union

from agent_hires.scheduler.agent_card import AgentCard, parse_agent_card
from agent_hires.scheduler.errors import InvalidScheduleError, InvalidWalletRefError


JsonValue = Any
JsonObject = Dict[str, Any]

HIRE_ACTIVE = "active"
HIRE_PAUSED = "paused"
HIRE_CANCELED = "canceled"
HIRE_STATUSES = (HIRE_ACTIVE, HIRE_PAUSED, HIRE_CANCELED)

JOB_PENDING = "pending"
JOB_LEASED = "leased"
JOB_FAILED = "failed"
JOB_COMPLETED = "completed"
JOB_PAUSED = "paused"
JOB_STATUSES = (JOB_PENDING, JOB_LEASED, JOB_FAILED, JOB_COMPLETED, JOB_PAUSED)
JOB_TERMINAL_STATUSES = (JOB_FAILED, JOB_COMPLETED)


# --------------------------------------------------------------------------
# Schedules
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class IntervalSchedule:
    every_ms: int
    kind: str = field(default="interval", init=False)

    def __post_init__(self) -> None:
        if isinstance(self.every_ms, bool) or not isinstance(self.every_ms, int) or self.every_ms <= 0:
            raise InvalidScheduleError(f"interval schedule needs a positive every_ms, got {self.every_ms!r}")

    def to_dict(self) -> JsonObject:
        return {"kind": self.kind, "everyMs": self.every_ms}


@dataclass(frozen=True)
class OnceSchedule:
    at: int
    kind: str = field(default="once", init=False)

    def __post_init__(self) -> None:
        if isinstance(self.at, bool) or not isinstance(self.at, int) or self.at < 0:
            raise InvalidScheduleError(f"once schedule needs a non-negative timestamp, got {self.at!r}")

    def to_dict(self) -> JsonObject:
        return {"kind": self.kind, "at": self.at}


@dataclass(frozen=True)
class CronSchedule:
    expr: str
    kind: str = field(default="cron", init=False)

    def __post_init__(self) -> None:
        # schedule imports this module.
        from agent_hires.scheduler.schedule import validate_cron

        validate_cron(self.expr)

    def to_dict(self) -> JsonObject:
        return {"kind": self.kind, "expr": self.expr}


Schedule = Union[IntervalSchedule, OnceSchedule, CronSchedule]


def _whole_number(value: Any) -> Any:
    # JSON clients may send 60000.0 for 60000.
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def schedule_from_dict(raw: Union[Schedule, JsonObject]) -> Schedule:
    """Build a schedule from its ``{"kind": ...}`` form.

    Accepts both camelCase (``everyMs``) and snake_case (``every_ms``) keys.
    """
    if isinstance(raw, (IntervalSchedule, OnceSchedule, CronSchedule)):
        return raw
    if not isinstance(raw, dict):
        raise InvalidScheduleError(f"schedule must be an object, got {type(raw).__name__}")

    kind = raw.get("kind")
    if kind == "interval":
        return IntervalSchedule(every_ms=_whole_number(raw.get("everyMs", raw.get("every_ms"))))
    if kind == "once":
        return OnceSchedule(at=_whole_number(raw.get("at")))
    if kind == "cron":
        expr = raw.get("expr")
        if not isinstance(expr, str):
            raise InvalidScheduleError("cron schedule needs an expr string")
        return CronSchedule(expr=expr)
    raise InvalidScheduleError(f"Unknown schedule kind: {kind!r}")


# --------------------------------------------------------------------------
# Wallet and agent references
# --------------------------------------------------------------------------

_SECRET_MARKERS = (
    "privatekey",
    "secret",
    "mnemonic",
    "seed",
    "password",
    "passphrase",
    "credential",
    "apikey",
)


def _secret_keys(metadata: JsonObject, prefix: str = "") -> List[str]:
    found: List[str] = []
    for k, v in metadata.items():
        normalised = str(k).lower().replace("_", "").replace("-", "")
        path = f"{prefix}{k}"
        if any(marker in normalised for marker in _SECRET_MARKERS):
            found.append(path)
        elif isinstance(v, dict):
            found.extend(_secret_keys(v, prefix=f"{path}."))
    return found


@dataclass(frozen=True)
class WalletRef:
    """Serializable reference to the payer's wallet.

    Holds identifying metadata only. The signing connector is obtained from a
    ``WalletResolver`` for the duration of one invocation.
    """

    id: str
    address: Optional[str] = None
    chain: Optional[str] = None
    chain_type: Optional[str] = None
    caip2: Optional[str] = None
    provider: Optional[str] = None
    label: Optional[str] = None
    metadata: JsonObject = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.id:
            raise InvalidWalletRefError("wallet ref needs an id")
        leaked = _secret_keys(self.metadata)
        if leaked:
            raise InvalidWalletRefError(
                f"wallet ref must not carry secret material (keys: {', '.join(sorted(leaked))})"
            )

    def to_dict(self) -> JsonObject:
        return {
            "id": self.id,
            "address": self.address,
            "chain": self.chain,
            "chainType": self.chain_type,
            "caip2": self.caip2,
            "provider": self.provider,
            "label": self.label,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, raw: Union["WalletRef", JsonObject]) -> "WalletRef":
        if isinstance(raw, WalletRef):
            return raw
        known = {"id", "address", "chain", "chainType", "chain_type", "caip2", "provider", "label", "metadata"}
        extra = {k: v for k, v in raw.items() if k not in known}
        metadata = dict(raw.get("metadata") or {})
        metadata.update(extra)
        return cls(
            id=str(raw.get("id") or ""),
            address=raw.get("address"),
            chain=raw.get("chain"),
            chain_type=raw.get("chainType", raw.get("chain_type")),
            caip2=raw.get("caip2"),
            provider=raw.get("provider"),
            label=raw.get("label"),
            metadata=metadata,
        )


@dataclass(frozen=True)
class AgentRef:
    agent_card_url: str
    card: Optional[AgentCard] = None
    cached_at: Optional[int] = None

    def is_fresh(self, now: int, ttl_ms: int) -> bool:
        """A cached card older than ``ttl_ms`` counts as absent."""
        if self.card is None or self.cached_at is None:
            return False
        return now - self.cached_at < ttl_ms

    def to_dict(self) -> JsonObject:
        return {
            "agentCardUrl": self.agent_card_url,
            "card": self.card.model_dump(mode="json", exclude_none=True) if self.card else None,
            "cachedAt": self.cached_at,
        }

    @classmethod
    def from_dict(cls, raw: JsonObject) -> "AgentRef":
        card = raw.get("card")
        return cls(
            agent_card_url=str(raw.get("agentCardUrl") or ""),
            card=parse_agent_card(card) if card else None,
            cached_at=raw.get("cachedAt"),
        )


# --------------------------------------------------------------------------
# Hires and jobs
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class Hire:
    id: str
    agent: AgentRef
    wallet: WalletRef
    status: str = HIRE_ACTIVE
    metadata: JsonObject = field(default_factory=dict)

    def to_dict(self) -> JsonObject:
        return {
            "id": self.id,
            "agent": self.agent.to_dict(),
            "wallet": self.wallet.to_dict(),
            "status": self.status,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, raw: JsonObject) -> "Hire":
        return cls(
            id=str(raw["id"]),
            agent=AgentRef.from_dict(raw.get("agent") or {}),
            wallet=WalletRef.from_dict(raw.get("wallet") or {}),
            status=str(raw.get("status") or HIRE_ACTIVE),
            metadata=dict(raw.get("metadata") or {}),
        )


@dataclass(frozen=True)
class JobLease:
    worker_id: str
    expires_at: int

    def is_live(self, now: int) -> bool:
        return now < self.expires_at

    def to_dict(self) -> JsonObject:
        return {"workerId": self.worker_id, "expiresAt": self.expires_at}


@dataclass(frozen=True)
class Job:
    id: str
    hire_id: str
    entrypoint_key: str
    input: JsonValue
    schedule: Schedule
    next_run_at: int
    max_retries: int
    attempts: int = 0
    status: str = JOB_PENDING
    idempotency_key: Optional[str] = None
    lease: Optional[JobLease] = None
    last_error: Optional[str] = None

    def has_live_lease(self, now: int) -> bool:
        return self.lease is not None and self.lease.is_live(now)

    def is_due(self, now: int) -> bool:
        return self.status == JOB_PENDING and self.next_run_at <= now and not self.has_live_lease(now)

    def to_dict(self) -> JsonObject:
        return {
            "id": self.id,
            "hireId": self.hire_id,
            "entrypointKey": self.entrypoint_key,
            "input": self.input,
            "schedule": self.schedule.to_dict(),
            "nextRunAt": self.next_run_at,
            "attempts": self.attempts,
            "maxRetries": self.max_retries,
            "status": self.status,
            "idempotencyKey": self.idempotency_key,
            "lease": self.lease.to_dict() if self.lease else None,
            "lastError": self.last_error,
        }

    @classmethod
    def from_dict(cls, raw: JsonObject) -> "Job":
        lease = raw.get("lease")
        return cls(
            id=str(raw["id"]),
            hire_id=str(raw["hireId"]),
            entrypoint_key=str(raw["entrypointKey"]),
            input=raw.get("input"),
            schedule=schedule_from_dict(raw["schedule"]),
            next_run_at=int(raw["nextRunAt"]),
            attempts=int(raw.get("attempts") or 0),
            max_retries=int(raw["maxRetries"]),
            status=str(raw.get("status") or JOB_PENDING),
            idempotency_key=raw.get("idempotencyKey"),
            lease=JobLease(worker_id=str(lease["workerId"]), expires_at=int(lease["expiresAt"])) if lease else None,
            last_error=raw.get("lastError"),
        )


@dataclass(frozen=True)
class JobRun:
    """One execution of a job, kept as history by stores that support it."""

    id: str
    job_id: str
    hire_id: str
    worker_id: str
    started_at: int
    finished_at: int
    ok: bool
    error: Optional[str] = None

    def to_dict(self) -> JsonObject:
        return {
            "id": self.id,
            "jobId": self.job_id,
            "hireId": self.hire_id,
            "workerId": self.worker_id,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "ok": self.ok,
            "error": self.error,
        }


# --------------------------------------------------------------------------
# Invocation contract
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class InvokeArgs:
    """Everything the invoke function needs for one paid call.

    ``wallet_ref``/``wallet_connector`` are the payer side; the payee comes
    from ``manifest.payments``.
    """

    manifest: AgentCard
    entrypoint_key: str
    input: JsonValue
    wallet_ref: WalletRef
    job_id: str
    wallet_connector: Any = None
    idempotency_key: Optional[str] = None


InvokeFn = Callable[[InvokeArgs], Awaitable[None]]
WalletResolver = Callable[[WalletRef], Awaitable[Any]]
FetchAgentCardFn = Callable[[str], Awaitable[AgentCard]]
Clock = Callable[[], int]


T = TypeVar("T")


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Optional[T] = None) -> "OperationResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> "OperationResult[T]":
        return cls(success=False, error=error)

    def to_dict(self) -> JsonObject:
        if self.success:
            return {"ok": True}
        return {"ok": False, "error": self.error}


@dataclass
class TickSummary:
    due: int = 0
    claimed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> JsonObject:
        return {
            "due": self.due,
            "claimed": self.claimed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
        }
