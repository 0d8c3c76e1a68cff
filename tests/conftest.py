from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest

from agent_hires.scheduler.agent_card import parse_agent_card
from agent_hires.scheduler.repo import SqlSchedulerStore
from agent_hires.scheduler.db import dispose_engine
from agent_hires.scheduler.runtime import SchedulerRuntime
from agent_hires.scheduler.store import create_memory_store
from agent_hires.scheduler.types import InvokeArgs


T0 = 1_700_000_000_000

AGENT_CARD_URL = "https://agent.example.com"

AGENT_CARD: Dict[str, Any] = {
    "name": "Report Agent",
    "url": "https://agent.example.com/agent",
    "version": "1.0.0",
    "entrypoints": {
        "default": {"description": "Default entrypoint", "pricing": {"invoke": "0.01"}},
        "report": {"description": "Daily report"},
    },
    "payments": [{"payee": "0xPAYEE", "network": "base-sepolia"}],
}

WALLET = {
    "id": "wallet-1",
    "address": "0xPAYER",
    "chain": "base-sepolia",
    "chainType": "evm",
    "provider": "local",
}


class FakeClock:
    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, reason: str = ""):
        self.status_code = status_code
        self.payload = payload
        self.reason = reason or ("OK" if 200 <= status_code < 300 else "Error")
        self.text = "" if payload is None else str(payload)

    def json(self) -> Any:
        if self.payload is None:
            raise ValueError("no JSON body")
        return self.payload


def make_fetch(responses: Dict[str, Any]):
    """Async fetch returning canned responses; unknown URLs get a 404."""
    calls: List[str] = []

    async def fetch(url: str) -> FakeResponse:
        calls.append(url)
        response = responses.get(url)
        if isinstance(response, Exception):
            raise response
        if response is None:
            return FakeResponse(404, reason="Not Found")
        return response

    fetch.calls = calls  # type: ignore[attr-defined]
    return fetch


class CardFetcher:
    def __init__(self, card: Optional[Dict[str, Any]] = None):
        self.card = parse_agent_card(card or AGENT_CARD)
        self.calls: List[str] = []
        self.error: Optional[Exception] = None

    async def __call__(self, url: str):
        self.calls.append(url)
        if self.error is not None:
            raise self.error
        return self.card


class RecordingInvoke:
    def __init__(self):
        self.calls: List[InvokeArgs] = []
        self.error: Optional[Exception] = None
        self.fail_entrypoints: set = set()
        self.side_effect = None

    async def __call__(self, args: InvokeArgs) -> None:
        self.calls.append(args)
        if self.side_effect is not None:
            await self.side_effect(args)
        if args.entrypoint_key in self.fail_entrypoints:
            raise RuntimeError(f"entrypoint {args.entrypoint_key} rejected the call")
        if self.error is not None:
            raise self.error


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock):
    return create_memory_store(clock=clock)


@pytest.fixture
def card_fetcher() -> CardFetcher:
    return CardFetcher()


@pytest.fixture
def invoke() -> RecordingInvoke:
    return RecordingInvoke()


@pytest.fixture
def runtime(store, invoke, clock, card_fetcher) -> SchedulerRuntime:
    return SchedulerRuntime(
        store,
        invoke,
        fetch_agent_card=card_fetcher,
        clock=clock,
        default_max_retries=3,
        lease_ms=30_000,
        max_due_batch=50,
        agent_card_ttl_ms=300_000,
        default_concurrency=4,
        worker_id="worker-a",
    )


@pytest.fixture
def sql_store(tmp_path, clock):
    url = f"sqlite:///{(tmp_path / 'scheduler.db').as_posix()}"
    yield SqlSchedulerStore(url, clock=clock)
    dispose_engine(url)


@pytest.fixture(params=["memory", "sql"])
def any_store(request, clock, tmp_path):
    if request.param == "memory":
        yield create_memory_store(clock=clock)
        return
    url = f"sqlite:///{(tmp_path / 'scheduler.db').as_posix()}"
    yield SqlSchedulerStore(url, clock=clock)
    dispose_engine(url)
