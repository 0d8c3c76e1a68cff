"""Agent card model and well-known-path resolver.

An agent card is the manifest a remote agent publishes: its entrypoints and
the payee address payments should go to. Cards are looked up by probing the
conventional locations under the agent's base URL.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import requests
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from agent_hires.scheduler.errors import AgentCardError, AgentCardFetchError


logger = logging.getLogger(__name__)

WELL_KNOWN_PATHS = (
    "/.well-known/agent-card.json",
    "/.well-known/agent.json",
    "/agentcard.json",
)

DEFAULT_FETCH_TIMEOUT_SECONDS = 15


class AgentEntrypoint(BaseModel):
    model_config = ConfigDict(extra="allow")

    url: Optional[str] = None
    description: Optional[str] = None
    pricing: Optional[Dict[str, Any]] = None


class PaymentMethod(BaseModel):
    """Where the agent receives payment (the payee side of a hire)."""

    model_config = ConfigDict(extra="allow")

    payee: Optional[str] = None
    network: Optional[str] = None
    method: Optional[str] = None


class AgentCard(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    url: Optional[str] = None
    version: Optional[str] = None
    description: Optional[str] = None
    entrypoints: Dict[str, AgentEntrypoint]
    payments: Optional[List[PaymentMethod]] = None

    @field_validator("entrypoints")
    @classmethod
    def _require_entrypoints(cls, value: Dict[str, AgentEntrypoint]) -> Dict[str, AgentEntrypoint]:
        if not value:
            raise ValueError("agent card declares no entrypoints")
        return value

    def payee_for(self, network: Optional[str] = None) -> Optional[str]:
        for method in self.payments or []:
            if network is None or method.network == network:
                return method.payee
        return None


def parse_agent_card(data: Any) -> AgentCard:
    if isinstance(data, AgentCard):
        return data
    if not isinstance(data, dict):
        raise AgentCardError(f"Agent card must be a JSON object, got {type(data).__name__}")
    try:
        return AgentCard.model_validate(data)
    except ValidationError as exc:
        raise AgentCardError(f"Invalid agent card: {exc.error_count()} validation error(s): {exc}") from exc


def agent_card_candidates(base_url: str) -> List[str]:
    """URLs to probe for ``base_url``, in order."""
    raw = (base_url or "").strip()
    base = raw.rstrip("/")
    candidates: List[str] = []
    if raw.startswith("http://") or raw.startswith("https://"):
        candidates.append(raw)
    for path in WELL_KNOWN_PATHS:
        candidates.append(base + path)

    seen = set()
    unique: List[str] = []
    for url in candidates:
        if url not in seen:
            seen.add(url)
            unique.append(url)
    return unique


FetchFn = Callable[[str], Awaitable[Any]]


async def _requests_fetch(url: str) -> requests.Response:
    return await asyncio.to_thread(
        requests.get,
        url,
        headers={"Accept": "application/json"},
        timeout=DEFAULT_FETCH_TIMEOUT_SECONDS,
    )


async def fetch_agent_card_with_entrypoints(base_url: str, fetch: Optional[FetchFn] = None) -> AgentCard:
    """Resolve the agent card published under ``base_url``.

    ``fetch`` takes a URL and returns a response object with ``status_code``,
    ``reason`` and ``json()``; it defaults to ``requests.get`` run in a worker
    thread.

    A 404 moves on to the next candidate silently. Any other failure (status,
    transport or a body that is not a valid card) is recorded and probing
    continues. Raises ``AgentCardFetchError`` listing every URL tried when no
    candidate yields a card.
    """
    fetch_fn = fetch or _requests_fetch
    attempts: List[Tuple[str, str]] = []

    for url in agent_card_candidates(base_url):
        try:
            resp = await fetch_fn(url)
        except Exception as exc:  # noqa: BLE001
            attempts.append((url, f"request failed: {exc}"))
            continue

        status = int(getattr(resp, "status_code", 0) or 0)
        if status == 404:
            attempts.append((url, "404 Not Found"))
            continue
        if status < 200 or status >= 300:
            reason = getattr(resp, "reason", "") or ""
            attempts.append((url, f"{status} {reason}".strip()))
            continue

        try:
            payload = resp.json()
        except ValueError as exc:
            attempts.append((url, f"invalid JSON: {exc}"))
            continue

        try:
            card = parse_agent_card(payload)
        except AgentCardError as exc:
            attempts.append((url, str(exc)))
            continue

        logger.debug("Resolved agent card for %s from %s", base_url, url)
        return card

    raise AgentCardFetchError(base_url, attempts)
