"""Default invoke function: POST the job input to the agent's entrypoint."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import quote, urljoin

import requests

from agent_hires.scheduler.errors import InvokeError
from agent_hires.scheduler.types import InvokeArgs, InvokeFn


PrepareHeaders = Callable[[InvokeArgs], Awaitable[Dict[str, str]]]


def entrypoint_invoke_url(args: InvokeArgs) -> str:
    card = args.manifest
    entrypoint = card.entrypoints.get(args.entrypoint_key)
    if entrypoint is None:
        raise InvokeError(f'Entrypoint "{args.entrypoint_key}" not found in Agent Card')
    if card.url:
        return urljoin(card.url, f"/entrypoints/{quote(args.entrypoint_key, safe='')}/invoke")
    if entrypoint.url:
        return entrypoint.url
    raise InvokeError("Agent Card missing url field")


def create_http_invoke(
    session: Optional[Any] = None,
    timeout_seconds: int = 30,
    prepare_headers: Optional[PrepareHeaders] = None,
) -> InvokeFn:
    """Build an ``InvokeFn`` backed by ``requests``.

    Args:
        session: object with a ``post`` method (``requests.Session`` by default).
        timeout_seconds: per-request timeout.
        prepare_headers: async hook returning extra headers for one call, e.g.
            payment headers signed with ``args.wallet_connector``.
    """
    http = session or requests.Session()

    async def invoke(args: InvokeArgs) -> None:
        url = entrypoint_invoke_url(args)
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-Scheduler-Job-Id": args.job_id,
        }
        if args.idempotency_key:
            headers["Idempotency-Key"] = args.idempotency_key
        if prepare_headers is not None:
            headers.update(await prepare_headers(args) or {})

        try:
            resp = await asyncio.to_thread(
                http.post,
                url,
                json={"input": args.input},
                headers=headers,
                timeout=timeout_seconds,
            )
        except requests.RequestException as exc:
            raise InvokeError(f"Agent invocation failed: {exc}") from exc

        status = int(resp.status_code)
        if status < 200 or status >= 300:
            body = (getattr(resp, "text", "") or "")[:500]
            raise InvokeError(
                f"Agent invocation failed: {status} {getattr(resp, 'reason', '') or ''}".strip()
                + (f" {body}" if body else ""),
                status_code=status,
            )

    return invoke
