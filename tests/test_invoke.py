import pytest
import requests

from agent_hires.scheduler.agent_card import parse_agent_card
from agent_hires.scheduler.errors import InvokeError
from agent_hires.scheduler.invoke import create_http_invoke, entrypoint_invoke_url
from agent_hires.scheduler.types import InvokeArgs, WalletRef

from conftest import AGENT_CARD, WALLET, FakeResponse


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse(200, {"ok": True})
        self.error = error
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


def _args(card=None, entrypoint_key="report", **changes):
    fields = dict(
        manifest=parse_agent_card(card or AGENT_CARD),
        entrypoint_key=entrypoint_key,
        input={"day": "monday"},
        wallet_ref=WalletRef.from_dict(WALLET),
        job_id="job-7",
        idempotency_key="hire-7",
    )
    fields.update(changes)
    return InvokeArgs(**fields)


def test_invoke_url_is_built_from_the_card_origin():
    assert entrypoint_invoke_url(_args()) == "https://agent.example.com/entrypoints/report/invoke"


def test_invoke_url_falls_back_to_entrypoint_url():
    card = {"name": "x", "entrypoints": {"report": {"url": "https://other.example.com/run"}}}
    assert entrypoint_invoke_url(_args(card=card)) == "https://other.example.com/run"

    with pytest.raises(InvokeError, match="missing url"):
        entrypoint_invoke_url(_args(card={"name": "x", "entrypoints": {"report": {}}}))
    with pytest.raises(InvokeError, match="not found"):
        entrypoint_invoke_url(_args(entrypoint_key="missing"))


@pytest.mark.asyncio
async def test_posts_input_with_job_and_idempotency_headers():
    session = FakeSession()

    async def payment_headers(args):
        return {"X-PAYMENT": f"signed-by-{args.wallet_ref.address}"}

    invoke = create_http_invoke(session=session, timeout_seconds=7, prepare_headers=payment_headers)
    await invoke(_args())

    ((url, kwargs),) = session.calls
    assert url == "https://agent.example.com/entrypoints/report/invoke"
    assert kwargs["json"] == {"input": {"day": "monday"}}
    assert kwargs["timeout"] == 7
    assert kwargs["headers"]["X-Scheduler-Job-Id"] == "job-7"
    assert kwargs["headers"]["Idempotency-Key"] == "hire-7"
    assert kwargs["headers"]["X-PAYMENT"] == "signed-by-0xPAYER"


@pytest.mark.asyncio
async def test_no_idempotency_header_without_a_key():
    session = FakeSession()
    await create_http_invoke(session=session)(_args(idempotency_key=None))

    assert "Idempotency-Key" not in session.calls[0][1]["headers"]


@pytest.mark.asyncio
async def test_error_status_raises_with_status_code():
    session = FakeSession(FakeResponse(402, {"error": "payment required"}, reason="Payment Required"))

    with pytest.raises(InvokeError) as excinfo:
        await create_http_invoke(session=session)(_args())

    assert excinfo.value.status_code == 402
    assert "402 Payment Required" in str(excinfo.value)


@pytest.mark.asyncio
async def test_transport_errors_become_invoke_errors():
    session = FakeSession(error=requests.ConnectionError("connection reset"))

    with pytest.raises(InvokeError) as excinfo:
        await create_http_invoke(session=session)(_args())

    assert excinfo.value.status_code is None
    assert "connection reset" in str(excinfo.value)
