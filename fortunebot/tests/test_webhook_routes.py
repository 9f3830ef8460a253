"""
HTTP tests for POST /webhook and GET /api/health.

Uses httpx ASGITransport against fortunebot.main.app with no live server and no
lifespan: app.state.machine is set per test. ASGITransport waits for the whole
ASGI call, so background event handling has finished when the response returns.
"""
import json
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from fortunebot.config import settings
from fortunebot.conversation.schemas import Outcome, OutboundAction, Phase
from fortunebot.line.signature import compute_signature
from fortunebot.main import app
from fortunebot.tests.fakes import PROFILE_TEXT

SECRET = "test-channel-secret"
USER = "Uf0000000000000000000000000000001"


def _text_event(message_id: str, text: str, user_id: str = USER) -> dict:
    return {
        "type": "message",
        "mode": "active",
        "timestamp": 1760000000000,
        "webhookEventId": f"evt-{message_id}",
        "replyToken": f"token-{message_id}",
        "source": {"type": "user", "userId": user_id},
        "message": {"id": message_id, "type": "text", "text": text},
    }


def _signed(payload: dict) -> tuple[bytes, dict]:
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    return body, {"X-Line-Signature": compute_signature(SECRET, body), "Content-Type": "application/json"}


@pytest.fixture(autouse=True)
def channel_secret(monkeypatch):
    monkeypatch.setattr(settings, "line_channel_secret", SECRET)


@pytest_asyncio.fixture
async def client():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def mock_machine():
    machine = AsyncMock()
    machine.handle_inbound_message.return_value = OutboundAction.silent(Outcome.ignored, Phase.awaiting_profile)
    machine.handle_follow.return_value = OutboundAction.silent(Outcome.guidance)
    app.state.machine = machine
    yield machine
    del app.state.machine


@pytest.mark.asyncio
async def test_health(client: AsyncClient) -> None:
    response = await client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_invalid_signature_is_rejected(client: AsyncClient, mock_machine) -> None:
    body, headers = _signed({"destination": "x", "events": [_text_event("m1", "こんにちは")]})
    headers["X-Line-Signature"] = compute_signature("wrong-secret", body)

    response = await client.post("/webhook", content=body, headers=headers)

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHORIZED"
    mock_machine.handle_inbound_message.assert_not_called()


@pytest.mark.asyncio
async def test_missing_signature_is_rejected(client: AsyncClient, mock_machine) -> None:
    body, headers = _signed({"destination": "x", "events": [_text_event("m1", "こんにちは")]})
    del headers["X-Line-Signature"]

    response = await client.post("/webhook", content=body, headers=headers)

    assert response.status_code == 401
    mock_machine.handle_inbound_message.assert_not_called()


@pytest.mark.asyncio
async def test_text_message_is_routed_to_the_machine(client: AsyncClient, mock_machine) -> None:
    body, headers = _signed({"destination": "x", "events": [_text_event("m1", "こんにちは")]})

    response = await client.post("/webhook", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    mock_machine.handle_inbound_message.assert_awaited_once_with(USER, "こんにちは", "m1", "token-m1")


@pytest.mark.asyncio
async def test_follow_event_is_routed(client: AsyncClient, mock_machine) -> None:
    event = {
        "type": "follow",
        "timestamp": 1760000000000,
        "webhookEventId": "evt-follow",
        "replyToken": "token-follow",
        "source": {"type": "user", "userId": USER},
    }
    body, headers = _signed({"destination": "x", "events": [event]})

    response = await client.post("/webhook", content=body, headers=headers)

    assert response.status_code == 200
    mock_machine.handle_follow.assert_awaited_once_with(USER, "evt-follow", "token-follow")


@pytest.mark.asyncio
async def test_non_text_events_are_acknowledged_and_ignored(client: AsyncClient, mock_machine) -> None:
    sticker = _text_event("m1", "")
    sticker["message"] = {"id": "m1", "type": "sticker", "packageId": "1", "stickerId": "2"}
    unfollow = {"type": "unfollow", "timestamp": 1, "source": {"type": "user", "userId": USER}}
    body, headers = _signed({"destination": "x", "events": [sticker, unfollow]})

    response = await client.post("/webhook", content=body, headers=headers)

    assert response.status_code == 200
    mock_machine.handle_inbound_message.assert_not_called()
    mock_machine.handle_follow.assert_not_called()


@pytest.mark.asyncio
async def test_verification_request_without_events(client: AsyncClient, mock_machine) -> None:
    body, headers = _signed({"destination": "x", "events": []})
    response = await client.post("/webhook", content=body, headers=headers)
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_malformed_body_is_still_acknowledged(client: AsyncClient, mock_machine) -> None:
    body = b"not json at all"
    headers = {"X-Line-Signature": compute_signature(SECRET, body)}

    response = await client.post("/webhook", content=body, headers=headers)

    assert response.status_code == 200
    mock_machine.handle_inbound_message.assert_not_called()


@pytest.mark.asyncio
async def test_malformed_event_does_not_drop_its_neighbours(client: AsyncClient, mock_machine) -> None:
    broken = _text_event("m1", "こんにちは")
    del broken["message"]["id"]
    body, headers = _signed({
        "destination": "x",
        "events": [broken, "not an event", _text_event("m2", "こんばんは")],
    })

    response = await client.post("/webhook", content=body, headers=headers)

    assert response.status_code == 200
    mock_machine.handle_inbound_message.assert_awaited_once_with(USER, "こんばんは", "m2", "token-m2")


@pytest.mark.asyncio
async def test_handler_error_does_not_reach_the_platform(client: AsyncClient, mock_machine) -> None:
    mock_machine.handle_inbound_message.side_effect = [RuntimeError("boom"), OutboundAction.silent(Outcome.ignored)]
    body, headers = _signed({
        "destination": "x",
        "events": [_text_event("m1", "こんにちは"), _text_event("m2", "こんばんは")],
    })

    response = await client.post("/webhook", content=body, headers=headers)

    assert response.status_code == 200
    assert mock_machine.handle_inbound_message.await_count == 2


@pytest.mark.asyncio
async def test_end_to_end_profile_reading(client: AsyncClient, machine, store, responder) -> None:
    app.state.machine = machine
    try:
        body, headers = _signed({"destination": "x", "events": [_text_event("m1", PROFILE_TEXT)]})
        response = await client.post("/webhook", content=body, headers=headers)
        # Redelivery of the same webhook
        again = await client.post("/webhook", content=body, headers=headers)
    finally:
        del app.state.machine

    assert response.status_code == 200
    assert again.status_code == 200
    assert (await store.get(USER)).phase is Phase.profile_complete
    assert len(responder.sent) == 1
    assert responder.sent[0][1] == "token-m1"
