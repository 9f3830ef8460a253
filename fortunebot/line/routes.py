"""
routes.py — LINE webhook endpoint.

POST /webhook — verify X-Line-Signature, ack immediately, handle events in the background

The platform expects a fast 200 and redelivers on errors, so the only non-200
answer is 401 for a bad signature. Events are handled after the response in a
FastAPI background task, concurrently (one task per event); nothing raised
while handling an event reaches the transport layer.
app.state.machine (ConversationMachine) is set in main.py lifespan.
"""
import asyncio
import logging
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from fortunebot.config import settings
from fortunebot.conversation.state_machine import ConversationMachine
from fortunebot.line.schemas import WebhookEvent, WebhookPayload
from fortunebot.line.signature import verify_signature

logger = logging.getLogger(__name__)
router = APIRouter(tags=["line_webhook"])


async def handle_event(machine: ConversationMachine, event: WebhookEvent) -> None:
    """Route one webhook event into the conversation core. Never raises."""
    try:
        if event.is_text_message:
            await machine.handle_inbound_message(
                event.user_id,
                event.message.text or "",
                event.message.id,
                event.reply_token,
            )
        elif event.type == "follow" and event.user_id:
            event_id = event.webhook_event_id or f"{event.user_id}:{event.timestamp}"
            await machine.handle_follow(event.user_id, event_id, event.reply_token)
        else:
            logger.debug("Ignoring webhook event type=%s", event.type)
    except Exception:
        logger.error("Unhandled error while handling webhook event type=%s", event.type, exc_info=True)


def parse_events(raw_events: list[Any]) -> list[WebhookEvent]:
    """Validate each event on its own. A malformed event is logged and skipped."""
    events: list[WebhookEvent] = []
    for index, raw in enumerate(raw_events):
        try:
            events.append(WebhookEvent.model_validate(raw))
        except ValidationError as exc:
            logger.warning("Skipping malformed webhook event index=%d errors=%d", index, exc.error_count())
    return events


async def handle_events(machine: ConversationMachine, events: list[WebhookEvent]) -> None:
    await asyncio.gather(*(handle_event(machine, event) for event in events))


@router.post("/webhook")
async def line_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_line_signature: Optional[str] = Header(default=None),
) -> JSONResponse:
    """
    Receive a LINE webhook delivery.

    Returns:
        200: {"status": "ok"} — events accepted (or nothing to do)
        401: Standard error envelope when the signature does not verify
    """
    body = await request.body()
    if not verify_signature(settings.line_channel_secret, body, x_line_signature):
        logger.warning("Rejected webhook with invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = WebhookPayload.model_validate_json(body)
    except ValidationError:
        logger.warning("Webhook body did not match the expected shape, acknowledged without processing")
        return JSONResponse(status_code=200, content={"status": "ok"})

    events = parse_events(payload.events)
    if events:
        background_tasks.add_task(handle_events, request.app.state.machine, events)
    logger.info("Webhook accepted events=%d skipped=%d", len(events), len(payload.events) - len(events))
    return JSONResponse(status_code=200, content={"status": "ok"})
