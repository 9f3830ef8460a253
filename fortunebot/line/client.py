"""
client.py — Outbound LINE Messaging API client and the Outbound Responder.

Components:
  to_line_message()    — TextMessage -> LINE message dict, filtering quick replies
  LineMessagingClient  — reply / push / loading-animation calls over httpx
  LineResponder        — what the conversation core talks to: reply first,
                         fall back to push when the reply token is unusable

Every call carries a bounded timeout and a small retry count. Generated
readings have already cost the user a credit, so transient send failures are
retried, but never indefinitely; exhausted retries raise DeliveryError.
"""
import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Optional

import httpx

from fortunebot.config import Settings
from fortunebot.conversation.schemas import QuickReplyItem, TextMessage

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# LINE platform limits
# ---------------------------------------------------------------------------

SUPPORTED_QUICK_REPLY_ACTIONS = {"message", "uri", "postback"}
MAX_QUICK_REPLY_ITEMS = 13
MAX_LABEL_LENGTH = 20
MAX_TEXT_LENGTH = 5000

REPLY_PATH = "/v2/bot/message/reply"
PUSH_PATH = "/v2/bot/message/push"
LOADING_PATH = "/v2/bot/chat/loading/start"


class DeliveryError(Exception):
    """An outbound call failed for good (non-retryable status, or retries exhausted)."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------

def _action(item: QuickReplyItem) -> Optional[dict[str, Any]]:
    if item.type not in SUPPORTED_QUICK_REPLY_ACTIONS:
        return None
    action: dict[str, Any] = {"type": item.type, "label": item.label[:MAX_LABEL_LENGTH]}
    if item.type == "message":
        if not item.text:
            return None
        action["text"] = item.text
    elif item.type == "uri":
        if not item.uri:
            return None
        action["uri"] = item.uri
    else:
        if not item.data:
            return None
        action["data"] = item.data
        if item.text:
            action["displayText"] = item.text
    return action


def to_line_message(message: TextMessage) -> dict[str, Any]:
    """
    Build a LINE text message. Quick-reply items with unsupported action types
    (or missing their required field) are dropped; at most 13 are kept.
    """
    payload: dict[str, Any] = {"type": "text", "text": message.text[:MAX_TEXT_LENGTH]}
    actions = [a for a in (_action(item) for item in message.quick_reply) if a is not None]
    if actions:
        payload["quickReply"] = {
            "items": [{"type": "action", "action": a} for a in actions[:MAX_QUICK_REPLY_ITEMS]]
        }
    return payload


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

class LineMessagingClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        settings: Settings,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._http = http
        self._base = settings.line_api_base.rstrip("/")
        self._token = settings.line_channel_access_token
        self._timeout = settings.line_timeout_seconds
        self._max_attempts = max(1, settings.line_max_attempts)
        self._loading_seconds = settings.line_loading_seconds
        self._sleep = sleep

    async def _post(self, path: str, payload: dict[str, Any], headers: Optional[dict[str, str]] = None) -> None:
        request_headers = {"Authorization": f"Bearer {self._token}"}
        request_headers.update(headers or {})
        last_status: Optional[int] = None

        for attempt in range(1, self._max_attempts + 1):
            try:
                response = await self._http.post(
                    f"{self._base}{path}",
                    json=payload,
                    headers=request_headers,
                    timeout=self._timeout,
                )
            except httpx.TransportError as exc:
                logger.warning("LINE call failed path=%s attempt=%d error=%s", path, attempt, type(exc).__name__)
                last_status = None
            else:
                if response.status_code < 400:
                    return
                last_status = response.status_code
                # 409 on a retried push means the retry key was already accepted
                if response.status_code == 409 and "X-Line-Retry-Key" in request_headers:
                    return
                if response.status_code != 429 and response.status_code < 500:
                    logger.warning("LINE call rejected path=%s status=%d", path, response.status_code)
                    raise DeliveryError(
                        f"LINE rejected {path}", status_code=response.status_code, retryable=False
                    )
                logger.warning("LINE call failed path=%s attempt=%d status=%d", path, attempt, response.status_code)

            if attempt < self._max_attempts:
                await self._sleep(0.5 * (2 ** (attempt - 1)))

        raise DeliveryError(f"LINE call {path} exhausted retries", status_code=last_status, retryable=True)

    async def reply(self, reply_token: str, messages: list[dict[str, Any]]) -> None:
        await self._post(REPLY_PATH, {"replyToken": reply_token, "messages": messages})

    async def push(self, user_id: str, messages: list[dict[str, Any]], retry_key: Optional[str] = None) -> None:
        # Same retry key across attempts: LINE delivers a push at most once per key
        key = retry_key or str(uuid.uuid4())
        await self._post(PUSH_PATH, {"to": user_id, "messages": messages}, headers={"X-Line-Retry-Key": key})

    async def start_loading(self, user_id: str) -> None:
        await self._post(LOADING_PATH, {"chatId": user_id, "loadingSeconds": self._loading_seconds})


# ---------------------------------------------------------------------------
# Outbound Responder
# ---------------------------------------------------------------------------

class LineResponder:
    """Outbound side of the conversation core."""

    def __init__(self, client: LineMessagingClient) -> None:
        self._client = client

    async def send(self, user_id: str, reply_token: Optional[str], messages: list[TextMessage]) -> None:
        """
        Deliver `messages` to the user. Uses the single-use reply token when there
        is one; a rejected token (expired after a slow generation, or already used)
        falls back to push.

        Raises:
            DeliveryError: both paths failed.
        """
        payload = [to_line_message(m) for m in messages]
        if reply_token:
            try:
                await self._client.reply(reply_token, payload)
                return
            except DeliveryError as exc:
                if exc.retryable:
                    raise
                logger.info("Reply token unusable user_id=%s status=%s, falling back to push", user_id, exc.status_code)
        await self._client.push(user_id, payload)

    async def push(self, user_id: str, messages: list[TextMessage], retry_key: Optional[str] = None) -> None:
        """Push without a reply token (deferred jobs). retry_key makes repeated pushes idempotent."""
        await self._client.push(user_id, [to_line_message(m) for m in messages], retry_key=retry_key)

    async def show_activity(self, user_id: str) -> None:
        """Start the typing/loading indicator. Best-effort: failures are logged only."""
        try:
            await self._client.start_loading(user_id)
        except DeliveryError as exc:
            logger.info("Loading indicator not shown user_id=%s status=%s", user_id, exc.status_code)
