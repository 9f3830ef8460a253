"""
schemas.py — LINE webhook payload contracts (Pydantic v2).

Only the fields the conversation core needs are modelled; everything else the
platform sends is accepted and ignored (extra="allow"), so new LINE event
fields never cause a 422.
"""
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class EventSource(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: str = "user"
    user_id: Optional[str] = Field(default=None, alias="userId")


class EventMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    type: str
    text: Optional[str] = None


class WebhookEvent(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: str
    source: Optional[EventSource] = None
    reply_token: Optional[str] = Field(default=None, alias="replyToken")
    webhook_event_id: Optional[str] = Field(default=None, alias="webhookEventId")
    timestamp: Optional[int] = None
    message: Optional[EventMessage] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.source.user_id if self.source else None

    @property
    def is_text_message(self) -> bool:
        return (
            self.type == "message"
            and self.message is not None
            and self.message.type == "text"
            and self.user_id is not None
        )


class WebhookPayload(BaseModel):
    """Events stay raw here and are validated one by one, so one bad event cannot sink the batch."""
    model_config = ConfigDict(extra="allow")

    destination: Optional[str] = None
    events: list[Any] = Field(default_factory=list)
