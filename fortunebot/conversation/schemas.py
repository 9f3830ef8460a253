"""
schemas.py — Conversation data contracts (Pydantic v2).

Defines:
  - Phase, ReadingKind, Outcome enums
  - ExtractedFields, Profile          (field extractor output / validated profile)
  - SessionSnapshot                   (read model of one reading_sessions row)
  - QuickReplyItem, TextMessage       (outbound LINE message shape)
  - GenerationRequest, GeneratedText, GenerationFailure
  - OutboundAction                    (what handle_inbound_message did)

Phase and credit balance are deliberately two separate fields: Phase answers
"what happens next", credit_balance answers "how many paid generations remain".
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Phase(str, Enum):
    awaiting_profile = "awaiting_profile"
    profile_complete = "profile_complete"
    awaiting_concern = "awaiting_concern"
    offer_shown = "offer_shown"
    closed = "closed"

    @property
    def rank(self) -> int:
        return _PHASE_ORDER.index(self)

    def precedes(self, other: "Phase") -> bool:
        return self.rank < other.rank


_PHASE_ORDER = [
    Phase.awaiting_profile,
    Phase.profile_complete,
    Phase.awaiting_concern,
    Phase.offer_shown,
    Phase.closed,
]


class ReadingKind(str, Enum):
    profile = "profile"
    bonus = "bonus"


class Outcome(str, Enum):
    duplicate = "duplicate"
    rate_limited = "rate_limited"
    ignored = "ignored"
    guidance = "guidance"
    profile_reading = "profile_reading"
    concern_prompt = "concern_prompt"
    bonus_reading = "bonus_reading"
    closing = "closing"
    apology = "apology"
    out_of_credits = "out_of_credits"
    conflict = "conflict"
    system_error = "system_error"


# ---------------------------------------------------------------------------
# Field extraction / profile
# ---------------------------------------------------------------------------

class ExtractedFields(BaseModel):
    """Best-effort scan of a labelled message. Every field may be None."""
    name: Optional[str] = None
    birthdate: Optional[str] = None
    birthtime: Optional[str] = None
    mbti: Optional[str] = None
    gender: Optional[str] = None


class Profile(BaseModel):
    """Validated profile captured in awaiting_profile. Stored as JSON on the session row."""
    model_config = ConfigDict(extra="forbid")

    name: str
    birthdate: str
    gender: str
    birthtime: Optional[str] = None
    mbti: Optional[str] = None


# ---------------------------------------------------------------------------
# Session read model
# ---------------------------------------------------------------------------

class SessionSnapshot(BaseModel):
    """
    Immutable view of a reading_sessions row as read at the start of handling.
    `version` is the optimistic-concurrency token every conditional write checks.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    phase: Phase
    version: int
    profile: Optional[Profile] = None
    concern: Optional[str] = None
    credit_balance: int = 0
    input_error_count: int = 0
    session_closed: bool = False
    lease_expires_at: Optional[datetime] = None
    last_message_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Outbound messages
# ---------------------------------------------------------------------------

QuickReplyActionType = Literal[
    "message", "uri", "postback", "datetimepicker", "camera", "cameraRoll", "location", "clipboard",
]


class QuickReplyItem(BaseModel):
    type: QuickReplyActionType = "message"
    label: str
    text: Optional[str] = None
    uri: Optional[str] = None
    data: Optional[str] = None


class TextMessage(BaseModel):
    text: str
    quick_reply: list[QuickReplyItem] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

class GenerationRequest(BaseModel):
    """
    Structured prompt: `instructions` becomes the system message, `user_data`
    the user message. `inputs` is the PII-bearing data recorded with the result.
    """
    kind: ReadingKind
    instructions: str
    user_data: str
    inputs: dict[str, Any] = Field(default_factory=dict)


class GeneratedText(BaseModel):
    text: str
    model: str
    attempts: int = 1
    usage: dict[str, Any] = Field(default_factory=dict)


class GenerationFailure(BaseModel):
    """Terminal failure after retries. `reason` is a short code, never the upstream error body."""
    reason: Literal["timeout", "upstream_unavailable", "rate_limited", "rejected", "empty_response"]
    attempts: int
    retryable: bool = False


GenerationResult = Union[GeneratedText, GenerationFailure]


# ---------------------------------------------------------------------------
# Persistence records (written by SessionStore)
# ---------------------------------------------------------------------------

class ResultRecord(BaseModel):
    kind: ReadingKind
    prompt_inputs: dict[str, Any] = Field(default_factory=dict)
    output_text: str
    model: str
    usage: dict[str, Any] = Field(default_factory=dict)


class EventRecord(BaseModel):
    event_type: str
    message_id: Optional[str] = None
    phase_before: Optional[Phase] = None
    phase_after: Optional[Phase] = None
    payload: dict[str, Any] = Field(default_factory=dict)


class NewFollowupJob(BaseModel):
    kind: Literal["reminder", "redelivery"]
    messages: list[dict[str, Any]]
    run_at: datetime
    required_phase: Optional[Phase] = None


class FollowupJob(NewFollowupJob):
    id: str
    user_id: str
    attempts: int = 0


# ---------------------------------------------------------------------------
# Handling result
# ---------------------------------------------------------------------------

class OutboundAction(BaseModel):
    outcome: Outcome
    messages: list[TextMessage] = Field(default_factory=list)
    phase: Optional[Phase] = None
    delivered: bool = False

    @classmethod
    def silent(cls, outcome: Outcome, phase: Optional[Phase] = None) -> "OutboundAction":
        return cls(outcome=outcome, phase=phase)
