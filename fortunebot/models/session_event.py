"""
models/session_event.py — SQLAlchemy ORM for the per-user audit history.

Table: session_events
One row per handled inbound event (and per credit top-up). Append-only; still
written after a session is closed. payload must stay PII-free: outcome codes,
missing-field names, failure reasons only.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from fortunebot.database import Base, JSONType


class SessionEventORM(Base):
    __tablename__ = "session_events"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="UUID row identifier",
    )
    user_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )
    message_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment="LINE message id of the inbound event, NULL for external events",
    )
    event_type: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="Outcome value: guidance, profile_reading, ignored, credit_topup, ...",
    )
    phase_before: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    phase_after: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    payload: Mapped[dict] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="Structured event context. Must not contain names or birth data.",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
