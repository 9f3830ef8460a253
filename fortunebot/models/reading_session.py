"""
models/reading_session.py — SQLAlchemy ORM model for per-user conversation state.

Table: reading_sessions
Exactly one row per LINE user_id (primary key). Rows are created by upsert-by-key
and only ever modified through conditional UPDATEs keyed on (phase, version),
so concurrent webhook deliveries cannot both commit a transition from a stale read.
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from fortunebot.database import Base, JSONType


class ReadingSessionORM(Base):
    """
    ORM model for one user's reading session.

    phase:           Phase enum value, the single source of truth for "what happens next".
    version:         Optimistic-concurrency token, bumped on every committed mutation.
    lease_expires_at: Set while one handler holds the right to call the generation
                     backend for this row; NULL otherwise.
    profile:         Profile JSON (name, birthdate, ...). Never logged.
    """
    __tablename__ = "reading_sessions"

    user_id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        comment="LINE userId, stable per provider",
    )
    phase: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="awaiting_profile",
        comment="awaiting_profile | profile_complete | awaiting_concern | offer_shown | closed",
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    profile: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    concern: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    credit_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    input_error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    session_closed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    last_message_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
