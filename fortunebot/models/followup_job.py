"""
models/followup_job.py — SQLAlchemy ORM for scheduled outbound pushes.

Table: followup_jobs
The conversation core never sleeps inside a webhook request. Delayed reminders
and redelivery of messages whose send failed are enqueued here and executed by
FollowupWorker (fortunebot/followups.py), which survives process restarts.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from fortunebot.database import Base, JSONType


class FollowupJobORM(Base):
    """
    kind:           "reminder" | "redelivery"
    messages:       List of LINE message payload dicts, ready to push.
    required_phase: When set, the job is skipped unless the session is still in this phase.
    status:         pending -> sending -> sent | skipped | failed (pending again on retry)
    """
    __tablename__ = "followup_jobs"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    messages: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    required_phase: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
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
