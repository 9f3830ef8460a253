"""
models/generated_result.py — SQLAlchemy ORM model for completed readings.

Table: generated_results
Append-only: one row per successful generation call, written in the same
transaction as the phase transition it belongs to. Rows are never updated or deleted.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from fortunebot.database import Base, JSONType


class GeneratedResultORM(Base):
    """
    kind:          "profile" or "bonus", mirrors ReadingKind.
    prompt_inputs: The interpolated fields the prompt was built from.
    usage:         Token usage metadata reported by the generation backend.
    """
    __tablename__ = "generated_results"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    prompt_inputs: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    output_text: Mapped[str] = mapped_column(Text, nullable=False)
    model: Mapped[str] = mapped_column(String(64), nullable=False)
    usage: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
