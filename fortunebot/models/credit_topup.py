"""
models/credit_topup.py — SQLAlchemy ORM for applied payment top-ups.

Table: credit_topups
One row per payment event id. The primary key on `reference` is what makes a
top-up apply once: a second insert for the same event fails, however many
deliveries race.
"""
from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from fortunebot.database import Base


class CreditTopupORM(Base):
    __tablename__ = "credit_topups"

    reference: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
        comment="Payment provider event id",
    )
    user_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
