"""
models/__init__.py — imports all ORM models so Alembic's env.py
sees them via Base.metadata when generating migrations.
"""
from fortunebot.models.reading_session import ReadingSessionORM
from fortunebot.models.generated_result import GeneratedResultORM
from fortunebot.models.session_event import SessionEventORM
from fortunebot.models.followup_job import FollowupJobORM
from fortunebot.models.credit_topup import CreditTopupORM

__all__ = ["ReadingSessionORM", "GeneratedResultORM", "SessionEventORM", "FollowupJobORM", "CreditTopupORM"]
