"""
store.py — Session Store facade for fortunebot.

The authoritative per-user state record. All conversation code goes through
SessionStore; nothing else touches SQLAlchemy directly.

Design principles:
  - Exactly one reading_sessions row per user_id: created by insert-or-reread,
    never by blind per-event inserts.
  - Every state mutation is a conditional UPDATE keyed on the (phase, version)
    the caller read. Zero rows updated means another writer got there first;
    the caller stands down. Nothing is ever overwritten blindly.
  - A phase transition, its generated result, its audit event and any follow-up
    jobs are written in one transaction: all or nothing.
  - generated_results and session_events are append-only.
  - Driver/connection errors surface as StoreUnavailable; precondition
    misses are return values, not exceptions.
  - Logs only user_id / message_id / phase, never names, birth data or message text.
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Iterable, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fortunebot.conversation.schemas import (
    EventRecord,
    FollowupJob,
    NewFollowupJob,
    Phase,
    Profile,
    ResultRecord,
    SessionSnapshot,
)
from fortunebot.models.credit_topup import CreditTopupORM
from fortunebot.models.followup_job import FollowupJobORM
from fortunebot.models.generated_result import GeneratedResultORM
from fortunebot.models.reading_session import ReadingSessionORM
from fortunebot.models.session_event import SessionEventORM

logger = logging.getLogger(__name__)

# Jobs stuck in "sending" longer than this were abandoned by a crashed worker
JOB_STALE_AFTER = timedelta(minutes=5)


class StoreUnavailable(Exception):
    """Connection / query failure unrelated to an optimistic-update precondition."""


@dataclass
class SessionChanges:
    """
    Field changes for one conditional commit. None means "leave as is".
    credits_spent is applied relatively (credit_balance - n) so a concurrent
    top-up is never lost.
    """
    phase: Optional[Phase] = None
    profile: Optional[Profile] = None
    concern: Optional[str] = None
    input_error_count: Optional[int] = None
    credits_spent: int = 0
    session_closed: Optional[bool] = None
    last_message_id: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_snapshot(orm: ReadingSessionORM) -> SessionSnapshot:
    return SessionSnapshot(
        user_id=orm.user_id,
        phase=Phase(orm.phase),
        version=orm.version,
        profile=Profile.model_validate(orm.profile) if orm.profile else None,
        concern=orm.concern,
        credit_balance=orm.credit_balance,
        input_error_count=orm.input_error_count,
        session_closed=orm.session_closed,
        lease_expires_at=_aware(orm.lease_expires_at),
        last_message_id=orm.last_message_id,
        created_at=_aware(orm.created_at),
        updated_at=_aware(orm.updated_at),
    )


def _event_orm(user_id: str, event: EventRecord) -> SessionEventORM:
    return SessionEventORM(
        user_id=user_id,
        message_id=event.message_id,
        event_type=event.event_type,
        phase_before=event.phase_before.value if event.phase_before else None,
        phase_after=event.phase_after.value if event.phase_after else None,
        payload=event.payload,
    )


def _job_orm(user_id: str, job: NewFollowupJob) -> FollowupJobORM:
    return FollowupJobORM(
        user_id=user_id,
        kind=job.kind,
        messages=job.messages,
        required_phase=job.required_phase.value if job.required_phase else None,
        run_at=job.run_at,
        status="pending",
        attempts=0,
    )


class SessionStore:
    """
    Async persistence facade over an async_sessionmaker.

    Each public method runs in its own short transaction; none holds a
    connection across a generation call or an outbound send.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        starting_credits: int,
    ) -> None:
        self._session_factory = session_factory
        self._starting_credits = starting_credits

    @asynccontextmanager
    async def _unit_of_work(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as db:
                yield db
        except SQLAlchemyError as exc:
            logger.error("Session store failure: %s", type(exc).__name__, exc_info=True)
            raise StoreUnavailable(type(exc).__name__) from exc

    # -----------------------------------------------------------------------
    # Session reads
    # -----------------------------------------------------------------------

    async def get(self, user_id: str) -> Optional[SessionSnapshot]:
        """Return the session row for user_id, or None if the user never wrote in."""
        async with self._unit_of_work() as db:
            orm = await db.get(ReadingSessionORM, user_id)
            return _to_snapshot(orm) if orm is not None else None

    async def get_or_create(self, user_id: str) -> SessionSnapshot:
        """
        Return the session row for user_id, creating it in awaiting_profile with the
        starting credit balance on first contact.

        Two first messages racing here both end up reading the same single row:
        the loser's INSERT hits the primary key and it re-reads instead.
        """
        async with self._unit_of_work() as db:
            orm = await db.get(ReadingSessionORM, user_id)
            if orm is not None:
                return _to_snapshot(orm)

            orm = ReadingSessionORM(
                user_id=user_id,
                phase=Phase.awaiting_profile.value,
                version=0,
                credit_balance=self._starting_credits,
                input_error_count=0,
                session_closed=False,
            )
            db.add(orm)
            try:
                await db.commit()
                logger.info("Created session user_id=%s", user_id)
            except IntegrityError:
                await db.rollback()
                orm = await db.get(ReadingSessionORM, user_id)
                if orm is None:
                    raise StoreUnavailable("session row vanished after conflicting insert")
            return _to_snapshot(orm)

    # -----------------------------------------------------------------------
    # Conditional writes
    # -----------------------------------------------------------------------

    def _guarded_update(self, snapshot: SessionSnapshot):
        return update(ReadingSessionORM).where(
            ReadingSessionORM.user_id == snapshot.user_id,
            ReadingSessionORM.phase == snapshot.phase.value,
            ReadingSessionORM.version == snapshot.version,
            ReadingSessionORM.session_closed.is_(False),
        )

    async def acquire_lease(
        self,
        snapshot: SessionSnapshot,
        lease_seconds: int,
    ) -> Optional[SessionSnapshot]:
        """
        Claim the exclusive right to run a generation call for this session.

        Succeeds only if the row is still at the snapshot's (phase, version) and
        no unexpired lease exists. Returns the refreshed snapshot (version + 1),
        or None when another handler holds or has already used the state.
        """
        now = _utcnow()
        expires_at = now + timedelta(seconds=lease_seconds)
        stmt = (
            self._guarded_update(snapshot)
            .where(
                or_(
                    ReadingSessionORM.lease_expires_at.is_(None),
                    ReadingSessionORM.lease_expires_at < now,
                )
            )
            .values(
                lease_expires_at=expires_at,
                version=ReadingSessionORM.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._unit_of_work() as db:
            result = await db.execute(stmt)
            if result.rowcount != 1:
                await db.rollback()
                logger.info(
                    "Lease not acquired user_id=%s phase=%s version=%d",
                    snapshot.user_id, snapshot.phase.value, snapshot.version,
                )
                return None
            await db.commit()

        logger.info("Lease acquired user_id=%s phase=%s", snapshot.user_id, snapshot.phase.value)
        return snapshot.model_copy(
            update={"version": snapshot.version + 1, "lease_expires_at": expires_at}
        )

    async def release_lease(self, snapshot: SessionSnapshot) -> bool:
        """Drop a lease without changing phase (generation failed)."""
        now = _utcnow()
        stmt = (
            self._guarded_update(snapshot)
            .values(lease_expires_at=None, version=ReadingSessionORM.version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self._unit_of_work() as db:
            result = await db.execute(stmt)
            if result.rowcount != 1:
                await db.rollback()
                return False
            await db.commit()
        logger.info("Lease released user_id=%s phase=%s", snapshot.user_id, snapshot.phase.value)
        return True

    async def commit(
        self,
        snapshot: SessionSnapshot,
        changes: SessionChanges,
        *,
        result: Optional[ResultRecord] = None,
        event: Optional[EventRecord] = None,
        jobs: Iterable[NewFollowupJob] = (),
        lease_held: bool = False,
    ) -> bool:
        """
        Apply `changes` iff the row still matches the snapshot's (phase, version).

        When lease_held is False the update also requires that no other handler
        holds an unexpired generation lease. The generated result, audit event and
        follow-up jobs are inserted in the same transaction, so either all of them
        land together with the transition or none do.

        Returns False (and writes nothing) when the precondition no longer holds.

        Raises:
            ValueError: if changes.phase would move the session backwards.
            StoreUnavailable: on connection / query failure.
        """
        if changes.phase is not None and changes.phase.precedes(snapshot.phase):
            raise ValueError(
                f"phase cannot move backwards: {snapshot.phase.value} -> {changes.phase.value}"
            )

        now = _utcnow()
        values: dict = {
            "version": ReadingSessionORM.version + 1,
            "lease_expires_at": None,
            "updated_at": now,
        }
        if changes.phase is not None:
            values["phase"] = changes.phase.value
        if changes.profile is not None:
            values["profile"] = changes.profile.model_dump()
        if changes.concern is not None:
            values["concern"] = changes.concern
        if changes.input_error_count is not None:
            values["input_error_count"] = changes.input_error_count
        if changes.credits_spent:
            values["credit_balance"] = ReadingSessionORM.credit_balance - changes.credits_spent
        if changes.session_closed is not None:
            values["session_closed"] = changes.session_closed
        if changes.last_message_id is not None:
            values["last_message_id"] = changes.last_message_id

        stmt = self._guarded_update(snapshot)
        if not lease_held:
            stmt = stmt.where(
                or_(
                    ReadingSessionORM.lease_expires_at.is_(None),
                    ReadingSessionORM.lease_expires_at < now,
                )
            )
        if changes.credits_spent:
            stmt = stmt.where(ReadingSessionORM.credit_balance >= changes.credits_spent)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        async with self._unit_of_work() as db:
            outcome = await db.execute(stmt)
            if outcome.rowcount != 1:
                await db.rollback()
                logger.info(
                    "Conditional update lost user_id=%s expected_phase=%s expected_version=%d",
                    snapshot.user_id, snapshot.phase.value, snapshot.version,
                )
                return False

            if result is not None:
                db.add(GeneratedResultORM(
                    user_id=snapshot.user_id,
                    kind=result.kind.value,
                    prompt_inputs=result.prompt_inputs,
                    output_text=result.output_text,
                    model=result.model,
                    usage=result.usage,
                ))
            if event is not None:
                db.add(_event_orm(snapshot.user_id, event))
            for job in jobs:
                db.add(_job_orm(snapshot.user_id, job))
            await db.commit()

        logger.info(
            "Committed session user_id=%s phase=%s->%s",
            snapshot.user_id,
            snapshot.phase.value,
            (changes.phase or snapshot.phase).value,
        )
        return True

    async def add_credits(self, user_id: str, amount: int, reference: str) -> tuple[str, Optional[int]]:
        """
        Increase credit_balance by `amount` (payment top-up). Creates the session if
        the user has never written in. Closed sessions are left untouched.

        `reference` is the payment event id; a reference already applied is not
        applied again, so the payment provider may redeliver freely.

        Does not bump version: credits are independent of phase, and an in-flight
        lease holder must still be able to commit.

        Returns (status, balance) with status "applied", "duplicate" or "closed".
        """
        await self.get_or_create(user_id)
        stmt = (
            update(ReadingSessionORM)
            .where(
                ReadingSessionORM.user_id == user_id,
                ReadingSessionORM.session_closed.is_(False),
            )
            .values(credit_balance=ReadingSessionORM.credit_balance + amount)
            .execution_options(synchronize_session=False)
        )
        balance_query = select(ReadingSessionORM.credit_balance).where(ReadingSessionORM.user_id == user_id)
        async with self._unit_of_work() as db:
            # The primary key on credit_topups.reference admits one row per
            # payment event; a racing redelivery fails here and applies nothing.
            db.add(CreditTopupORM(reference=reference, user_id=user_id, amount=amount))
            try:
                await db.flush()
            except IntegrityError:
                await db.rollback()
                logger.info("Top-up already applied user_id=%s", user_id)
                return "duplicate", await db.scalar(balance_query)

            result = await db.execute(stmt)
            if result.rowcount != 1:
                await db.rollback()
                logger.warning("Top-up ignored for closed session user_id=%s", user_id)
                return "closed", None
            db.add(_event_orm(user_id, EventRecord(
                event_type="credit_topup",
                payload={"amount": amount, "reference": reference},
            )))
            await db.commit()
            balance = await db.scalar(balance_query)
        logger.info("Credits added user_id=%s amount=%d", user_id, amount)
        return "applied", balance

    # -----------------------------------------------------------------------
    # Append-only history
    # -----------------------------------------------------------------------

    async def append_event(self, user_id: str, event: EventRecord) -> None:
        async with self._unit_of_work() as db:
            db.add(_event_orm(user_id, event))
            await db.commit()

    async def enqueue_jobs(self, user_id: str, jobs: Iterable[NewFollowupJob]) -> None:
        async with self._unit_of_work() as db:
            db.add_all([_job_orm(user_id, job) for job in jobs])
            await db.commit()

    async def list_results(self, user_id: str) -> list[ResultRecord]:
        """All generated results for a user, oldest first."""
        async with self._unit_of_work() as db:
            rows = (
                await db.execute(
                    select(GeneratedResultORM)
                    .where(GeneratedResultORM.user_id == user_id)
                    .order_by(GeneratedResultORM.created_at.asc())
                )
            ).scalars().all()
        return [
            ResultRecord(
                kind=row.kind,
                prompt_inputs=row.prompt_inputs,
                output_text=row.output_text,
                model=row.model,
                usage=row.usage,
            )
            for row in rows
        ]

    async def list_events(self, user_id: str) -> list[EventRecord]:
        """Audit history for a user, oldest first."""
        async with self._unit_of_work() as db:
            rows = (
                await db.execute(
                    select(SessionEventORM)
                    .where(SessionEventORM.user_id == user_id)
                    .order_by(SessionEventORM.created_at.asc())
                )
            ).scalars().all()
        return [
            EventRecord(
                event_type=row.event_type,
                message_id=row.message_id,
                phase_before=row.phase_before,
                phase_after=row.phase_after,
                payload=row.payload,
            )
            for row in rows
        ]

    # -----------------------------------------------------------------------
    # Follow-up jobs
    # -----------------------------------------------------------------------

    async def claim_due_jobs(self, limit: int, now: Optional[datetime] = None) -> list[FollowupJob]:
        """
        Move up to `limit` due jobs from pending to sending and return them.

        Each claim is its own conditional UPDATE, so two workers never send the
        same job. Jobs left in "sending" by a crashed worker become claimable
        again after JOB_STALE_AFTER.
        """
        now = now or _utcnow()
        stale_before = now - JOB_STALE_AFTER
        due = or_(
            (FollowupJobORM.status == "pending") & (FollowupJobORM.run_at <= now),
            (FollowupJobORM.status == "sending") & (FollowupJobORM.updated_at < stale_before),
        )
        claimed: list[FollowupJob] = []
        async with self._unit_of_work() as db:
            candidates = (
                await db.execute(
                    select(FollowupJobORM).where(due).order_by(FollowupJobORM.run_at.asc()).limit(limit)
                )
            ).scalars().all()

            for row in candidates:
                result = await db.execute(
                    update(FollowupJobORM)
                    .where(
                        FollowupJobORM.id == row.id,
                        FollowupJobORM.status == row.status,
                        FollowupJobORM.attempts == row.attempts,
                    )
                    .values(status="sending", attempts=FollowupJobORM.attempts + 1, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed.append(FollowupJob(
                        id=row.id,
                        user_id=row.user_id,
                        kind=row.kind,
                        messages=row.messages,
                        run_at=_aware(row.run_at),
                        required_phase=row.required_phase,
                        attempts=row.attempts + 1,
                    ))
            await db.commit()
        return claimed

    async def finish_job(
        self,
        job_id: str,
        status: str,
        *,
        error: Optional[str] = None,
        retry_at: Optional[datetime] = None,
    ) -> None:
        """Record the outcome of a claimed job: sent | skipped | failed, or pending again with retry_at."""
        values: dict = {"status": status, "last_error": error, "updated_at": _utcnow()}
        if retry_at is not None:
            values["run_at"] = retry_at
        async with self._unit_of_work() as db:
            await db.execute(
                update(FollowupJobORM)
                .where(FollowupJobORM.id == job_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        logger.info("Follow-up job job_id=%s status=%s", job_id, status)
