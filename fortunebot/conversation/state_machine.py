"""
state_machine.py — Session State Machine (the conversation core).

Phases run along one fixed path and never move backwards:

    awaiting_profile -> profile_complete -> awaiting_concern -> offer_shown -> closed

| Phase            | Input                                   | Action                                   | Next             |
|------------------|-----------------------------------------|------------------------------------------|------------------|
| awaiting_profile | all required fields                     | profile reading + unlock quick reply     | profile_complete |
| awaiting_profile | markers present, fields missing, < cap  | itemised guidance, error count + 1       | awaiting_profile |
| awaiting_profile | markers present, fields missing, >= cap | nothing                                  | awaiting_profile |
| awaiting_profile | no markers                              | nothing                                  | awaiting_profile |
| profile_complete | exact unlock trigger                    | ask for a concern                        | awaiting_concern |
| awaiting_concern | non-empty text                          | bonus reading + closing quick reply      | offer_shown      |
| offer_shown      | exact closing trigger                   | closing / share message                  | closed           |
| closed           | anything                                | nothing                                  | closed           |

Per inbound event: at most one state mutation, one generation call and one
outbound send. Every mutation is a conditional update on the (phase, version)
read at the start; a handler that loses the race stands down silently.
Generation runs under a lease so two racing handlers never both call the backend.

The machine receives all collaborators through its constructor (store,
generation client, responder, guards, settings). There are no module-level clients.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from fortunebot.cache import IdempotencyGuard, RateLimiter
from fortunebot.config import Settings
from fortunebot.conversation import messages
from fortunebot.conversation.extractor import extract_fields, find_problems, has_any_marker
from fortunebot.conversation.generation import GenerationClient
from fortunebot.conversation.prompts import build_prompt
from fortunebot.conversation.schemas import (
    EventRecord,
    GenerationFailure,
    NewFollowupJob,
    Outcome,
    OutboundAction,
    Phase,
    Profile,
    ReadingKind,
    ResultRecord,
    SessionSnapshot,
    TextMessage,
)
from fortunebot.line.client import DeliveryError
from fortunebot.store import SessionChanges, SessionStore, StoreUnavailable

logger = logging.getLogger(__name__)

# Delay before a failed send is retried by the follow-up worker
REDELIVERY_DELAY = timedelta(seconds=30)


class Responder(Protocol):
    async def send(self, user_id: str, reply_token: Optional[str], messages: list[TextMessage]) -> None: ...

    async def show_activity(self, user_id: str) -> None: ...


@dataclass(frozen=True)
class Inbound:
    user_id: str
    text: str
    message_id: str
    reply_token: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationMachine:
    def __init__(
        self,
        store: SessionStore,
        generator: GenerationClient,
        responder: Responder,
        idempotency: IdempotencyGuard,
        rate_limiter: RateLimiter,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._generator = generator
        self._responder = responder
        self._idempotency = idempotency
        self._rate_limiter = rate_limiter
        self._settings = settings
        self._clock = clock
        self._handlers = {
            Phase.awaiting_profile: self._on_awaiting_profile,
            Phase.profile_complete: self._on_profile_complete,
            Phase.awaiting_concern: self._on_awaiting_concern,
            Phase.offer_shown: self._on_offer_shown,
        }

    # -----------------------------------------------------------------------
    # Entry points
    # -----------------------------------------------------------------------

    async def handle_inbound_message(
        self,
        user_id: str,
        raw_text: str,
        message_id: str,
        reply_token: Optional[str] = None,
    ) -> OutboundAction:
        """
        Handle one inbound text message for one user.

        Never raises for storage, generation or delivery trouble: those become a
        user-facing message (system error / apology) or a silent no-op.
        """
        if not await self._idempotency.claim(f"{user_id}:{message_id}"):
            logger.debug("Duplicate delivery dropped user_id=%s message_id=%s", user_id, message_id)
            return OutboundAction.silent(Outcome.duplicate)

        if not await self._rate_limiter.allow(user_id):
            logger.warning("Rate limit exceeded user_id=%s message_id=%s", user_id, message_id)
            return OutboundAction.silent(Outcome.rate_limited)

        inbound = Inbound(user_id=user_id, text=raw_text or "", message_id=message_id, reply_token=reply_token)

        try:
            snapshot = await self._store.get_or_create(user_id)
        except StoreUnavailable:
            return await self._send(inbound, Outcome.system_error, [messages.system_error_message()], None)

        if snapshot.last_message_id == message_id:
            # Redelivery that outlived the idempotency guard (restart / TTL)
            logger.debug("Duplicate delivery dropped user_id=%s message_id=%s", user_id, message_id)
            return OutboundAction.silent(Outcome.duplicate, snapshot.phase)

        try:
            action = await self._dispatch(snapshot, inbound)
        except StoreUnavailable:
            action = await self._send(inbound, Outcome.system_error, [messages.system_error_message()], snapshot.phase)

        logger.info(
            "Handled message user_id=%s message_id=%s outcome=%s phase=%s->%s delivered=%s",
            user_id, message_id, action.outcome.value, snapshot.phase.value,
            action.phase.value if action.phase else None, action.delivered,
        )
        return action

    async def handle_follow(self, user_id: str, event_id: str, reply_token: Optional[str]) -> OutboundAction:
        """User added the account as a friend: show the input template. No state change."""
        if not await self._idempotency.claim(f"follow:{event_id}"):
            return OutboundAction.silent(Outcome.duplicate)
        inbound = Inbound(user_id=user_id, text="", message_id=event_id, reply_token=reply_token)
        return await self._send(inbound, Outcome.guidance, [messages.welcome_message()], None)

    # -----------------------------------------------------------------------
    # Dispatch
    # -----------------------------------------------------------------------

    def _lease_active(self, snapshot: SessionSnapshot) -> bool:
        return snapshot.lease_expires_at is not None and snapshot.lease_expires_at > self._clock()

    async def _dispatch(self, snapshot: SessionSnapshot, inbound: Inbound) -> OutboundAction:
        if snapshot.session_closed or snapshot.phase is Phase.closed:
            await self._record(snapshot, inbound, Outcome.ignored)
            return OutboundAction.silent(Outcome.ignored, Phase.closed)

        if self._lease_active(snapshot):
            # Another delivery for this user is mid-generation
            await self._record(snapshot, inbound, Outcome.conflict, {"reason": "lease_active"})
            return OutboundAction.silent(Outcome.conflict, snapshot.phase)

        return await self._handlers[snapshot.phase](snapshot, inbound)

    async def _on_awaiting_profile(self, snapshot: SessionSnapshot, inbound: Inbound) -> OutboundAction:
        if not has_any_marker(inbound.text):
            await self._record(snapshot, inbound, Outcome.ignored, {"reason": "no_marker"})
            return OutboundAction.silent(Outcome.ignored, snapshot.phase)

        fields = extract_fields(inbound.text)
        problems = find_problems(fields)

        if problems:
            if snapshot.input_error_count >= self._settings.max_input_errors:
                await self._record(snapshot, inbound, Outcome.ignored, {"reason": "error_cap"})
                return OutboundAction.silent(Outcome.ignored, snapshot.phase)

            committed = await self._store.commit(
                snapshot,
                SessionChanges(
                    input_error_count=snapshot.input_error_count + 1,
                    last_message_id=inbound.message_id,
                ),
                event=self._event(snapshot, inbound, Outcome.guidance, snapshot.phase, {"problems": problems}),
            )
            if not committed:
                return OutboundAction.silent(Outcome.conflict, snapshot.phase)
            return await self._send(inbound, Outcome.guidance, [messages.guidance_message(problems)], snapshot.phase)

        profile = Profile(
            name=fields.name,
            birthdate=fields.birthdate,
            gender=fields.gender,
            birthtime=fields.birthtime,
            mbti=fields.mbti,
        )
        jobs = []
        if self._settings.followup_delay_seconds > 0:
            jobs.append(NewFollowupJob(
                kind="reminder",
                messages=[messages.reminder_message(self._settings).model_dump()],
                run_at=self._clock() + timedelta(seconds=self._settings.followup_delay_seconds),
                required_phase=Phase.profile_complete,
            ))
        return await self._run_reading(
            snapshot,
            inbound,
            kind=ReadingKind.profile,
            profile=profile,
            concern=None,
            next_phase=Phase.profile_complete,
            outcome=Outcome.profile_reading,
            jobs=jobs,
        )

    async def _on_profile_complete(self, snapshot: SessionSnapshot, inbound: Inbound) -> OutboundAction:
        if inbound.text.strip() != self._settings.unlock_trigger:
            await self._record(snapshot, inbound, Outcome.ignored, {"reason": "not_trigger"})
            return OutboundAction.silent(Outcome.ignored, snapshot.phase)

        committed = await self._store.commit(
            snapshot,
            SessionChanges(phase=Phase.awaiting_concern, last_message_id=inbound.message_id),
            event=self._event(snapshot, inbound, Outcome.concern_prompt, Phase.awaiting_concern),
        )
        if not committed:
            return OutboundAction.silent(Outcome.conflict, snapshot.phase)
        return await self._send(
            inbound, Outcome.concern_prompt, [messages.concern_prompt_message()], Phase.awaiting_concern
        )

    async def _on_awaiting_concern(self, snapshot: SessionSnapshot, inbound: Inbound) -> OutboundAction:
        concern = inbound.text.strip()
        # A repeated tap on the unlock button is not a concern
        if not concern or concern == self._settings.unlock_trigger:
            await self._record(snapshot, inbound, Outcome.ignored, {"reason": "no_concern"})
            return OutboundAction.silent(Outcome.ignored, snapshot.phase)

        if snapshot.profile is None:
            logger.error("Session without profile in awaiting_concern user_id=%s", snapshot.user_id)
            await self._record(snapshot, inbound, Outcome.ignored, {"reason": "missing_profile"})
            return OutboundAction.silent(Outcome.ignored, snapshot.phase)

        return await self._run_reading(
            snapshot,
            inbound,
            kind=ReadingKind.bonus,
            profile=snapshot.profile,
            concern=concern[: self._settings.max_concern_chars],
            next_phase=Phase.offer_shown,
            outcome=Outcome.bonus_reading,
            jobs=[],
        )

    async def _on_offer_shown(self, snapshot: SessionSnapshot, inbound: Inbound) -> OutboundAction:
        if inbound.text.strip() != self._settings.closing_trigger:
            await self._record(snapshot, inbound, Outcome.ignored, {"reason": "not_trigger"})
            return OutboundAction.silent(Outcome.ignored, snapshot.phase)

        committed = await self._store.commit(
            snapshot,
            SessionChanges(phase=Phase.closed, session_closed=True, last_message_id=inbound.message_id),
            event=self._event(snapshot, inbound, Outcome.closing, Phase.closed),
        )
        if not committed:
            return OutboundAction.silent(Outcome.conflict, snapshot.phase)
        return await self._send(inbound, Outcome.closing, [messages.closing_message(self._settings)], Phase.closed)

    # -----------------------------------------------------------------------
    # Generation step (shared by both readings)
    # -----------------------------------------------------------------------

    async def _run_reading(
        self,
        snapshot: SessionSnapshot,
        inbound: Inbound,
        *,
        kind: ReadingKind,
        profile: Profile,
        concern: Optional[str],
        next_phase: Phase,
        outcome: Outcome,
        jobs: list[NewFollowupJob],
    ) -> OutboundAction:
        if snapshot.credit_balance < 1:
            await self._record(snapshot, inbound, Outcome.out_of_credits)
            return await self._send(
                inbound,
                Outcome.out_of_credits,
                [messages.out_of_credits_message(self._settings, snapshot.user_id)],
                snapshot.phase,
            )

        request = build_prompt(kind, profile, concern)

        leased = await self._store.acquire_lease(snapshot, self._settings.generation_lease_seconds)
        if leased is None:
            await self._record(snapshot, inbound, Outcome.conflict, {"reason": "lease_lost"})
            return OutboundAction.silent(Outcome.conflict, snapshot.phase)

        try:
            await self._responder.show_activity(snapshot.user_id)
            result = await self._generator.generate(request)
            committed = False
            if not isinstance(result, GenerationFailure):
                reply = self._reading_message(kind, result.text)
                committed = await self._store.commit(
                    leased,
                    self._reading_changes(kind, inbound, next_phase, profile, concern),
                    result=ResultRecord(
                        kind=kind,
                        prompt_inputs=request.inputs,
                        output_text=result.text,
                        model=result.model,
                        usage=result.usage,
                    ),
                    event=self._event(snapshot, inbound, outcome, next_phase, {"attempts": result.attempts}),
                    jobs=jobs,
                    lease_held=True,
                )
        except StoreUnavailable:
            await self._release(leased)
            raise
        except Exception as exc:
            logger.error(
                "Reading step failed user_id=%s kind=%s error=%s",
                snapshot.user_id, kind.value, type(exc).__name__, exc_info=True,
            )
            await self._release(leased)
            await self._record(leased, inbound, Outcome.apology, {"reason": "internal_error"})
            return await self._send(inbound, Outcome.apology, [messages.apology_message()], snapshot.phase)

        if isinstance(result, GenerationFailure):
            await self._release(leased)
            await self._record(
                leased, inbound, Outcome.apology, {"reason": result.reason, "attempts": result.attempts}
            )
            return await self._send(inbound, Outcome.apology, [messages.apology_message()], snapshot.phase)

        if not committed:
            # Lease expired and another handler moved the session on
            await self._record(snapshot, inbound, Outcome.conflict, {"reason": "commit_lost"})
            return OutboundAction.silent(Outcome.conflict, snapshot.phase)

        return await self._send(inbound, outcome, [reply], next_phase, redeliver=True)

    def _reading_message(self, kind: ReadingKind, text: str) -> TextMessage:
        if kind is ReadingKind.profile:
            return messages.profile_reading_message(text, self._settings)
        return messages.bonus_reading_message(text, self._settings)

    @staticmethod
    def _reading_changes(
        kind: ReadingKind,
        inbound: Inbound,
        next_phase: Phase,
        profile: Profile,
        concern: Optional[str],
    ) -> SessionChanges:
        if kind is ReadingKind.profile:
            return SessionChanges(
                phase=next_phase,
                profile=profile,
                input_error_count=0,
                credits_spent=1,
                last_message_id=inbound.message_id,
            )
        return SessionChanges(
            phase=next_phase,
            concern=concern,
            credits_spent=1,
            last_message_id=inbound.message_id,
        )

    async def _release(self, leased: SessionSnapshot) -> None:
        """Give the lease back so the next message is handled at once. An unreachable store leaves it to expire."""
        try:
            released = await self._store.release_lease(leased)
        except StoreUnavailable:
            logger.warning("Lease release failed, left to expire user_id=%s", leased.user_id)
            return
        if not released:
            logger.warning("Lease already gone on release user_id=%s", leased.user_id)

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    @staticmethod
    def _event(
        snapshot: SessionSnapshot,
        inbound: Inbound,
        outcome: Outcome,
        phase_after: Phase,
        payload: Optional[dict] = None,
    ) -> EventRecord:
        return EventRecord(
            event_type=outcome.value,
            message_id=inbound.message_id,
            phase_before=snapshot.phase,
            phase_after=phase_after,
            payload=payload or {},
        )

    async def _record(
        self,
        snapshot: SessionSnapshot,
        inbound: Inbound,
        outcome: Outcome,
        payload: Optional[dict] = None,
    ) -> None:
        """Append a history row for an event that changed nothing. History loss is logged, not raised."""
        try:
            await self._store.append_event(
                snapshot.user_id,
                self._event(snapshot, inbound, outcome, snapshot.phase, payload),
            )
        except StoreUnavailable:
            logger.warning("History append failed user_id=%s outcome=%s", snapshot.user_id, outcome.value)

    async def _send(
        self,
        inbound: Inbound,
        outcome: Outcome,
        outgoing: list[TextMessage],
        phase: Optional[Phase],
        *,
        redeliver: bool = False,
    ) -> OutboundAction:
        """
        Send `outgoing` to the user. With redeliver=True (content already committed and
        paid for) a failed send is handed to the follow-up worker instead of being lost.
        """
        try:
            await self._responder.send(inbound.user_id, inbound.reply_token, outgoing)
            delivered = True
        except DeliveryError as exc:
            delivered = False
            logger.error(
                "Delivery failed user_id=%s outcome=%s status=%s",
                inbound.user_id, outcome.value, exc.status_code,
            )
            if redeliver:
                try:
                    await self._store.enqueue_jobs(inbound.user_id, [NewFollowupJob(
                        kind="redelivery",
                        messages=[m.model_dump() for m in outgoing],
                        run_at=self._clock() + REDELIVERY_DELAY,
                    )])
                except StoreUnavailable:
                    logger.error("Redelivery not scheduled user_id=%s outcome=%s", inbound.user_id, outcome.value)
        return OutboundAction(outcome=outcome, messages=outgoing, phase=phase, delivered=delivered)
