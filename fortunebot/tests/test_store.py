"""
Session Store tests — conditional updates, leases, credits and follow-up jobs.

Runs against a throwaway aiosqlite database (conftest.session_factory).
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from fortunebot.conversation.schemas import EventRecord, NewFollowupJob, Phase, Profile
from fortunebot.store import SessionChanges, SessionStore

PROFILE = Profile(name="田中花子", birthdate="1990/01/01", gender="女性")


@pytest.mark.asyncio
async def test_get_or_create_creates_once(store: SessionStore) -> None:
    assert await store.get("U1") is None

    first = await store.get_or_create("U1")
    second = await store.get_or_create("U1")

    assert first.phase is Phase.awaiting_profile
    assert first.version == 0
    assert first.credit_balance == 2
    assert first.session_closed is False
    assert second.version == first.version


@pytest.mark.asyncio
async def test_concurrent_first_contact_yields_one_row(store: SessionStore) -> None:
    snapshots = await asyncio.gather(*(store.get_or_create("U1") for _ in range(5)))
    assert {s.user_id for s in snapshots} == {"U1"}
    assert {s.version for s in snapshots} == {0}


@pytest.mark.asyncio
async def test_commit_applies_changes_and_bumps_version(store: SessionStore) -> None:
    snapshot = await store.get_or_create("U1")

    ok = await store.commit(
        snapshot,
        SessionChanges(phase=Phase.profile_complete, profile=PROFILE, credits_spent=1, last_message_id="m1"),
        event=EventRecord(event_type="profile_reading", message_id="m1",
                          phase_before=Phase.awaiting_profile, phase_after=Phase.profile_complete),
    )

    assert ok is True
    after = await store.get("U1")
    assert after.phase is Phase.profile_complete
    assert after.version == snapshot.version + 1
    assert after.profile == PROFILE
    assert after.credit_balance == 1
    assert after.last_message_id == "m1"
    events = await store.list_events("U1")
    assert [e.event_type for e in events] == ["profile_reading"]


@pytest.mark.asyncio
async def test_commit_with_stale_snapshot_is_a_noop(store: SessionStore) -> None:
    snapshot = await store.get_or_create("U1")
    assert await store.commit(snapshot, SessionChanges(input_error_count=1)) is True

    # Same (phase, version) read again: precondition no longer holds
    lost = await store.commit(
        snapshot,
        SessionChanges(phase=Phase.profile_complete),
        event=EventRecord(event_type="profile_reading"),
    )

    assert lost is False
    after = await store.get("U1")
    assert after.phase is Phase.awaiting_profile
    assert after.input_error_count == 1
    assert await store.list_events("U1") == []


@pytest.mark.asyncio
async def test_commit_refuses_backwards_phase(store: SessionStore) -> None:
    snapshot = await store.get_or_create("U1")
    await store.commit(snapshot, SessionChanges(phase=Phase.offer_shown))
    advanced = await store.get("U1")

    with pytest.raises(ValueError):
        await store.commit(advanced, SessionChanges(phase=Phase.awaiting_profile))


@pytest.mark.asyncio
async def test_commit_requires_enough_credits(store: SessionStore) -> None:
    snapshot = await store.get_or_create("U1")
    assert await store.commit(snapshot, SessionChanges(credits_spent=3)) is False
    assert (await store.get("U1")).credit_balance == 2


@pytest.mark.asyncio
async def test_closed_session_rejects_commits(store: SessionStore) -> None:
    snapshot = await store.get_or_create("U1")
    await store.commit(snapshot, SessionChanges(phase=Phase.closed, session_closed=True))
    closed = await store.get("U1")

    assert await store.commit(closed, SessionChanges(input_error_count=5)) is False
    assert await store.acquire_lease(closed, 60) is None


@pytest.mark.asyncio
async def test_lease_is_exclusive(store: SessionStore) -> None:
    snapshot = await store.get_or_create("U1")

    leased = await store.acquire_lease(snapshot, 60)
    assert leased is not None
    assert leased.version == snapshot.version + 1
    assert leased.lease_expires_at is not None

    # A second handler holding the same (or the refreshed) snapshot cannot take it
    assert await store.acquire_lease(snapshot, 60) is None
    assert await store.acquire_lease(leased, 60) is None
    # Nor can it commit around the lease
    assert await store.commit(leased, SessionChanges(input_error_count=1)) is False

    # The holder commits and the lease is cleared
    assert await store.commit(leased, SessionChanges(phase=Phase.profile_complete), lease_held=True) is True
    after = await store.get("U1")
    assert after.lease_expires_at is None
    assert after.phase is Phase.profile_complete


@pytest.mark.asyncio
async def test_release_lease(store: SessionStore) -> None:
    snapshot = await store.get_or_create("U1")
    leased = await store.acquire_lease(snapshot, 60)

    assert await store.release_lease(leased) is True
    after = await store.get("U1")
    assert after.lease_expires_at is None
    assert after.phase is Phase.awaiting_profile
    assert await store.acquire_lease(after, 60) is not None


@pytest.mark.asyncio
async def test_expired_lease_can_be_taken_over(store: SessionStore) -> None:
    snapshot = await store.get_or_create("U1")
    stale = await store.acquire_lease(snapshot, -1)
    assert stale is not None

    current = await store.get("U1")
    assert await store.acquire_lease(current, 60) is not None
    # The original holder's commit now loses
    assert await store.commit(stale, SessionChanges(phase=Phase.profile_complete), lease_held=True) is False


@pytest.mark.asyncio
async def test_add_credits_is_idempotent_per_reference(store: SessionStore) -> None:
    status, balance = await store.add_credits("U1", 3, reference="evt_1")
    assert (status, balance) == ("applied", 5)

    status, balance = await store.add_credits("U1", 3, reference="evt_1")
    assert (status, balance) == ("duplicate", 5)

    status, balance = await store.add_credits("U1", 1, reference="evt_2")
    assert (status, balance) == ("applied", 6)

    topups = [e for e in await store.list_events("U1") if e.event_type == "credit_topup"]
    assert [e.payload["reference"] for e in topups] == ["evt_1", "evt_2"]


@pytest.mark.asyncio
async def test_concurrent_deliveries_of_one_payment_apply_once(store: SessionStore) -> None:
    await store.get_or_create("U1")

    outcomes = await asyncio.gather(*(store.add_credits("U1", 1, reference="evt_same") for _ in range(5)))

    assert sorted(status for status, _ in outcomes) == ["applied"] + ["duplicate"] * 4
    assert (await store.get("U1")).credit_balance == 3
    topups = [e for e in await store.list_events("U1") if e.event_type == "credit_topup"]
    assert len(topups) == 1


@pytest.mark.asyncio
async def test_add_credits_does_not_disturb_version(store: SessionStore) -> None:
    snapshot = await store.get_or_create("U1")
    await store.add_credits("U1", 1, reference="evt_1")
    assert await store.commit(snapshot, SessionChanges(credits_spent=1)) is True
    assert (await store.get("U1")).credit_balance == 2


@pytest.mark.asyncio
async def test_add_credits_ignores_closed_sessions(store: SessionStore) -> None:
    snapshot = await store.get_or_create("U1")
    await store.commit(snapshot, SessionChanges(phase=Phase.closed, session_closed=True))

    status, balance = await store.add_credits("U1", 3, reference="evt_1")

    assert (status, balance) == ("closed", None)
    assert (await store.get("U1")).credit_balance == 2


@pytest.mark.asyncio
async def test_claim_due_jobs_claims_each_job_once(store: SessionStore) -> None:
    now = datetime.now(timezone.utc)
    await store.get_or_create("U1")
    await store.enqueue_jobs("U1", [
        NewFollowupJob(kind="reminder", messages=[{"text": "due"}], run_at=now - timedelta(seconds=1),
                       required_phase=Phase.profile_complete),
        NewFollowupJob(kind="redelivery", messages=[{"text": "later"}], run_at=now + timedelta(hours=1)),
    ])

    claimed = await store.claim_due_jobs(10, now=now)
    assert [j.kind for j in claimed] == ["reminder"]
    assert claimed[0].attempts == 1
    assert claimed[0].required_phase is Phase.profile_complete
    assert claimed[0].messages == [{"text": "due"}]

    await store.finish_job(claimed[0].id, "sent")
    assert await store.claim_due_jobs(10, now=now) == []

    later = await store.claim_due_jobs(10, now=now + timedelta(hours=2))
    assert [j.kind for j in later] == ["redelivery"]


@pytest.mark.asyncio
async def test_finish_job_reschedules_and_finalises(store: SessionStore) -> None:
    now = datetime.now(timezone.utc)
    await store.enqueue_jobs("U1", [NewFollowupJob(kind="redelivery", messages=[], run_at=now)])
    (job,) = await store.claim_due_jobs(10, now=now)

    await store.finish_job(job.id, "pending", error="status=500", retry_at=now + timedelta(minutes=1))
    assert await store.claim_due_jobs(10, now=now) == []
    (retried,) = await store.claim_due_jobs(10, now=now + timedelta(minutes=2))
    assert retried.id == job.id
    assert retried.attempts == 2

    await store.finish_job(job.id, "sent")
    assert await store.claim_due_jobs(10, now=now + timedelta(days=1)) == []
