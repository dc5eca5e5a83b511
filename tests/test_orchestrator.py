"""Credit spend, guest claim, worker callbacks and refund compensation."""

import asyncio
from datetime import datetime, timedelta

import pytest
from beanie.operators import Set

from app.core.exceptions import (
    AlreadyClaimedError,
    ExpiredError,
    ForbiddenError,
    InsufficientBalanceError,
    InvalidStateError,
    NotFoundError,
)
from app.models.analysis_session import AnalysisResults, AnalysisSession, SessionStatus
from app.models.credit_ledger import LedgerEntry, LedgerReason
from app.services import credits, orchestrator
from app.services.session_machine import SessionEvent
from app.services.sweep import sweep_sessions


async def _entries(session_id, reason):
    return await LedgerEntry.find(
        LedgerEntry.analysis_session_id == session_id,
        LedgerEntry.reason == reason,
    ).to_list()


async def test_spend_credit_debits_and_dispatches(make_user, make_session, queue):
    user = await make_user(balance=3)
    s = await make_session(owner=user)
    analysis = await orchestrator.spend_credit(user.id, str(s.id))
    assert analysis.status == SessionStatus.PAID
    assert await credits.get_balance(user.id) == 2
    consumed = await _entries(s.id, LedgerReason.CONSUME_ANALYSIS)
    assert len(consumed) == 1
    assert consumed[0].delta == -1
    assert analysis.consume_entry_id == consumed[0].id
    assert queue.enqueued == [str(s.id)]


async def test_spend_with_zero_balance_leaves_everything_unchanged(make_user, make_session, queue):
    user = await make_user()
    s = await make_session(owner=user)
    with pytest.raises(InsufficientBalanceError):
        await orchestrator.spend_credit(user.id, str(s.id))
    fresh = await AnalysisSession.get(s.id)
    assert fresh.status == SessionStatus.PENDING
    assert await LedgerEntry.find(LedgerEntry.user_id == user.id).count() == 0
    assert queue.enqueued == []


async def test_concurrent_spends_on_last_credit(make_user, make_session):
    user = await make_user(balance=1)
    sessions = [await make_session(owner=user) for _ in range(3)]
    results = await asyncio.gather(
        *[orchestrator.spend_credit(user.id, str(s.id)) for s in sessions],
        return_exceptions=True,
    )
    ok = [r for r in results if isinstance(r, AnalysisSession)]
    assert len(ok) == 1
    assert sum(isinstance(r, InsufficientBalanceError) for r in results) == 2
    assert await credits.get_balance(user.id) == 0
    statuses = sorted([(await AnalysisSession.get(s.id)).status.value for s in sessions])
    assert statuses == ["paid", "pending", "pending"]
    assert (await credits.check_consistency(user.id))["consistent"]


async def test_double_spend_on_same_session_consumes_once(make_user, make_session):
    user = await make_user(balance=5)
    s = await make_session(owner=user)
    results = await asyncio.gather(
        orchestrator.spend_credit(user.id, str(s.id)),
        orchestrator.spend_credit(user.id, str(s.id)),
        return_exceptions=True,
    )
    assert sum(isinstance(r, AnalysisSession) for r in results) == 1
    assert sum(isinstance(r, InvalidStateError) for r in results) == 1
    assert len(await _entries(s.id, LedgerReason.CONSUME_ANALYSIS)) == 1
    assert await credits.get_balance(user.id) == 4


async def test_spend_requires_ownership(make_user, make_session):
    owner = await make_user(balance=2)
    other = await make_user(balance=2)
    s = await make_session(owner=owner)
    with pytest.raises(ForbiddenError):
        await orchestrator.spend_credit(other.id, str(s.id))
    guest = await make_session()
    with pytest.raises(ForbiddenError):
        await orchestrator.spend_credit(owner.id, str(guest.id))
    assert await credits.get_balance(other.id) == 2


async def test_spend_on_paid_session_is_invalid_state(make_user, make_session):
    user = await make_user(balance=2)
    s = await make_session(owner=user)
    await orchestrator.spend_credit(user.id, str(s.id))
    with pytest.raises(InvalidStateError):
        await orchestrator.spend_credit(user.id, str(s.id))
    assert await credits.get_balance(user.id) == 1


async def test_spend_unknown_session(make_user):
    user = await make_user(balance=1)
    with pytest.raises(NotFoundError):
        await orchestrator.spend_credit(user.id, "not-an-id")


async def test_dispatch_failure_keeps_session_paid(make_user, make_session, queue):
    queue.fail = True
    user = await make_user(balance=1)
    s = await make_session(owner=user)
    analysis = await orchestrator.spend_credit(user.id, str(s.id))
    assert analysis.status == SessionStatus.PAID
    assert (await AnalysisSession.get(s.id)).status == SessionStatus.PAID
    assert await credits.get_balance(user.id) == 0


async def test_storage_error_during_debit_rolls_spend_back(make_user, make_session, queue, monkeypatch):
    user = await make_user(balance=1)
    s = await make_session(owner=user)

    async def broken_insert(self, *args, **kwargs):
        raise ConnectionError("mongo went away")

    monkeypatch.setattr(LedgerEntry, "insert", broken_insert)
    with pytest.raises(ConnectionError):
        await orchestrator.spend_credit(user.id, str(s.id))

    fresh = await AnalysisSession.get(s.id)
    assert fresh.status == SessionStatus.PENDING
    assert fresh.paid_at is None
    assert fresh.consume_entry_id is None
    assert await credits.get_balance(user.id) == 1
    assert (await credits.check_consistency(user.id))["consistent"]
    assert queue.enqueued == []

    summary = await sweep_sessions(now=datetime.utcnow() + timedelta(hours=1))
    assert summary["redispatched"] == 0
    assert queue.enqueued == []


async def test_claim_guest_result(make_user, make_session):
    user = await make_user()
    s = await make_session()
    assert s.guest_token and s.expires_at
    claimed = await orchestrator.claim_guest_result(user.id, s.guest_token)
    assert claimed.owner_user_id == user.id
    assert claimed.expires_at is None
    assert claimed.claimed_at is not None
    assert claimed.status == SessionStatus.PENDING


async def test_claim_already_claimed(make_user, make_session):
    first = await make_user()
    second = await make_user()
    s = await make_session()
    await orchestrator.claim_guest_result(first.id, s.guest_token)
    with pytest.raises(AlreadyClaimedError):
        await orchestrator.claim_guest_result(second.id, s.guest_token)
    assert (await AnalysisSession.get(s.id)).owner_user_id == first.id


async def test_claim_expired(make_user, make_session):
    user = await make_user()
    s = await make_session()
    await AnalysisSession.find_one(AnalysisSession.id == s.id).update(
        Set({"expires_at": datetime.utcnow() - timedelta(minutes=1)})
    )
    with pytest.raises(ExpiredError):
        await orchestrator.claim_guest_result(user.id, s.guest_token)


async def test_claim_unknown_token(make_user):
    user = await make_user()
    with pytest.raises(NotFoundError):
        await orchestrator.claim_guest_result(user.id, "no-such-token")


async def test_concurrent_claims_single_winner(make_user, make_session):
    a = await make_user()
    b = await make_user()
    s = await make_session()
    results = await asyncio.gather(
        orchestrator.claim_guest_result(a.id, s.guest_token),
        orchestrator.claim_guest_result(b.id, s.guest_token),
        return_exceptions=True,
    )
    assert sum(isinstance(r, AnalysisSession) for r in results) == 1
    assert sum(isinstance(r, AlreadyClaimedError) for r in results) == 1


async def test_worker_lifecycle_to_complete(make_user, make_session):
    user = await make_user(balance=1)
    s = await make_session(owner=user)
    await orchestrator.spend_credit(user.id, str(s.id))
    started = await orchestrator.start_processing(str(s.id))
    assert started.status == SessionStatus.PROCESSING
    assert started.processing_started_at is not None
    done = await orchestrator.complete_session(str(s.id), AnalysisResults(looks=[{"name": "Evening glow"}]))
    assert done.status == SessionStatus.COMPLETE
    assert done.results.looks[0]["name"] == "Evening glow"
    assert done.completed_at is not None
    # duplicate delivery of the job after completion
    assert await orchestrator.start_processing(str(s.id)) is None


async def test_start_processing_rejects_unpaid(make_session):
    s = await make_session()
    with pytest.raises(InvalidStateError):
        await orchestrator.start_processing(str(s.id))


async def test_failure_refunds_spent_credit_once(make_user, make_session):
    user = await make_user(balance=1)
    s = await make_session(owner=user)
    await orchestrator.spend_credit(user.id, str(s.id))
    await orchestrator.start_processing(str(s.id))
    failed = await orchestrator.fail_session(str(s.id), "pipeline exploded")
    assert failed.status == SessionStatus.FAILED
    assert failed.failure_reason == "pipeline exploded"
    assert await credits.get_balance(user.id) == 1
    refunds = await _entries(s.id, LedgerReason.REFUND)
    assert len(refunds) == 1
    assert failed.refund_entry_id == refunds[0].id

    await orchestrator.fail_session(str(s.id), "reported again")
    await orchestrator.fail_session(str(s.id), "timed out", event=SessionEvent.TIMED_OUT)
    assert len(await _entries(s.id, LedgerReason.REFUND)) == 1
    assert await credits.get_balance(user.id) == 1


async def test_failure_of_card_paid_guest_session_has_nothing_to_refund(make_session):
    s = await make_session()
    await orchestrator.confirm_payment(s.id, "cs_guest", 45000, "HUF")
    await orchestrator.start_processing(str(s.id))
    failed = await orchestrator.fail_session(str(s.id), "no face detected")
    assert failed.status == SessionStatus.FAILED
    assert failed.refund_entry_id is None
    assert await LedgerEntry.find_all().count() == 0


async def test_late_completion_after_timeout_is_dropped(make_user, make_session):
    user = await make_user(balance=1)
    s = await make_session(owner=user)
    await orchestrator.spend_credit(user.id, str(s.id))
    await orchestrator.start_processing(str(s.id))
    await orchestrator.fail_session(str(s.id), "timed out", event=SessionEvent.TIMED_OUT)
    late = await orchestrator.complete_session(str(s.id), AnalysisResults())
    assert late.status == SessionStatus.FAILED
    assert late.results is None
    assert await credits.get_balance(user.id) == 1


async def test_confirm_payment_is_idempotent(make_session, queue):
    s = await make_session()
    first = await orchestrator.confirm_payment(s.id, "cs_1", 45000, "HUF")
    again = await orchestrator.confirm_payment(s.id, "cs_1", 45000, "HUF")
    assert first.status == again.status == SessionStatus.PAID
    assert again.payment_reference == "cs_1"
    # still paid on replay, so the worker is poked again; the queue collapses duplicates by job id
    assert queue.enqueued == [str(s.id), str(s.id)]
