"""
Operations that move credits and analysis sessions together.

Every path that touches both the ledger and a session lives here so the
ordering (session guard first, ledger second, compensation on failure) is
written down once. Dispatch to the worker always happens after the atomic
unit has finished; a failed enqueue leaves the session ``paid`` for the sweep.
"""

from datetime import datetime

from beanie import PydanticObjectId
from beanie.operators import Set

from app.core.audit import log_event
from app.core.exceptions import (
    AlreadyClaimedError,
    ExpiredError,
    ForbiddenError,
    InsufficientBalanceError,
    NotFoundError,
)
from app.core.logging import get_logger
from app.db.transactions import run_atomic
from app.models.analysis_session import AnalysisResults, AnalysisSession, SessionStatus
from app.models.credit_ledger import LedgerEntry, LedgerReason
from app.services import analysis_sessions, credits, session_machine
from app.services.session_machine import Effect, SessionEvent
from app.worker import queue as job_queue

log = get_logger(__name__)

MAX_FAILURE_REASON = 500


def consume_key(session_id) -> str:
    return f"consume:{session_id}"


def refund_key(session_id) -> str:
    return f"refund:{session_id}"


async def _link_entry(analysis: AnalysisSession, field: str, entry_id: PydanticObjectId, session=None) -> None:
    await AnalysisSession.find_one(AnalysisSession.id == analysis.id, session=session).update(
        Set({field: entry_id}), session=session
    )
    setattr(analysis, field, entry_id)


async def dispatch(analysis: AnalysisSession) -> bool:
    """Queue a paid session for the worker. Never raises; failures are logged."""
    if analysis.status != SessionStatus.PAID:
        return False
    session_id = str(analysis.id)
    try:
        await job_queue.enqueue_analysis(session_id)
    except Exception as e:
        log.exception("dispatch_failed", session_id=session_id, reason=str(e))
        return False
    log.info("analysis_dispatched", session_id=session_id)
    return True


async def spend_credit(user_id: PydanticObjectId, session_id: str) -> AnalysisSession:
    """
    Spend one stored credit to start the caller's pending analysis.

    The session moves pending -> paid before the debit so that two requests for
    the same session cannot both reach the ledger. If the debit then fails (lost
    the race for the last credit, or a storage error) the session is put back to
    pending and the error propagates with nothing else changed.
    """

    async def _spend(session) -> AnalysisSession:
        analysis = await analysis_sessions.get_session(session_id, session=session)
        if analysis.owner_user_id is None or analysis.owner_user_id != user_id:
            raise ForbiddenError("Not your analysis")
        session_machine.transition(analysis.status, SessionEvent.CREDIT_SPENT)
        available = await credits.get_balance(user_id, session=session)
        if available < 1:
            raise InsufficientBalanceError(details={"required": 1, "available": available})

        await analysis_sessions.apply_event(
            analysis, SessionEvent.CREDIT_SPENT, fields={"paid_at": datetime.utcnow()}, session=session
        )
        try:
            entry, _ = await credits.append_entry(
                user_id,
                -1,
                LedgerReason.CONSUME_ANALYSIS,
                analysis_session_id=analysis.id,
                idempotency_key=consume_key(analysis.id),
                session=session,
            )
        except Exception:
            # No consume entry was written; put the session back so it is not run unpaid.
            await analysis_sessions.revert_to_pending(analysis, session=session)
            raise
        await _link_entry(analysis, "consume_entry_id", entry.id, session=session)
        await log_event(
            str(user_id),
            "credit_spent",
            "analysis_session",
            str(analysis.id),
            {"ledger_entry_id": str(entry.id), "balance_after": entry.balance_after},
            session=session,
        )
        return analysis

    analysis = await run_atomic(_spend)
    await dispatch(analysis)
    return analysis


async def confirm_payment(
    session_id: str | PydanticObjectId,
    payment_reference: str,
    amount: int | None = None,
    currency: str | None = None,
) -> AnalysisSession:
    """Mark a session paid from a verified single-analysis purchase, then dispatch."""
    analysis = await analysis_sessions.get_session(session_id)
    t = await analysis_sessions.apply_event(
        analysis,
        SessionEvent.PAYMENT_CONFIRMED,
        fields={
            "payment_reference": payment_reference,
            "amount": amount,
            "currency": currency,
            "paid_at": datetime.utcnow(),
        },
    )
    if not t.noop:
        await log_event(
            str(analysis.owner_user_id) if analysis.owner_user_id else None,
            "payment_captured",
            "analysis_session",
            str(analysis.id),
            {"payment_reference": payment_reference, "amount": amount, "currency": currency},
        )
    if Effect.DISPATCH in t.effects or analysis.status == SessionStatus.PAID:
        await dispatch(analysis)
    return analysis


async def claim_guest_result(user_id: PydanticObjectId, guest_token: str) -> AnalysisSession:
    """Bind the guest session holding ``guest_token`` to ``user_id``."""
    analysis = (
        await AnalysisSession.find_one(AnalysisSession.guest_token == guest_token) if guest_token else None
    )
    if analysis is None:
        raise NotFoundError("Analysis not found")
    if analysis.owner_user_id is not None:
        raise AlreadyClaimedError()
    if analysis.is_expired():
        raise ExpiredError()
    session_machine.transition(analysis.status, SessionEvent.CLAIMED)
    if not await analysis_sessions.assign_owner(analysis, user_id):
        raise AlreadyClaimedError()
    await log_event(str(user_id), "guest_result_claimed", "analysis_session", str(analysis.id), {"status": analysis.status.value})
    log.info("guest_result_claimed", session_id=str(analysis.id), user_id=str(user_id))
    return analysis


async def start_processing(session_id: str) -> AnalysisSession | None:
    """
    Worker entry: paid -> processing. Returns the session if the worker should
    run the pipeline, None if it already finished.
    """
    analysis = await analysis_sessions.get_session(session_id)
    await analysis_sessions.apply_event(
        analysis,
        SessionEvent.DISPATCHED,
        fields={"processing_started_at": datetime.utcnow()},
    )
    if analysis.status != SessionStatus.PROCESSING:
        log.info("analysis_already_finished", session_id=session_id, status=analysis.status.value)
        return None
    return analysis


async def complete_session(session_id: str, results: AnalysisResults) -> AnalysisSession:
    analysis = await analysis_sessions.get_session(session_id)
    t = await analysis_sessions.apply_event(
        analysis,
        SessionEvent.COMPLETED,
        fields={"results": results.model_dump(), "completed_at": datetime.utcnow()},
    )
    if t.noop:
        # Sweep timed it out first; the refund stands and the late result is dropped.
        log.warning("late_result_dropped", session_id=session_id, status=analysis.status.value)
    return analysis


async def refund_if_consumed(analysis: AnalysisSession, session=None) -> LedgerEntry | None:
    """
    Return the credit a failed session consumed, at most once.

    Guest sessions paid by card have no consumption entry and get nothing here.
    """
    consumed = await credits.find_entry(analysis.id, LedgerReason.CONSUME_ANALYSIS, session=session)
    if consumed is None:
        return None
    entry, created = await credits.append_entry(
        consumed.user_id,
        -consumed.delta,
        LedgerReason.REFUND,
        analysis_session_id=analysis.id,
        idempotency_key=refund_key(analysis.id),
        session=session,
    )
    if analysis.refund_entry_id != entry.id:
        await _link_entry(analysis, "refund_entry_id", entry.id, session=session)
    if created:
        await log_event(
            str(consumed.user_id),
            "credit_refunded",
            "analysis_session",
            str(analysis.id),
            {"ledger_entry_id": str(entry.id), "failure_reason": analysis.failure_reason},
            session=session,
        )
    return entry


async def fail_session(
    session_id: str | PydanticObjectId,
    reason: str,
    event: SessionEvent = SessionEvent.FAILED,
) -> AnalysisSession:
    """processing -> failed with the credit refund in the same atomic unit."""

    async def _fail(session) -> AnalysisSession:
        analysis = await analysis_sessions.get_session(session_id, session=session)
        t = await analysis_sessions.apply_event(
            analysis,
            event,
            fields={"failure_reason": (reason or "")[:MAX_FAILURE_REASON]},
            session=session,
        )
        if Effect.REFUND_IF_CONSUMED in t.effects or analysis.status == SessionStatus.FAILED:
            await refund_if_consumed(analysis, session=session)
        return analysis

    analysis = await run_atomic(_fail)
    log.info("analysis_failed", session_id=str(analysis.id), session_event=event.value, reason=reason)
    return analysis
