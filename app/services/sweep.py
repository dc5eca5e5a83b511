"""Periodic recovery: time out stuck sessions, re-queue stranded paid ones, finish missed refunds."""

from datetime import datetime, timedelta

from app.core.config import get_settings
from app.core.logging import get_logger
from app.models.analysis_session import AnalysisSession, SessionStatus
from app.services import orchestrator
from app.services.session_machine import SessionEvent

log = get_logger(__name__)

BATCH_SIZE = 200
TIMEOUT_REASON = "Analysis timed out"


async def _time_out_stuck(cutoff: datetime, summary: dict) -> None:
    stuck = await AnalysisSession.find(
        AnalysisSession.status == SessionStatus.PROCESSING.value,
        AnalysisSession.created_at < cutoff,
    ).limit(BATCH_SIZE).to_list()
    for s in stuck:
        try:
            analysis = await orchestrator.fail_session(s.id, TIMEOUT_REASON, event=SessionEvent.TIMED_OUT)
        except Exception as e:
            summary["errors"] += 1
            log.exception("sweep_timeout_failed", session_id=str(s.id), reason=str(e))
            continue
        if analysis.status == SessionStatus.FAILED:
            summary["timed_out"] += 1
            if analysis.refund_entry_id and not s.refund_entry_id:
                summary["refunded"] += 1


async def _redispatch_paid(cutoff: datetime, summary: dict) -> None:
    stranded = await AnalysisSession.find(
        AnalysisSession.status == SessionStatus.PAID.value,
        AnalysisSession.paid_at < cutoff,
    ).limit(BATCH_SIZE).to_list()
    for analysis in stranded:
        if await orchestrator.dispatch(analysis):
            summary["redispatched"] += 1


async def _reconcile_refunds(summary: dict) -> None:
    missing = await AnalysisSession.find(
        AnalysisSession.status == SessionStatus.FAILED.value,
        AnalysisSession.consume_entry_id != None,  # noqa: E711 (Beanie query expr)
        AnalysisSession.refund_entry_id == None,  # noqa: E711
    ).limit(BATCH_SIZE).to_list()
    for analysis in missing:
        try:
            entry = await orchestrator.refund_if_consumed(analysis)
        except Exception as e:
            summary["errors"] += 1
            log.exception("sweep_refund_failed", session_id=str(analysis.id), reason=str(e))
            continue
        if entry is not None:
            summary["refunded"] += 1
            log.warning("refund_reconciled", session_id=str(analysis.id), ledger_entry_id=str(entry.id))


async def sweep_sessions(now: datetime | None = None) -> dict:
    """
    One sweep pass. Safe to run concurrently with itself and with workers:
    every write goes through the same guarded transition and keyed refund.
    """
    s = get_settings()
    now = now or datetime.utcnow()
    summary = {"timed_out": 0, "refunded": 0, "redispatched": 0, "errors": 0}
    await _time_out_stuck(now - timedelta(minutes=s.stuck_session_minutes), summary)
    await _redispatch_paid(now - timedelta(minutes=s.paid_redispatch_minutes), summary)
    await _reconcile_refunds(summary)
    if any(summary.values()):
        log.info("sweep_done", **summary)
    return summary
