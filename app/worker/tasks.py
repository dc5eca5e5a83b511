"""ARQ job definitions."""

import asyncio
import uuid
from typing import Any

from app.core.config import get_settings
from app.core.logging import bind_job_context, get_logger
from app.db.init import init_db
from app.models.failed_job import FailedJob
from app.services import orchestrator
from app.services.analysis_pipeline import get_pipeline

log = get_logger(__name__)


async def _run_with_dlq(
    ctx: dict[str, Any],
    job_name: str,
    args: list[Any],
    coro,
) -> Any:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None
    try:
        return await coro
    except Exception as e:
        fid = job_id or str(uuid.uuid4())
        await FailedJob(
            job_name=job_name,
            job_id=fid,
            args=args,
            reason=str(e)[:2000] or type(e).__name__,
            attempt=ctx.get("job_try") or 1,
        ).insert()
        log.exception("job_failed", job_id=fid, reason=str(e))
        raise


async def _process(session_id: str) -> None:
    analysis = await orchestrator.start_processing(session_id)
    if analysis is None:
        return
    log.info("job_start", session_id=session_id)
    timeout = get_settings().analysis_timeout_seconds
    try:
        results = await asyncio.wait_for(get_pipeline().run(analysis), timeout=timeout)
    except asyncio.TimeoutError:
        await orchestrator.fail_session(session_id, f"Analysis took longer than {timeout}s")
        raise
    except Exception as e:
        await orchestrator.fail_session(session_id, str(e) or type(e).__name__)
        raise
    await orchestrator.complete_session(session_id, results)
    log.info("job_done", session_id=session_id)


async def run_analysis(ctx: dict[str, Any], session_id: str) -> None:
    """Run the analysis pipeline for a paid session and record the outcome."""
    bind_job_context("run_analysis", session_id=session_id)
    await _run_with_dlq(ctx, "run_analysis", [session_id], _process(session_id))


async def startup(ctx: dict) -> None:
    await init_db()


async def shutdown(ctx: dict) -> None:
    log.info("worker_shutdown")
