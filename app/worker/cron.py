"""Cron: stuck-session sweep, once a minute."""

from typing import Any

from arq.cron import cron

from app.core.logging import bind_job_context
from app.services.sweep import sweep_sessions
from app.worker.tasks import _run_with_dlq


async def sweep_stuck_sessions(ctx: dict[str, Any]) -> dict:
    """Time out stuck analyses (refunding spent credits) and re-queue stranded paid ones."""
    bind_job_context("sweep_stuck_sessions")
    return await _run_with_dlq(ctx, "sweep_stuck_sessions", [], sweep_sessions())


CRON_JOBS = [
    cron(sweep_stuck_sessions, second=0, run_at_startup=True),  # every minute at :00
]
