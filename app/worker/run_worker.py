"""Run ARQ worker. Usage: python -m app.worker.run_worker"""

from arq import run_worker

from app.core.config import get_settings
from app.core.logging import configure_logging
from app.worker.cron import CRON_JOBS
from app.worker.queue import get_redis_settings
from app.worker.tasks import run_analysis, shutdown, startup


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions = [run_analysis]
    cron_jobs = CRON_JOBS
    on_startup = startup
    on_shutdown = shutdown
    # Pipeline runs are bounded by the job itself; arq's own limit sits just above it.
    job_timeout = get_settings().analysis_timeout_seconds + 60
    # No stored result, so the sweep can re-enqueue the same job id after a lost run.
    keep_result = 0
    max_tries = 1


if __name__ == "__main__":
    configure_logging(debug=get_settings().debug)
    run_worker(WorkerSettings)
