"""Enqueue helpers called from the API process."""

from urllib.parse import urlparse

from arq import create_pool
from arq.connections import RedisSettings

from app.core.config import get_settings


def get_redis_settings() -> RedisSettings:
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path and u.path != "/" else 0,
    )


def analysis_job_id(session_id: str) -> str:
    return f"analysis:{session_id}"


async def enqueue_analysis(session_id: str) -> None:
    """Hand a paid session to the worker. arq drops a second enqueue of a queued job id."""
    redis = await create_pool(get_redis_settings())
    try:
        await redis.enqueue_job("run_analysis", session_id, _job_id=analysis_job_id(session_id))
    finally:
        await redis.aclose()
