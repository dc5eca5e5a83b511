import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from app.core.config import get_settings
from app.models.analysis_rating import AnalysisRating
from app.models.analysis_session import AnalysisSession
from app.models.audit_log import AuditLog
from app.models.credit_balance import CreditBalance
from app.models.credit_ledger import LedgerEntry
from app.models.failed_job import FailedJob
from app.models.user import User

DOCUMENT_MODELS = [
    User,
    CreditBalance,
    LedgerEntry,
    AnalysisSession,
    AnalysisRating,
    AuditLog,
    FailedJob,
]

_client = None


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


def get_client():
    """Client bound by the last init_db call; transactions start sessions on it."""
    if _client is None:
        raise RuntimeError("Database not initialised; call init_db() first")
    return _client


async def init_db(client=None) -> None:
    """Bind Beanie to MongoDB. Tests pass an in-memory client."""
    global _client
    settings = get_settings()
    if client is None:
        # Atlas in Docker: tlsCAFile + tlsDisableOCSPEndpointCheck avoid TLSV1_ALERT_INTERNAL_ERROR
        kwargs = {}
        if _use_tls(settings.mongodb_uri):
            kwargs["tlsCAFile"] = certifi.where()
            kwargs["tlsDisableOCSPEndpointCheck"] = True
        client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
    _client = client
    database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
