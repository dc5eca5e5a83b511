from app.models.user import User
from app.models.credit_balance import CreditBalance
from app.models.credit_ledger import LedgerEntry, LedgerReason
from app.models.analysis_session import AnalysisSession, SessionStatus
from app.models.analysis_rating import AnalysisRating
from app.models.audit_log import AuditLog
from app.models.failed_job import FailedJob

__all__ = [
    "User",
    "CreditBalance",
    "LedgerEntry",
    "LedgerReason",
    "AnalysisSession",
    "SessionStatus",
    "AnalysisRating",
    "AuditLog",
    "FailedJob",
]
