from datetime import datetime
from enum import Enum

from beanie import Document, PydanticObjectId
from pydantic import Field
from pymongo import ASCENDING, DESCENDING, IndexModel


class LedgerReason(str, Enum):
    PURCHASE_SINGLE = "purchase_single"
    PURCHASE_PACK_SMALL = "purchase_pack_small"
    PURCHASE_PACK_LARGE = "purchase_pack_large"
    CONSUME_ANALYSIS = "consume_analysis"
    REFUND = "refund"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    CLAIM_GUEST_RESULT = "claim_guest_result"


class LedgerEntry(Document):
    """Append-only credit movement. Never updated or deleted once inserted."""

    user_id: PydanticObjectId
    delta: int  # positive = credit, negative = debit
    balance_after: int
    reason: LedgerReason
    analysis_session_id: PydanticObjectId | None = None
    payment_reference: str | None = None  # gateway checkout session id
    # payment:<ref>, consume:<session>, refund:<session>, admin:<key>
    idempotency_key: str
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_ledger"
        indexes = [
            IndexModel([("user_id", ASCENDING), ("created_at", DESCENDING)]),
            IndexModel([("idempotency_key", ASCENDING)], unique=True),
            IndexModel([("analysis_session_id", ASCENDING)]),
        ]
