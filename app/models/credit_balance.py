from datetime import datetime

from beanie import Document, PydanticObjectId
from pydantic import Field
from pymongo import ASCENDING, IndexModel


class CreditBalance(Document):
    """Cached balance per user; only ever moved together with a ledger append.

    The ledger is the source of truth: ``balance`` must equal the sum of the
    user's ``LedgerEntry.delta`` values (see ``credits.check_consistency``).
    """

    user_id: PydanticObjectId
    balance: int = 0
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_balances"
        indexes = [IndexModel([("user_id", ASCENDING)], unique=True)]
