from datetime import datetime
from enum import Enum
from typing import Any

from beanie import Document, PydanticObjectId
from pydantic import BaseModel, Field
from pymongo import ASCENDING, IndexModel

OCCASIONS = ("everyday", "work", "evening", "special")
STYLE_PREFERENCES = ("clean", "bold")


class SessionStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


class AnalysisPreferences(BaseModel):
    has_glasses: bool = False
    has_sensitive_skin: bool = False
    style_preference: str = "clean"


class AnalysisResults(BaseModel):
    """What the analysis pipeline hands back; stored verbatim on completion."""

    observations: dict[str, Any] = Field(default_factory=dict)
    looks: list[dict[str, Any]] = Field(default_factory=list)
    after_images: list[str] = Field(default_factory=list)
    pdf_ref: str | None = None


class AnalysisSession(Document):
    owner_user_id: PydanticObjectId | None = None
    guest_token: str | None = None  # kept after claim for old links
    status: SessionStatus = SessionStatus.PENDING
    occasion: str
    preferences: AnalysisPreferences = Field(default_factory=AnalysisPreferences)
    before_image_ref: str
    results: AnalysisResults | None = None
    failure_reason: str | None = None

    payment_reference: str | None = None
    amount: int | None = None  # minor units, as charged by the gateway
    currency: str | None = None
    consume_entry_id: PydanticObjectId | None = None
    refund_entry_id: PydanticObjectId | None = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    paid_at: datetime | None = None
    processing_started_at: datetime | None = None
    completed_at: datetime | None = None
    claimed_at: datetime | None = None
    expires_at: datetime | None = None  # unclaimed guest sessions only

    class Settings:
        name = "analysis_sessions"
        indexes = [
            IndexModel([("owner_user_id", ASCENDING), ("created_at", ASCENDING)]),
            IndexModel([("guest_token", ASCENDING)]),
            IndexModel([("status", ASCENDING), ("created_at", ASCENDING)]),
            IndexModel([("status", ASCENDING), ("paid_at", ASCENDING)]),
        ]

    @property
    def is_guest_owned(self) -> bool:
        return self.owner_user_id is None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.owner_user_id is not None or self.expires_at is None:
            return False
        return self.expires_at < (now or datetime.utcnow())
