from datetime import datetime

from beanie import Document, PydanticObjectId
from pydantic import Field
from pymongo import ASCENDING, IndexModel


class AnalysisRating(Document):
    analysis_session_id: PydanticObjectId
    user_id: PydanticObjectId
    rating: int  # 1-5
    comment: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "analysis_ratings"
        indexes = [
            IndexModel([("analysis_session_id", ASCENDING), ("user_id", ASCENDING)], unique=True),
        ]
