"""Ratings of completed analyses: one per (session, user), updated in place."""

from datetime import datetime

from beanie import PydanticObjectId

from app.core.exceptions import BadRequestError, ForbiddenError, InvalidStateError
from app.models.analysis_rating import AnalysisRating
from app.models.analysis_session import SessionStatus
from app.services import analysis_sessions


async def rate_analysis(
    user_id: PydanticObjectId,
    session_id: str,
    rating: int,
    comment: str | None = None,
) -> AnalysisRating:
    """Create or update the caller's rating of their completed analysis."""
    if rating < 1 or rating > 5:
        raise BadRequestError("Rating must be between 1 and 5")
    analysis = await analysis_sessions.get_session(session_id)
    if analysis.owner_user_id != user_id:
        raise ForbiddenError("You can only rate your own analyses")
    if analysis.status != SessionStatus.COMPLETE:
        raise InvalidStateError("Only completed analyses can be rated", details={"status": analysis.status.value})

    existing = await AnalysisRating.find_one(
        AnalysisRating.analysis_session_id == analysis.id,
        AnalysisRating.user_id == user_id,
    )
    if existing:
        existing.rating = rating
        existing.comment = comment or None
        existing.updated_at = datetime.utcnow()
        await existing.save()
        return existing
    doc = AnalysisRating(analysis_session_id=analysis.id, user_id=user_id, rating=rating, comment=comment or None)
    await doc.insert()
    return doc


async def get_rating(user_id: PydanticObjectId, session_id: str) -> AnalysisRating | None:
    """The caller's rating of their own analysis, or None if not rated yet."""
    analysis = await analysis_sessions.get_session(session_id)
    if analysis.owner_user_id != user_id:
        raise ForbiddenError("You can only view ratings of your own analyses")
    return await AnalysisRating.find_one(
        AnalysisRating.analysis_session_id == analysis.id,
        AnalysisRating.user_id == user_id,
    )
