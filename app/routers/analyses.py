from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from pydantic import BaseModel, Field

from app.deps import get_current_user, get_optional_user
from app.models.analysis_rating import AnalysisRating
from app.models.analysis_session import AnalysisPreferences, AnalysisSession
from app.models.user import User
from app.services import analysis_sessions, orchestrator, ratings
from app.storage.base import get_storage

router = APIRouter()


def _session_out(a: AnalysisSession, include_token: bool = False) -> dict:
    out = {
        "id": str(a.id),
        "status": a.status.value,
        "occasion": a.occasion,
        "preferences": a.preferences.model_dump(),
        "before_image_ref": a.before_image_ref,
        "results": a.results.model_dump() if a.results else None,
        "failure_reason": a.failure_reason,
        "owned": a.owner_user_id is not None,
        "created_at": a.created_at.isoformat(),
        "completed_at": a.completed_at.isoformat() if a.completed_at else None,
        "expires_at": a.expires_at.isoformat() if a.expires_at else None,
    }
    if include_token:
        out["guest_token"] = a.guest_token
    return out


def _rating_out(r: AnalysisRating) -> dict:
    return {
        "id": str(r.id),
        "analysis_session_id": str(r.analysis_session_id),
        "rating": r.rating,
        "comment": r.comment,
        "created_at": r.created_at.isoformat(),
        "updated_at": r.updated_at.isoformat(),
    }


@router.post("")
async def create_analysis(
    file: UploadFile = File(...),
    occasion: str = Form(...),
    has_glasses: bool = Form(False),
    has_sensitive_skin: bool = Form(False),
    style_preference: str = Form("clean"),
    user: User | None = Depends(get_optional_user),
):
    """Upload a photo and open a pending analysis (guest sessions get a token)."""
    content = await file.read()
    image_ref = await analysis_sessions.store_before_image(content, file.content_type)
    try:
        analysis = await analysis_sessions.create_session(
            owner_user_id=user.id if user else None,
            occasion=occasion,
            before_image_ref=image_ref,
            preferences=AnalysisPreferences(
                has_glasses=has_glasses,
                has_sensitive_skin=has_sensitive_skin,
                style_preference=style_preference,
            ),
        )
    except Exception:
        await get_storage().delete(image_ref)
        raise
    return _session_out(analysis, include_token=user is None)


@router.get("")
async def list_analyses(user: User = Depends(get_current_user)):
    items = await analysis_sessions.list_for_user(user.id)
    return {"items": [_session_out(a) for a in items]}


class ClaimRequest(BaseModel):
    guest_token: str = Field(..., min_length=1)


@router.post("/claim")
async def claim_analysis(body: ClaimRequest, user: User = Depends(get_current_user)):
    """Attach a guest analysis to the signed-in account."""
    analysis = await orchestrator.claim_guest_result(user.id, body.guest_token)
    return _session_out(analysis)


@router.get("/by-token/{token}")
async def get_analysis_by_token(token: str):
    analysis = await analysis_sessions.get_by_guest_token(token)
    return _session_out(analysis)


@router.get("/{session_id}")
async def get_analysis(
    session_id: str,
    token: str | None = Query(None),
    user: User | None = Depends(get_optional_user),
):
    analysis = await analysis_sessions.get_for_viewer(session_id, user.id if user else None, token)
    return _session_out(analysis)


@router.post("/{session_id}/spend-credit")
async def spend_credit(session_id: str, user: User = Depends(get_current_user)):
    """Start a pending analysis with one stored credit."""
    analysis = await orchestrator.spend_credit(user.id, session_id)
    return _session_out(analysis)


class RatingRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str | None = Field(None, max_length=2000)


@router.post("/{session_id}/rating")
async def rate_analysis(session_id: str, body: RatingRequest, user: User = Depends(get_current_user)):
    doc = await ratings.rate_analysis(user.id, session_id, body.rating, body.comment)
    return _rating_out(doc)


@router.get("/{session_id}/rating")
async def get_rating(session_id: str, user: User = Depends(get_current_user)):
    doc = await ratings.get_rating(user.id, session_id)
    return {"rating": _rating_out(doc) if doc else None}
