"""Analysis session store: creation, access-checked lookups, guarded status writes."""

import uuid
from datetime import datetime, timedelta

from beanie import PydanticObjectId, UpdateResponse
from beanie.operators import Set
from bson.errors import InvalidId

from app.core.config import get_settings
from app.core.exceptions import BadRequestError, ExpiredError, ForbiddenError, InternalError, NotFoundError
from app.core.logging import get_logger
from app.core.security import generate_guest_token, tokens_match
from app.models.analysis_session import (
    OCCASIONS,
    STYLE_PREFERENCES,
    AnalysisPreferences,
    AnalysisSession,
    SessionStatus,
)
from app.services import session_machine
from app.services.session_machine import SessionEvent, Transition
from app.storage.base import get_storage

log = get_logger(__name__)

MAX_IMAGE_BYTES = 10 * 1024 * 1024
IMAGE_TYPES = {"image/jpeg": "jpg", "image/png": "png", "image/webp": "webp"}

# A compare-and-set loses only when another writer moved the session in between;
# each retry re-reads, and the machine only moves forward, so this stays small.
_CAS_ATTEMPTS = 5


def parse_id(value: str | PydanticObjectId) -> PydanticObjectId:
    if isinstance(value, PydanticObjectId):
        return value
    try:
        return PydanticObjectId(value)
    except (InvalidId, TypeError, ValueError):
        raise NotFoundError("Analysis not found")


async def store_before_image(content: bytes, content_type: str | None) -> str:
    """Validate and persist the uploaded photo; return its opaque storage reference."""
    ext = IMAGE_TYPES.get((content_type or "").lower())
    if not ext:
        raise BadRequestError("Only JPEG, PNG or WebP images are accepted")
    if not content:
        raise BadRequestError("Image is empty")
    if len(content) > MAX_IMAGE_BYTES:
        raise BadRequestError("Image exceeds 10MB")
    key = f"before-images/{datetime.utcnow().strftime('%Y%m%d')}/{uuid.uuid4().hex}.{ext}"
    return await get_storage().put(key, content, content_type=content_type)


async def create_session(
    *,
    owner_user_id: PydanticObjectId | None,
    occasion: str,
    before_image_ref: str,
    preferences: AnalysisPreferences | None = None,
) -> AnalysisSession:
    """New pending session, owned by the caller or by a fresh guest token."""
    if occasion not in OCCASIONS:
        raise BadRequestError("Invalid occasion", details={"allowed": list(OCCASIONS)})
    if not before_image_ref:
        raise BadRequestError("Image reference is required")
    preferences = preferences or AnalysisPreferences()
    if preferences.style_preference not in STYLE_PREFERENCES:
        raise BadRequestError("Invalid style preference", details={"allowed": list(STYLE_PREFERENCES)})

    analysis = AnalysisSession(
        owner_user_id=owner_user_id,
        occasion=occasion,
        preferences=preferences,
        before_image_ref=before_image_ref,
    )
    if owner_user_id is None:
        analysis.guest_token = generate_guest_token()
        analysis.expires_at = datetime.utcnow() + timedelta(days=get_settings().guest_session_ttl_days)
    await analysis.insert()
    log.info("analysis_created", session_id=str(analysis.id), guest=owner_user_id is None, occasion=occasion)
    return analysis


async def get_session(session_id: str | PydanticObjectId, session=None) -> AnalysisSession:
    analysis = await AnalysisSession.get(parse_id(session_id), session=session)
    if not analysis:
        raise NotFoundError("Analysis not found")
    return analysis


async def get_by_guest_token(token: str) -> AnalysisSession:
    analysis = await AnalysisSession.find_one(AnalysisSession.guest_token == token) if token else None
    if not analysis:
        raise NotFoundError("Analysis not found")
    if analysis.is_expired():
        raise ExpiredError()
    return analysis


async def get_for_viewer(
    session_id: str,
    user_id: PydanticObjectId | None,
    token: str | None = None,
) -> AnalysisSession:
    """Owner, or anyone holding the guest token, may read the session."""
    analysis = await get_session(session_id)
    owner_access = analysis.owner_user_id is not None and analysis.owner_user_id == user_id
    token_access = tokens_match(analysis.guest_token, token)
    if not (owner_access or token_access):
        raise ForbiddenError("No access to this analysis")
    if analysis.is_expired():
        raise ExpiredError()
    return analysis


async def list_for_user(user_id: PydanticObjectId) -> list[AnalysisSession]:
    return await AnalysisSession.find(AnalysisSession.owner_user_id == user_id).sort("-created_at", "-_id").to_list()


def _refresh(analysis: AnalysisSession, source: AnalysisSession) -> None:
    for name in AnalysisSession.model_fields:
        setattr(analysis, name, getattr(source, name))


async def apply_event(
    analysis: AnalysisSession,
    event: SessionEvent,
    fields: dict | None = None,
    session=None,
) -> Transition:
    """
    Persist ``event`` on ``analysis`` with a compare-and-set on its status.

    ``fields`` are written in the same update. On a lost race the session is
    re-read and the event re-evaluated, so a replay against a session that has
    already moved on resolves to a no-op (or InvalidStateError) instead of
    overwriting the newer status. ``analysis`` is refreshed in place.
    """
    for _ in range(_CAS_ATTEMPTS):
        t = session_machine.transition(analysis.status, event)
        if t.noop or t.source == t.target:
            return t
        updates = {"status": t.target.value, **(fields or {})}
        updated = await AnalysisSession.find_one(
            AnalysisSession.id == analysis.id,
            AnalysisSession.status == t.source.value,
            session=session,
        ).update(Set(updates), session=session, response_type=UpdateResponse.NEW_DOCUMENT)
        if updated is not None:
            _refresh(analysis, updated)
            log.info(
                "analysis_transition",
                session_id=str(analysis.id),
                session_event=event.value,
                source=t.source.value,
                target=t.target.value,
            )
            return t
        fresh = await AnalysisSession.get(analysis.id, session=session)
        if fresh is None:
            raise NotFoundError("Analysis not found")
        _refresh(analysis, fresh)
    raise InternalError("Analysis status kept changing; retry")


async def revert_to_pending(analysis: AnalysisSession, session=None) -> None:
    """Undo a credit-spend transition whose debit did not go through."""
    updated = await AnalysisSession.find_one(
        AnalysisSession.id == analysis.id,
        AnalysisSession.status == SessionStatus.PAID.value,
        AnalysisSession.consume_entry_id == None,  # noqa: E711 (Beanie query expr)
        session=session,
    ).update(
        Set({"status": SessionStatus.PENDING.value, "paid_at": None}),
        session=session,
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    if updated is not None:
        _refresh(analysis, updated)


async def assign_owner(analysis: AnalysisSession, user_id: PydanticObjectId, session=None) -> bool:
    """Bind a guest session to an account; False if someone else got there first."""
    now = datetime.utcnow()
    updated = await AnalysisSession.find_one(
        AnalysisSession.id == analysis.id,
        AnalysisSession.owner_user_id == None,  # noqa: E711 (Beanie query expr)
        session=session,
    ).update(
        Set({"owner_user_id": user_id, "claimed_at": now, "expires_at": None}),
        session=session,
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    if updated is None:
        return False
    _refresh(analysis, updated)
    return True
