from beanie import PydanticObjectId
from bson.errors import InvalidId
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.core.audit import log_event
from app.core.exceptions import NotFoundError
from app.deps import require_admin
from app.models.user import User
from app.services import credits as credits_service
from app.services.sweep import sweep_sessions

router = APIRouter()


class AdjustRequest(BaseModel):
    user_id: str
    delta: int
    note: str | None = Field(None, max_length=500)
    idempotency_key: str | None = Field(None, max_length=200)


async def _target_user(user_id: str) -> User:
    try:
        oid = PydanticObjectId(user_id)
    except (InvalidId, TypeError, ValueError):
        raise NotFoundError("User not found")
    target = await User.get(oid)
    if not target:
        raise NotFoundError("User not found")
    return target


@router.post("/credits/adjust")
async def admin_credits_adjust(body: AdjustRequest, admin: User = Depends(require_admin)):
    """Admin: add or remove credits for a user (never below zero)."""
    target = await _target_user(body.user_id)
    entry = await credits_service.admin_adjust(target.id, body.delta, body.idempotency_key)
    await log_event(
        str(admin.id),
        "admin_credit_adjustment",
        "user",
        str(target.id),
        {"delta": body.delta, "note": body.note, "ledger_entry_id": str(entry.id)},
    )
    return {"entry_id": str(entry.id), "balance_after": entry.balance_after}


@router.get("/credits/{user_id}/consistency")
async def admin_credits_consistency(user_id: str, admin: User = Depends(require_admin)):
    target = await _target_user(user_id)
    return await credits_service.check_consistency(target.id)


@router.post("/credits/{user_id}/rebuild")
async def admin_credits_rebuild(user_id: str, admin: User = Depends(require_admin)):
    """Admin: overwrite the cached balance with the ledger replay."""
    target = await _target_user(user_id)
    balance = await credits_service.rebuild_balance(target.id)
    await log_event(str(admin.id), "admin_balance_rebuilt", "user", str(target.id), {"balance": balance})
    return {"balance": balance}


@router.post("/sweep")
async def admin_sweep(admin: User = Depends(require_admin)):
    """Admin: run one stuck-session sweep now."""
    return await sweep_sessions()
