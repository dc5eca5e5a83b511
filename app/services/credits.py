"""Credits ledger and atomic balance updates."""

import uuid
from datetime import datetime

from beanie import PydanticObjectId, UpdateResponse
from beanie.operators import Inc, Set
from pymongo.errors import DuplicateKeyError

from app.core.exceptions import BadRequestError, InsufficientBalanceError
from app.core.logging import get_logger
from app.models.credit_balance import CreditBalance
from app.models.credit_ledger import LedgerEntry, LedgerReason

log = get_logger(__name__)

REASON_LABELS = {
    LedgerReason.PURCHASE_SINGLE: "Single analysis purchase",
    LedgerReason.PURCHASE_PACK_SMALL: "Credit pack purchase",
    LedgerReason.PURCHASE_PACK_LARGE: "Large credit pack purchase",
    LedgerReason.CONSUME_ANALYSIS: "Analysis",
    LedgerReason.REFUND: "Refund",
    LedgerReason.ADMIN_ADJUSTMENT: "Adjustment",
    LedgerReason.CLAIM_GUEST_RESULT: "Guest result claimed",
}


def reason_for_quantity(quantity: int) -> LedgerReason:
    """Purchase reason by credited quantity tier."""
    if quantity == 1:
        return LedgerReason.PURCHASE_SINGLE
    if quantity >= 10:
        return LedgerReason.PURCHASE_PACK_LARGE
    return LedgerReason.PURCHASE_PACK_SMALL


async def get_balance(user_id: PydanticObjectId, session=None) -> int:
    """Return current balance for user (0 if no record)."""
    bal = await CreditBalance.find_one(CreditBalance.user_id == user_id, session=session)
    return bal.balance if bal else 0


async def _increment(user_id: PydanticObjectId, delta: int, session, floor_check: bool) -> CreditBalance | None:
    criteria = [CreditBalance.user_id == user_id]
    if floor_check:
        criteria.append(CreditBalance.balance >= -delta)
    return await CreditBalance.find_one(*criteria, session=session).update(
        Inc({CreditBalance.balance: delta}),
        Set({CreditBalance.updated_at: datetime.utcnow()}),
        session=session,
        response_type=UpdateResponse.NEW_DOCUMENT,
    )


async def _move_balance(user_id: PydanticObjectId, delta: int, session) -> int:
    """Apply delta to the cached balance in one atomic write; return the new balance."""
    if delta < 0:
        # Conditional decrement: the filter and the $inc are one document write,
        # so two debits racing for the last credit cannot both match.
        updated = await _increment(user_id, delta, session, floor_check=True)
        if updated is None:
            available = await get_balance(user_id, session=session)
            raise InsufficientBalanceError(details={"required": -delta, "available": available})
        return updated.balance

    updated = await _increment(user_id, delta, session, floor_check=False)
    if updated is not None:
        return updated.balance
    try:
        await CreditBalance(user_id=user_id, balance=delta).insert(session=session)
        return delta
    except DuplicateKeyError:
        # Account created concurrently by another append; increment that one.
        updated = await _increment(user_id, delta, session, floor_check=False)
        return updated.balance


async def append_entry(
    user_id: PydanticObjectId,
    delta: int,
    reason: LedgerReason | str,
    *,
    analysis_session_id: PydanticObjectId | None = None,
    payment_reference: str | None = None,
    idempotency_key: str | None = None,
    session=None,
) -> tuple[LedgerEntry, bool]:
    """
    Atomically add a ledger entry and move the cached balance.
    Returns (ledger_entry, created).
    Idempotency: if an entry already exists for idempotency_key, return it with
    created=False and do not apply anything.
    Raises InsufficientBalanceError if a debit would take the balance below zero.
    If the entry insert fails, the balance move is reversed before re-raising.
    """
    try:
        reason = LedgerReason(reason)
    except ValueError:
        raise BadRequestError(f"Invalid reason: {reason}")
    if delta == 0:
        raise BadRequestError("Ledger delta must be non-zero")
    key = idempotency_key or f"entry:{uuid.uuid4().hex}"

    existing = await LedgerEntry.find_one(LedgerEntry.idempotency_key == key, session=session)
    if existing:
        return existing, False

    balance_after = await _move_balance(user_id, delta, session)
    entry = LedgerEntry(
        user_id=user_id,
        delta=delta,
        balance_after=balance_after,
        reason=reason,
        analysis_session_id=analysis_session_id,
        payment_reference=payment_reference,
        idempotency_key=key,
    )
    try:
        await entry.insert(session=session)
    except DuplicateKeyError:
        # Same key inserted concurrently: reverse our own balance move, return the winner.
        await _increment(user_id, -delta, session, floor_check=False)
        winner = await LedgerEntry.find_one(LedgerEntry.idempotency_key == key, session=session)
        log.info("ledger_entry_deduplicated", user_id=str(user_id), idempotency_key=key)
        return winner, False
    except Exception:
        # The balance moved but no row backs it; undo so replay still matches.
        await _increment(user_id, -delta, session, floor_check=False)
        log.warning("ledger_insert_failed", user_id=str(user_id), delta=delta, idempotency_key=key)
        raise

    log.info(
        "ledger_entry_appended",
        user_id=str(user_id),
        delta=delta,
        reason=reason.value,
        balance_after=balance_after,
        analysis_session_id=str(analysis_session_id) if analysis_session_id else None,
    )
    return entry, True


async def list_recent(user_id: PydanticObjectId, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
    """Ledger entries for a user, newest first."""
    return (
        await LedgerEntry.find(LedgerEntry.user_id == user_id)
        .sort("-created_at", "-_id")
        .skip(offset)
        .limit(limit)
        .to_list()
    )


async def find_entry(analysis_session_id: PydanticObjectId, reason: LedgerReason, session=None) -> LedgerEntry | None:
    """The entry of ``reason`` linked to an analysis session, if any (at most one by key)."""
    return await LedgerEntry.find_one(
        LedgerEntry.analysis_session_id == analysis_session_id,
        LedgerEntry.reason == reason,
        session=session,
    )


async def replay_balance(user_id: PydanticObjectId) -> int:
    """Balance derived from the ledger alone."""
    total = await LedgerEntry.find(LedgerEntry.user_id == user_id).sum(LedgerEntry.delta)
    return int(total or 0)


async def check_consistency(user_id: PydanticObjectId) -> dict:
    cached = await get_balance(user_id)
    replayed = await replay_balance(user_id)
    if cached != replayed:
        log.warning("balance_drift", user_id=str(user_id), cached=cached, replayed=replayed)
    return {"cached": cached, "replayed": replayed, "consistent": cached == replayed}


async def rebuild_balance(user_id: PydanticObjectId) -> int:
    """Overwrite the cached balance with the ledger replay (admin repair)."""
    replayed = await replay_balance(user_id)
    updated = await CreditBalance.find_one(CreditBalance.user_id == user_id).update(
        Set({CreditBalance.balance: replayed, CreditBalance.updated_at: datetime.utcnow()}),
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    if updated is None and replayed:
        await CreditBalance(user_id=user_id, balance=replayed).insert()
    log.info("balance_rebuilt", user_id=str(user_id), balance=replayed)
    return replayed


async def admin_adjust(
    user_id: PydanticObjectId,
    delta: int,
    idempotency_key: str | None = None,
) -> LedgerEntry:
    entry, _ = await append_entry(
        user_id,
        delta,
        LedgerReason.ADMIN_ADJUSTMENT,
        idempotency_key=f"admin:{idempotency_key}" if idempotency_key else None,
    )
    return entry


async def credit_summary(user_id: PydanticObjectId) -> dict:
    """Balance plus the last few movements with display labels."""
    balance = await get_balance(user_id)
    entries = await list_recent(user_id, limit=10)
    return {
        "balance": balance,
        "transactions": [
            {
                "id": str(e.id),
                "delta": e.delta,
                "reason": REASON_LABELS.get(e.reason, e.reason.value),
                "created_at": e.created_at.isoformat(),
            }
            for e in entries
        ],
    }
