"""Atomic units of work spanning the ledger and analysis sessions."""

from typing import Any, Awaitable, Callable, TypeVar

from app.core.config import get_settings
from app.db.init import get_client

T = TypeVar("T")


async def run_atomic(fn: Callable[[Any], Awaitable[T]]) -> T:
    """
    Run ``fn(session)`` as one MongoDB transaction.

    Motor's ``with_transaction`` retries the whole callback on
    TransientTransactionError (write conflicts on the credit balance) and the
    commit on UnknownTransactionCommitResult, so contention is recovered here.
    Without MONGODB_TRANSACTIONS the callback gets ``session=None``; callers
    keep every step a guarded single-document write and compensate their own
    earlier steps, so the money invariants still hold on a standalone server.
    """
    if not get_settings().mongodb_transactions:
        return await fn(None)
    client = get_client()
    async with await client.start_session() as session:
        return await session.with_transaction(fn)
