"""Stripe checkout: initiation, webhook, and the post-redirect verify poll."""

from beanie import PydanticObjectId
from bson.errors import InvalidId

from app.core.audit import log_event
from app.core.config import get_settings
from app.core.exceptions import BadRequestError, ForbiddenError, InvalidStateError, NotFoundError
from app.core.logging import get_logger
from app.core.security import tokens_match
from app.models.analysis_session import SessionStatus
from app.services import analysis_sessions, credits, orchestrator
from app.services import gateway as payment_gateway
from app.services.gateway import CheckoutSession

log = get_logger(__name__)

PACKAGES = {"single": 1, "pack5": 5, "pack10": 10}
MAX_CREDITS = 100
COMPLETED_EVENT = "checkout.session.completed"


def payment_key(checkout_session_id: str) -> str:
    return f"payment:{checkout_session_id}"


def resolve_credit_count(package: str | None, credits_requested: int | None) -> int:
    if package:
        if package not in PACKAGES:
            raise BadRequestError("Unknown package", details={"allowed": list(PACKAGES)})
        return PACKAGES[package]
    if credits_requested is not None and 1 <= credits_requested <= MAX_CREDITS:
        return credits_requested
    raise BadRequestError("Invalid credit amount", details={"min": 1, "max": MAX_CREDITS})


def _line_item_for(package: str | None, count: int) -> tuple[str, int]:
    """(price id, quantity): packages sell as one unit of their own price."""
    s = get_settings()
    if package:
        price_id = {"single": s.stripe_price_single, "pack5": s.stripe_price_pack5, "pack10": s.stripe_price_pack10}[package]
        quantity = 1
    else:
        price_id, quantity = s.stripe_price_per_credit, count
    if not price_id:
        raise BadRequestError("Payments not configured")
    return price_id, quantity


def _redirect_urls(count: int, user_id: PydanticObjectId | None, guest_token: str | None) -> tuple[str, str]:
    base = get_settings().public_base_url.rstrip("/")
    cancel_url = f"{base}/analysis?payment=cancelled"
    if count == 1 and guest_token:
        success_url = f"{base}/r/{guest_token}?payment=success&session_id={{CHECKOUT_SESSION_ID}}"
    elif user_id:
        success_url = f"{base}/results?payment=success"
    else:
        success_url = f"{base}/analysis?payment=success"
    return success_url, cancel_url


async def initiate_checkout(
    *,
    user_id: PydanticObjectId | None,
    package: str | None = None,
    credits_requested: int | None = None,
    analysis_session_id: str | None = None,
    guest_token: str | None = None,
) -> dict:
    """Create a gateway checkout and return where to send the buyer."""
    count = resolve_credit_count(package, credits_requested)
    if count == 1 and not analysis_session_id and not user_id:
        raise BadRequestError("Analysis id is required for a guest purchase")

    metadata = {"credits": str(count)}
    if analysis_session_id:
        analysis = await analysis_sessions.get_for_viewer(analysis_session_id, user_id, guest_token)
        if analysis.status != SessionStatus.PENDING:
            raise InvalidStateError(
                "Analysis is already paid for",
                details={"status": analysis.status.value},
            )
        metadata["analysisSessionId"] = str(analysis.id)
    if user_id:
        metadata["userId"] = str(user_id)
    if guest_token:
        metadata["guestToken"] = guest_token

    price_id, quantity = _line_item_for(package, count)
    success_url, cancel_url = _redirect_urls(count, user_id, guest_token)
    checkout = await payment_gateway.get_gateway().create_checkout_session(
        price_id=price_id,
        quantity=quantity,
        metadata=metadata,
        success_url=success_url,
        cancel_url=cancel_url,
    )
    return {"checkout_url": checkout.url, "checkout_session_id": checkout.id}


def credited_quantity(checkout: CheckoutSession) -> int:
    """Credits actually bought, from the gateway's own line items. Metadata is never consulted."""
    table = get_settings().price_credits
    total = 0
    for item in checkout.line_items:
        per_unit = table.get(item.price_id or "")
        if per_unit is None:
            log.warning("unknown_price_id", checkout_session_id=checkout.id, price_id=item.price_id)
            continue
        total += per_unit * item.quantity
    return total


def _parse_user_id(value: str | None) -> PydanticObjectId | None:
    if not value:
        return None
    try:
        return PydanticObjectId(value)
    except (InvalidId, TypeError, ValueError):
        return None


async def _apply_paid_checkout(checkout: CheckoutSession) -> dict:
    quantity = credited_quantity(checkout)
    metadata = checkout.metadata
    analysis_id = metadata.get("analysisSessionId")
    user_id = _parse_user_id(metadata.get("userId"))
    currency = checkout.currency.upper() if checkout.currency else None

    if quantity <= 0:
        await log_event(None, "payment_unattributed", "payment", checkout.id, {"reason": "no_credits"})
        log.warning("payment_without_credits", checkout_session_id=checkout.id)
        return {"status": "ignored"}

    if quantity == 1 and analysis_id:
        try:
            analysis = await orchestrator.confirm_payment(analysis_id, checkout.id, checkout.amount_total, currency)
        except InvalidStateError as e:
            # Paid for a session that can no longer start; needs a manual refund.
            await log_event(None, "payment_for_closed_session", "payment", checkout.id, {"analysis_session_id": analysis_id, **e.details})
            log.error("payment_for_closed_session", checkout_session_id=checkout.id, analysis_session_id=analysis_id)
            return {"status": "ignored"}
        except NotFoundError:
            # Unknown session id in metadata; credit the buyer instead if we know them.
            log.warning("payment_session_missing", checkout_session_id=checkout.id, analysis_session_id=analysis_id)
        else:
            return {"status": analysis.status.value}

    if user_id:
        entry, created = await credits.append_entry(
            user_id,
            quantity,
            credits.reason_for_quantity(quantity),
            payment_reference=checkout.id,
            idempotency_key=payment_key(checkout.id),
        )
        if created:
            await log_event(
                str(user_id),
                "payment_captured",
                "payment",
                checkout.id,
                {"credits": quantity, "amount": checkout.amount_total, "currency": currency, "ledger_entry_id": str(entry.id)},
            )
        return {"status": "credited", "credits": quantity}

    await log_event(None, "payment_unattributed", "payment", checkout.id, {"credits": quantity})
    log.warning("payment_unattributed", checkout_session_id=checkout.id, credits=quantity)
    return {"status": "ignored"}


async def handle_webhook(payload: bytes, signature: str | None) -> dict:
    """Verify the gateway signature, then apply a completed checkout idempotently."""
    gw = payment_gateway.get_gateway()
    event = gw.verify_webhook(payload, signature)
    if event.type != COMPLETED_EVENT or not event.object_id:
        log.info("webhook_ignored", event_id=event.id, event_type=event.type)
        return {"status": "ignored"}
    checkout = await gw.get_session(event.object_id)
    if not checkout.is_paid:
        log.info("webhook_unpaid", checkout_session_id=checkout.id, payment_status=checkout.payment_status)
        return {"status": "unpaid"}
    return await _apply_paid_checkout(checkout)


async def verify_checkout(checkout_session_id: str, guest_token: str | None = None) -> dict:
    """
    Client poll after the gateway redirect. Trusts only the gateway's own
    payment status; the result is the same idempotent transition the webhook
    applies, so whichever of the two arrives first does the work.
    """
    if not checkout_session_id:
        raise BadRequestError("Checkout session id is required")
    checkout = await payment_gateway.get_gateway().get_session(checkout_session_id)
    analysis_id = checkout.metadata.get("analysisSessionId")
    if not analysis_id:
        raise BadRequestError("Checkout is not tied to an analysis")
    expected = checkout.metadata.get("guestToken")
    if guest_token and expected and not tokens_match(expected, guest_token):
        raise ForbiddenError("Guest token does not match")
    if not checkout.is_paid:
        return {"status": "unpaid"}

    analysis = await analysis_sessions.get_session(analysis_id)
    if analysis.status == SessionStatus.PENDING and credited_quantity(checkout) == 1:
        currency = checkout.currency.upper() if checkout.currency else None
        analysis = await orchestrator.confirm_payment(analysis.id, checkout.id, checkout.amount_total, currency)
    elif analysis.status == SessionStatus.PAID:
        await orchestrator.dispatch(analysis)
    return {"status": analysis.status.value}
