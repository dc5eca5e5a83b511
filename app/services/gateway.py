"""Stripe Checkout adapter. The rest of the app only sees the dataclasses below."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import stripe

from app.core.config import get_settings
from app.core.exceptions import BadRequestError, GatewayVerificationFailedError
from app.core.logging import get_logger

log = get_logger(__name__)


@dataclass
class LineItem:
    price_id: str | None
    quantity: int


@dataclass
class CheckoutSession:
    """Gateway-side view of a checkout, as fetched from the gateway itself."""

    id: str
    payment_status: str
    url: str | None = None
    amount_total: int | None = None
    currency: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    line_items: list[LineItem] = field(default_factory=list)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"


@dataclass
class GatewayEvent:
    id: str
    type: str
    object_id: str | None


class PaymentGateway(ABC):
    @abstractmethod
    async def create_checkout_session(
        self,
        *,
        price_id: str,
        quantity: int,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession: ...

    @abstractmethod
    async def get_session(self, checkout_session_id: str) -> CheckoutSession: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: str | None) -> GatewayEvent: ...


def _to_checkout(obj: Any) -> CheckoutSession:
    items = []
    line_items = getattr(obj, "line_items", None)
    for li in (getattr(line_items, "data", None) or []):
        price = getattr(li, "price", None)
        items.append(LineItem(price_id=getattr(price, "id", None), quantity=int(li.quantity or 0)))
    metadata = obj.metadata or {}
    return CheckoutSession(
        id=obj.id,
        payment_status=obj.payment_status or "unpaid",
        url=getattr(obj, "url", None),
        amount_total=getattr(obj, "amount_total", None),
        currency=getattr(obj, "currency", None),
        metadata={k: str(metadata[k]) for k in metadata.keys()},
        line_items=items,
    )


class StripeGateway(PaymentGateway):
    def __init__(self, secret_key: str, webhook_secret: str):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    async def create_checkout_session(self, *, price_id, quantity, metadata, success_url, cancel_url):
        session = await asyncio.to_thread(
            stripe.checkout.Session.create,
            api_key=self.secret_key,
            mode="payment",
            line_items=[{"price": price_id, "quantity": quantity}],
            metadata=metadata,
            success_url=success_url,
            cancel_url=cancel_url,
        )
        log.info("checkout_created", checkout_session_id=session.id, price_id=price_id, quantity=quantity)
        return _to_checkout(session)

    async def get_session(self, checkout_session_id: str) -> CheckoutSession:
        session = await asyncio.to_thread(
            stripe.checkout.Session.retrieve,
            checkout_session_id,
            api_key=self.secret_key,
            expand=["line_items"],
        )
        return _to_checkout(session)

    def verify_webhook(self, payload: bytes, signature: str | None) -> GatewayEvent:
        if not self.webhook_secret:
            raise BadRequestError("Webhook secret not configured")
        if not signature:
            raise GatewayVerificationFailedError("Missing signature")
        try:
            event = stripe.Webhook.construct_event(payload=payload, sig_header=signature, secret=self.webhook_secret)
        except stripe.SignatureVerificationError:
            raise GatewayVerificationFailedError()
        except ValueError:
            raise GatewayVerificationFailedError("Malformed webhook payload")
        obj = event.data.object
        return GatewayEvent(id=event.id, type=event.type, object_id=getattr(obj, "id", None))


def get_gateway() -> PaymentGateway:
    s = get_settings()
    if not s.stripe_secret_key:
        raise BadRequestError("Payments not configured")
    return StripeGateway(s.stripe_secret_key, s.stripe_webhook_secret)
