from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field

from app.deps import get_optional_user
from app.models.user import User
from app.services import payments as payments_service

router = APIRouter()


class CheckoutRequest(BaseModel):
    package: str | None = None  # "single" | "pack5" | "pack10"
    credits: int | None = None
    analysis_session_id: str | None = None
    guest_token: str | None = None


class VerifyRequest(BaseModel):
    checkout_session_id: str = Field(..., min_length=1)
    guest_token: str | None = None


@router.post("/checkout")
async def create_checkout(body: CheckoutRequest, user: User | None = Depends(get_optional_user)):
    """Start a Stripe checkout for a package or a credit count."""
    return await payments_service.initiate_checkout(
        user_id=user.id if user else None,
        package=body.package,
        credits_requested=body.credits,
        analysis_session_id=body.analysis_session_id,
        guest_token=body.guest_token,
    )


@router.post("/webhook")
async def stripe_webhook(request: Request, stripe_signature: str | None = Header(None, alias="Stripe-Signature")):
    """Stripe webhook: checkout.session.completed -> mark session paid or add credits (idempotent)."""
    body = await request.body()
    return await payments_service.handle_webhook(body, stripe_signature)


@router.post("/verify")
async def verify_checkout(body: VerifyRequest):
    """Poll after the Stripe redirect; returns the analysis status."""
    return await payments_service.verify_checkout(body.checkout_session_id, body.guest_token)
