from __future__ import annotations

import json

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from adintel.config import settings
from adintel.db.deps import get_session
from adintel.services.billing import BillingEventError, BillingEventHandler

router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/webhook")
async def billing_webhook(
    request: Request,
    session: Session = Depends(get_session),
):
    payload = await request.body()
    webhook_secret = settings.STRIPE_WEBHOOK_SECRET
    if webhook_secret:
        signature = request.headers.get("stripe-signature")
        if not signature:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing Stripe signature header.")
        try:
            stripe.Webhook.construct_event(payload, signature, webhook_secret)
        except stripe.error.SignatureVerificationError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid Stripe signature.") from exc
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload.") from exc

    try:
        event = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload.") from exc
    if not isinstance(event, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook payload must be an object.")

    try:
        outcome = BillingEventHandler(session).handle(event)
    except BillingEventError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return {"received": True, "action": outcome.action, "org_id": outcome.org_id}
