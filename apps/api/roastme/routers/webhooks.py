"""
Payment webhooks: signature check first, then the event is applied
"""
from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
import structlog

from roastme.core.database import get_db
from roastme.core.errors import PaymentError, WebhookSignatureError
from roastme.core.exceptions import InvalidSignatureError, ValidationError
from roastme.services.payments import payments_service

logger = structlog.get_logger()

router = APIRouter()


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
):
    if not stripe_signature:
        raise ValidationError("Missing stripe-signature header")

    payload = await request.body()
    try:
        event = payments_service.verify_stripe_event(payload, stripe_signature)
    except WebhookSignatureError as e:
        logger.warning("Stripe webhook rejected", error=e.message)
        raise InvalidSignatureError("stripe")
    except PaymentError as e:
        raise ValidationError(e.message)

    result = await payments_service.handle_stripe_event(db, event)
    logger.info("Stripe webhook processed", event_type=event.get("type"), result=result)
    return {"received": True, "result": result}


@router.post("/polar")
async def polar_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    payload = await request.body()
    try:
        event = payments_service.verify_polar_event(payload, request.headers)
    except WebhookSignatureError as e:
        logger.warning("Polar webhook rejected", error=e.message)
        raise InvalidSignatureError("polar")
    except PaymentError as e:
        raise ValidationError(e.message)

    result = await payments_service.handle_polar_event(db, event)
    logger.info("Polar webhook processed", event_type=event.get("type"), result=result)
    return {"received": True, "result": result}
