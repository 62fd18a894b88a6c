"""
Payments Service
Checkout sessions and webhook handling for Stripe and Polar
"""

import base64
import hashlib
import hmac
import json
import time
from typing import Mapping, Optional

import httpx
import stripe
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool
import structlog

from roastme.core.config import settings
from roastme.core.errors import PaymentError, WebhookSignatureError
from roastme.models.db import User
from roastme.models.dto import Plan
from roastme.services.credits import CREDIT_PACKAGES, credits_service, product_id_for

logger = structlog.get_logger()

POLAR_API_URLS = {
    "sandbox": "https://sandbox-api.polar.sh",
    "production": "https://api.polar.sh",
}

# Standard Webhooks replay window
WEBHOOK_TOLERANCE_SECONDS = 300

POLAR_PURCHASE_EVENTS = {"checkout.completed", "order.paid"}
POLAR_SUBSCRIBE_EVENTS = {"subscription.created", "subscription.active"}
POLAR_UNSUBSCRIBE_EVENTS = {
    "subscription.canceled",
    "subscription.cancelled",
    "subscription.revoked",
}


class CheckoutSession(BaseModel):
    id: str
    url: str
    provider: str


def _credits_from_metadata(metadata: Mapping) -> Optional[int]:
    try:
        credits = int(metadata.get("credits"))
    except (TypeError, ValueError):
        return None
    return credits if credits > 0 else None


class PaymentsService:
    """Checkout creation and webhook processing"""

    # ==================== Checkout ====================

    async def create_checkout(
        self,
        package_id: str,
        user_id: str,
        email: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> CheckoutSession:
        if package_id not in CREDIT_PACKAGES:
            raise PaymentError(f"Unknown package: {package_id}")

        provider = provider or settings.payment_provider
        product_id = product_id_for(package_id, provider)
        if not product_id:
            raise PaymentError(
                f"No {provider} product configured for {package_id}", provider=provider
            )

        metadata = {
            "userId": user_id,
            "credits": str(CREDIT_PACKAGES[package_id]["credits"]),
            "productId": product_id,
            "packageId": package_id,
        }
        if provider == "stripe":
            return await self._stripe_checkout(product_id, metadata, email)
        elif provider == "polar":
            return await self._polar_checkout(product_id, metadata, email)
        raise PaymentError(f"Unknown payment provider: {provider}")

    async def _stripe_checkout(
        self, price_id: str, metadata: dict, email: Optional[str]
    ) -> CheckoutSession:
        if not settings.stripe_secret_key:
            raise PaymentError("STRIPE_SECRET_KEY is not set", provider="stripe")

        try:
            session = await run_in_threadpool(
                stripe.checkout.Session.create,
                api_key=settings.stripe_secret_key,
                mode="payment",
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                success_url=f"{settings.app_url}/credits/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{settings.app_url}/credits",
                customer_email=email,
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
                allow_promotion_codes=True,
            )
        except stripe.StripeError as e:
            logger.error("Stripe checkout failed", error=str(e))
            raise PaymentError(f"Stripe checkout failed: {e}", provider="stripe")

        logger.info("Stripe checkout created", session_id=session.id, user_id=metadata["userId"])
        return CheckoutSession(id=session.id, url=session.url, provider="stripe")

    async def _polar_checkout(
        self, product_id: str, metadata: dict, email: Optional[str]
    ) -> CheckoutSession:
        if not settings.polar_access_token:
            raise PaymentError("POLAR_ACCESS_TOKEN is not set", provider="polar")

        payload = {
            "products": [product_id],
            "success_url": f"{settings.app_url}/credits/success?checkout_id={{CHECKOUT_ID}}",
            "metadata": metadata,
        }
        if email:
            payload["customer_email"] = email

        base_url = POLAR_API_URLS.get(settings.polar_server, POLAR_API_URLS["production"])
        try:
            async with httpx.AsyncClient(timeout=30) as client:
                response = await client.post(
                    f"{base_url}/v1/checkouts/",
                    headers={
                        "Authorization": f"Bearer {settings.polar_access_token}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as e:
            raise PaymentError(f"Polar network error: {e}", provider="polar")

        if response.status_code not in (200, 201):
            logger.error(
                "Polar checkout failed", status=response.status_code, body=response.text[:300]
            )
            raise PaymentError(
                f"Polar checkout failed: {response.status_code}", provider="polar"
            )

        data = response.json()
        logger.info("Polar checkout created", checkout_id=data["id"], user_id=metadata["userId"])
        return CheckoutSession(id=data["id"], url=data["url"], provider="polar")

    # ==================== Signature verification ====================

    def verify_stripe_event(self, payload: bytes, signature: Optional[str]) -> dict:
        """Verify the stripe-signature header and return the event as a dict"""
        if not settings.stripe_webhook_secret:
            raise PaymentError("STRIPE_WEBHOOK_SECRET is not set", provider="stripe")
        if not signature:
            raise WebhookSignatureError("Missing stripe-signature header", provider="stripe")

        try:
            stripe.Webhook.construct_event(payload, signature, settings.stripe_webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(f"Invalid signature: {e}", provider="stripe")
        except ValueError as e:
            raise PaymentError(f"Invalid payload: {e}", provider="stripe")

        return json.loads(payload)

    def verify_polar_event(
        self, payload: bytes, headers: Mapping[str, str], now: Optional[float] = None
    ) -> dict:
        """
        Verify a Standard Webhooks signature:
        base64(HMAC-SHA256(secret, "{webhook-id}.{webhook-timestamp}.{body}"))
        """
        if not settings.polar_webhook_secret:
            raise PaymentError("POLAR_WEBHOOK_SECRET is not set", provider="polar")

        msg_id = headers.get("webhook-id")
        timestamp = headers.get("webhook-timestamp")
        signature_header = headers.get("webhook-signature")
        if not (msg_id and timestamp and signature_header):
            raise WebhookSignatureError("Missing webhook signature headers", provider="polar")

        try:
            sent_at = int(timestamp)
        except ValueError:
            raise WebhookSignatureError("Invalid webhook-timestamp", provider="polar")
        now = time.time() if now is None else now
        if abs(now - sent_at) > WEBHOOK_TOLERANCE_SECONDS:
            raise WebhookSignatureError("Webhook timestamp outside tolerance", provider="polar")

        expected = polar_signature(settings.polar_webhook_secret, msg_id, timestamp, payload)
        for candidate in signature_header.split():
            version, _, value = candidate.partition(",")
            if version == "v1" and hmac.compare_digest(value, expected):
                try:
                    return json.loads(payload)
                except ValueError as e:
                    raise PaymentError(f"Invalid payload: {e}", provider="polar")

        raise WebhookSignatureError("Invalid signature", provider="polar")

    # ==================== Event handling ====================

    async def handle_stripe_event(self, db: AsyncSession, event: dict) -> str:
        """Apply a verified Stripe event; returns what was done"""
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}

        if event_type == "checkout.session.completed":
            if obj.get("payment_status") not in (None, "paid", "no_payment_required"):
                logger.info("Checkout completed without payment", session_id=obj.get("id"))
                return "ignored"
            metadata = obj.get("metadata") or {}
            email = (obj.get("customer_details") or {}).get("email") or obj.get("customer_email")
            return await self._grant_purchase(
                db, "stripe", obj.get("id"), metadata, email=email
            )

        if event_type == "payment_intent.payment_failed":
            metadata = obj.get("metadata") or {}
            user_id = metadata.get("userId")
            reason = (obj.get("last_payment_error") or {}).get("message") or "Payment failed"
            logger.warning("Stripe payment failed", payment_intent=obj.get("id"), reason=reason)
            if user_id and await credits_service.get_user(db, user_id):
                await credits_service.record_failed_payment(
                    db, user_id, "stripe", obj.get("id"), f"Payment failed: {reason}"
                )
                return "failed_payment_recorded"
            return "ignored"

        logger.info("Unhandled Stripe event", event_type=event_type)
        return "ignored"

    async def handle_polar_event(self, db: AsyncSession, event: dict) -> str:
        """Apply a verified Polar event; returns what was done"""
        event_type = event.get("type")
        data = event.get("data") or {}
        metadata = data.get("metadata") or {}

        if event_type in POLAR_PURCHASE_EVENTS:
            if event_type == "checkout.completed" or data.get("status") in (None, "paid", "succeeded"):
                return await self._grant_purchase(
                    db,
                    "polar",
                    data.get("checkout_id") or data.get("id"),
                    metadata,
                    email=(data.get("customer") or {}).get("email") or data.get("customer_email"),
                    polar_customer_id=data.get("customer_id"),
                )
            return "ignored"

        if event_type in POLAR_SUBSCRIBE_EVENTS or event_type in POLAR_UNSUBSCRIBE_EVENTS:
            user_id = metadata.get("userId")
            if not user_id or not await credits_service.get_user(db, user_id):
                logger.warning("Subscription event for unknown user", event_type=event_type)
                return "ignored"
            plan = Plan.pro if event_type in POLAR_SUBSCRIBE_EVENTS else Plan.free
            await credits_service.set_plan(
                db, user_id, plan, polar_customer_id=data.get("customer_id")
            )
            return f"plan_{plan.value}"

        logger.info("Unhandled Polar event", event_type=event_type)
        return "ignored"

    async def _grant_purchase(
        self,
        db: AsyncSession,
        provider: str,
        reference_id: Optional[str],
        metadata: Mapping,
        email: Optional[str] = None,
        polar_customer_id: Optional[str] = None,
    ) -> str:
        user_id = metadata.get("userId")
        credits = _credits_from_metadata(metadata)
        if not user_id or not credits:
            logger.warning(
                "Purchase event without userId/credits metadata",
                provider=provider,
                reference_id=reference_id,
            )
            return "ignored"

        user = await credits_service.get_user(db, user_id)
        if user is None:
            if email and await credits_service.find_account(db, email=email):
                email = None
            user = User(
                id=user_id,
                is_anonymous=False,
                email=email.lower() if email else None,
                credits=0,
                images_created=0,
                plan=Plan.free.value,
            )
            db.add(user)
            await db.commit()
            logger.info("User created from purchase", user_id=user_id, provider=provider)
        if polar_customer_id and not user.polar_customer_id:
            user.polar_customer_id = polar_customer_id
            await db.commit()

        balance = await credits_service.add_credits(
            db,
            user_id,
            credits,
            transaction_type="purchase",
            description=f"Purchased {credits} credits via {provider.capitalize()}",
            provider=provider,
            reference_id=reference_id,
        )
        if balance is None:
            return "duplicate"
        return "credits_added"


def polar_signature(secret: str, msg_id: str, timestamp: str, payload: bytes) -> str:
    signed = f"{msg_id}.{timestamp}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


# Singleton instance
payments_service = PaymentsService()
