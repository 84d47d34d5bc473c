from __future__ import annotations

import asyncio
from typing import Optional

import stripe
import structlog
from pydantic import ValidationError

from .db import run_blocking, settings
from .errors import SignatureInvalid, UpstreamProviderError
from .models import WebhookEvent

logger = structlog.get_logger().bind(component="payment_gateway")

CHECKOUT_COMPLETED = "checkout.session.completed"


class PaymentGateway:
    """Thin adapter over Stripe Checkout and Stripe webhook signatures."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        tolerance: Optional[int] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET
        self.tolerance = tolerance if tolerance is not None else settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS

    async def create_checkout_session(self, success_url: str, cancel_url: str) -> str:
        if not self.api_key:
            logger.error("checkout_not_configured")
            raise UpstreamProviderError("Payment provider is not configured")

        try:
            session = await run_blocking(
                stripe.checkout.Session.create,
                api_key=self.api_key,
                payment_method_types=["card"],
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": settings.ENTRY_CURRENCY,
                            "product_data": {"name": settings.ENTRY_PRODUCT_NAME},
                            "unit_amount": settings.ENTRY_FEE_CENTS,
                        },
                        "quantity": 1,
                    }
                ],
                success_url=success_url,
                cancel_url=cancel_url,
            )
        except stripe.StripeError as exc:
            logger.error("checkout_failed", error=str(exc), error_type=type(exc).__name__)
            raise UpstreamProviderError(str(exc.user_message or exc)) from exc
        except asyncio.TimeoutError as exc:
            logger.error("checkout_timeout")
            raise UpstreamProviderError("Payment provider timed out") from exc

        logger.info("checkout_created", session_id=session.id)
        return session.id

    def verify_webhook(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        secret: Optional[str] = None,
    ) -> WebhookEvent:
        """Check the Stripe signature over the untouched request bytes, then decode."""

        secret = secret or self.webhook_secret
        if not secret:
            logger.error("webhook_secret_missing")
            raise SignatureInvalid("Webhook secret is not configured")
        if not signature_header:
            raise SignatureInvalid("Missing Stripe-Signature header")

        try:
            payload = raw_body.decode("utf-8")
            event = stripe.Webhook.construct_event(payload, signature_header, secret, self.tolerance)
        except UnicodeDecodeError as exc:
            raise SignatureInvalid("Webhook body is not valid UTF-8") from exc
        except stripe.SignatureVerificationError as exc:
            logger.warning("webhook_signature_invalid", error=str(exc))
            raise SignatureInvalid(str(exc)) from exc
        except ValueError as exc:
            logger.warning("webhook_payload_invalid")
            raise SignatureInvalid("Webhook payload could not be decoded") from exc

        try:
            return WebhookEvent.model_validate(event.to_dict())
        except ValidationError as exc:
            logger.warning("webhook_payload_invalid")
            raise SignatureInvalid("Webhook payload could not be decoded") from exc


gateway = PaymentGateway()
