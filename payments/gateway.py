import json
import logging
from typing import Dict, Optional

import stripe

from booking_errors import BookingError, GatewayError, SignatureError, TransientError, with_retry

logger = logging.getLogger(__name__)

TRANSIENT_STRIPE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


class CheckoutSession:
    def __init__(self, id: str, url: str, amount: int):
        self.id = id
        self.url = url
        self.amount = amount


class StripeGateway:
    """
    Stripe Checkout handle. Built once per process in main.create_app and
    injected into the checkout service and the webhook reconciler.
    """

    def __init__(self, api_key: Optional[str], webhook_secret: Optional[str], currency: str = "jpy",
                 timeout: float = 10.0, max_attempts: int = 3, backoff_seconds: float = 0.5):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.currency = currency.lower()
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        # retries are ours (TransientError only); bound every call with a timeout
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    def create_checkout_session(self, amount: int, name: str, description: str, metadata: Dict[str, str],
                                success_url: str, cancel_url: str,
                                client_reference_id: Optional[str] = None) -> CheckoutSession:
        """
        Create a hosted Checkout session for a single line of `amount` whole
        currency units. Transient Stripe failures are retried with backoff.
        """
        if not self.api_key:
            raise GatewayError("Payment gateway is not configured", code="gateway_not_configured")

        def create():
            try:
                return stripe.checkout.Session.create(
                    api_key=self.api_key,
                    payment_method_types=["card"],
                    mode="payment",
                    client_reference_id=client_reference_id,
                    line_items=[{
                        "price_data": {
                            "currency": self.currency,
                            "product_data": {"name": name[:100], "description": description[:300]},
                            # zero-decimal currency: unit_amount is whole units
                            "unit_amount": amount,
                        },
                        "quantity": 1,
                    }],
                    metadata=metadata,
                    payment_intent_data={"metadata": metadata},
                    success_url=success_url,
                    cancel_url=cancel_url,
                )
            except TRANSIENT_STRIPE_ERRORS as e:
                raise TransientError(f"Stripe unavailable: {e}") from e
            except stripe.StripeError as e:
                raise GatewayError(f"Stripe rejected checkout session: {e}", code="gateway_rejected") from e

        session = with_retry(self.max_attempts, self.backoff_seconds)(create)()
        logger.info(f"Created Stripe session {session.id} for {amount} {self.currency} ({metadata.get('booking_id')})")
        return CheckoutSession(session.id, session.url, amount)

    def verify_event(self, payload: bytes, sig_header: Optional[str]) -> dict:
        """
        Authenticate a webhook delivery and return the event as a plain dict.
        Nothing in the payload is trusted before this succeeds.
        """
        if not self.webhook_secret:
            raise BookingError("Missing webhook secret configuration", code="webhook_secret_missing")
        if not sig_header:
            raise SignatureError("Missing Stripe-Signature header", code="missing_signature")
        try:
            stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"[Stripe Webhook] Signature verification failed: {e}")
            raise SignatureError("Invalid signature", code="invalid_signature") from e
        except ValueError as e:
            raise SignatureError("Invalid payload", code="invalid_payload") from e
        return json.loads(payload)
