"""Payment gateway adapter (Stripe) with bounded timeouts and retries"""
import logging
import time
from dataclasses import dataclass
from typing import Optional, Callable, TypeVar

import stripe

from app.core.config import settings
from app.core.errors import ChargeDeclinedError, ExternalGatewayError
from app.core.metrics import gateway_calls_counter
from app.models.donation import Donation
from app.models.refund import Refund

logger = logging.getLogger(__name__)

# Configure Stripe
stripe.api_key = settings.STRIPE_SECRET_KEY
# Retries are handled below so exhaustion can be parked explicitly
stripe.max_network_retries = 0
stripe.default_http_client = stripe.RequestsClient(timeout=settings.GATEWAY_TIMEOUT_SECONDS)

T = TypeVar("T")

# Network failures, throttling and 5xx responses are safe to retry with the same idempotency key
RETRYABLE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


@dataclass
class ChargeResult:
    transaction_id: str
    status: str


@dataclass
class RefundResult:
    refund_id: str
    status: str  # 'pending', 'succeeded', 'failed', 'canceled', 'requires_action'


def _with_retries(operation: str, call: Callable[[], T]) -> T:
    """Run a gateway call with bounded exponential backoff.

    Raises ExternalGatewayError once GATEWAY_MAX_RETRIES attempts have failed
    with retryable errors. Non-retryable Stripe errors propagate unchanged.
    """
    last_error = None
    for attempt in range(1, settings.GATEWAY_MAX_RETRIES + 1):
        try:
            result = call()
            gateway_calls_counter.labels(operation=operation, status="success").inc()
            return result
        except RETRYABLE_ERRORS as e:
            last_error = e
            gateway_calls_counter.labels(operation=operation, status="retry").inc()
            logger.warning(
                f"Gateway {operation} attempt {attempt}/{settings.GATEWAY_MAX_RETRIES} failed: {e}"
            )
            if attempt < settings.GATEWAY_MAX_RETRIES:
                time.sleep(settings.GATEWAY_RETRY_BACKOFF_SECONDS * (2 ** (attempt - 1)))

    gateway_calls_counter.labels(operation=operation, status="exhausted").inc()
    raise ExternalGatewayError(
        f"Gateway {operation} failed after {settings.GATEWAY_MAX_RETRIES} attempts: {last_error}",
        operation=operation
    )


class StripeGateway:
    """charge(donation) -> ChargeResult; refund(transaction_id, amount, refund) -> RefundResult"""

    def charge(self, donation: Donation, payment_method_id: Optional[str] = None) -> ChargeResult:
        params = {
            "amount": donation.amount_cents,
            "currency": donation.currency,
            "metadata": {
                "donation_id": str(donation.id),
                "fundraiser_id": donation.fundraiser_id,
                "organization_id": donation.organization_id,
            },
        }
        if payment_method_id:
            params["payment_method"] = payment_method_id
            params["confirm"] = True

        def create():
            return stripe.PaymentIntent.create(
                idempotency_key=f"donation-{donation.idempotency_key}",
                **params
            )

        try:
            intent = _with_retries("charge", create)
        except stripe.CardError as e:
            gateway_calls_counter.labels(operation="charge", status="declined").inc()
            raise ChargeDeclinedError(e.user_message or str(e), decline_code=getattr(e, "code", None))
        except stripe.StripeError as e:
            # Invalid request / auth problems: nothing was charged and retrying will not help
            gateway_calls_counter.labels(operation="charge", status="error").inc()
            raise ChargeDeclinedError(f"Charge rejected by processor: {e}")

        logger.info(f"Submitted charge {intent.id} for donation {donation.id} ({donation.amount_cents} cents)")
        return ChargeResult(transaction_id=intent.id, status=intent.status)

    def refund(self, transaction_id: str, amount_cents: int, refund: Refund) -> RefundResult:
        def create():
            return stripe.Refund.create(
                payment_intent=transaction_id,
                amount=amount_cents,
                metadata={"refund_id": str(refund.id), "donation_id": str(refund.donation_id)},
                idempotency_key=f"refund-{refund.id}"
            )

        try:
            result = _with_retries("refund", create)
        except stripe.StripeError as e:
            gateway_calls_counter.labels(operation="refund", status="error").inc()
            logger.error(f"Refund {refund.id} rejected by processor: {e}")
            return RefundResult(refund_id="", status="failed")

        logger.info(f"Submitted refund {result.id} for transaction {transaction_id} ({amount_cents} cents)")
        return RefundResult(refund_id=result.id, status=result.status)

    def list_events(self, created_after: int, types):
        """Recent processor events, for recovering webhooks that never arrived"""
        def fetch():
            return stripe.Event.list(created={"gte": created_after}, types=list(types), limit=100)

        page = _with_retries("list_events", fetch)
        return list(page.auto_paging_iter())


_default_gateway = None


def get_gateway():
    global _default_gateway
    if _default_gateway is None:
        _default_gateway = StripeGateway()
    return _default_gateway
