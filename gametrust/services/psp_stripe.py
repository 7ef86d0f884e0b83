"""Stripe SDK implementation of the payment gateway."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, TypeVar

import stripe

from gametrust.config import Settings
from gametrust.services.payment_gateway import HoldResult
from gametrust.utils.errors import PaymentProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors worth retrying: network trouble, throttling and Stripe-side 5xx.
_TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


class StripeGateway:
    """Wrapper around the Stripe Python SDK to isolate PSP concerns.

    Holds are off-session PaymentIntents against the buyer's Stripe customer,
    releases are Connect transfers to the seller's account grouped by the
    PaymentIntent id, and refunds are issued against the PaymentIntent.
    """

    name = "stripe"

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._secret_key = settings.STRIPE_SECRET_KEY
        if not self._secret_key:
            raise RuntimeError("Stripe secret key is missing; configure STRIPE_SECRET_KEY.")

        stripe.api_key = self._secret_key
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS)
        self.currency = settings.CURRENCY

    def _call(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except _TRANSIENT_ERRORS as exc:
            logger.warning("Stripe transient failure", extra={"operation": operation, "error": str(exc)})
            raise PaymentProviderError(f"Stripe {operation} failed: {exc}", transient=True) from exc
        except stripe.StripeError as exc:
            raise PaymentProviderError(
                f"Stripe {operation} rejected: {exc}",
                transient=False,
                details={"stripe_code": getattr(exc, "code", None)},
            ) from exc

    def hold(self, buyer_id: str, amount: int, *, idempotency_key: str) -> HoldResult:
        metadata: Dict[str, Any] = {"buyer_id": buyer_id, "idempotency_key": idempotency_key}

        def _create() -> stripe.PaymentIntent:
            return stripe.PaymentIntent.create(
                amount=amount,
                currency=self.currency,
                customer=buyer_id,
                confirm=True,
                off_session=True,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                metadata=metadata,
                idempotency_key=idempotency_key,
            )

        try:
            intent = self._call("hold", _create)
        except PaymentProviderError as exc:
            if isinstance(exc.__cause__, stripe.CardError):
                logger.info("Stripe declined hold", extra={"buyer_id": buyer_id})
                return HoldResult(external_ref=None, ok=False)
            raise

        ok = intent.status == "succeeded"
        return HoldResult(external_ref=intent.id, ok=ok)

    def release(self, external_ref: str, amount: int, *, payee_id: str, idempotency_key: str) -> bool:
        transfer = self._call(
            "release",
            lambda: stripe.Transfer.create(
                amount=amount,
                currency=self.currency,
                destination=payee_id,
                transfer_group=external_ref,
                metadata={"payment_intent": external_ref},
                idempotency_key=idempotency_key,
            ),
        )
        return bool(getattr(transfer, "id", None))

    def refund(self, external_ref: str, amount: int, *, idempotency_key: str) -> bool:
        refund = self._call(
            "refund",
            lambda: stripe.Refund.create(
                payment_intent=external_ref,
                amount=amount,
                idempotency_key=idempotency_key,
            ),
        )
        return getattr(refund, "status", None) in {"succeeded", "pending"}


__all__ = ["StripeGateway"]
