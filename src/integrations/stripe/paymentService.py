"""
Stripe Payment Verification
===========================

The dispatch core never moves money; it only needs to know whether the
booking fee behind a payment reference has been collected before it
broadcasts a job. ``PaymentVerifier.verify(reference)`` answers that.

Implementations:
  - ``StripePaymentVerifier``: the reference is a Stripe PaymentIntent id;
    paid means the intent status is ``succeeded``.
  - ``SimulatedPaymentVerifier``: accepts any non-empty reference. For
    local development and tenants running without a gateway.

The Stripe key is read from ``settings.stripe_secret_key``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import stripe

from src.core.config import settings

logger = logging.getLogger(__name__)

stripe.api_version = "2024-06-20"

_PAID_STATUSES: frozenset[str] = frozenset({"succeeded"})


# ---------------------------------------------------------------------------
# Custom exception
# ---------------------------------------------------------------------------

class PaymentError(Exception):
    """Raised when the payment gateway cannot be queried.

    Attributes:
        message: Human-readable error description.
        stripe_error_code: The Stripe error code, if available.
    """

    def __init__(self, message: str, stripe_error_code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.stripe_error_code = stripe_error_code

    def __repr__(self) -> str:
        return f"PaymentError(message={self.message!r}, code={self.stripe_error_code!r})"


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PaymentVerification:
    paid: bool
    reference: str
    status: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None


class PaymentVerifier(Protocol):
    async def verify(self, reference: str) -> PaymentVerification: ...


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------

class StripePaymentVerifier:
    """Verify booking fee payments against Stripe PaymentIntents."""

    def __init__(self, api_key: str | None = None) -> None:
        self._api_key = api_key or settings.stripe_secret_key

    async def verify(self, reference: str) -> PaymentVerification:
        try:
            intent = stripe.PaymentIntent.retrieve(reference, api_key=self._api_key)
        except stripe.InvalidRequestError as exc:
            # Unknown intent id: not paid, not an outage
            logger.warning("Stripe rejected payment reference %s: %s", reference, exc)
            return PaymentVerification(paid=False, reference=reference, status="not_found")
        except stripe.StripeError as exc:
            logger.error("Stripe error verifying %s: %s", reference, exc)
            raise PaymentError(
                str(getattr(exc, "user_message", None) or exc),
                stripe_error_code=getattr(exc, "code", None),
            ) from exc

        paid = intent.status in _PAID_STATUSES
        logger.info("PaymentIntent %s status=%s paid=%s", reference, intent.status, paid)
        return PaymentVerification(
            paid=paid,
            reference=reference,
            status=intent.status,
            amount_cents=intent.amount,
            currency=intent.currency,
        )


class SimulatedPaymentVerifier:
    """Treat every non-empty reference as paid."""

    async def verify(self, reference: str) -> PaymentVerification:
        paid = bool(reference and reference.strip())
        logger.info("Simulated payment verification for %r: paid=%s", reference, paid)
        return PaymentVerification(
            paid=paid,
            reference=reference,
            status="simulated" if paid else "missing",
        )


def build_payment_verifier() -> PaymentVerifier:
    if settings.payment_verifier == "stripe":
        return StripePaymentVerifier()
    return SimulatedPaymentVerifier()
