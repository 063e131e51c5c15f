"""
Stripe Integration Module
=========================

Booking fee payment verification.

Usage::

    from src.integrations.stripe import build_payment_verifier

    verifier = build_payment_verifier()
    result = await verifier.verify("pi_123")
"""

from .paymentService import (
    PaymentError,
    PaymentVerification,
    PaymentVerifier,
    SimulatedPaymentVerifier,
    StripePaymentVerifier,
    build_payment_verifier,
)

__all__ = [
    "PaymentError",
    "PaymentVerification",
    "PaymentVerifier",
    "SimulatedPaymentVerifier",
    "StripePaymentVerifier",
    "build_payment_verifier",
]
