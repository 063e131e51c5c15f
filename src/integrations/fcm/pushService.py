"""
Firebase Cloud Messaging (FCM) Push Service
===========================================

Delivers job offers to providers' devices. The dispatch engine depends on
the ``NotificationSender`` protocol only; this module provides:

  - ``FcmNotificationSender``: multicast through the Firebase Admin SDK,
    batched at the FCM limit of 500 tokens per call.
  - ``NullNotificationSender``: no-op sender used when no Firebase
    credentials are configured. It reports every provider as
    ``SKIPPED`` so the dispatch engine never branches on whether push is
    available.

Initialization:
  The Firebase Admin SDK is initialised lazily on first send. Credentials
  come from ``settings.firebase_service_account_path`` (JSON file) or
  ``settings.firebase_credentials_json`` (raw JSON string).

Delivery is best effort. Providers without a token are reported as
``NO_TOKEN``; invalid tokens are reported as ``INVALID_TOKEN`` so the caller
can clear them.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional, Protocol

import firebase_admin
from firebase_admin import credentials, messaging
from firebase_admin.exceptions import InvalidArgumentError, NotFoundError

from src.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

FCM_BATCH_LIMIT: int = 500  # Firebase allows max 500 tokens per multicast
ANDROID_CHANNEL_ID: str = "job_offers"


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

class DeliveryOutcome(str, Enum):
    """Outcome of offering a job to one provider."""
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    INVALID_TOKEN = "INVALID_TOKEN"
    NO_TOKEN = "NO_TOKEN"
    SKIPPED = "SKIPPED"


@dataclass(frozen=True)
class JobSummary:
    """What a provider sees in a job offer."""
    job_id: uuid.UUID
    reference_number: str
    role: str
    pickup_address: Optional[str]
    distance_m: Optional[float] = None
    currency: Optional[str] = None
    estimated_total: Optional[str] = None

    def to_data(self) -> dict[str, str]:
        data = {
            "type": "job_offer",
            "job_id": str(self.job_id),
            "reference_number": self.reference_number,
            "role": self.role,
        }
        if self.pickup_address:
            data["pickup_address"] = self.pickup_address
        if self.currency and self.estimated_total is not None:
            data["currency"] = self.currency
            data["estimated_total"] = self.estimated_total
        return data


class NotificationSender(Protocol):
    async def notify(
        self,
        tokens_by_provider: Mapping[uuid.UUID, Optional[str]],
        summary: JobSummary,
    ) -> dict[uuid.UUID, DeliveryOutcome]: ...


# ---------------------------------------------------------------------------
# Firebase Admin SDK initialisation (lazy singleton)
# ---------------------------------------------------------------------------

_firebase_app: firebase_admin.App | None = None


def _ensure_firebase_initialised() -> firebase_admin.App:
    """Initialise the Firebase Admin SDK if it has not been already.

    Raises:
        RuntimeError: If no credentials are configured.
    """
    global _firebase_app

    if _firebase_app is not None:
        return _firebase_app

    try:
        _firebase_app = firebase_admin.get_app()
        logger.info("Using existing Firebase Admin app")
        return _firebase_app
    except ValueError:
        pass  # No default app yet

    if settings.firebase_service_account_path:
        logger.info(
            "Initialising Firebase Admin SDK from service account file: %s",
            settings.firebase_service_account_path,
        )
        cred = credentials.Certificate(settings.firebase_service_account_path)
    elif settings.firebase_credentials_json:
        logger.info("Initialising Firebase Admin SDK from JSON setting")
        cred = credentials.Certificate(json.loads(settings.firebase_credentials_json))
    else:
        raise RuntimeError(
            "Firebase credentials not configured. Set either "
            "FIREBASE_SERVICE_ACCOUNT_PATH or FIREBASE_CREDENTIALS_JSON."
        )

    _firebase_app = firebase_admin.initialize_app(cred)
    logger.info("Firebase Admin SDK initialised successfully")
    return _firebase_app


def _is_invalid_token_error(exc: Exception) -> bool:
    """Return True if the error indicates the device token is invalid."""
    if isinstance(exc, (InvalidArgumentError, NotFoundError)):
        return True
    error_str = str(exc).lower()
    return any(
        indicator in error_str
        for indicator in ["unregistered", "not-registered", "invalid-registration"]
    )


def _build_multicast(tokens: list[str], summary: JobSummary) -> messaging.MulticastMessage:
    body = summary.pickup_address or "New job near you"
    return messaging.MulticastMessage(
        tokens=tokens,
        notification=messaging.Notification(
            title=f"New {summary.role.replace('_', ' ').title()} job",
            body=body,
        ),
        data=summary.to_data(),
        apns=messaging.APNSConfig(
            headers={"apns-priority": "10"},
            payload=messaging.APNSPayload(aps=messaging.Aps(sound="default")),
        ),
        android=messaging.AndroidConfig(
            priority="high",
            notification=messaging.AndroidNotification(
                sound="default",
                channel_id=ANDROID_CHANNEL_ID,
            ),
        ),
    )


# ---------------------------------------------------------------------------
# Senders
# ---------------------------------------------------------------------------

class FcmNotificationSender:
    """Offer jobs to providers through FCM multicast."""

    async def notify(
        self,
        tokens_by_provider: Mapping[uuid.UUID, Optional[str]],
        summary: JobSummary,
    ) -> dict[uuid.UUID, DeliveryOutcome]:
        outcomes: dict[uuid.UUID, DeliveryOutcome] = {}
        targets: list[tuple[uuid.UUID, str]] = []
        for provider_id, token in tokens_by_provider.items():
            if token:
                targets.append((provider_id, token))
            else:
                outcomes[provider_id] = DeliveryOutcome.NO_TOKEN

        if not targets:
            return outcomes

        _ensure_firebase_initialised()

        for batch_start in range(0, len(targets), FCM_BATCH_LIMIT):
            batch = targets[batch_start : batch_start + FCM_BATCH_LIMIT]
            multicast = _build_multicast([token for _, token in batch], summary)

            try:
                response: messaging.BatchResponse = await asyncio.to_thread(
                    messaging.send_each_for_multicast, multicast
                )
            except Exception:
                logger.exception(
                    "Batch send failed for job %s (%d tokens)", summary.job_id, len(batch)
                )
                for provider_id, _ in batch:
                    outcomes[provider_id] = DeliveryOutcome.FAILED
                continue

            for (provider_id, _), send_response in zip(batch, response.responses):
                if send_response.success:
                    outcomes[provider_id] = DeliveryOutcome.DELIVERED
                elif send_response.exception and _is_invalid_token_error(
                    send_response.exception
                ):
                    outcomes[provider_id] = DeliveryOutcome.INVALID_TOKEN
                else:
                    outcomes[provider_id] = DeliveryOutcome.FAILED

        delivered = sum(1 for o in outcomes.values() if o == DeliveryOutcome.DELIVERED)
        logger.info(
            "Job %s offer push complete: %d/%d delivered",
            summary.job_id,
            delivered,
            len(outcomes),
        )
        return outcomes


class NullNotificationSender:
    """Sender used when push delivery is not configured."""

    async def notify(
        self,
        tokens_by_provider: Mapping[uuid.UUID, Optional[str]],
        summary: JobSummary,
    ) -> dict[uuid.UUID, DeliveryOutcome]:
        logger.debug(
            "Push disabled; skipping offer of job %s to %d providers",
            summary.job_id,
            len(tokens_by_provider),
        )
        return {provider_id: DeliveryOutcome.SKIPPED for provider_id in tokens_by_provider}


def build_notification_sender() -> NotificationSender:
    """Return the FCM sender when credentials are configured, else a no-op."""
    if settings.firebase_service_account_path or settings.firebase_credentials_json:
        return FcmNotificationSender()
    return NullNotificationSender()
