"""
Firebase Cloud Messaging integration
====================================

Public re-exports for the job offer push service.
"""

from .pushService import (
    DeliveryOutcome,
    FcmNotificationSender,
    JobSummary,
    NotificationSender,
    NullNotificationSender,
    build_notification_sender,
)

__all__ = [
    "DeliveryOutcome",
    "FcmNotificationSender",
    "JobSummary",
    "NotificationSender",
    "NullNotificationSender",
    "build_notification_sender",
]
