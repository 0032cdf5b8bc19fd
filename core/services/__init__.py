# =============================================================================
# core/services/__init__.py - Service Layer Exports
# =============================================================================

from .notification_service import NotificationService
from .quota_service import QuotaService
from .seat_service import SeatOperationError, SeatService
from .subscription_service import SubscriptionService
from .transcription_service import TranscriptionService

__all__ = [
    "NotificationService",
    "QuotaService",
    "SeatOperationError",
    "SeatService",
    "SubscriptionService",
    "TranscriptionService",
]
