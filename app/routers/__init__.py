# =============================================================================
# app/routers/ - API Route Definitions
# =============================================================================
# This package contains FastAPI routers organized by feature:
# - health.py: Health check endpoints
# - tasks.py: Background task status endpoints
# - ai.py: AI proxy, usage metering, allocations and plan limits
# - notifications.py: Push/email dispatch and database webhooks
# - transcriptions.py: Speech-to-text, synchronous and queued
# - subscriptions.py: Plans and school subscriptions
# - seats.py: Teacher seat assignment
#
# Each router is mounted in main.py with a URL prefix.
# =============================================================================

from . import health
from . import tasks
from . import ai
from . import notifications
from . import transcriptions
from . import subscriptions
from . import seats

__all__ = [
    "health",
    "tasks",
    "ai",
    "notifications",
    "transcriptions",
    "subscriptions",
    "seats",
]
