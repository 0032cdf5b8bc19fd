# =============================================================================
# core/ - Business Logic Package
# =============================================================================
# This package contains the business logic behind the API:
# - models/: Pydantic schemas for requests, responses and stored rows
# - services/: Quotas, subscriptions, seats, notifications, transcription
#
# Routers stay thin and call into these services; Celery tasks call the
# same services so behaviour is identical in both processes.
# =============================================================================
