# =============================================================================
# tests/ - Test Suite
# =============================================================================
# This package contains all tests for the EduDash API:
# - test_proxy.py, test_anthropic_client.py, test_tools.py: AI proxy and Claude
# - test_quota_service.py, test_subscriptions.py: Metering, plans and seats
# - test_notification_service.py: Push/email dispatch
# - test_transcription_service.py, test_websocket.py: Speech-to-text jobs
# - test_routers.py, test_auth.py: API endpoints and JWT handling
#
# Run tests with: pytest
# =============================================================================
