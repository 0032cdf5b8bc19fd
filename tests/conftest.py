# =============================================================================
# tests/conftest.py - Pytest Configuration
# =============================================================================
# This module provides pytest fixtures and configuration for all tests.
#
# Key features:
# - Sets up mock environment variables before any imports
# - Builds UserContext objects for each role
# - Provides a TestClient with auth dependencies overridden
# =============================================================================

import os

# =============================================================================
# Set up test environment BEFORE any imports
# =============================================================================
# This must happen before importing app.config which loads settings immediately

os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_ANON_KEY", "test-anon-key")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test-service-key")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret-with-enough-length")
os.environ.setdefault("ANTHROPIC_API_KEY", "sk-ant-test")
os.environ.setdefault("OPENAI_API_KEY", "test-openai-key")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("DEBUG", "true")

from uuid import UUID

import pytest

from app.auth.models import UserContext

TEACHER_ID = UUID("11111111-1111-1111-1111-111111111111")
PRINCIPAL_ID = UUID("22222222-2222-2222-2222-222222222222")
PARENT_ID = UUID("33333333-3333-3333-3333-333333333333")
SUPERADMIN_ID = UUID("44444444-4444-4444-4444-444444444444")
SCHOOL_ID = "55555555-5555-5555-5555-555555555555"


# =============================================================================
# Users
# =============================================================================

@pytest.fixture
def teacher():
    return UserContext(id=TEACHER_ID, email="teacher@school.co.za", role="teacher", preschool_id=SCHOOL_ID)


@pytest.fixture
def principal():
    return UserContext(id=PRINCIPAL_ID, email="principal@school.co.za", role="principal", preschool_id=SCHOOL_ID)


@pytest.fixture
def parent():
    return UserContext(id=PARENT_ID, email="parent@home.co.za", role="parent", preschool_id=SCHOOL_ID)


@pytest.fixture
def superadmin():
    return UserContext(id=SUPERADMIN_ID, email="admin@edudash.co.za", role="superadmin")


# =============================================================================
# API client
# =============================================================================

@pytest.fixture
def client_for():
    """
    Factory for a TestClient acting as a given user.

    Usage:
        client = client_for(teacher)
        client.get("/api/v1/ai/usage")
    """
    from fastapi.testclient import TestClient

    from app.auth.dependencies import get_user_context
    from app.dependencies import get_access_token
    from app.main import app

    def _make(user: UserContext, overrides: dict | None = None):
        app.dependency_overrides[get_user_context] = lambda: user
        app.dependency_overrides[get_access_token] = lambda: "user-access-token"
        for dependency, factory in (overrides or {}).items():
            app.dependency_overrides[dependency] = factory
        # Not used as a context manager so the Redis listener never starts
        return TestClient(app, raise_server_exceptions=False)

    yield _make

    app.dependency_overrides.clear()


# =============================================================================
# Supabase query chain
# =============================================================================

@pytest.fixture
def supabase_query():
    """
    A MagicMock Supabase client whose query builders chain to themselves.

    Set `.execute.return_value.data` on the returned query to control rows.
    """
    from unittest.mock import MagicMock

    client = MagicMock()
    query = MagicMock()
    for method in ("select", "insert", "update", "eq", "neq", "in_", "gte", "lte",
                   "order", "limit", "maybe_single", "single", "is_", "not_"):
        getattr(query, method).return_value = query
    query.not_ = query
    client.table.return_value = query
    query.execute.return_value.data = []
    return client, query
