# =============================================================================
# app/dependencies.py - Shared Dependencies
# =============================================================================
# FastAPI dependency injection for shared resources.
# These are injected into route handlers using Depends().
# =============================================================================

from typing import Annotated, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials

from ai.proxy import AIProxyService
from app.auth.dependencies import security
from app.exceptions import AuthenticationError
from core.services.transcription_service import TranscriptionService


def get_access_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> str:
    """
    Raw bearer token, for RPCs that must run as the caller.

    Signature checks happen in get_current_user; routes that use this also
    depend on a user dependency.
    """
    if credentials is None:
        raise AuthenticationError("Missing authorization header")
    return credentials.credentials


def get_proxy_service() -> AIProxyService:
    return AIProxyService()


def get_transcription_service() -> TranscriptionService:
    return TranscriptionService()


# Type aliases for dependency injection
AccessTokenDep = Annotated[str, Depends(get_access_token)]
ProxyServiceDep = Annotated[AIProxyService, Depends(get_proxy_service)]
TranscriptionServiceDep = Annotated[TranscriptionService, Depends(get_transcription_service)]
