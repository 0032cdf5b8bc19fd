# =============================================================================
# core/models/ai.py - AI Proxy Schemas
# =============================================================================
# These models define the API contract for POST /api/v1/ai/proxy:
# - ProxyRequest: Prompt, optional images, tool and streaming flags
# - ProxyResponse: Final text, token usage and cost, tool results
# - ServiceType: The AI services quotas are tracked for
# =============================================================================

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ServiceType(str, Enum):
    """
    AI services that are metered separately.

    Unknown values sent by older clients are mapped to DASH_CONVERSATION.
    """
    LESSON_GENERATION = "lesson_generation"
    HOMEWORK_HELP = "homework_help"
    GRADING_ASSISTANCE = "grading_assistance"
    GENERAL = "general"
    DASH_CONVERSATION = "dash_conversation"
    CONVERSATION = "conversation"


def normalize_service_type(value: str | None) -> str:
    """Map a client-supplied service type onto a known one."""
    valid = {s.value for s in ServiceType}
    return value if value in valid else ServiceType.DASH_CONVERSATION.value


class ImageAttachment(BaseModel):
    """A base64 image sent along with the prompt (vision requests)."""

    data: str = Field(..., description="Base64-encoded image bytes")
    media_type: str = Field(default="image/jpeg", description="MIME type, e.g. image/png")


class ProxyPayload(BaseModel):
    prompt: str = Field(..., min_length=1, description="User prompt text")
    images: list[ImageAttachment] | None = Field(default=None, description="Optional image attachments")


class ProxyRequest(BaseModel):
    """
    Request body for the AI proxy.

    Example:
        {
            "scope": "teacher",
            "service_type": "lesson_generation",
            "payload": {"prompt": "Create a Grade 3 lesson on fractions"},
            "enable_tools": true
        }
    """

    scope: str = Field(..., description="Calling surface / role hint (teacher, parent, principal...)")
    service_type: str | None = Field(default=None, description="Metered AI service")
    payload: ProxyPayload
    metadata: dict[str, Any] = Field(default_factory=dict, description="Free-form client metadata, stored with usage")
    stream: bool = Field(default=False, description="Return server-sent events instead of JSON")
    enable_tools: bool = Field(default=False, description="Let Claude call database and exam tools")


class UsageInfo(BaseModel):
    tokens_in: int = 0
    tokens_out: int = 0
    cost: float = 0.0


class ProxyResponse(BaseModel):
    """Non-streaming proxy response."""

    success: bool = True
    content: str = Field(..., description="Final assistant text")
    usage: UsageInfo
    model: str = Field(..., description="Model that produced the final answer")
    tool_results: list[dict[str, Any]] | None = Field(
        default=None,
        description="tool_result blocks from the last tool round, if tools ran"
    )
