# =============================================================================
# ai/model_selector.py - Tier-Based Claude Model Selection
# =============================================================================
# Picks the Claude model for a request based on the school's subscription
# tier and whether the request carries images.
#
# Rules:
# - Vision (images attached) needs Basic or higher and always uses Sonnet
# - Text-only requests use Sonnet on Pro/Enterprise, Haiku otherwise
# - Complex services (lesson generation, grading, insights) prefer Sonnet
#   on Pro/Enterprise
# =============================================================================

import math
from dataclasses import dataclass
from enum import Enum

from app.config import settings
from app.exceptions import TierRestrictionError


class ClaudeModel(str, Enum):
    """Claude model identifiers used by the proxy."""
    HAIKU = "claude-3-haiku-20240307"
    SONNET = "claude-3-5-sonnet-20241022"


@dataclass(frozen=True)
class ModelCapabilities:
    """Static facts about a model."""
    supports_vision: bool
    max_tokens: int
    cost_tier: str


MODEL_CAPABILITIES: dict[str, ModelCapabilities] = {
    ClaudeModel.HAIKU.value: ModelCapabilities(supports_vision=False, max_tokens=4096, cost_tier="low"),
    ClaudeModel.SONNET.value: ModelCapabilities(supports_vision=True, max_tokens=8192, cost_tier="high"),
}

VISION_TIERS = {"basic", "premium", "pro", "enterprise"}
PREMIUM_TEXT_TIERS = {"pro", "enterprise"}
COMPLEX_SERVICES = {"lesson_generation", "grading_assistance", "progress_analysis", "insights"}


def _sonnet() -> str:
    return settings.CLAUDE_DEFAULT_MODEL


def _haiku() -> str:
    return settings.CLAUDE_FAST_MODEL


def select_model_for_tier(tier: str | None, has_images: bool = False) -> str:
    """
    Select a model for the caller's tier.

    Args:
        tier: Subscription tier of the caller's school ("free" if None)
        has_images: True if the request includes image attachments

    Returns:
        Model id string

    Raises:
        TierRestrictionError: Images on a tier without vision access
    """
    tier = (tier or "free").lower()

    if has_images:
        if tier in VISION_TIERS:
            return _sonnet()
        raise TierRestrictionError(
            "Vision features require Basic subscription (R299) or higher",
            tier=tier,
        )

    if tier in PREMIUM_TEXT_TIERS:
        return _sonnet()
    return _haiku()


def recommended_model_for_service(service_type: str, tier: str | None) -> str:
    """Sonnet for complex services on premium tiers; tier default otherwise."""
    tier = (tier or "free").lower()
    if service_type in COMPLEX_SERVICES and tier in PREMIUM_TEXT_TIERS:
        return _sonnet()
    return select_model_for_tier(tier, has_images=False)


def get_capabilities(model: str) -> ModelCapabilities:
    """Capabilities for a model id; unknown ids are treated like Haiku."""
    return MODEL_CAPABILITIES.get(model, MODEL_CAPABILITIES[ClaudeModel.HAIKU.value])


def supports_vision(model: str) -> bool:
    return get_capabilities(model).supports_vision


def fallback_model(model: str) -> str | None:
    """The cheaper model to retry with, or None if already on the cheapest."""
    if model == ClaudeModel.SONNET.value:
        return ClaudeModel.HAIKU.value
    return None


def estimate_token_count(text: str) -> int:
    # ~4 characters per token for English text
    return math.ceil(len(text or "") / 4)


def exceeds_max_tokens(text: str, model: str) -> bool:
    return estimate_token_count(text) > get_capabilities(model).max_tokens
