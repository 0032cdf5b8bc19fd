# =============================================================================
# tests/test_model_selector.py - Model Selection Tests
# =============================================================================
# Run with: pytest tests/test_model_selector.py -v
# =============================================================================

import pytest

from ai.model_selector import (
    ClaudeModel,
    estimate_token_count,
    exceeds_max_tokens,
    fallback_model,
    get_capabilities,
    recommended_model_for_service,
    select_model_for_tier,
    supports_vision,
)
from app.config import settings
from app.exceptions import TierRestrictionError


class TestSelectModelForTier:
    """Tests for select_model_for_tier."""

    @pytest.mark.parametrize("tier", ["free", "basic", "starter", None])
    def test_text_on_lower_tiers_uses_fast_model(self, tier):
        """Text-only requests below Pro use the fast model."""
        assert select_model_for_tier(tier) == settings.CLAUDE_FAST_MODEL

    @pytest.mark.parametrize("tier", ["pro", "enterprise", "PRO"])
    def test_text_on_premium_tiers_uses_default_model(self, tier):
        """Pro and Enterprise get the default (Sonnet) model."""
        assert select_model_for_tier(tier) == settings.CLAUDE_DEFAULT_MODEL

    def test_images_on_basic_use_sonnet(self):
        """Vision requests on Basic or higher use the default model."""
        assert select_model_for_tier("basic", has_images=True) == settings.CLAUDE_DEFAULT_MODEL

    def test_images_on_free_rejected(self):
        """Vision requests on Free raise TierRestrictionError."""
        with pytest.raises(TierRestrictionError) as exc_info:
            select_model_for_tier("free", has_images=True)

        assert exc_info.value.status_code == 403
        assert exc_info.value.code == "tier_restriction"


class TestRecommendedModel:
    """Tests for recommended_model_for_service."""

    def test_complex_service_on_pro(self):
        """Lesson generation on Pro uses Sonnet."""
        assert recommended_model_for_service("lesson_generation", "pro") == settings.CLAUDE_DEFAULT_MODEL

    def test_complex_service_on_free(self):
        """Lesson generation on Free falls back to the tier default."""
        assert recommended_model_for_service("lesson_generation", "free") == settings.CLAUDE_FAST_MODEL

    def test_simple_service_on_free(self):
        """Conversation on Free uses the fast model."""
        assert recommended_model_for_service("dash_conversation", "free") == settings.CLAUDE_FAST_MODEL


class TestCapabilities:
    """Tests for model capability lookups."""

    def test_sonnet_supports_vision(self):
        """Sonnet supports images; Haiku doesn't."""
        assert supports_vision(ClaudeModel.SONNET.value) is True
        assert supports_vision(ClaudeModel.HAIKU.value) is False

    def test_unknown_model_treated_as_haiku(self):
        """Unknown model ids get Haiku's capabilities."""
        assert get_capabilities("mystery-model").max_tokens == 4096

    def test_fallback_chain(self):
        """Sonnet falls back to Haiku; Haiku has no fallback."""
        assert fallback_model(ClaudeModel.SONNET.value) == ClaudeModel.HAIKU.value
        assert fallback_model(ClaudeModel.HAIKU.value) is None


class TestTokenEstimates:
    """Tests for token estimation."""

    def test_four_chars_per_token(self):
        """Estimates round up at ~4 chars per token."""
        assert estimate_token_count("abcd") == 1
        assert estimate_token_count("abcde") == 2
        assert estimate_token_count("") == 0

    def test_exceeds_max_tokens(self):
        """Haiku's 4096 limit is about 16k characters."""
        assert exceeds_max_tokens("a" * 20000, ClaudeModel.HAIKU.value) is True
        assert exceeds_max_tokens("a" * 100, ClaudeModel.HAIKU.value) is False
