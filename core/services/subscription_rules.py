# =============================================================================
# core/services/subscription_rules.py - Plan Gating Rules
# =============================================================================
# Pure functions deciding what a subscription tier unlocks.
#
# Production tiers are free, starter, premium and enterprise. Older tier
# names (parent_starter, parent_plus, basic, pro) are still stored on some
# schools and are normalized first.
# =============================================================================

from enum import Enum
from typing import Any


class Tier(str, Enum):
    FREE = "free"
    STARTER = "starter"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class OrgType(str, Enum):
    PRESCHOOL = "preschool"
    K12 = "k12"
    INDIVIDUAL = "individual"


_TIER_ALIASES = {
    "parent_starter": Tier.STARTER,
    "starter": Tier.STARTER,
    "parent_plus": Tier.PREMIUM,
    "basic": Tier.PREMIUM,
    "pro": Tier.PREMIUM,
    "premium": Tier.PREMIUM,
    "enterprise": Tier.ENTERPRISE,
}

AI_QUOTA_LIMITS: dict[Tier, dict[str, Any]] = {
    Tier.FREE: {"monthly": 50, "rpm": 5, "models": ["claude-3-haiku"]},
    Tier.STARTER: {"monthly": 500, "rpm": 15, "models": ["claude-3-haiku", "claude-3-sonnet"]},
    Tier.PREMIUM: {"monthly": 2500, "rpm": 30, "models": ["claude-3-haiku", "claude-3-sonnet", "claude-3-opus"]},
    Tier.ENTERPRISE: {"monthly": -1, "rpm": 60, "models": ["claude-3-haiku", "claude-3-sonnet", "claude-3-opus"]},
}


def normalize_tier(tier: str | None) -> Tier:
    """Map legacy and current tier names onto the four production tiers."""
    return _TIER_ALIASES.get((tier or "").lower(), Tier.FREE)


def resolve_org_type(org_type: str | None, preschool_id: str | None = None) -> OrgType:
    """
    Organization type from metadata, else inferred from school membership.

    "school" is accepted as an alias for k12 and "pre_school" for preschool.
    """
    value = (org_type or "").lower()
    if value in ("k12", "school"):
        return OrgType.K12
    if value in ("preschool", "pre_school"):
        return OrgType.PRESCHOOL
    return OrgType.PRESCHOOL if preschool_id else OrgType.INDIVIDUAL


def can_use_allocation(tier: str | None, org_type: OrgType | str, role: str | None = None) -> bool:
    """
    Whether school-managed AI allocations are available.

    Principals always have access; preschools need Starter, K-12 schools
    need Premium, and individuals never do.
    """
    if role in ("principal", "principal_admin"):
        return True

    normalized = normalize_tier(tier)
    org_type = OrgType(org_type)

    if org_type == OrgType.PRESCHOOL:
        return normalized in (Tier.STARTER, Tier.PREMIUM, Tier.ENTERPRISE)
    if org_type == OrgType.K12:
        return normalized in (Tier.PREMIUM, Tier.ENTERPRISE)
    return False


def can_select_models(tier: str | None) -> bool:
    return normalize_tier(tier) in (Tier.PREMIUM, Tier.ENTERPRISE)


def get_ai_quota_limits(tier: str | None) -> dict[str, Any]:
    """Monthly request budget, requests per minute and models for a tier (-1 = unlimited)."""
    limits = AI_QUOTA_LIMITS[normalize_tier(tier)]
    return {"monthly": limits["monthly"], "rpm": limits["rpm"], "models": list(limits["models"])}
