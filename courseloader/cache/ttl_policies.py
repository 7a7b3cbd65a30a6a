"""
TTL configuration for the tiers of a hierarchical load.
"""
from enum import Enum
from typing import Dict, Optional

from config.settings import settings


class Tier(Enum):
    """Granularities at which hierarchical data is cached."""
    PARENT = "parent"          # The record rendered first (e.g. a course)
    COLLECTION = "collection"  # Its child list (e.g. the course's modules)
    DETAIL = "detail"          # One child's contents, fetched on expand


# TTL by tier (in seconds)
TTL_CONFIG: Dict[Tier, float] = {
    Tier.PARENT: settings.parent_ttl_seconds,
    Tier.COLLECTION: settings.collection_ttl_seconds,
    # Details are fetched on demand and change rarely while a page is open
    Tier.DETAIL: settings.detail_ttl_seconds,
}


def get_ttl_for_tier(
    tier: Tier,
    overrides: Optional[Dict[Tier, float]] = None,
) -> float:
    """
    Get the TTL for a tier.

    Args:
        tier: The hierarchy tier
        overrides: Per-loader TTLs that take precedence over TTL_CONFIG

    Returns:
        TTL in seconds
    """
    if overrides and tier in overrides:
        return overrides[tier]
    return TTL_CONFIG[tier]
