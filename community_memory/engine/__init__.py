
from .cache import BoundedCache, CacheEntry
from .types import (
    CommunityInteraction,
    Insight,
    InsightBundle,
    KnowledgeDocument,
    LeaderboardEntry,
    MemoryFragment,
    PersonalityProfile,
    PlatformAccount,
    UserIdentity,
    normalize_interaction,
)
from .weights import community_impact, interaction_weight, quality_score

__all__ = [
    "BoundedCache",
    "CacheEntry",
    "CommunityInteraction",
    "Insight",
    "InsightBundle",
    "KnowledgeDocument",
    "LeaderboardEntry",
    "MemoryFragment",
    "PersonalityProfile",
    "PlatformAccount",
    "UserIdentity",
    "community_impact",
    "interaction_weight",
    "normalize_interaction",
    "quality_score",
]
