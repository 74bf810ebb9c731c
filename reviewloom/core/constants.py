"""Shared constants for ReviewLoom.

This module contains constants that are used across multiple modules
to avoid duplication and ensure consistency.
"""

# =============================================================================
# Analysis Levels
# =============================================================================

# Independent passes that run concurrently
# 1 = changed lines only, 2 = changed files in full, 3 = codebase context
ANALYSIS_LEVELS = (1, 2, 3)

# Synthesis pass; eligible once every analysis level has settled
SYNTHESIS_LEVEL = 4

LEVEL_NAMES = {
    1: "changes",
    2: "file context",
    3: "codebase context",
    4: "orchestration",
}

# =============================================================================
# Request Validation
# =============================================================================

MAX_INSTRUCTIONS_LENGTH = 5000

CANONICAL_TIERS = ("fast", "balanced", "thorough")

TIER_ALIASES = {
    "free": "fast",
    "standard": "balanced",
    "premium": "thorough",
}

VALID_TIERS = CANONICAL_TIERS + tuple(TIER_ALIASES)

DEFAULT_TIER = "balanced"

# =============================================================================
# Suggestions
# =============================================================================

SUGGESTION_SOURCE_AI = "ai"

# Suggestions below this confidence are dropped before storage
MIN_SUGGESTION_CONFIDENCE = 0.3

DEFAULT_SUGGESTION_CONFIDENCE = 0.7

# Comment statuses shown in the suggestion listing
VISIBLE_SUGGESTION_STATUSES = ("active", "dismissed", "adopted", "draft", "submitted")

# =============================================================================
# Review Types
# =============================================================================

REVIEW_TYPE_PR = "pr"
REVIEW_TYPE_LOCAL = "local"
