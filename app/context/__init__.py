"""Prompt context for coaching turns.

This module provides:
- Signal models consumed by prompt composition
- Static prompt blocks and file-backed prompt resources
- Per-domain coaching configuration
- The fixed-precedence prompt composer
"""

from app.context.models import (
    CoachingDomain,
    CrisisResult,
    DiscoveryContext,
    DiscoveryProfile,
    DomainResult,
    PastConversation,
    PatternSummary,
    SessionMode,
    SignalSet,
    StylePreference,
    StyleSignal,
    UserContext,
)

__all__ = [
    "CoachingDomain",
    "CrisisResult",
    "DiscoveryContext",
    "DiscoveryProfile",
    "DomainResult",
    "PastConversation",
    "PatternSummary",
    "SessionMode",
    "SignalSet",
    "StylePreference",
    "StyleSignal",
    "UserContext",
]
