"""Read/write the per-user coaching profile (``context_profiles``)."""

from datetime import datetime, timezone
from typing import Any

from app.core.logging import get_logger
from app.db import context_cache
from app.db.supabase_client import get_supabase

logger = get_logger(__name__)

_PROFILE_COLUMNS = (
    "user_id, values, goals, situation, extracted_insights, coaching_preferences, "
    "discovery_completed_at, aha_insight, coaching_domains, current_challenges, "
    "emotional_baseline, communication_style, key_themes, strengths_identified, vision"
)


def get_context_profile(user_id: str) -> dict[str, Any] | None:
    supabase = get_supabase()
    result = (
        supabase.table("context_profiles")
        .select(_PROFILE_COLUMNS)
        .eq("user_id", user_id)
        .limit(1)
        .execute()
    )
    return result.data[0] if result.data else None


def upsert_discovery_profile(
    user_id: str,
    fields: dict[str, Any],
    completed_at: datetime | None = None,
) -> None:
    """Write the fields captured at the end of discovery.

    Only keys present in ``fields`` are written, so a partially parsed
    profile never blanks out columns it did not recover.
    """
    row: dict[str, Any] = {"user_id": user_id, **fields}
    row["discovery_completed_at"] = (completed_at or datetime.now(timezone.utc)).isoformat()

    supabase = get_supabase()
    supabase.table("context_profiles").upsert(row, on_conflict="user_id").execute()
    context_cache.invalidate_user(user_id)


def update_coaching_preferences(user_id: str, preferences: dict[str, Any]) -> None:
    """Replace the coaching_preferences document with a merged snapshot."""
    supabase = get_supabase()
    supabase.table("context_profiles").update({"coaching_preferences": preferences}).eq(
        "user_id", user_id
    ).execute()
    context_cache.invalidate_user(user_id)
