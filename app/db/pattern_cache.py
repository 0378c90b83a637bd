"""Cached session-pattern summaries (``pattern_cache``)."""

from datetime import datetime
from typing import Any

from app.db.supabase_client import get_supabase


def get_pattern_cache(user_id: str) -> dict[str, Any] | None:
    supabase = get_supabase()
    result = (
        supabase.table("pattern_cache")
        .select("user_id, patterns, session_count_at_analysis, analyzed_at")
        .eq("user_id", user_id)
        .limit(1)
        .execute()
    )
    return result.data[0] if result.data else None


def upsert_pattern_cache(
    user_id: str,
    patterns: list[dict[str, Any]],
    session_count: int,
    analyzed_at: datetime,
) -> None:
    supabase = get_supabase()
    supabase.table("pattern_cache").upsert(
        {
            "user_id": user_id,
            "patterns": patterns,
            "session_count_at_analysis": session_count,
            "analyzed_at": analyzed_at.isoformat(),
        },
        on_conflict="user_id",
    ).execute()
