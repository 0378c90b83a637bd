"""Engagement signals recorded per completed session (``learning_signals``)."""

from typing import Any

from app.db.supabase_client import get_supabase

SESSION_COMPLETED = "session_completed"
PATTERN_ENGAGED = "pattern_engaged"


def list_session_signals(user_id: str, limit: int = 10) -> list[dict[str, Any]]:
    """signal_data of the user's most recent completed sessions."""
    supabase = get_supabase()
    result = (
        supabase.table("learning_signals")
        .select("signal_data, created_at")
        .eq("user_id", user_id)
        .eq("signal_type", SESSION_COMPLETED)
        .order("created_at", desc=True)
        .limit(limit)
        .execute()
    )
    return [row.get("signal_data") or {} for row in result.data or []]


def insert_learning_signal(user_id: str, signal_type: str, signal_data: dict[str, Any]) -> None:
    supabase = get_supabase()
    supabase.table("learning_signals").insert(
        {"user_id": user_id, "signal_type": signal_type, "signal_data": signal_data}
    ).execute()


def count_pattern_engagements(user_id: str, limit: int = 200) -> dict[str, int]:
    """How often the user engaged with each surfaced pattern theme."""
    supabase = get_supabase()
    result = (
        supabase.table("learning_signals")
        .select("signal_data")
        .eq("user_id", user_id)
        .eq("signal_type", PATTERN_ENGAGED)
        .limit(limit)
        .execute()
    )
    counts: dict[str, int] = {}
    for row in result.data or []:
        theme = (row.get("signal_data") or {}).get("pattern_theme")
        if theme:
            counts[theme] = counts.get(theme, 0) + 1
    return counts
