"""Conversation rows: ownership, domain continuity and session counts."""

from datetime import datetime, timezone
from typing import Any

from app.core.logging import get_logger
from app.db.supabase_client import get_supabase

logger = get_logger(__name__)


def get_conversation(conversation_id: str, user_id: str) -> dict[str, Any] | None:
    """Get a conversation if it belongs to ``user_id``."""
    supabase = get_supabase()
    result = (
        supabase.table("conversations")
        .select("id, user_id, domain, title, type, created_at, last_message_at, message_count")
        .eq("id", conversation_id)
        .eq("user_id", user_id)
        .limit(1)
        .execute()
    )
    return result.data[0] if result.data else None


def list_recent_conversations(
    user_id: str,
    exclude_conversation_id: str | None = None,
    limit: int = 3,
) -> list[dict[str, Any]]:
    """Most recently active conversations for a user, newest first."""
    supabase = get_supabase()
    query = (
        supabase.table("conversations")
        .select("id, title, domain, created_at, last_message_at, message_count")
        .eq("user_id", user_id)
    )
    if exclude_conversation_id:
        query = query.neq("id", exclude_conversation_id)
    result = query.order("last_message_at", desc=True).limit(limit).execute()
    return result.data or []


def count_conversations(user_id: str) -> int:
    supabase = get_supabase()
    result = (
        supabase.table("conversations")
        .select("id", count="exact")
        .eq("user_id", user_id)
        .execute()
    )
    return result.count or 0


def count_conversations_since(
    user_id: str,
    since: datetime,
    exclude_conversation_id: str | None = None,
) -> int:
    """Conversations created strictly after ``since``."""
    supabase = get_supabase()
    query = (
        supabase.table("conversations")
        .select("id", count="exact")
        .eq("user_id", user_id)
        .gt("created_at", since.isoformat())
    )
    if exclude_conversation_id:
        query = query.neq("id", exclude_conversation_id)
    result = query.execute()
    return result.count or 0


def list_conversations_with_domains(user_id: str, limit: int = 20) -> list[dict[str, Any]]:
    """Recent conversations that were routed to a domain, for pattern synthesis."""
    supabase = get_supabase()
    result = (
        supabase.table("conversations")
        .select("id, title, domain, created_at")
        .eq("user_id", user_id)
        .not_.is_("domain", "null")
        .order("created_at", desc=True)
        .limit(limit)
        .execute()
    )
    return result.data or []


def update_conversation_domain(conversation_id: str, domain: str) -> None:
    supabase = get_supabase()
    supabase.table("conversations").update({"domain": domain}).eq("id", conversation_id).execute()


def touch_conversation(conversation_id: str, message_count: int | None = None) -> None:
    """Bump last_message_at after a completed turn."""
    payload: dict[str, Any] = {"last_message_at": datetime.now(timezone.utc).isoformat()}
    if message_count is not None:
        payload["message_count"] = message_count
    supabase = get_supabase()
    supabase.table("conversations").update(payload).eq("id", conversation_id).execute()


def set_conversation_type(conversation_id: str, conversation_type: str) -> None:
    supabase = get_supabase()
    supabase.table("conversations").update({"type": conversation_type}).eq("id", conversation_id).execute()
