"""Message persistence for chat turns."""

from typing import Any

from app.core.logging import get_logger
from app.core.schemas_chat import ConversationTurn, Role
from app.db.supabase_client import get_supabase

logger = get_logger(__name__)


def insert_message(
    conversation_id: str,
    user_id: str,
    role: Role,
    content: str,
    metadata: dict[str, Any] | None = None,
) -> ConversationTurn:
    """Insert one turn and return it as stored."""
    row: dict[str, Any] = {
        "conversation_id": conversation_id,
        "user_id": user_id,
        "role": role.value,
        "content": content,
    }
    if metadata:
        row["metadata"] = metadata

    supabase = get_supabase()
    result = supabase.table("messages").insert(row).execute()
    if not result.data:
        raise RuntimeError(f"Failed to insert {role.value} message for conversation {conversation_id}")
    return ConversationTurn.from_row({**row, **result.data[0]})


def list_recent_messages(conversation_id: str, limit: int = 20) -> list[ConversationTurn]:
    """Last ``limit`` turns, oldest first."""
    supabase = get_supabase()
    result = (
        supabase.table("messages")
        .select("id, conversation_id, role, content, created_at")
        .eq("conversation_id", conversation_id)
        .order("created_at", desc=True)
        .limit(limit)
        .execute()
    )
    rows = list(reversed(result.data or []))
    return [ConversationTurn.from_row(r) for r in rows]


def list_user_messages(conversation_id: str, limit: int = 10) -> list[str]:
    """Recent user utterances in a conversation, oldest first."""
    supabase = get_supabase()
    result = (
        supabase.table("messages")
        .select("content, created_at")
        .eq("conversation_id", conversation_id)
        .eq("role", Role.USER.value)
        .order("created_at", desc=True)
        .limit(limit)
        .execute()
    )
    return [r.get("content") or "" for r in reversed(result.data or [])]
