"""User context and prior-session signal providers.

Both are plain reads: no model calls, no writes.
"""

import asyncio
from typing import Any

from app.context.models import PastConversation, UserContext
from app.core.logging import get_logger
from app.core.schemas_chat import Role, SignalRequest
from app.db.context_cache import cached_context_profile
from app.db.conversations import list_recent_conversations
from app.db.messages import list_user_messages

logger = get_logger(__name__)

SUMMARY_MAX_CHARS = 80
PRIOR_SESSION_LIMIT = 3

_SITUATION_FIELDS = ("occupation", "life_stage", "relationships", "challenges", "freeform")


def _content(item: Any) -> str:
    if isinstance(item, str):
        return item.strip()
    if isinstance(item, dict):
        return str(item.get("content") or "").strip()
    return ""


def build_user_context(row: dict[str, Any] | None) -> UserContext:
    """Project a context_profiles row onto what the prompt may use.

    Only active goals and confirmed insights are kept.
    """
    if not row:
        return UserContext()

    values = tuple(c for c in (_content(v) for v in row.get("values") or []) if c)
    goals = tuple(
        _content(g)
        for g in row.get("goals") or []
        if _content(g) and (not isinstance(g, dict) or g.get("status", "active") == "active")
    )

    situation_raw = row.get("situation") or {}
    if isinstance(situation_raw, dict):
        situation = ". ".join(
            str(situation_raw[f]).strip() for f in _SITUATION_FIELDS if situation_raw.get(f)
        )
    else:
        situation = str(situation_raw).strip()

    insights = tuple(
        _content(i)
        for i in row.get("extracted_insights") or []
        if isinstance(i, dict) and i.get("confirmed") is True and _content(i)
    )

    return UserContext(values=values, goals=goals, situation=situation, insights=insights)


def summarize_conversation(
    user_messages: list[str],
    title: str | None = None,
    domain: str | None = None,
) -> str:
    """One-line summary of a past conversation without a model call.

    Priority: last user message, then title, then a generic label. The
    domain, when known, prefixes the summary.
    """
    prefix = f"{domain.capitalize()}: " if domain else ""
    last_user = next((m.strip() for m in reversed(user_messages) if m and m.strip()), None)
    topic = last_user or (title or "").strip() or "General coaching conversation"
    summary = " ".join(f"{prefix}{topic}".split())

    if len(summary) > SUMMARY_MAX_CHARS:
        truncated = summary[: SUMMARY_MAX_CHARS - 3]
        last_space = truncated.rfind(" ")
        if last_space > SUMMARY_MAX_CHARS // 2:
            truncated = truncated[:last_space]
        summary = truncated + "..."
    return summary


async def fetch_user_context(request: SignalRequest) -> UserContext | None:
    row = await asyncio.to_thread(cached_context_profile, request.user_id)
    if row is None:
        return None
    context = build_user_context(row)
    return context if context.has_context else None


def _load_past_conversations(user_id: str, conversation_id: str) -> list[PastConversation]:
    past = []
    for conv in list_recent_conversations(user_id, exclude_conversation_id=conversation_id, limit=PRIOR_SESSION_LIMIT):
        user_messages = list_user_messages(conv["id"], limit=3)
        if not user_messages and not conv.get("title"):
            continue
        past.append(
            PastConversation(
                conversation_id=str(conv["id"]),
                title=conv.get("title"),
                summary=summarize_conversation(user_messages, conv.get("title"), conv.get("domain")),
                domain=conv.get("domain"),
                last_message_at=conv.get("last_message_at"),
            )
        )
    return past


async def fetch_past_conversations(request: SignalRequest) -> tuple[PastConversation, ...] | None:
    past = await asyncio.to_thread(_load_past_conversations, request.user_id, request.conversation_id)
    return tuple(past) or None


def recent_dialogue(request: SignalRequest, limit: int = 3) -> list[dict[str, str]]:
    """Last few turns before the current message, as role/content dicts."""
    turns = [t for t in request.recent_messages if t.role in (Role.USER, Role.ASSISTANT)]
    return [{"role": t.role.value, "content": t.text} for t in turns[-limit:]]
