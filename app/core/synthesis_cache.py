"""Synthesis cache and surfacing rate limiter.

Gates two things:
  * refresh: when the background synthesis for a user is due again
  * surfacing: whether a computed synthesis may be shown in this conversation

Surfacing rules: at most one synthesis per conversation, and a theme that
was surfaced stays quiet until three more conversations have started.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from app.core.chat_errors import RateLimitSuppression
from app.core.logging import get_logger
from app.core.schemas_chat import SynthesisRecord

logger = get_logger(__name__)

# Cooldown between surfacings of the same theme, in conversations
THEME_COOLDOWN_CONVERSATIONS = 3

# Refresh when this many conversations were started since the last run
SYNTHESIS_REFRESH_CONVERSATIONS = 3
SYNTHESIS_MAX_AGE = timedelta(hours=24)

# Style re-analysis cadence, in completed sessions
STYLE_REFRESH_SESSIONS = 5


class SynthesisStore(Protocol):
    def list_records(self, user_id: str) -> list[SynthesisRecord]: ...

    def upsert_record(self, record: SynthesisRecord) -> None: ...

    def get_state(self, user_id: str) -> dict[str, Any] | None: ...

    def set_state(self, user_id: str, computed_at: datetime, conversation_count: int) -> None: ...

    def count_conversations(self, user_id: str) -> int: ...

    def count_conversations_since(
        self, user_id: str, since: datetime, exclude_conversation_id: str | None = None
    ) -> int: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime | str | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class SynthesisCache:
    """Request-time view over the synthesis store."""

    def __init__(self, store: SynthesisStore):
        self.store = store

    def can_surface(self, user_id: str, theme: str, conversation_id: str) -> bool:
        """
        Whether ``theme`` may be surfaced in ``conversation_id``.

        False when any synthesis was already surfaced in this conversation,
        or when this theme was surfaced and fewer than three other
        conversations have started since.
        """
        return self._suppression_reason(self.store.list_records(user_id), theme, conversation_id) is None

    def select_surfaceable(self, user_id: str, conversation_id: str) -> SynthesisRecord | None:
        """Highest-confidence eligible record that passes ``can_surface``."""
        records = self.store.list_records(user_id)
        candidates = sorted(
            (r for r in records if r.is_eligible),
            key=lambda r: r.confidence,
            reverse=True,
        )
        for record in candidates:
            reason = self._suppression_reason(records, record.theme, conversation_id)
            if reason is None:
                return record
            suppression = RateLimitSuppression(record.theme, reason)
            logger.info(f"{suppression} (user={user_id}, conversation={conversation_id})")
        return None

    def should_refresh(self, user_id: str) -> bool:
        """True if never computed, 3+ conversations since, or older than 24h."""
        state = self.store.get_state(user_id)
        computed_at = _as_aware(state.get("computed_at")) if state else None
        if computed_at is None:
            return True
        if _utcnow() - computed_at >= SYNTHESIS_MAX_AGE:
            return True
        since = self.store.count_conversations_since(user_id, computed_at)
        return since >= SYNTHESIS_REFRESH_CONVERSATIONS

    def record_surfaced(self, user_id: str, theme: str, conversation_id: str) -> SynthesisRecord | None:
        """Write a new snapshot of the record with its surfacing bumped."""
        current = next((r for r in self.store.list_records(user_id) if r.theme == theme), None)
        if current is None:
            logger.warning(f"Surfaced synthesis '{theme}' not found for user {user_id}")
            return None
        updated = current.model_copy(
            update={
                "last_surfaced_at": _utcnow(),
                "last_surfaced_conversation_id": conversation_id,
                "surface_count": current.surface_count + 1,
            }
        )
        self.store.upsert_record(updated)
        return updated

    def _suppression_reason(
        self,
        records: list[SynthesisRecord],
        theme: str,
        conversation_id: str,
    ) -> str | None:
        if any(r.last_surfaced_conversation_id == conversation_id for r in records):
            return "already surfaced a synthesis in this conversation"

        record = next((r for r in records if r.theme == theme), None)
        surfaced_at = _as_aware(record.last_surfaced_at) if record else None
        if surfaced_at is None:
            return None

        started_since = self.store.count_conversations_since(
            record.user_id, surfaced_at, exclude_conversation_id=conversation_id
        )
        if started_since < THEME_COOLDOWN_CONVERSATIONS:
            return f"theme surfaced {started_since} conversation(s) ago"
        return None


def should_refresh_style(preferences: dict[str, Any] | None) -> bool:
    """True when style was never analyzed or 5+ sessions have passed since."""
    if not preferences:
        return False
    session_count = int(preferences.get("session_count") or 0)
    analyzed_at_count = preferences.get("session_count_at_style_analysis")
    if analyzed_at_count is None:
        return session_count >= STYLE_REFRESH_SESSIONS
    return session_count - int(analyzed_at_count) >= STYLE_REFRESH_SESSIONS
