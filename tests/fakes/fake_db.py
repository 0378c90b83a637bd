"""Fake in-memory persistence for synthesis and conversation behavioral tests."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Tuple

from app.core.schemas_chat import SynthesisRecord

USER_ID = "user-1"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hours_ago(hours: float) -> datetime:
    return utcnow() - timedelta(hours=hours)


class FakeSynthesisStore:
    """In-memory SynthesisStore with a conversation log for cooldown arithmetic."""

    def __init__(self):
        self.reset()

    def reset(self):
        """Reset all stores to initial state."""
        self.records: Dict[Tuple[str, str], SynthesisRecord] = {}
        self.states: Dict[str, Dict[str, Any]] = {}
        self.conversations: List[Dict[str, Any]] = []
        self.upserts: List[SynthesisRecord] = []

    # Seeding helpers
    def add_record(self, record: SynthesisRecord) -> SynthesisRecord:
        self.records[(record.user_id, record.theme)] = record
        return record

    def add_conversation(self, conversation_id: str, created_at: datetime, user_id: str = USER_ID) -> None:
        self.conversations.append({"id": conversation_id, "user_id": user_id, "created_at": created_at})

    # SynthesisStore protocol
    def list_records(self, user_id: str) -> List[SynthesisRecord]:
        records = [r for (uid, _), r in self.records.items() if uid == user_id]
        return sorted(records, key=lambda r: r.confidence, reverse=True)

    def upsert_record(self, record: SynthesisRecord) -> None:
        self.upserts.append(record)
        self.records[(record.user_id, record.theme)] = record

    def get_state(self, user_id: str) -> Dict[str, Any] | None:
        return self.states.get(user_id)

    def set_state(self, user_id: str, computed_at: datetime, conversation_count: int) -> None:
        self.states[user_id] = {
            "user_id": user_id,
            "computed_at": computed_at.isoformat(),
            "conversation_count": conversation_count,
        }

    def count_conversations(self, user_id: str) -> int:
        return sum(1 for c in self.conversations if c["user_id"] == user_id)

    def count_conversations_since(
        self,
        user_id: str,
        since: datetime,
        exclude_conversation_id: str | None = None,
    ) -> int:
        return sum(
            1
            for c in self.conversations
            if c["user_id"] == user_id and c["created_at"] > since and c["id"] != exclude_conversation_id
        )


def make_synthesis(
    theme: str = "Putting others first",
    domains: Tuple[str, ...] = ("career", "relationships"),
    confidence: float = 0.9,
    user_id: str = USER_ID,
    **overrides: Any,
) -> SynthesisRecord:
    return SynthesisRecord(
        user_id=user_id,
        theme=theme,
        domains=domains,
        confidence=confidence,
        evidence=overrides.pop("evidence", ("career: says yes to every request", "relationships: avoids conflict")),
        synthesis=overrides.pop("synthesis", "You tend to put other people's needs ahead of your own."),
        **overrides,
    )
