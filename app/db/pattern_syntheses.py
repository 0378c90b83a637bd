"""Supabase-backed store for cross-domain synthesis records.

``pattern_syntheses`` holds one row per (user_id, theme); ``synthesis_state``
records when the user's syntheses were last computed. Writes are whole-row
upserts so readers always see a complete snapshot.
"""

from datetime import datetime
from typing import Any

from app.core.logging import get_logger
from app.core.schemas_chat import SynthesisRecord
from app.db import conversations
from app.db.supabase_client import get_supabase

logger = get_logger(__name__)


def _to_row(record: SynthesisRecord) -> dict[str, Any]:
    row = record.model_dump(mode="json")
    row["domains"] = list(record.domains)
    row["evidence"] = list(record.evidence)
    return row


class SupabaseSynthesisStore:
    """Persistence for SynthesisCache."""

    def list_records(self, user_id: str) -> list[SynthesisRecord]:
        supabase = get_supabase()
        result = (
            supabase.table("pattern_syntheses")
            .select("*")
            .eq("user_id", user_id)
            .order("confidence", desc=True)
            .execute()
        )
        records = []
        for row in result.data or []:
            try:
                records.append(SynthesisRecord.model_validate(row))
            except ValueError as e:
                logger.warning(f"Skipping malformed synthesis row for user {user_id}: {e}")
        return records

    def upsert_record(self, record: SynthesisRecord) -> None:
        supabase = get_supabase()
        supabase.table("pattern_syntheses").upsert(
            _to_row(record), on_conflict="user_id,theme"
        ).execute()

    def get_state(self, user_id: str) -> dict[str, Any] | None:
        supabase = get_supabase()
        result = (
            supabase.table("synthesis_state")
            .select("user_id, computed_at, conversation_count")
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    def set_state(self, user_id: str, computed_at: datetime, conversation_count: int) -> None:
        supabase = get_supabase()
        supabase.table("synthesis_state").upsert(
            {
                "user_id": user_id,
                "computed_at": computed_at.isoformat(),
                "conversation_count": conversation_count,
            },
            on_conflict="user_id",
        ).execute()

    def count_conversations(self, user_id: str) -> int:
        return conversations.count_conversations(user_id)

    def count_conversations_since(
        self,
        user_id: str,
        since: datetime,
        exclude_conversation_id: str | None = None,
    ) -> int:
        return conversations.count_conversations_since(user_id, since, exclude_conversation_id)
