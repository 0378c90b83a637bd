"""Recurring session patterns for prompt injection.

Summaries are computed in the background from the user's syntheses and
engagement signals, then cached per user with the session count they were
computed at. The request path only reads that cache.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any

from app.context.models import PatternSummary
from app.core.background_jobs import get_job_queue
from app.core.logging import get_logger
from app.core.pattern_synthesizer import get_synthesis_cache
from app.core.schemas_chat import SYNTHESIS_CONFIDENCE_THRESHOLD, SignalRequest, SynthesisRecord
from app.core.synthesis_cache import SynthesisStore
from app.db.conversations import count_conversations
from app.db.learning_signals import count_pattern_engagements
from app.db.pattern_cache import get_pattern_cache, upsert_pattern_cache

logger = get_logger(__name__)

MIN_SESSIONS_FOR_PATTERNS = 5
CACHE_REFRESH_SESSIONS = 3
MIN_OCCURRENCE_COUNT = 3
MAX_PATTERNS_IN_PROMPT = 3

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _occurrences(record: SynthesisRecord) -> int:
    return max(len(record.evidence), record.surface_count)


def rank_patterns(records: list[SynthesisRecord], engagements: dict[str, int]) -> list[SynthesisRecord]:
    """Most occurrences first, then most engaged, then most recent."""
    return sorted(
        records,
        key=lambda r: (_occurrences(r), engagements.get(r.theme, 0), r.computed_at or _EPOCH),
        reverse=True,
    )


def summarize_patterns(records: list[SynthesisRecord], engagements: dict[str, int]) -> list[PatternSummary]:
    """Top three well-evidenced, high-confidence patterns."""
    kept = [
        r
        for r in rank_patterns(records, engagements)
        if _occurrences(r) >= MIN_OCCURRENCE_COUNT and r.confidence >= SYNTHESIS_CONFIDENCE_THRESHOLD
    ]
    return [
        PatternSummary(
            theme=r.theme,
            summary=r.synthesis,
            occurrence_count=_occurrences(r),
            confidence=r.confidence,
            domains=r.domains,
            last_seen_at=r.computed_at,
        )
        for r in kept[:MAX_PATTERNS_IN_PROMPT]
    ]


def _cached_summaries(row: dict[str, Any]) -> tuple[PatternSummary, ...]:
    summaries = []
    for raw in row.get("patterns") or []:
        try:
            summaries.append(PatternSummary.model_validate(raw))
        except ValueError as e:
            logger.warning(f"Skipping malformed cached pattern: {e}")
    return tuple(summaries)


def refresh_pattern_cache(user_id: str, store: SynthesisStore) -> list[PatternSummary]:
    """Recompute and cache session patterns. Runs on the background queue."""
    session_count = count_conversations(user_id)
    summaries = summarize_patterns(store.list_records(user_id), count_pattern_engagements(user_id))
    upsert_pattern_cache(
        user_id,
        [s.model_dump(mode="json") for s in summaries],
        session_count=session_count,
        analyzed_at=datetime.now(timezone.utc),
    )
    logger.info(f"Pattern cache refreshed for user {user_id}: {len(summaries)} pattern(s)")
    return summaries


def _load_session_patterns(user_id: str) -> tuple[int, dict[str, Any] | None]:
    session_count = count_conversations(user_id)
    if session_count < MIN_SESSIONS_FOR_PATTERNS:
        return session_count, None
    return session_count, get_pattern_cache(user_id)


async def fetch_session_patterns(request: SignalRequest) -> tuple[PatternSummary, ...] | None:
    """
    Cached session patterns, once the user has at least five sessions.

    A missing or stale cache enqueues a refresh; the stale summaries are
    still used for this turn.
    """
    session_count, row = await asyncio.to_thread(_load_session_patterns, request.user_id)
    if session_count < MIN_SESSIONS_FOR_PATTERNS:
        return None

    analyzed_at_count = int(row.get("session_count_at_analysis") or 0) if row else None
    if analyzed_at_count is None or session_count - analyzed_at_count >= CACHE_REFRESH_SESSIONS:
        get_job_queue().enqueue(
            f"patterns:{request.user_id}",
            refresh_pattern_cache,
            request.user_id,
            get_synthesis_cache().store,
        )

    if row is None:
        return None
    return _cached_summaries(row) or None
