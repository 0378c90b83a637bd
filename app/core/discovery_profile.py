"""Discovery session state and the profile captured when it completes.

The discovery conversation ends with a ``[DISCOVERY_COMPLETE]`` block
holding a JSON profile. Parsing is lenient: a malformed payload still
yields whatever fields can be recovered.
"""

import asyncio
import json
import re
from datetime import datetime, timezone
from typing import Any

from app.context.models import DiscoveryContext, DiscoveryProfile
from app.core.chat_errors import TagParseFailure
from app.core.llm import parse_llm_json_dict
from app.core.logging import get_logger
from app.core.schemas_chat import SignalRequest
from app.db.context_cache import cached_context_profile
from app.db.context_profiles import upsert_discovery_profile
from app.db.conversations import count_conversations_since

logger = get_logger(__name__)

LIST_FIELDS = ("coaching_domains", "current_challenges", "key_themes", "strengths_identified", "values")
TEXT_FIELDS = ("emotional_baseline", "communication_style", "vision", "aha_insight")

# Loose "key": "value" / "key": [...] matches for salvage
_STRING_FIELD_RE = r'"{name}"\s*:\s*"((?:[^"\\]|\\.)*)"'
_LIST_FIELD_RE = r'"{name}"\s*:\s*\[(.*?)\]'
_LIST_ITEM_RE = re.compile(r'"((?:[^"\\]|\\.)*)"')


def _as_text_list(value: Any) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if isinstance(item, (str, int, float)) and str(item).strip()]


def _profile_from_dict(data: dict[str, Any]) -> DiscoveryProfile:
    fields: dict[str, Any] = {}
    for name in LIST_FIELDS:
        items = _as_text_list(data.get(name))
        if items:
            fields[name] = items
    for name in TEXT_FIELDS:
        value = data.get(name)
        if isinstance(value, str) and value.strip():
            fields[name] = value.strip()
    return DiscoveryProfile(**fields)


def _unescape(value: str) -> str:
    try:
        return json.loads(f'"{value}"')
    except json.JSONDecodeError:
        return value


def _salvage_fields(payload: str) -> dict[str, Any]:
    recovered: dict[str, Any] = {}
    for name in TEXT_FIELDS:
        match = re.search(_STRING_FIELD_RE.format(name=name), payload)
        if match:
            recovered[name] = _unescape(match.group(1))
    for name in LIST_FIELDS:
        match = re.search(_LIST_FIELD_RE.format(name=name), payload, re.DOTALL)
        if match:
            recovered[name] = [_unescape(item) for item in _LIST_ITEM_RE.findall(match.group(1))]
    return recovered


def parse_discovery_profile(payload: str) -> DiscoveryProfile:
    """
    Parse a DISCOVERY_COMPLETE payload.

    Valid JSON maps straight onto the profile, ignoring unknown keys and
    wrongly-typed values. Anything else falls back to per-field recovery
    and logs a TagParseFailure.
    """
    try:
        return _profile_from_dict(parse_llm_json_dict(payload))
    except ValueError as e:
        recovered = _salvage_fields(payload or "")
        profile = _profile_from_dict(recovered)
        failure = TagParseFailure(
            "DISCOVERY_COMPLETE",
            str(e),
            recovered_fields=[k for k, v in profile.model_dump().items() if v],
        )
        logger.warning(str(failure))
        return profile


def profile_columns(profile: DiscoveryProfile) -> dict[str, Any]:
    """Only the non-empty fields, so a partial profile never blanks a column."""
    return {key: value for key, value in profile.model_dump().items() if value}


def persist_discovery_profile(user_id: str, payload: str) -> DiscoveryProfile:
    """Parse and upsert the profile, marking discovery complete. Runs off the request path."""
    profile = parse_discovery_profile(payload)
    upsert_discovery_profile(user_id, profile_columns(profile), completed_at=datetime.now(timezone.utc))
    logger.info(f"Discovery profile stored for user {user_id}")
    return profile


def build_discovery_context(row: dict[str, Any] | None, sessions_since: int) -> DiscoveryContext:
    if not row or not row.get("discovery_completed_at"):
        return DiscoveryContext()
    return DiscoveryContext(
        discovery_completed_at=row["discovery_completed_at"],
        profile=_profile_from_dict(row),
        sessions_since_completion=sessions_since,
    )


def _load_discovery(user_id: str, conversation_id: str) -> DiscoveryContext:
    row = cached_context_profile(user_id)
    completed_at = (row or {}).get("discovery_completed_at")
    if not completed_at:
        return DiscoveryContext()

    since = datetime.fromisoformat(str(completed_at).replace("Z", "+00:00"))
    # Conversations started after completion, not counting this one
    sessions_since = count_conversations_since(user_id, since, exclude_conversation_id=conversation_id)
    return build_discovery_context(row, sessions_since)


async def fetch_discovery(request: SignalRequest) -> DiscoveryContext:
    return await asyncio.to_thread(_load_discovery, request.user_id, request.conversation_id)
