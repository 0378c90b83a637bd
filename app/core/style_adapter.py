"""Coaching style adaptation.

Style is read on the request path from ``coaching_preferences`` and turned
into prompt guidance. Scoring from engagement metrics runs in the
background and merges its results back into the same document.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any

from app.context.models import STRONG_PREFERENCE_HIGH, STRONG_PREFERENCE_LOW, StylePreference, StyleSignal
from app.core.background_jobs import get_job_queue
from app.core.logging import get_logger
from app.core.schemas_chat import SignalRequest
from app.core.synthesis_cache import should_refresh_style
from app.db.context_cache import cached_context_profile
from app.db.context_profiles import get_context_profile, update_coaching_preferences
from app.db.learning_signals import list_session_signals

logger = get_logger(__name__)

MIN_SESSIONS_FOR_STYLE = 5
MIN_DOMAIN_SESSIONS = 3
MAX_SESSIONS_TO_ANALYZE = 10

_DIMENSIONS = (
    "direct_vs_exploratory",
    "brief_vs_detailed",
    "action_vs_reflective",
    "challenging_vs_supportive",
)

_SUPPORTIVE = StylePreference(
    direct_vs_exploratory=0.4,
    brief_vs_detailed=0.45,
    action_vs_reflective=0.4,
    challenging_vs_supportive=0.15,
)
_PLAYFUL = StylePreference(
    direct_vs_exploratory=0.58,
    brief_vs_detailed=0.58,
    action_vs_reflective=0.62,
    challenging_vs_supportive=0.22,
    playful_humor=True,
    concrete_examples=True,
)

MANUAL_STYLE_PRESETS: dict[str, StylePreference] = {
    "balanced": StylePreference(),
    "direct": StylePreference(
        direct_vs_exploratory=0.85,
        brief_vs_detailed=0.65,
        action_vs_reflective=0.8,
        challenging_vs_supportive=0.6,
    ),
    "compassionate": _SUPPORTIVE,
    "supportive": _SUPPORTIVE,
    "challenging": StylePreference(
        direct_vs_exploratory=0.72,
        brief_vs_detailed=0.55,
        action_vs_reflective=0.78,
        challenging_vs_supportive=0.88,
    ),
    "exploratory": StylePreference(
        direct_vs_exploratory=0.2,
        brief_vs_detailed=0.35,
        action_vs_reflective=0.32,
        challenging_vs_supportive=0.3,
    ),
    "playful": _PLAYFUL,
    "humorous": _PLAYFUL,
    "human": StylePreference(
        direct_vs_exploratory=0.55,
        brief_vs_detailed=0.52,
        action_vs_reflective=0.58,
        challenging_vs_supportive=0.25,
        playful_humor=True,
        concrete_examples=True,
    ),
}


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _strong(value: float, high: str, low: str) -> str | None:
    if value > STRONG_PREFERENCE_HIGH:
        return high
    if value < STRONG_PREFERENCE_LOW:
        return low
    return None


# ── Reading preferences ────────────────────────────────────────────


def parse_style_dimensions(raw: dict[str, Any]) -> StylePreference:
    values = {}
    for key in _DIMENSIONS:
        value = raw.get(key)
        values[key] = _clamp(float(value)) if isinstance(value, (int, float)) and not isinstance(value, bool) else 0.5
    return StylePreference(
        **values,
        playful_humor=raw.get("playful_humor") is True,
        concrete_examples=raw.get("concrete_examples") is True,
    )


def _manual_override(preferences: dict[str, Any]) -> StylePreference | None:
    label = preferences.get("manual_override")
    if not isinstance(label, str):
        overrides = preferences.get("manual_overrides")
        label = overrides.get("style") if isinstance(overrides, dict) else None
    if not isinstance(label, str):
        return None
    return MANUAL_STYLE_PRESETS.get(label.strip().lower())


def build_style_signal(preferences: dict[str, Any] | None) -> StyleSignal | None:
    """
    Style signal from a coaching_preferences document.

    A manual preset always applies. Learned styles only apply once the
    user has at least five sessions.
    """
    if not preferences:
        return None

    manual = _manual_override(preferences)
    if manual is not None:
        return StyleSignal(manual_override=manual)

    if int(preferences.get("session_count") or 0) < MIN_SESSIONS_FOR_STYLE:
        return None

    dimensions = preferences.get("style_dimensions")
    global_style = parse_style_dimensions(dimensions) if isinstance(dimensions, dict) else None
    domain_styles = {
        domain: parse_style_dimensions(raw)
        for domain, raw in (preferences.get("domain_styles") or {}).items()
        if isinstance(raw, dict)
    }
    if global_style is None and not domain_styles:
        return None
    return StyleSignal(global_style=global_style, domain_styles=domain_styles)


# ── Prompt guidance ────────────────────────────────────────────────


def build_style_label(prefs: StylePreference) -> str:
    labels = [
        _strong(prefs.direct_vs_exploratory, "direct", "exploratory"),
        _strong(prefs.action_vs_reflective, "action-oriented", "reflective"),
        _strong(prefs.challenging_vs_supportive, "challenging", "supportive"),
        _strong(prefs.brief_vs_detailed, "concise", "detailed"),
    ]
    if prefs.playful_humor:
        labels.append("playful")
    labels = [label for label in labels if label]
    return ", ".join(labels) if labels else "balanced"


def format_style_instructions(prefs: StylePreference | None) -> str:
    """Natural-language guidance for strong preferences only. Empty when balanced."""
    if prefs is None:
        return ""

    pairs = (
        (
            prefs.direct_vs_exploratory,
            "Lead with concrete next steps rather than open-ended exploration.",
            "Use open-ended questions to help them discover their own insights.",
        ),
        (
            prefs.brief_vs_detailed,
            "Keep responses concise and focused.",
            "Provide detailed explanations and thorough exploration of topics.",
        ),
        (
            prefs.action_vs_reflective,
            "Keep recommendations specific and actionable.",
            "Prioritize reflection and self-discovery over action items.",
        ),
        (
            prefs.challenging_vs_supportive,
            "Challenge assumptions and push for deeper thinking.",
            "Prioritize empathy and validation before suggesting actions.",
        ),
    )
    instructions = [line for value, high, low in pairs if (line := _strong(value, high, low))]

    if prefs.playful_humor:
        instructions.append(
            "Use light, kind humor occasionally when it fits naturally. Never use sarcasm or humor about pain."
        )
        instructions.append(
            'Avoid therapy-style opener loops like repeatedly starting with "I hear you." Vary openings naturally.'
        )
    if prefs.concrete_examples:
        instructions.append("Use brief, relatable examples to make the coaching feel practical and human.")

    if not instructions:
        return ""
    return f"This user prefers {build_style_label(prefs)} coaching.\n" + "\n".join(instructions)


# ── Background analysis ────────────────────────────────────────────


def compute_style_scores(sessions: list[dict[str, Any]]) -> StylePreference:
    """
    Score the four dimensions from session engagement metrics.

    Uses proxy metrics only: message count, average message length and
    duration. Each score is rounded to two decimals.
    """
    if not sessions:
        return StylePreference()

    lengths = [s.get("avg_message_length") or 0 for s in sessions]
    lengths = [length for length in lengths if length > 0]
    brief = _clamp(1 - (sum(lengths) / len(lengths) - 50) / 200) if lengths else 0.5

    avg_count = sum(s.get("message_count") or 0 for s in sessions) / len(sessions)
    avg_duration = sum(s.get("duration_seconds") or 0 for s in sessions) / len(sessions)

    direct = 0.5
    if avg_duration > 0:
        per_minute = avg_count / (avg_duration / 60)
        direct = _clamp(0.3 + (per_minute - 0.5) * 0.25)

    action = _clamp(0.3 + (avg_count / 20) * 0.4)
    challenge = _clamp(0.3 + (avg_duration / 60 / 30) * 0.4)

    return StylePreference(
        direct_vs_exploratory=round(direct, 2),
        brief_vs_detailed=round(brief, 2),
        action_vs_reflective=round(action, 2),
        challenging_vs_supportive=round(challenge, 2),
    )


def _dimensions_dict(style: StylePreference) -> dict[str, float]:
    return {key: getattr(style, key) for key in _DIMENSIONS}


def analyze_style_preferences(user_id: str) -> dict[str, Any] | None:
    """
    Recompute style from recent sessions and merge into coaching_preferences.

    Runs on the background queue. Returns the merged document, or None
    when there was nothing to analyze.
    """
    sessions = list_session_signals(user_id, limit=MAX_SESSIONS_TO_ANALYZE)
    if not sessions:
        return None

    global_style = compute_style_scores(sessions)

    by_domain: dict[str, list[dict[str, Any]]] = {}
    for session in sessions:
        by_domain.setdefault(session.get("domain") or "general", []).append(session)
    domain_styles = {
        domain: _dimensions_dict(compute_style_scores(group))
        for domain, group in by_domain.items()
        if len(group) >= MIN_DOMAIN_SESSIONS
    }

    profile = get_context_profile(user_id)
    if profile is None:
        logger.warning(f"Style analysis skipped, no context profile for user {user_id}")
        return None

    existing = profile.get("coaching_preferences") or {}
    merged = {
        **existing,
        "style_dimensions": _dimensions_dict(global_style),
        "domain_styles": domain_styles,
        "preferred_style": build_style_label(global_style),
        "last_style_analysis_at": datetime.now(timezone.utc).isoformat(),
        "session_count_at_style_analysis": int(existing.get("session_count") or 0),
    }
    update_coaching_preferences(user_id, merged)
    logger.info(f"Style preferences updated for user {user_id} from {len(sessions)} sessions")
    return merged


# ── Provider ───────────────────────────────────────────────────────


async def fetch_style(request: SignalRequest) -> StyleSignal | None:
    """Style signal for this user. Enqueues re-analysis when due."""
    profile = await asyncio.to_thread(cached_context_profile, request.user_id)
    preferences = (profile or {}).get("coaching_preferences")

    if should_refresh_style(preferences):
        get_job_queue().enqueue(f"style:{request.user_id}", analyze_style_preferences, request.user_id)

    return build_style_signal(preferences)
