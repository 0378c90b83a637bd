"""Tests for discovery state and profile capture."""

from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from app.context.models import SessionMode
from app.core.discovery_profile import (
    build_discovery_context,
    fetch_discovery,
    parse_discovery_profile,
    persist_discovery_profile,
    profile_columns,
)
from app.core.schemas_chat import SignalRequest

REQUEST = SignalRequest(user_id="user-1", conversation_id="conv-now", message="hi")


class TestParseDiscoveryProfile:
    def test_valid_json(self):
        profile = parse_discovery_profile(
            '{"values": ["family", "honesty"], "vision": "Calm mornings", "aha_insight": "I never rest",'
            ' "unknown": 1, "key_themes": "balance"}'
        )

        assert profile.values == ["family", "honesty"]
        assert profile.vision == "Calm mornings"
        assert profile.aha_insight == "I never rest"
        assert profile.key_themes == ["balance"]

    def test_wrong_types_ignored(self):
        profile = parse_discovery_profile('{"values": {"a": 1}, "vision": 42, "strengths_identified": ["grit", null]}')

        assert profile.values == []
        assert profile.vision == ""
        assert profile.strengths_identified == ["grit"]

    def test_truncated_json_salvages_fields(self):
        profile = parse_discovery_profile(
            '{"aha_insight": "Rest is \\"allowed\\"", "values": ["family", "growth"], "vision": "unfinished'
        )

        assert profile.aha_insight == 'Rest is "allowed"'
        assert profile.values == ["family", "growth"]
        assert profile.vision == ""

    def test_garbage_gives_empty_profile(self):
        profile = parse_discovery_profile("no json here")

        assert profile_columns(profile) == {}


class TestPersistDiscoveryProfile:
    def test_upserts_only_filled_columns(self):
        with patch("app.core.discovery_profile.upsert_discovery_profile") as upsert:
            profile = persist_discovery_profile("user-1", '{"values": ["family"], "vision": ""}')

        assert profile.values == ["family"]
        user_id, columns = upsert.call_args[0]
        assert user_id == "user-1"
        assert columns == {"values": ["family"]}
        assert upsert.call_args[1]["completed_at"].tzinfo is not None


class TestDiscoveryContext:
    def test_no_row_means_discovery_mode(self):
        assert build_discovery_context(None, 0).session_mode is SessionMode.DISCOVERY
        assert build_discovery_context({"values": ["x"]}, 0).session_mode is SessionMode.DISCOVERY

    def test_completed_row_means_coaching_mode(self):
        context = build_discovery_context(
            {"discovery_completed_at": "2026-01-05T10:00:00+00:00", "aha_insight": "I never rest"},
            sessions_since=2,
        )

        assert context.session_mode is SessionMode.COACHING
        assert context.profile.aha_insight == "I never rest"
        assert context.in_context_window is True

    @pytest.mark.asyncio
    async def test_fetch_counts_sessions_since_completion(self):
        row = {"discovery_completed_at": "2026-01-05T10:00:00Z", "values": ["family"]}

        with patch("app.core.discovery_profile.cached_context_profile", return_value=row), patch(
            "app.core.discovery_profile.count_conversations_since", return_value=4
        ) as count:
            context = await fetch_discovery(REQUEST)

        assert context.sessions_since_completion == 4
        assert context.in_context_window is False
        args, kwargs = count.call_args
        assert args[0] == "user-1"
        assert args[1] == datetime(2026, 1, 5, 10, tzinfo=timezone.utc)
        assert kwargs["exclude_conversation_id"] == "conv-now"

    @pytest.mark.asyncio
    async def test_fetch_without_completion_skips_count(self):
        with patch("app.core.discovery_profile.cached_context_profile", return_value=None), patch(
            "app.core.discovery_profile.count_conversations_since"
        ) as count:
            context = await fetch_discovery(REQUEST)

        assert context.session_mode is SessionMode.DISCOVERY
        count.assert_not_called()
