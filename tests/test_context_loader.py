"""Tests for user context and prior-session providers."""

from unittest.mock import patch

import pytest

from app.core.context_loader import (
    build_user_context,
    fetch_past_conversations,
    fetch_user_context,
    recent_dialogue,
    summarize_conversation,
)
from app.core.schemas_chat import ConversationTurn, Role, SignalRequest

REQUEST = SignalRequest(user_id="user-1", conversation_id="conv-now", message="hi")


class TestBuildUserContext:
    def test_projects_active_goals_and_confirmed_insights(self):
        row = {
            "values": [{"content": "family"}, "honesty", ""],
            "goals": [
                {"content": "Get promoted", "status": "active"},
                {"content": "Run a marathon", "status": "completed"},
                "Read more",
            ],
            "situation": {"occupation": "Engineer", "life_stage": "New parent", "other": "ignored"},
            "extracted_insights": [
                {"content": "Avoids conflict", "confirmed": True},
                {"content": "Likes lists", "confirmed": False},
            ],
        }

        context = build_user_context(row)

        assert context.values == ("family", "honesty")
        assert context.goals == ("Get promoted", "Read more")
        assert context.situation == "Engineer. New parent"
        assert context.insights == ("Avoids conflict",)
        assert context.has_context

    def test_empty_row(self):
        assert not build_user_context(None).has_context
        assert not build_user_context({"values": []}).has_context


class TestSummarizeConversation:
    def test_uses_last_user_message_with_domain(self):
        assert summarize_conversation(["first", "Asking for a raise"], "Title", "career") == "Career: Asking for a raise"

    def test_falls_back_to_title_then_label(self):
        assert summarize_conversation([], "Weekly check-in") == "Weekly check-in"
        assert summarize_conversation(["  "]) == "General coaching conversation"

    def test_truncates_on_word_boundary(self):
        summary = summarize_conversation(["word " * 40])

        assert len(summary) <= 80
        assert summary.endswith("word...")


class TestProviders:
    @pytest.mark.asyncio
    async def test_user_context_absent_when_empty(self):
        with patch("app.core.context_loader.cached_context_profile", return_value={"values": []}):
            assert await fetch_user_context(REQUEST) is None

    @pytest.mark.asyncio
    async def test_user_context_present(self):
        with patch("app.core.context_loader.cached_context_profile", return_value={"values": ["family"]}):
            context = await fetch_user_context(REQUEST)

        assert context.values == ("family",)

    @pytest.mark.asyncio
    async def test_past_conversations(self):
        conversations = [
            {"id": "c-1", "title": "Promotion", "domain": "career"},
            {"id": "c-2", "title": None, "domain": None},
        ]
        messages = {"c-1": ["Preparing my promotion case"], "c-2": []}

        with patch(
            "app.core.context_loader.list_recent_conversations", return_value=conversations
        ) as list_recent, patch(
            "app.core.context_loader.list_user_messages", side_effect=lambda cid, limit: messages[cid]
        ):
            past = await fetch_past_conversations(REQUEST)

        assert len(past) == 1
        assert past[0].summary == "Career: Preparing my promotion case"
        assert list_recent.call_args[1]["exclude_conversation_id"] == "conv-now"

    @pytest.mark.asyncio
    async def test_no_past_conversations_is_absent(self):
        with patch("app.core.context_loader.list_recent_conversations", return_value=[]):
            assert await fetch_past_conversations(REQUEST) is None


class TestRecentDialogue:
    def test_keeps_last_user_and_assistant_turns(self):
        turns = tuple(
            ConversationTurn(id=f"m{i}", conversation_id="conv-now", role=role, text=f"t{i}")
            for i, role in enumerate([Role.USER, Role.ASSISTANT, Role.SYSTEM, Role.USER, Role.ASSISTANT])
        )
        request = SignalRequest(user_id="user-1", conversation_id="conv-now", message="hi", recent_messages=turns)

        assert recent_dialogue(request) == [
            {"role": "assistant", "content": "t1"},
            {"role": "user", "content": "t3"},
            {"role": "assistant", "content": "t4"},
        ]
