"""Tests for cross-domain synthesis and session pattern providers."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.core.pattern_analyzer import fetch_session_patterns, refresh_pattern_cache, summarize_patterns
from app.core.pattern_synthesizer import (
    build_synthesis_prompt,
    fetch_synthesis,
    group_conversations_by_domain,
    parse_synthesis_response,
    refresh_syntheses,
)
from app.core.schemas_chat import SignalRequest
from app.core.synthesis_cache import SynthesisCache
from tests.fakes.fake_db import USER_ID, FakeSynthesisStore, hours_ago, make_synthesis

REQUEST = SignalRequest(user_id=USER_ID, conversation_id="conv-now", message="hi")

PATTERNS_RESPONSE = json.dumps(
    {
        "patterns": [
            {
                "theme": "Putting others first",
                "domains": ["Career", "relationships", "career"],
                "confidence": 0.91,
                "evidence": [
                    {"domain": "career", "summary": "Says yes to every request"},
                    "relationships: avoids saying no",
                ],
                "synthesis": "You tend to put others first.",
            },
            {"theme": "Single domain", "domains": ["career"], "confidence": 0.95},
            {"theme": "", "domains": ["career", "fitness"], "confidence": 0.9},
            "not a dict",
        ]
    }
)


def mock_llm(content: str) -> MagicMock:
    llm = MagicMock()
    llm.ainvoke = AsyncMock(return_value=MagicMock(content=content))
    return llm


class TestParseSynthesisResponse:
    def test_keeps_only_multi_domain_patterns(self):
        records = parse_synthesis_response(PATTERNS_RESPONSE, USER_ID)

        assert len(records) == 1
        record = records[0]
        assert record.domains == ("career", "relationships")
        assert record.evidence == ("career: Says yes to every request", "relationships: avoids saying no")
        assert record.is_eligible

    def test_empty_patterns(self):
        assert parse_synthesis_response('{"patterns": []}', USER_ID) == []


class TestGroupConversations:
    def test_groups_domains_with_enough_history(self):
        conversations = [{"id": f"car-{i}", "domain": "career", "title": "Work"} for i in range(3)] + [
            {"id": "fit-1", "domain": "fitness", "title": None},
            {"id": "gen-1", "domain": "general", "title": None},
        ]

        with patch(
            "app.core.pattern_synthesizer.list_conversations_with_domains", return_value=conversations
        ), patch("app.core.pattern_synthesizer.list_user_messages", return_value=["I said yes again"]):
            groups = group_conversations_by_domain(USER_ID)

        assert list(groups) == ["career"]
        assert groups["career"][0] == "[Work] I said yes again"

    def test_prompt_lists_each_domain(self):
        prompt = build_synthesis_prompt({"career": ["a"], "fitness": ["b", "c"]})

        assert "across 2 coaching domains" in prompt
        assert "## FITNESS DOMAIN\n1. b\n2. c" in prompt


class TestRefreshSyntheses:
    @pytest.mark.asyncio
    async def test_upserts_merges_history_and_leaves_unmatched_themes(self):
        store = FakeSynthesisStore()
        surfaced_at = hours_ago(30)
        store.add_record(
            make_synthesis(
                last_surfaced_at=surfaced_at,
                last_surfaced_conversation_id="conv-old",
                surface_count=2,
            )
        )
        store.add_record(make_synthesis(theme="Gone theme"))
        store.add_conversation("conv-old", hours_ago(40))
        groups = {"career": ["a", "b", "c"], "relationships": ["d", "e", "f"]}

        with patch("app.core.pattern_synthesizer.group_conversations_by_domain", return_value=groups), patch(
            "app.core.pattern_synthesizer.get_llm", return_value=mock_llm(PATTERNS_RESPONSE)
        ):
            merged = await refresh_syntheses(USER_ID, store)

        assert [r.theme for r in merged] == ["Putting others first"]
        kept = store.records[(USER_ID, "Putting others first")]
        assert kept.surface_count == 2
        assert kept.last_surfaced_at == surfaced_at
        assert kept.computed_at is not None
        assert store.records[(USER_ID, "Gone theme")].computed_at is None
        assert [r.theme for r in store.upserts] == ["Putting others first"]
        assert store.states[USER_ID]["conversation_count"] == 1

    @pytest.mark.asyncio
    async def test_too_few_domains_skips_model_but_stamps_state(self):
        store = FakeSynthesisStore()

        with patch(
            "app.core.pattern_synthesizer.group_conversations_by_domain", return_value={"career": ["a", "b", "c"]}
        ), patch("app.core.pattern_synthesizer.get_llm") as get_llm:
            merged = await refresh_syntheses(USER_ID, store)

        assert merged == []
        get_llm.assert_not_called()
        assert USER_ID in store.states


class TestFetchSynthesis:
    @pytest.mark.asyncio
    async def test_enqueues_refresh_and_returns_surfaceable(self):
        store = FakeSynthesisStore()
        store.add_record(make_synthesis())
        queue = MagicMock()

        with patch("app.core.pattern_synthesizer.get_synthesis_cache", return_value=SynthesisCache(store)), patch(
            "app.core.pattern_synthesizer.get_job_queue", return_value=queue
        ):
            record = await fetch_synthesis(REQUEST)

        assert record.theme == "Putting others first"
        key, func, user_id, passed_store = queue.enqueue.call_args[0]
        assert key == f"synthesis:{USER_ID}"
        assert func is refresh_syntheses
        assert passed_store is store

    @pytest.mark.asyncio
    async def test_fresh_state_does_not_enqueue(self):
        store = FakeSynthesisStore()
        store.set_state(USER_ID, hours_ago(1), conversation_count=3)
        queue = MagicMock()

        with patch("app.core.pattern_synthesizer.get_synthesis_cache", return_value=SynthesisCache(store)), patch(
            "app.core.pattern_synthesizer.get_job_queue", return_value=queue
        ):
            record = await fetch_synthesis(REQUEST)

        assert record is None
        queue.enqueue.assert_not_called()


class TestSessionPatterns:
    def test_summaries_need_evidence_and_confidence(self):
        strong = make_synthesis(
            theme="Strong", evidence=("a", "b", "c"), confidence=0.9
        )
        thin = make_synthesis(theme="Thin", evidence=("a",), confidence=0.95)
        weak = make_synthesis(theme="Weak", evidence=("a", "b", "c"), confidence=0.7)

        summaries = summarize_patterns([thin, weak, strong], {})

        assert [s.theme for s in summaries] == ["Strong"]
        assert summaries[0].occurrence_count == 3

    def test_ranked_by_engagement_then_capped(self):
        records = [make_synthesis(theme=f"T{i}", evidence=("a", "b", "c")) for i in range(5)]

        summaries = summarize_patterns(records, {"T4": 3, "T2": 1})

        assert [s.theme for s in summaries][:2] == ["T4", "T2"]
        assert len(summaries) == 3

    def test_refresh_writes_cache(self):
        store = FakeSynthesisStore()
        store.add_record(make_synthesis(evidence=("a", "b", "c")))

        with patch("app.core.pattern_analyzer.count_conversations", return_value=8), patch(
            "app.core.pattern_analyzer.count_pattern_engagements", return_value={}
        ), patch("app.core.pattern_analyzer.upsert_pattern_cache") as upsert:
            summaries = refresh_pattern_cache(USER_ID, store)

        assert len(summaries) == 1
        args, kwargs = upsert.call_args
        assert args[0] == USER_ID
        assert args[1][0]["theme"] == "Putting others first"
        assert kwargs["session_count"] == 8

    @pytest.mark.asyncio
    async def test_fewer_than_five_sessions_is_absent(self):
        with patch("app.core.pattern_analyzer.count_conversations", return_value=4), patch(
            "app.core.pattern_analyzer.get_pattern_cache"
        ) as get_cache:
            assert await fetch_session_patterns(REQUEST) is None

        get_cache.assert_not_called()

    @pytest.mark.asyncio
    async def test_stale_cache_used_while_refresh_queued(self):
        row = {
            "session_count_at_analysis": 5,
            "patterns": [
                {"theme": "Overcommitting", "summary": "Says yes to everything", "confidence": 0.9},
                {"summary": "missing theme"},
            ],
        }
        queue = MagicMock()
        cache = SynthesisCache(FakeSynthesisStore())

        with patch("app.core.pattern_analyzer.count_conversations", return_value=8), patch(
            "app.core.pattern_analyzer.get_pattern_cache", return_value=row
        ), patch("app.core.pattern_analyzer.get_job_queue", return_value=queue), patch(
            "app.core.pattern_analyzer.get_synthesis_cache", return_value=cache
        ):
            patterns = await fetch_session_patterns(REQUEST)

        assert [p.theme for p in patterns] == ["Overcommitting"]
        assert queue.enqueue.call_args[0][0] == f"patterns:{USER_ID}"

    @pytest.mark.asyncio
    async def test_fresh_cache_not_refreshed(self):
        row = {"session_count_at_analysis": 7, "patterns": []}
        queue = MagicMock()

        with patch("app.core.pattern_analyzer.count_conversations", return_value=8), patch(
            "app.core.pattern_analyzer.get_pattern_cache", return_value=row
        ), patch("app.core.pattern_analyzer.get_job_queue", return_value=queue):
            assert await fetch_session_patterns(REQUEST) is None

        queue.enqueue.assert_not_called()
