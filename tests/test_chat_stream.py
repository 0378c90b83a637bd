"""Tests for the server-side chat turn: events, persistence and side effects."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.context.models import (
    CoachingDomain,
    CrisisCategory,
    CrisisResult,
    DiscoveryContext,
    DomainResult,
    SignalSet,
    UserContext,
)
from app.context.prompt_blocks import BLOCK_CRISIS_OVERRIDE
from app.core.chat_errors import (
    WARM_EMPTY_RESPONSE_MESSAGE,
    WARM_INTERRUPTED_MESSAGE,
    WARM_RETRY_MESSAGE,
    ErrorKind,
    ModelInvocationFailure,
    StreamInterruption,
)
from app.core.chat_stream import (
    ChatStreamConfig,
    ChatStreamSession,
    StreamState,
    build_model_messages,
    generate_chat_stream,
)
from app.core.discovery_profile import persist_discovery_profile
from app.core.schemas_chat import ConversationTurn, Role, TokenUsage
from app.core.stream_transport import CompletionEvent, ErrorEvent, SignalFlagEvent, TokenEvent
from app.db.learning_signals import PATTERN_ENGAGED, insert_learning_signal
from tests.fakes.fake_db import make_synthesis

USER_ID = "user-1"
CONV_ID = "conv-1"

COMPLETED_DISCOVERY = DiscoveryContext(discovery_completed_at="2026-01-05T10:00:00+00:00", sessions_since_completion=5)


class FakeInvoker:
    """Stands in for ModelInvoker: yields fixed chunks, then optionally raises."""

    def __init__(self, chunks, error=None, usage=None):
        self.chunks = list(chunks)
        self.error = error
        self.final_usage = usage or TokenUsage(prompt_tokens=120, completion_tokens=30)
        self.usage = TokenUsage()
        self.calls = []

    async def stream(self, system, messages):
        self.calls.append({"system": system, "messages": messages})
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error
        self.usage = self.final_usage


def turn(turn_id, role, text):
    return ConversationTurn(id=turn_id, conversation_id=CONV_ID, role=role, text=text)


def make_config(**overrides):
    values = {"user_id": USER_ID, "conversation_id": CONV_ID, "message": "How do I ask for a promotion?"}
    values.update(overrides)
    return ChatStreamConfig(**values)


@pytest.fixture
def pipeline():
    """Patch persistence, signal assembly and the job queue around ChatStreamSession."""
    inserted = []

    def fake_insert(conversation_id, user_id, role, content, metadata=None):
        stored = turn(f"msg-{len(inserted) + 1}", role, content)
        inserted.append({"role": role, "content": content, "metadata": metadata})
        return stored

    queue = MagicMock()
    synthesis_cache = MagicMock()
    assemble = AsyncMock(return_value=SignalSet(discovery=COMPLETED_DISCOVERY))

    with patch("app.core.chat_stream.insert_message", side_effect=fake_insert), patch(
        "app.core.chat_stream.assemble_signals", assemble
    ), patch("app.core.chat_stream.get_job_queue", return_value=queue), patch(
        "app.core.chat_stream.get_synthesis_cache", return_value=synthesis_cache
    ):
        yield MagicMock(inserted=inserted, queue=queue, assemble=assemble, synthesis_cache=synthesis_cache)


def job_keys(queue):
    return [c.args[0] for c in queue.enqueue.call_args_list]


async def run(session):
    return [event async for event in session.events()]


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_tokens_flag_and_completion(self, pipeline):
        pipeline.assemble.return_value = SignalSet(
            discovery=COMPLETED_DISCOVERY,
            domain=DomainResult(domain=CoachingDomain.CAREER, confidence=0.9),
            user_context=UserContext(goals=("Get promoted",)),
        )
        invoker = FakeInvoker(["Your [MEM", "ORY: promotion case] matters."])
        session = ChatStreamSession(make_config(), invoker)

        events = await run(session)

        assert events[:3] == [
            TokenEvent(text="Your [MEM"),
            TokenEvent(text="ORY: promotion case] matters."),
            SignalFlagEvent(name="MEMORY"),
        ]
        done = events[-1]
        assert isinstance(done, CompletionEvent)
        assert done.turn_id == "msg-2"
        assert done.flags["MEMORY"] is True
        assert done.usage.total_tokens == 150
        assert done.domain == "career"
        assert session.state is StreamState.COMPLETED

        assert [i["role"] for i in pipeline.inserted] == [Role.USER, Role.ASSISTANT]
        assistant = pipeline.inserted[1]
        assert assistant["content"] == "Your promotion case matters."
        assert assistant["metadata"]["prompt_tokens"] == 120
        assert assistant["metadata"]["signals"][0]["tag_name"] == "MEMORY"

        keys = job_keys(pipeline.queue)
        assert "usage:msg-2" in keys
        assert f"touch:{CONV_ID}:msg-2" in keys
        assert f"domain:{CONV_ID}:msg-2" in keys

    @pytest.mark.asyncio
    async def test_system_prompt_and_history_sent(self, pipeline):
        history = [turn("m1", Role.USER, "Hi"), turn("m2", Role.ASSISTANT, "Hello! What's on your mind?")]
        invoker = FakeInvoker(["Let's explore that."])

        await run(ChatStreamSession(make_config(conversation_history=history), invoker))

        call = invoker.calls[0]
        assert call["system"]
        assert call["messages"] == [
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello! What's on your mind?"},
            {"role": "user", "content": "How do I ask for a promotion?"},
        ]

    @pytest.mark.asyncio
    async def test_unchanged_domain_not_rewritten(self, pipeline):
        pipeline.assemble.return_value = SignalSet(
            discovery=COMPLETED_DISCOVERY,
            domain=DomainResult(domain=CoachingDomain.CAREER, confidence=1.0),
        )

        await run(ChatStreamSession(make_config(current_domain="career"), FakeInvoker(["Sure."])))

        assert not any(k.startswith("domain:") for k in job_keys(pipeline.queue))

    @pytest.mark.asyncio
    async def test_crisis_prompt_and_metadata(self, pipeline):
        pipeline.assemble.return_value = SignalSet(
            discovery=COMPLETED_DISCOVERY,
            crisis=CrisisResult(crisis_detected=True, confidence=0.9, category=CrisisCategory.SUICIDAL_IDEATION),
        )
        invoker = FakeInvoker(["I'm really glad you told me."])

        await run(ChatStreamSession(make_config(message="I want to die"), invoker))

        assert invoker.calls[0]["system"].startswith(BLOCK_CRISIS_OVERRIDE.strip())
        assert pipeline.inserted[1]["metadata"]["crisis_detected"] is True


class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_reuses_persisted_user_turn(self, pipeline):
        history = [
            turn("m1", Role.ASSISTANT, "Welcome back."),
            turn("m2", Role.USER, "How do I ask for a promotion?"),
        ]
        invoker = FakeInvoker(["Start with your wins."])

        events = await run(ChatStreamSession(make_config(conversation_history=history, retry=True), invoker))

        assert isinstance(events[-1], CompletionEvent)
        assert [i["role"] for i in pipeline.inserted] == [Role.ASSISTANT]
        user_turns = [m for m in invoker.calls[0]["messages"] if m["role"] == "user"]
        assert user_turns == [{"role": "user", "content": "How do I ask for a promotion?"}]

    @pytest.mark.asyncio
    async def test_retry_with_different_text_persists_new_turn(self, pipeline):
        history = [turn("m1", Role.USER, "Something else")]

        await run(ChatStreamSession(make_config(conversation_history=history, retry=True), FakeInvoker(["Ok."])))

        assert [i["role"] for i in pipeline.inserted] == [Role.USER, Role.ASSISTANT]


class TestFailures:
    @pytest.mark.asyncio
    async def test_model_failure_before_tokens(self, pipeline):
        session = ChatStreamSession(make_config(), FakeInvoker([], error=ModelInvocationFailure("overloaded")))

        events = await run(session)

        assert events == [ErrorEvent(kind=ErrorKind.MODEL_INVOCATION, message=WARM_RETRY_MESSAGE)]
        assert [i["role"] for i in pipeline.inserted] == [Role.USER]
        assert session.state is StreamState.FAILED

    @pytest.mark.asyncio
    async def test_interruption_keeps_partial_text(self, pipeline):
        invoker = FakeInvoker(["Let's ", "think"], error=StreamInterruption("reset", partial_text="Let's think"))
        session = ChatStreamSession(make_config(), invoker)

        events = await run(session)

        assert events[:2] == [TokenEvent(text="Let's "), TokenEvent(text="think")]
        assert events[-1] == ErrorEvent(kind=ErrorKind.STREAM_INTERRUPTION, message=WARM_INTERRUPTED_MESSAGE)
        assert session.partial_text == "Let's think"
        assert [i["role"] for i in pipeline.inserted] == [Role.USER]
        pipeline.queue.enqueue.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_output_is_warm_error(self, pipeline):
        events = await run(ChatStreamSession(make_config(), FakeInvoker(["  ", "\n"])))

        assert events[-1] == ErrorEvent(kind=ErrorKind.MODEL_INVOCATION, message=WARM_EMPTY_RESPONSE_MESSAGE)
        assert [i["role"] for i in pipeline.inserted] == [Role.USER]

    @pytest.mark.asyncio
    async def test_user_persist_failure_skips_model(self, pipeline):
        invoker = FakeInvoker(["never"])

        with patch("app.core.chat_stream.insert_message", side_effect=RuntimeError("db down")):
            events = await run(ChatStreamSession(make_config(), invoker))

        assert events == [ErrorEvent(kind=ErrorKind.MODEL_INVOCATION, message=WARM_RETRY_MESSAGE)]
        assert invoker.calls == []


class TestSideEffectGating:
    DISCOVERY_OUTPUT = [
        "Thank you for sharing all of this.",
        '[DISCOVERY_COMPLETE]{"values": ["family"], "aha_insight": "I never rest"}[/DISCOVERY_COMPLETE]',
    ]

    @pytest.mark.asyncio
    async def test_discovery_profile_persisted_in_discovery_mode(self, pipeline):
        pipeline.assemble.return_value = SignalSet(discovery=DiscoveryContext())

        events = await run(ChatStreamSession(make_config(), FakeInvoker(self.DISCOVERY_OUTPUT)))

        assert SignalFlagEvent(name="DISCOVERY_COMPLETE") in events
        assert pipeline.inserted[1]["content"] == "Thank you for sharing all of this."
        calls = {c.args[0]: c.args for c in pipeline.queue.enqueue.call_args_list}
        key, func, user_id, payload = calls[f"discovery:{USER_ID}"]
        assert func is persist_discovery_profile
        assert json.loads(payload)["aha_insight"] == "I never rest"
        assert f"conversation-type:{CONV_ID}" in calls

    @pytest.mark.asyncio
    async def test_discovery_block_ignored_in_coaching_mode(self, pipeline):
        await run(ChatStreamSession(make_config(), FakeInvoker(self.DISCOVERY_OUTPUT)))

        keys = job_keys(pipeline.queue)
        assert f"discovery:{USER_ID}" not in keys
        assert f"conversation-type:{CONV_ID}" not in keys

    @pytest.mark.asyncio
    async def test_discovery_conversation_type_set_once(self, pipeline):
        pipeline.assemble.return_value = SignalSet(discovery=DiscoveryContext())

        await run(ChatStreamSession(make_config(conversation_type="discovery"), FakeInvoker(["Tell me more."])))

        assert f"conversation-type:{CONV_ID}" not in job_keys(pipeline.queue)

    @pytest.mark.asyncio
    async def test_surfaced_synthesis_recorded(self, pipeline):
        record = make_synthesis()
        pipeline.assemble.return_value = SignalSet(discovery=COMPLETED_DISCOVERY, synthesis=record)

        await run(ChatStreamSession(make_config(), FakeInvoker(["I've noticed [PATTERN: you put others first]."])))

        calls = {c.args[0]: c.args for c in pipeline.queue.enqueue.call_args_list}
        key, func, user_id, theme, conversation_id = calls[f"surfaced:{CONV_ID}"]
        assert func is pipeline.synthesis_cache.record_surfaced
        assert theme == record.theme
        assert conversation_id == CONV_ID

        key, func, user_id, signal_type, data = calls[f"engaged:{CONV_ID}"]
        assert func is insert_learning_signal
        assert signal_type == PATTERN_ENGAGED
        assert data["pattern_theme"] == record.theme
        assert data["message_id"] == "msg-2"

    @pytest.mark.asyncio
    async def test_pattern_without_offered_synthesis_not_recorded(self, pipeline):
        await run(ChatStreamSession(make_config(), FakeInvoker(["I've noticed [PATTERN: you rush]."])))

        assert f"surfaced:{CONV_ID}" not in job_keys(pipeline.queue)
        assert f"engaged:{CONV_ID}" not in job_keys(pipeline.queue)

    @pytest.mark.asyncio
    async def test_synthesis_offered_but_not_used(self, pipeline):
        pipeline.assemble.return_value = SignalSet(discovery=COMPLETED_DISCOVERY, synthesis=make_synthesis())

        await run(ChatStreamSession(make_config(), FakeInvoker(["What would help most today?"])))

        assert f"surfaced:{CONV_ID}" not in job_keys(pipeline.queue)
        assert f"engaged:{CONV_ID}" not in job_keys(pipeline.queue)

    @pytest.mark.asyncio
    async def test_tag_not_offered_raises_no_flag(self, pipeline):
        events = await run(ChatStreamSession(make_config(), FakeInvoker(["Your [MEMORY: promotion case] matters."])))

        assert not any(isinstance(e, SignalFlagEvent) for e in events)
        done = events[-1]
        assert isinstance(done, CompletionEvent)
        assert done.flags["MEMORY"] is False
        assert pipeline.inserted[1]["content"] == "Your promotion case matters."


class TestBuildModelMessages:
    def test_merges_same_role_and_drops_leading_assistant(self):
        history = [
            turn("m1", Role.ASSISTANT, "Welcome!"),
            turn("m2", Role.USER, "Hi"),
            turn("m3", Role.USER, "Are you there?"),
            turn("m4", Role.SYSTEM, "internal"),
            turn("m5", Role.ASSISTANT, "Yes."),
            turn("m6", Role.ASSISTANT, "   "),
        ]

        messages = build_model_messages(history, "Great")

        assert messages == [
            {"role": "user", "content": "Hi\n\nAre you there?"},
            {"role": "assistant", "content": "Yes."},
            {"role": "user", "content": "Great"},
        ]

    def test_history_limit(self):
        history = [turn(f"m{i}", Role.USER if i % 2 == 0 else Role.ASSISTANT, f"t{i}") for i in range(10)]

        messages = build_model_messages(history, "now", limit=4)

        assert messages[0] == {"role": "user", "content": "t6"}
        assert messages[-1] == {"role": "user", "content": "now"}
        assert len(messages) == 5

    def test_trailing_user_turn_merged_with_message(self):
        messages = build_model_messages([turn("m1", Role.USER, "First")], "Second")

        assert messages == [{"role": "user", "content": "First\n\nSecond"}]


class TestGenerateChatStream:
    @pytest.mark.asyncio
    async def test_frames_for_a_full_turn(self, pipeline):
        config = make_config()
        session = ChatStreamSession(config, FakeInvoker(["Hello ", "there"]))

        frames = [frame async for frame in generate_chat_stream(config, session)]
        payloads = [json.loads(f[len("data: ") :]) for f in frames]

        assert [p["type"] for p in payloads] == ["token", "token", "done"]
        assert payloads[-1]["message_id"] == "msg-2"
        assert payloads[-1]["usage"]["total_tokens"] == 150

    @pytest.mark.asyncio
    async def test_closing_the_frames_closes_the_model_stream(self, pipeline):
        class OpenStreamInvoker(FakeInvoker):
            def __init__(self):
                super().__init__([])
                self.upstream_closed = False

            async def stream(self, system, messages):
                try:
                    while True:
                        yield "more "
                        await asyncio.sleep(0)
                finally:
                    self.upstream_closed = True

        config = make_config()
        invoker = OpenStreamInvoker()
        frames = generate_chat_stream(config, ChatStreamSession(config, invoker))

        first = await anext(frames)
        await frames.aclose()

        assert json.loads(first[len("data: ") :])["type"] == "token"
        assert invoker.upstream_closed is True

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_warm_error_frame(self):
        class ExplodingSession:
            state = StreamState.IDLE

            async def events(self):
                yield TokenEvent(text="Hi")
                raise KeyError("boom")

        session = ExplodingSession()

        frames = [frame async for frame in generate_chat_stream(make_config(), session)]
        payloads = [json.loads(f[len("data: ") :]) for f in frames]

        assert [p["type"] for p in payloads] == ["token", "error"]
        assert payloads[-1]["message"] == WARM_RETRY_MESSAGE
        assert "boom" not in frames[-1]
        assert session.state is StreamState.FAILED
