"""Chat streaming engine: signal fan-out, prompt composition, Anthropic streaming.

One ``ChatStreamSession`` serves one request. It produces stream events;
``generate_chat_stream`` encodes them as SSE frames.
"""

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncGenerator, AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from app.context.models import SessionMode, SignalSet
from app.context.prompt_composer import ComposedPrompt, compose
from app.context.prompt_resources import get_base_instructions
from app.core.background_jobs import get_job_queue
from app.core.chat_context import assemble_signals
from app.core.chat_errors import (
    WARM_EMPTY_RESPONSE_MESSAGE,
    WARM_RETRY_MESSAGE,
    ErrorKind,
    ModelInvocationFailure,
    StreamInterruption,
)
from app.core.discovery_profile import persist_discovery_profile
from app.core.llm_usage import log_llm_usage
from app.core.logging import get_logger, log_with_context
from app.core.model_invoker import ModelInvoker
from app.core.pattern_synthesizer import get_synthesis_cache
from app.core.schemas_chat import ConversationTurn, ExtractedSignal, Role, SignalRequest, TokenUsage
from app.core.stream_transport import (
    CompletionEvent,
    ErrorEvent,
    SignalFlagEvent,
    SseEncoder,
    StreamEvent,
    TokenEvent,
)
from app.core.tag_extractor import DISCOVERY_COMPLETE_TAG, PATTERN_TAG, IncrementalTagScanner
from app.db.conversations import set_conversation_type, touch_conversation, update_conversation_domain
from app.db.learning_signals import PATTERN_ENGAGED, insert_learning_signal
from app.db.messages import insert_message

logger = get_logger(__name__)


class StreamState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ChatStreamConfig:
    """Explicit inputs for a chat streaming session."""

    user_id: str
    conversation_id: str
    message: str
    conversation_history: list[ConversationTurn] = field(default_factory=list)
    current_domain: str | None = None
    conversation_type: str | None = None
    retry: bool = False
    anthropic_api_key: str = ""
    chat_model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 1024
    temperature: float = 0.7
    stream_timeout: float = 30.0
    history_limit: int = 20


def build_model_messages(history: list[ConversationTurn], message: str, limit: int = 20) -> list[dict[str, str]]:
    """
    History plus the current user turn, shaped for the Messages API.

    Consecutive turns from the same role are merged and the list always
    starts and ends with a user turn.
    """
    messages: list[dict[str, str]] = []
    turns = [t for t in history if t.role in (Role.USER, Role.ASSISTANT) and t.text.strip()]
    for turn in [*turns[-limit:], None]:
        role, text = (Role.USER.value, message) if turn is None else (turn.role.value, turn.text)
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += "\n\n" + text
        elif messages or role == Role.USER.value:
            messages.append({"role": role, "content": text})
    return messages


class ChatStreamSession:
    """Server side of one chat turn."""

    def __init__(self, config: ChatStreamConfig, invoker: ModelInvoker | None = None):
        self.config = config
        self.invoker = invoker or ModelInvoker(
            api_key=config.anthropic_api_key,
            model=config.chat_model,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            idle_timeout=config.stream_timeout,
        )
        self.state = StreamState.IDLE
        self.scanner = IncrementalTagScanner()
        self.partial_text = ""
        self.signals: SignalSet | None = None
        self.prompt: ComposedPrompt | None = None
        self.user_turn: ConversationTurn | None = None
        self.assistant_turn: ConversationTurn | None = None

    # ── Request setup ──────────────────────────────────────────────

    def _history_and_retried_turn(self) -> tuple[list[ConversationTurn], ConversationTurn | None]:
        history = list(self.config.conversation_history)
        if self.config.retry and history:
            last = history[-1]
            if last.role is Role.USER and last.text == self.config.message:
                return history[:-1], last
        return history, None

    async def _persist_user_turn(self, retried: ConversationTurn | None) -> ConversationTurn:
        if retried is not None:
            logger.info(
                "Retry: reusing persisted user turn",
                extra={"conversation_id": self.config.conversation_id},
            )
            return retried
        return await asyncio.to_thread(
            insert_message,
            self.config.conversation_id,
            self.config.user_id,
            Role.USER,
            self.config.message,
        )

    # ── Event production ───────────────────────────────────────────

    async def events(self) -> AsyncIterator[StreamEvent]:
        """
        Run the turn and yield its events.

        Yields token and signal-flag events, then exactly one terminal
        event (completion or error).
        """
        config = self.config
        self.state = StreamState.REQUESTING
        history, retried = self._history_and_retried_turn()
        request = SignalRequest(
            user_id=config.user_id,
            conversation_id=config.conversation_id,
            message=config.message,
            recent_messages=tuple(history[-6:]),
            current_domain=config.current_domain,
        )

        try:
            self.user_turn, self.signals = await asyncio.gather(
                self._persist_user_turn(retried),
                assemble_signals(request),
            )
        except Exception as e:
            logger.error(f"Failed to persist user turn: {e}", extra={"conversation_id": config.conversation_id})
            self.state = StreamState.FAILED
            yield ErrorEvent(kind=ErrorKind.MODEL_INVOCATION, message=WARM_RETRY_MESSAGE)
            return

        discovery_mode = self.signals.session_mode is SessionMode.DISCOVERY
        self.prompt = compose(
            get_base_instructions(discovery_mode=discovery_mode),
            self.signals,
            crisis_detected=self.signals.crisis_detected,
        )
        logger.info(
            f"Prompt composed: slots={[b.slot.name for b in self.prompt.blocks]}, "
            f"tags={sorted(self.prompt.active_tags)}",
            extra={"conversation_id": config.conversation_id},
        )

        flagged: set[str] = set()
        started = time.monotonic()
        try:
            upstream = self.invoker.stream(
                system=self.prompt.text,
                messages=build_model_messages(history, config.message, config.history_limit),
            )
            async with contextlib.aclosing(upstream) as tokens:
                async for text in tokens:
                    self.state = StreamState.STREAMING
                    self.partial_text += text
                    completed = self.scanner.feed(text)
                    yield TokenEvent(text=text)
                    for event in self._flag_events(completed, flagged):
                        yield event
        except ModelInvocationFailure as e:
            logger.warning(f"Model invocation failed: {e}", extra={"conversation_id": config.conversation_id})
            self.state = StreamState.FAILED
            yield ErrorEvent(kind=ErrorKind.MODEL_INVOCATION, message=e.user_message)
            return
        except StreamInterruption as e:
            self.partial_text = e.partial_text or self.partial_text
            logger.warning(
                f"Stream interrupted after {len(self.partial_text)} chars: {e}",
                extra={"conversation_id": config.conversation_id},
            )
            self.state = StreamState.FAILED
            yield ErrorEvent(kind=ErrorKind.STREAM_INTERRUPTION, message=e.user_message)
            return

        for event in self._flag_events(self.scanner.finish(), flagged):
            yield event

        clean_text = self.scanner.clean_text
        if not clean_text:
            logger.warning("Model returned no displayable text", extra={"conversation_id": config.conversation_id})
            self.state = StreamState.FAILED
            yield ErrorEvent(kind=ErrorKind.MODEL_INVOCATION, message=WARM_EMPTY_RESPONSE_MESSAGE)
            return

        usage = self.invoker.usage
        try:
            self.assistant_turn = await asyncio.to_thread(
                insert_message,
                config.conversation_id,
                config.user_id,
                Role.ASSISTANT,
                clean_text,
                self._assistant_metadata(usage),
            )
        except Exception as e:
            logger.error(f"Failed to persist assistant turn: {e}", extra={"conversation_id": config.conversation_id})
            self.state = StreamState.FAILED
            yield ErrorEvent(kind=ErrorKind.MODEL_INVOCATION, message=WARM_RETRY_MESSAGE)
            return

        duration_ms = int((time.monotonic() - started) * 1000)
        self._schedule_side_effects(usage, duration_ms)
        log_with_context(
            logger,
            logging.INFO,
            "Chat turn completed",
            conversation_id=config.conversation_id,
            chars=len(clean_text),
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            duration_ms=duration_ms,
        )
        self.state = StreamState.COMPLETED
        yield CompletionEvent(
            turn_id=self.assistant_turn.id,
            usage=usage,
            flags=self._active_flags(),
            domain=self._domain(),
        )

    def _active_tags(self) -> frozenset[str]:
        return self.prompt.active_tags if self.prompt is not None else frozenset()

    def _active_flags(self) -> dict[str, bool]:
        """Scanner flags, limited to tags this turn's prompt asked for."""
        active = self._active_tags()
        return {name: seen and name in active for name, seen in self.scanner.flags.items()}

    def _flag_events(self, completed: list[ExtractedSignal], flagged: set[str]) -> list[SignalFlagEvent]:
        active = self._active_tags()
        events = []
        for signal in completed:
            if signal.validated and signal.tag_name in active and signal.tag_name not in flagged:
                flagged.add(signal.tag_name)
                events.append(SignalFlagEvent(name=signal.tag_name))
        return events

    def _domain(self) -> str | None:
        if self.signals and self.signals.domain:
            return self.signals.domain.domain.value
        return self.config.current_domain

    def _assistant_metadata(self, usage: TokenUsage) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "model": self.config.chat_model,
            "prompt_tokens": usage.prompt_tokens,
            "completion_tokens": usage.completion_tokens,
            "domain": self._domain(),
        }
        if self.scanner.signals:
            metadata["signals"] = [s.model_dump() for s in self.scanner.signals]
        if self.signals and self.signals.crisis_detected:
            metadata["crisis_detected"] = True
        return metadata

    # ── After completion ───────────────────────────────────────────

    def _schedule_side_effects(self, usage: TokenUsage, duration_ms: int) -> None:
        """Enqueue post-turn writes. None of them can fail the turn."""
        config = self.config
        queue = get_job_queue()
        turn_id = self.assistant_turn.id if self.assistant_turn else config.conversation_id

        queue.enqueue(
            f"usage:{turn_id}",
            log_llm_usage,
            model=config.chat_model,
            tokens_input=usage.prompt_tokens,
            tokens_output=usage.completion_tokens,
            user_id=config.user_id,
            conversation_id=config.conversation_id,
            message_id=turn_id,
            duration_ms=duration_ms,
            crisis_detected=bool(self.signals and self.signals.crisis_detected),
        )
        queue.enqueue(f"touch:{config.conversation_id}:{turn_id}", touch_conversation, config.conversation_id)

        domain = self.signals.domain.domain.value if self.signals and self.signals.domain else None
        if domain and domain != config.current_domain:
            queue.enqueue(
                f"domain:{config.conversation_id}:{turn_id}",
                update_conversation_domain,
                config.conversation_id,
                domain,
            )

        in_discovery = self.prompt is not None and self.prompt.session_mode is SessionMode.DISCOVERY
        if in_discovery and config.conversation_type != "discovery":
            queue.enqueue(
                f"conversation-type:{config.conversation_id}",
                set_conversation_type,
                config.conversation_id,
                "discovery",
            )

        signals_by_tag: dict[str, ExtractedSignal] = {}
        for signal in self.scanner.signals:
            signals_by_tag.setdefault(signal.tag_name, signal)

        discovery = signals_by_tag.get(DISCOVERY_COMPLETE_TAG.name)
        if discovery is not None and self.prompt and DISCOVERY_COMPLETE_TAG.name in self.prompt.active_tags:
            queue.enqueue(
                f"discovery:{config.user_id}",
                persist_discovery_profile,
                config.user_id,
                discovery.raw_payload,
            )

        pattern = signals_by_tag.get(PATTERN_TAG.name)
        offered = self.prompt.synthesis if self.prompt else None
        if pattern is not None and pattern.validated and offered is not None:
            queue.enqueue(
                f"surfaced:{config.conversation_id}",
                get_synthesis_cache().record_surfaced,
                config.user_id,
                offered.theme,
                config.conversation_id,
            )
            queue.enqueue(
                f"engaged:{config.conversation_id}",
                insert_learning_signal,
                config.user_id,
                PATTERN_ENGAGED,
                {"pattern_theme": offered.theme, "conversation_id": config.conversation_id, "message_id": turn_id},
            )


async def generate_chat_stream(
    config: ChatStreamConfig,
    session: ChatStreamSession | None = None,
) -> AsyncGenerator[str, None]:
    """Generate SSE frames for one chat turn.

    Yields token frames, then one done or error frame. Closing this
    generator closes the upstream model stream.
    """
    session = session or ChatStreamSession(config)
    encoder = SseEncoder()
    terminated = False
    try:
        async with contextlib.aclosing(session.events()) as events:
            async for event in events:
                terminated = terminated or isinstance(event, (CompletionEvent, ErrorEvent))
                yield encoder.encode(event)
    except Exception as e:
        logger.error(f"Error in chat stream: {e}", exc_info=True, extra={"conversation_id": config.conversation_id})
        session.state = StreamState.FAILED
        if not terminated:
            yield encoder.encode(ErrorEvent(kind=ErrorKind.MODEL_INVOCATION, message=WARM_RETRY_MESSAGE))
