"""Client-side chat session: one in-flight stream, batched rendering, retry."""

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from app.client.stream_client import ChatStreamClient
from app.client.token_buffer import DEFAULT_INTERVAL_SECONDS, TokenBuffer
from app.core.chat_errors import WARM_EMPTY_RESPONSE_MESSAGE, WARM_INTERRUPTED_MESSAGE, ChatPipelineError
from app.core.logging import get_logger
from app.core.schemas_chat import Role
from app.core.stream_transport import CompletionEvent, ErrorEvent, SignalFlagEvent, TokenEvent
from app.core.tag_extractor import IncrementalTagScanner

logger = get_logger(__name__)


class ClientStreamState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    RECEIVING = "receiving"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"


@dataclass
class ClientMessage:
    role: Role
    content: str
    id: str | None = None
    flags: dict[str, bool] = field(default_factory=dict)


class ChatSession:
    """
    Drives one conversation from the client side.

    Tokens pass through an IncrementalTagScanner (tags never render) and a
    TokenBuffer (at most one display update per window). ``on_update``
    receives the full display text each time it changes.
    """

    def __init__(
        self,
        client: ChatStreamClient,
        conversation_id: str,
        on_update: Callable[[str], None] | None = None,
        buffer_interval: float = DEFAULT_INTERVAL_SECONDS,
    ):
        self.client = client
        self.conversation_id = conversation_id
        self.on_update = on_update
        self.messages: list[ClientMessage] = []
        self.state = ClientStreamState.IDLE
        self.streaming_text = ""
        self.partial_text = ""
        self.error_message: str | None = None
        self.flags: dict[str, bool] = {}
        self.domain: str | None = None
        self._scanner = IncrementalTagScanner()
        self._buffer = TokenBuffer(self._on_flush, interval=buffer_interval)
        self._shown = 0
        self._task: asyncio.Task | None = None
        self._last_user_message: str | None = None

    @property
    def can_retry(self) -> bool:
        return self.state is ClientStreamState.INTERRUPTED and self._last_user_message is not None

    @property
    def is_streaming(self) -> bool:
        return self._task is not None and not self._task.done()

    async def send(self, text: str) -> ClientStreamState:
        """Append a user turn and stream the reply. Cancels any stream in flight."""
        text = text.strip()
        if not text:
            return self.state
        await self.cancel()
        self.messages.append(ClientMessage(role=Role.USER, content=text))
        self._last_user_message = text
        return await self._start(text, retry=False)

    async def retry(self) -> ClientStreamState:
        """Re-send the interrupted user turn without appending it again."""
        if not self.can_retry:
            return self.state
        await self.cancel()
        return await self._start(self._last_user_message, retry=True)

    async def cancel(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    # ── stream lifecycle ───────────────────────────────────────────

    def _reset_stream(self) -> None:
        self._buffer.reset()
        self._scanner.reset()
        self._shown = 0
        self.streaming_text = ""
        self.partial_text = ""
        self.error_message = None
        self.flags = {}

    async def _start(self, text: str, retry: bool) -> ClientStreamState:
        self._reset_stream()
        task = asyncio.create_task(self._run(text, retry))
        self._task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        return self.state

    async def _run(self, text: str, retry: bool) -> None:
        self.state = ClientStreamState.CONNECTING
        try:
            events = self.client.stream_chat(text, self.conversation_id, retry=retry)
            async with contextlib.aclosing(events) as stream:
                async for event in stream:
                    if isinstance(event, TokenEvent):
                        self.state = ClientStreamState.RECEIVING
                        self._scanner.feed(event.text)
                        self._show_new_text()
                    elif isinstance(event, SignalFlagEvent):
                        self.flags[event.name] = True
                    elif isinstance(event, CompletionEvent):
                        self._finalize(event)
                        return
                    elif isinstance(event, ErrorEvent):
                        self._interrupt(event.message)
                        return
        except asyncio.CancelledError:
            self._interrupt(WARM_INTERRUPTED_MESSAGE)
            raise
        except ChatPipelineError as e:
            logger.warning(f"Chat stream failed: {e}")
            self._interrupt(e.user_message)

    def _show_new_text(self) -> None:
        display = self._scanner.display_text
        if len(display) > self._shown:
            self._buffer.add(display[self._shown:])
            self._shown = len(display)

    def _on_flush(self, text: str) -> None:
        self.streaming_text += text
        if self.on_update is not None:
            self.on_update(self.streaming_text)

    def _finalize(self, event: CompletionEvent) -> None:
        self.state = ClientStreamState.FINALIZING
        self._scanner.finish()
        self._show_new_text()
        self._buffer.flush()
        for name, seen in event.flags.items():
            if seen:
                self.flags[name] = True
        self.domain = event.domain or self.domain

        content = self._scanner.clean_text
        if not content:
            self._interrupt(WARM_EMPTY_RESPONSE_MESSAGE)
            return
        self.messages.append(
            ClientMessage(role=Role.ASSISTANT, content=content, id=event.turn_id, flags=dict(self.flags))
        )
        self.streaming_text = ""
        self._last_user_message = None
        self.state = ClientStreamState.COMPLETED

    def _interrupt(self, message: str) -> None:
        self._buffer.flush()
        self.partial_text = self._scanner.display_text
        self.error_message = message
        self.state = ClientStreamState.INTERRUPTED
