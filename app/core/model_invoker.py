"""Anthropic streaming for the coaching model.

Wraps ``AsyncAnthropic.messages.stream`` and maps every failure onto the
chat error taxonomy: nothing received yet is a ModelInvocationFailure,
anything after the first token is a StreamInterruption carrying the
partial text. Closing the generator closes the upstream stream.
"""

import asyncio
from collections.abc import AsyncIterator
from typing import Any

from app.core.chat_errors import ModelInvocationFailure, StreamInterruption
from app.core.logging import get_logger
from app.core.schemas_chat import TokenUsage

logger = get_logger(__name__)


class ModelInvoker:
    """One streaming generation at a time against the chat model."""

    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 1024,
        temperature: float = 0.7,
        idle_timeout: float = 30.0,
        client: Any = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.idle_timeout = idle_timeout
        self._api_key = api_key
        self._client = client
        self.usage = TokenUsage()

    def _get_client(self) -> Any:
        if self._client is None:
            # Import here to avoid loading if API key not set
            from anthropic import AsyncAnthropic

            self._client = AsyncAnthropic(api_key=self._api_key)
        return self._client

    async def stream(self, system: str, messages: list[dict[str, str]]) -> AsyncIterator[str]:
        """
        Yield text deltas for one generation.

        Args:
            system: Composed system prompt
            messages: Alternating user/assistant turns ending with the user turn

        Raises:
            ModelInvocationFailure: Failed before any text arrived
            StreamInterruption: Failed after text started flowing
        """
        received: list[str] = []
        self.usage = TokenUsage()
        try:
            async with self._get_client().messages.stream(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                system=system,
                messages=messages,
            ) as stream:
                events = aiter(stream)
                while True:
                    try:
                        event = await asyncio.wait_for(anext(events), timeout=self.idle_timeout)
                    except StopAsyncIteration:
                        break
                    if getattr(event, "type", None) != "content_block_delta":
                        continue
                    text = getattr(getattr(event, "delta", None), "text", None)
                    if isinstance(text, str) and text:
                        received.append(text)
                        yield text

                final_message = await stream.get_final_message()
                usage = getattr(final_message, "usage", None)
                if usage is not None:
                    self.usage = TokenUsage(
                        prompt_tokens=int(getattr(usage, "input_tokens", 0) or 0),
                        completion_tokens=int(getattr(usage, "output_tokens", 0) or 0),
                    )
        except (ModelInvocationFailure, StreamInterruption):
            raise
        except asyncio.TimeoutError as e:
            reason = f"no model output for {self.idle_timeout:.0f}s"
            if received:
                raise StreamInterruption(reason, partial_text="".join(received)) from e
            raise ModelInvocationFailure(reason) from e
        except Exception as e:
            logger.error(f"Model stream failed ({type(e).__name__}): {e}")
            if received:
                raise StreamInterruption(str(e), partial_text="".join(received)) from e
            raise ModelInvocationFailure(str(e)) from e
