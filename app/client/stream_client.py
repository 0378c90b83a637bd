"""HTTP client for the chat streaming endpoint.

Async httpx streaming over POST /v1/chat-stream, decoded with the same SSE
codec the server encodes with.
"""

from collections.abc import AsyncIterator
from typing import Any

import httpx

from app.core.chat_errors import (
    WARM_AUTH_MESSAGE,
    WARM_CONNECT_MESSAGE,
    WARM_RETRY_MESSAGE,
    ModelInvocationFailure,
    StreamInterruption,
)
from app.core.logging import get_logger
from app.core.stream_transport import SseDecoder, StreamEvent, TokenEvent

logger = get_logger(__name__)

CHAT_STREAM_PATH = "/v1/chat-stream"
DEFAULT_TIMEOUT_SECONDS = 60.0


class ChatConnectionError(ModelInvocationFailure):
    """The request never produced a stream (network error or non-200)."""

    user_message = WARM_CONNECT_MESSAGE

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)
        if status_code == 401:
            self.user_message = WARM_AUTH_MESSAGE
        elif status_code is not None and status_code >= 500:
            self.user_message = WARM_RETRY_MESSAGE

    @property
    def requires_auth(self) -> bool:
        return self.status_code == 401


def _error_detail(response: httpx.Response) -> str:
    try:
        body: Any = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and body.get("detail"):
        return str(body["detail"])
    return str(body)[:200]


class ChatStreamClient:
    """Streams coaching replies from the engine."""

    def __init__(
        self,
        base_url: str,
        auth_token: str | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout = timeout
        self._http_client = http_client

    def set_auth_token(self, token: str | None) -> None:
        self.auth_token = token

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "text/event-stream"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    async def stream_chat(
        self,
        message: str,
        conversation_id: str,
        retry: bool = False,
    ) -> AsyncIterator[StreamEvent]:
        """
        Send one user turn and yield decoded stream events.

        The last event yielded is the terminal one (completion or error).

        Raises:
            ChatConnectionError: Request failed or returned a non-200 status
            StreamInterruption: Stream broke or ended without a terminal event
        """
        payload = {"message": message, "conversation_id": conversation_id, "retry": retry}
        decoder = SseDecoder()
        received: list[str] = []
        client = self._http_client or httpx.AsyncClient(timeout=self.timeout)
        try:
            async with client.stream(
                "POST",
                f"{self.base_url}{CHAT_STREAM_PATH}",
                json=payload,
                headers=self._headers(),
            ) as response:
                if response.status_code != 200:
                    await response.aread()
                    raise ChatConnectionError(
                        f"chat-stream returned {response.status_code}: {_error_detail(response)}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    for event in decoder.feed_line(line):
                        if isinstance(event, TokenEvent):
                            received.append(event.text)
                        yield event
                    if decoder.terminated:
                        return
        except (ChatConnectionError, StreamInterruption):
            raise
        except httpx.HTTPError as e:
            logger.warning(f"Chat stream transport error ({type(e).__name__}): {e}")
            if received:
                raise StreamInterruption(str(e), partial_text="".join(received)) from e
            raise ChatConnectionError(str(e)) from e
        finally:
            if self._http_client is None:
                await client.aclose()

        raise StreamInterruption(
            "stream ended without a terminal event",
            partial_text="".join(received),
        )
