"""Error taxonomy for the chat pipeline.

Only ModelInvocationFailure and StreamInterruption ever reach the user, and
only through their warm ``user_message``. The rest are logged.
"""

from enum import Enum

WARM_RETRY_MESSAGE = "I'm having a little trouble finding my words right now. Let's try that again."
WARM_EMPTY_RESPONSE_MESSAGE = "I lost my train of thought for a moment. Let's try that again."
WARM_INTERRUPTED_MESSAGE = "Our connection was interrupted. Let's try again."
WARM_CONNECT_MESSAGE = "I had trouble connecting. Let's try again."
WARM_AUTH_MESSAGE = "I had trouble remembering you. Please sign in again."


class ErrorKind(str, Enum):
    """Kinds carried on the terminal error event."""

    MODEL_INVOCATION = "model_invocation"
    STREAM_INTERRUPTION = "stream_interruption"


class ChatPipelineError(Exception):
    """Base class for chat pipeline errors."""

    user_message = WARM_RETRY_MESSAGE


class SignalProviderFailure(ChatPipelineError):
    """A single signal provider failed or timed out. Treated as absent."""

    def __init__(self, provider: str, reason: str):
        self.provider = provider
        self.reason = reason
        super().__init__(f"signal provider {provider} failed: {reason}")


class ModelInvocationFailure(ChatPipelineError):
    """Generation failed before any token was produced."""

    kind = ErrorKind.MODEL_INVOCATION


class StreamInterruption(ChatPipelineError):
    """The stream broke after tokens had started flowing.

    ``partial_text`` holds whatever had arrived so the caller can keep it
    or retry.
    """

    kind = ErrorKind.STREAM_INTERRUPTION
    user_message = WARM_INTERRUPTED_MESSAGE

    def __init__(self, message: str, partial_text: str = ""):
        self.partial_text = partial_text
        super().__init__(message)


class TagParseFailure(ChatPipelineError):
    """A structured tag payload could not be fully parsed."""

    def __init__(self, tag_name: str, reason: str, recovered_fields: list[str] | None = None):
        self.tag_name = tag_name
        self.reason = reason
        self.recovered_fields = recovered_fields or []
        super().__init__(f"{tag_name} payload parse failed: {reason}")


class RateLimitSuppression(ChatPipelineError):
    """A surfacing candidate was withheld by a cooldown. Observability only."""

    def __init__(self, theme: str, reason: str):
        self.theme = theme
        self.reason = reason
        super().__init__(f"synthesis '{theme}' suppressed: {reason}")
