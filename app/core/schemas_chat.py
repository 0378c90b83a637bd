"""Pydantic models for the coaching chat pipeline.

Shared records are frozen: request-time readers hold one immutable snapshot
and writers upsert a whole new row.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

# Surfacing eligibility for cross-domain syntheses
SYNTHESIS_CONFIDENCE_THRESHOLD = 0.85
SYNTHESIS_MIN_DOMAINS = 2


# =============================================================================
# Conversation
# =============================================================================


class Role(str, Enum):
    """Author of a conversation turn."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ConversationTurn(BaseModel):
    """One persisted message. Never mutated after insert."""

    model_config = ConfigDict(frozen=True)

    id: str
    conversation_id: str
    role: Role
    text: str
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ConversationTurn":
        return cls(
            id=str(row["id"]),
            conversation_id=str(row["conversation_id"]),
            role=Role(row.get("role", "user")),
            text=row.get("content") or "",
            created_at=row.get("created_at"),
        )


class ChatStreamRequest(BaseModel):
    """Inbound body for POST /chat-stream."""

    message: str = Field(
        default="",
        validation_alias=AliasChoices("message", "userMessage", "user_message"),
        description="The user's utterance",
    )
    conversation_id: str = Field(
        default="",
        validation_alias=AliasChoices("conversation_id", "conversationId"),
        description="Conversation UUID",
    )
    retry: bool = Field(
        default=False,
        description="Re-issue of the previous user turn after an interruption",
    )


class TokenUsage(BaseModel):
    """Token accounting reported on the done event."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_wire(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


# =============================================================================
# Tag extraction
# =============================================================================


class ExtractedSignal(BaseModel):
    """A completed side-channel tag found in assistant output."""

    model_config = ConfigDict(frozen=True)

    tag_name: str
    raw_payload: str
    validated: bool = False


# =============================================================================
# Cross-domain synthesis
# =============================================================================


class SynthesisRecord(BaseModel):
    """A cross-domain pattern computed in the background.

    One row per (user_id, theme). Read-only on the request path.
    """

    model_config = ConfigDict(frozen=True)

    user_id: str
    theme: str
    domains: tuple[str, ...] = ()
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    evidence: tuple[str, ...] = ()
    synthesis: str = ""
    last_surfaced_at: datetime | None = None
    last_surfaced_conversation_id: str | None = None
    surface_count: int = 0
    computed_at: datetime | None = None

    @property
    def is_eligible(self) -> bool:
        """High confidence and spanning at least two domains."""
        return (
            self.confidence >= SYNTHESIS_CONFIDENCE_THRESHOLD
            and len(set(self.domains)) >= SYNTHESIS_MIN_DOMAINS
        )


# =============================================================================
# Signal fan-out
# =============================================================================


class SignalRequest(BaseModel):
    """Inputs shared by every signal provider for one turn."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    conversation_id: str
    message: str
    recent_messages: tuple[ConversationTurn, ...] = ()
    current_domain: str | None = None
