"""Pydantic models for the signals that feed prompt composition."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from app.core.schemas_chat import SynthesisRecord

# Style dimensions outside this band are described in the prompt
STRONG_PREFERENCE_HIGH = 0.65
STRONG_PREFERENCE_LOW = 0.35

# Discovery context is shown for this many sessions after discovery completes
DISCOVERY_CONTEXT_SESSION_WINDOW = 3


class CoachingDomain(str, Enum):
    """Coaching domains the router can classify into."""

    LIFE = "life"
    CAREER = "career"
    RELATIONSHIPS = "relationships"
    MINDSET = "mindset"
    CREATIVITY = "creativity"
    FITNESS = "fitness"
    LEADERSHIP = "leadership"
    GENERAL = "general"


class SessionMode(str, Enum):
    """Discovery runs until the user's first profile is captured."""

    DISCOVERY = "discovery"
    COACHING = "coaching"


class UserContext(BaseModel):
    """What the user has told us about themselves. Active goals and confirmed insights only."""

    model_config = ConfigDict(frozen=True)

    values: tuple[str, ...] = ()
    goals: tuple[str, ...] = ()
    situation: str = ""
    insights: tuple[str, ...] = ()

    @property
    def has_context(self) -> bool:
        return bool(self.values or self.goals or self.situation.strip() or self.insights)


class PastConversation(BaseModel):
    model_config = ConfigDict(frozen=True)

    conversation_id: str
    title: str | None = None
    summary: str
    domain: str | None = None
    last_message_at: datetime | None = None


class DomainResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    domain: CoachingDomain = CoachingDomain.GENERAL
    confidence: float = 0.0
    should_clarify: bool = False


class CrisisCategory(str, Enum):
    SELF_HARM = "self_harm"
    SUICIDAL_IDEATION = "suicidal_ideation"
    ABUSE = "abuse"
    SEVERE_DISTRESS = "severe_distress"
    OTHER = "other"


class CrisisResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    crisis_detected: bool = False
    confidence: float = 0.0
    indicators: tuple[str, ...] = ()
    category: CrisisCategory | None = None


class StylePreference(BaseModel):
    """Four 0..1 style dimensions; 0.5 is balanced."""

    model_config = ConfigDict(frozen=True)

    direct_vs_exploratory: float = Field(default=0.5, ge=0.0, le=1.0)
    brief_vs_detailed: float = Field(default=0.5, ge=0.0, le=1.0)
    action_vs_reflective: float = Field(default=0.5, ge=0.0, le=1.0)
    challenging_vs_supportive: float = Field(default=0.5, ge=0.0, le=1.0)
    playful_humor: bool = False
    concrete_examples: bool = False


class StyleSignal(BaseModel):
    """Learned style for a user, resolved per domain at compose time."""

    model_config = ConfigDict(frozen=True)

    global_style: StylePreference | None = None
    domain_styles: dict[str, StylePreference] = Field(default_factory=dict)
    manual_override: StylePreference | None = None

    def resolve(self, domain: str | None) -> StylePreference | None:
        """Manual preset, then the domain's own style, then the global style."""
        if self.manual_override is not None:
            return self.manual_override
        if domain and domain in self.domain_styles:
            return self.domain_styles[domain]
        return self.global_style


class PatternSummary(BaseModel):
    """A recurring theme across the user's sessions."""

    model_config = ConfigDict(frozen=True)

    theme: str
    summary: str
    occurrence_count: int = 0
    confidence: float = 0.0
    domains: tuple[str, ...] = ()
    last_seen_at: datetime | None = None


class DiscoveryProfile(BaseModel):
    """Profile captured at the end of the discovery session.

    Every field is optional so a partially parsed payload can still be stored.
    """

    coaching_domains: list[str] = Field(default_factory=list)
    current_challenges: list[str] = Field(default_factory=list)
    emotional_baseline: str = ""
    communication_style: str = ""
    key_themes: list[str] = Field(default_factory=list)
    strengths_identified: list[str] = Field(default_factory=list)
    values: list[str] = Field(default_factory=list)
    vision: str = ""
    aha_insight: str = ""


class DiscoveryContext(BaseModel):
    """Discovery state for a user as read at request time."""

    model_config = ConfigDict(frozen=True)

    discovery_completed_at: datetime | None = None
    profile: DiscoveryProfile = Field(default_factory=DiscoveryProfile)
    sessions_since_completion: int = 0

    @property
    def session_mode(self) -> SessionMode:
        if self.discovery_completed_at is None:
            return SessionMode.DISCOVERY
        return SessionMode.COACHING

    @property
    def in_context_window(self) -> bool:
        return (
            self.discovery_completed_at is not None
            and self.sessions_since_completion < DISCOVERY_CONTEXT_SESSION_WINDOW
        )


class SignalSet(BaseModel):
    """Everything the providers returned for one request. None means absent."""

    model_config = ConfigDict(frozen=True)

    user_context: UserContext | None = None
    past_conversations: tuple[PastConversation, ...] | None = None
    domain: DomainResult | None = None
    crisis: CrisisResult | None = None
    synthesis: SynthesisRecord | None = None
    session_patterns: tuple[PatternSummary, ...] | None = None
    style: StyleSignal | None = None
    discovery: DiscoveryContext | None = None

    @property
    def session_mode(self) -> SessionMode:
        """A failed discovery read falls back to coaching mode."""
        if self.discovery is None:
            return SessionMode.COACHING
        return self.discovery.session_mode

    @property
    def crisis_detected(self) -> bool:
        return bool(self.crisis and self.crisis.crisis_detected)
