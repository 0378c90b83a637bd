"""Prompt composer: fixed-precedence assembly of the coaching system prompt.

Each slot holds at most one block. A slot whose input signal is absent is
simply skipped, and a block that fails to render is logged and skipped,
so ``compose`` always returns a usable prompt.
"""

from dataclasses import dataclass
from enum import IntEnum

from app.context.domain_configs import get_domain_config
from app.context.models import (
    DiscoveryContext,
    DomainResult,
    PastConversation,
    PatternSummary,
    SessionMode,
    SignalSet,
    StyleSignal,
    UserContext,
)
from app.context.prompt_blocks import (
    BLOCK_CLARIFY,
    BLOCK_CRISIS_CONTINUITY,
    BLOCK_CRISIS_OVERRIDE,
    BLOCK_DISCOVERY_CONTEXT_TEMPLATE,
    BLOCK_DOMAIN_TEMPLATE,
    BLOCK_GUARDRAILS,
    BLOCK_MEMORY_TAG,
    BLOCK_PATTERN_TAG,
    BLOCK_PRIOR_SESSIONS_TEMPLATE,
    BLOCK_SESSION_PATTERNS_TEMPLATE,
    BLOCK_STYLE_TEMPLATE,
    BLOCK_SYNTHESIS_TEMPLATE,
    BLOCK_USER_CONTEXT_TEMPLATE,
    FALLBACK_BASE_INSTRUCTIONS,
)
from app.core.content_sanitizer import sanitize_untrusted_prompt_text as _safe
from app.core.logging import get_logger
from app.core.schemas_chat import SYNTHESIS_CONFIDENCE_THRESHOLD, SynthesisRecord
from app.core.style_adapter import format_style_instructions
from app.core.tag_extractor import DISCOVERY_COMPLETE_TAG, MEMORY_TAG, PATTERN_TAG

logger = get_logger(__name__)

MAX_PRIOR_SESSIONS = 3
MAX_SESSION_PATTERNS = 3


class PromptSlot(IntEnum):
    """Precedence order. Earlier slots are foundational, later ones situational."""

    BASE = 1
    GUARDRAILS = 2
    CRISIS_CONTINUITY = 3
    CRISIS_OVERRIDE = 4
    DOMAIN = 5
    STYLE = 6
    CLARIFY = 7
    USER_CONTEXT = 8
    MEMORY_TAG = 9
    PRIOR_SESSIONS = 10
    PATTERN_TAG = 11
    CROSS_DOMAIN_SYNTHESIS = 12
    SESSION_PATTERNS = 13
    DISCOVERY_CONTEXT = 14


# Only these slots apply while the user is still in discovery
_DISCOVERY_MODE_SLOTS = frozenset(
    {PromptSlot.BASE, PromptSlot.GUARDRAILS, PromptSlot.CRISIS_CONTINUITY, PromptSlot.CRISIS_OVERRIDE}
)


@dataclass(frozen=True)
class PromptBlock:
    slot: PromptSlot
    text: str


@dataclass(frozen=True)
class ComposedPrompt:
    """Ordered instruction blocks plus the tags the model may emit."""

    blocks: tuple[PromptBlock, ...]
    active_tags: frozenset[str]
    session_mode: SessionMode = SessionMode.COACHING
    synthesis: SynthesisRecord | None = None

    def has_slot(self, slot: PromptSlot) -> bool:
        return any(b.slot == slot for b in self.blocks)

    def block(self, slot: PromptSlot) -> str | None:
        for b in self.blocks:
            if b.slot == slot:
                return b.text
        return None

    @property
    def text(self) -> str:
        """System prompt text. The crisis override, when present, goes first."""
        override = [b.text for b in self.blocks if b.slot == PromptSlot.CRISIS_OVERRIDE]
        rest = [b.text for b in self.blocks if b.slot != PromptSlot.CRISIS_OVERRIDE]
        return "\n\n".join(override + rest)


# ── Block renderers ────────────────────────────────────────────────


def _render_domain(domain: DomainResult) -> str:
    config = get_domain_config(domain.domain.value)
    specialization = f"{config.system_prompt_addition}\n" if config.system_prompt_addition else ""
    focus = f"Focus areas: {', '.join(config.focus_areas)}\n" if config.focus_areas else ""
    guardrails = f"Domain guardrails: {config.guardrails}\n" if config.guardrails else ""
    return BLOCK_DOMAIN_TEMPLATE.format(
        specialization=specialization,
        tone=config.tone,
        methodology=config.methodology,
        personality=config.personality,
        focus_areas=focus,
        guardrails=guardrails,
    )


def _render_style(style: StyleSignal, domain: DomainResult | None) -> str | None:
    preference = style.resolve(domain.domain.value if domain else None)
    instructions = format_style_instructions(preference)
    if not instructions:
        return None
    return BLOCK_STYLE_TEMPLATE.format(instructions=instructions)


def _render_user_context(context: UserContext) -> str | None:
    if not context.has_context:
        return None
    sections = []
    if context.values:
        sections.append("Core values: " + "; ".join(_safe(v, 200) for v in context.values))
    if context.goals:
        sections.append("Active goals: " + "; ".join(_safe(g, 200) for g in context.goals))
    if context.situation.strip():
        sections.append("Life situation: " + _safe(context.situation, 600))
    if context.insights:
        sections.append("From past conversations: " + "; ".join(_safe(i, 200) for i in context.insights))
    return BLOCK_USER_CONTEXT_TEMPLATE.format(sections="\n".join(sections))


def _render_prior_sessions(conversations: tuple[PastConversation, ...]) -> str | None:
    lines = []
    for conv in conversations[:MAX_PRIOR_SESSIONS]:
        label = f" ({conv.domain})" if conv.domain and conv.domain != "general" else ""
        lines.append(f"- {_safe(conv.summary, 300)}{label}")
    if not lines:
        return None
    return BLOCK_PRIOR_SESSIONS_TEMPLATE.format(sessions="\n".join(lines))


def _render_synthesis(record: SynthesisRecord) -> str | None:
    if not record.is_eligible:
        return None
    domains = " and ".join(sorted(set(record.domains)))
    return BLOCK_SYNTHESIS_TEMPLATE.format(
        domains=domains,
        theme=_safe(record.theme, 200),
        synthesis=_safe(record.synthesis, 600),
    )


def _render_session_patterns(patterns: tuple[PatternSummary, ...]) -> str | None:
    kept = [p for p in patterns if p.confidence >= SYNTHESIS_CONFIDENCE_THRESHOLD][:MAX_SESSION_PATTERNS]
    if not kept:
        return None
    lines = [f"- {_safe(p.theme, 120)}: {_safe(p.summary, 300)}" for p in kept]
    return BLOCK_SESSION_PATTERNS_TEMPLATE.format(patterns="\n".join(lines))


def _render_discovery_context(discovery: DiscoveryContext) -> str | None:
    if not discovery.in_context_window:
        return None
    profile = discovery.profile
    details = []
    if profile.aha_insight:
        details.append(f"Their aha insight: {_safe(profile.aha_insight, 300)}")
    if profile.coaching_domains:
        details.append("Coaching areas they want to explore: " + ", ".join(_safe(d, 60) for d in profile.coaching_domains))
    if profile.current_challenges:
        details.append("Challenges they named: " + "; ".join(_safe(c, 160) for c in profile.current_challenges))
    if profile.values:
        details.append("What they value: " + ", ".join(_safe(v, 80) for v in profile.values))
    if profile.vision:
        details.append(f"Their vision for the future: {_safe(profile.vision, 300)}")
    if profile.communication_style:
        details.append(f"How they like to communicate: {_safe(profile.communication_style, 160)}")
    if not details:
        return None
    return BLOCK_DISCOVERY_CONTEXT_TEMPLATE.format(details="\n".join(details))


# ── Composition ────────────────────────────────────────────────────


def compose(base_instructions: str | None, signals: SignalSet | None, crisis_detected: bool) -> ComposedPrompt:
    """
    Assemble the system prompt for one turn.

    Args:
        base_instructions: Base behavioral rules; blank falls back to safe defaults
        signals: Provider results; any field may be None (absent)
        crisis_detected: Prepend the crisis override block

    Returns:
        ComposedPrompt with blocks in precedence order and the active tag names
    """
    signals = signals or SignalSet()
    mode = signals.session_mode
    blocks: dict[PromptSlot, str] = {}

    def put(slot: PromptSlot, render, *args) -> None:
        if mode is SessionMode.DISCOVERY and slot not in _DISCOVERY_MODE_SLOTS:
            return
        try:
            text = render(*args) if callable(render) else render
        except Exception as e:
            logger.warning(f"Prompt block {slot.name} failed to render, skipping: {e}")
            return
        if text and text.strip():
            blocks[slot] = text.strip()

    base = (base_instructions or "").strip() or FALLBACK_BASE_INSTRUCTIONS
    blocks[PromptSlot.BASE] = base
    put(PromptSlot.GUARDRAILS, BLOCK_GUARDRAILS)
    put(PromptSlot.CRISIS_CONTINUITY, BLOCK_CRISIS_CONTINUITY)
    if crisis_detected:
        put(PromptSlot.CRISIS_OVERRIDE, BLOCK_CRISIS_OVERRIDE)

    if signals.domain is not None:
        put(PromptSlot.DOMAIN, _render_domain, signals.domain)
    if signals.style is not None:
        put(PromptSlot.STYLE, _render_style, signals.style, signals.domain)
    if signals.domain is not None and signals.domain.should_clarify:
        put(PromptSlot.CLARIFY, BLOCK_CLARIFY)
    if signals.user_context is not None:
        put(PromptSlot.USER_CONTEXT, _render_user_context, signals.user_context)
    if signals.past_conversations:
        put(PromptSlot.PRIOR_SESSIONS, _render_prior_sessions, signals.past_conversations)
    if PromptSlot.USER_CONTEXT in blocks or PromptSlot.PRIOR_SESSIONS in blocks:
        put(PromptSlot.MEMORY_TAG, BLOCK_MEMORY_TAG)
    if PromptSlot.PRIOR_SESSIONS in blocks:
        put(PromptSlot.PATTERN_TAG, BLOCK_PATTERN_TAG)
    if signals.synthesis is not None:
        put(PromptSlot.CROSS_DOMAIN_SYNTHESIS, _render_synthesis, signals.synthesis)
    if signals.session_patterns:
        put(PromptSlot.SESSION_PATTERNS, _render_session_patterns, signals.session_patterns)
    if signals.discovery is not None:
        put(PromptSlot.DISCOVERY_CONTEXT, _render_discovery_context, signals.discovery)

    active: set[str] = set()
    if PromptSlot.MEMORY_TAG in blocks:
        active.add(MEMORY_TAG.name)
    if PromptSlot.PATTERN_TAG in blocks or PromptSlot.CROSS_DOMAIN_SYNTHESIS in blocks:
        active.add(PATTERN_TAG.name)
    if mode is SessionMode.DISCOVERY:
        active.add(DISCOVERY_COMPLETE_TAG.name)

    ordered = tuple(PromptBlock(slot=slot, text=blocks[slot]) for slot in sorted(blocks))
    return ComposedPrompt(
        blocks=ordered,
        active_tags=frozenset(active),
        session_mode=mode,
        synthesis=signals.synthesis if PromptSlot.CROSS_DOMAIN_SYNTHESIS in blocks else None,
    )
