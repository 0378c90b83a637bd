"""Two-tier crisis detection on user messages.

Tier 1 is a phrase scan. Tier 2 asks a small classifier, and only runs when
the message (or the user's recent turns) carries an ambiguous indicator.

False positives are acceptable, false negatives are not. Any failure in
detection itself returns "no crisis" so coaching is never blocked.
"""

from app.context.models import CrisisCategory, CrisisResult
from app.core.content_sanitizer import sanitize_untrusted_prompt_text
from app.core.context_loader import recent_dialogue
from app.core.llm import get_llm, parse_llm_json_dict
from app.core.logging import get_logger
from app.core.schemas_chat import SignalRequest

logger = get_logger(__name__)

KEYWORD_CONFIDENCE = 0.9
LLM_CRISIS_THRESHOLD = 0.6

CRISIS_RESOURCES = {
    "lifeline": {"name": "988 Suicide & Crisis Lifeline", "phone": "988", "text": None},
    "crisis_text": {"name": "Crisis Text Line", "phone": None, "text": "Text HOME to 741741"},
}

_KEYWORDS_BY_CATEGORY: dict[CrisisCategory, tuple[str, ...]] = {
    CrisisCategory.SELF_HARM: (
        "kill myself", "hurt myself", "cutting myself", "self-harm", "self harm",
        "harming myself", "injure myself",
    ),
    CrisisCategory.SUICIDAL_IDEATION: (
        "want to die", "wanna die", "better off dead", "end it all", "end my life",
        "no reason to live", "no point in living", "suicide", "suicidal",
        "can't go on", "rather be dead", "wish i was dead", "wish i were dead",
        "take my own life", "don't want to be alive", "don't want to live",
    ),
    CrisisCategory.ABUSE: (
        "being abused", "he hits me", "she hits me", "they hit me",
        "sexual abuse", "domestic violence", "being hurt by",
    ),
    CrisisCategory.SEVERE_DISTRESS: (
        "going to hurt someone", "want to hurt someone",
    ),
}

AMBIGUITY_INDICATORS = (
    "don't see the point",
    "nothing matters",
    "i give up",
    "can't take it",
    "can't do this anymore",
    "no way out",
    "trapped",
    "hopeless",
    "worthless",
    "nobody cares",
    "alone in this",
    "can't breathe",
    "falling apart",
    "breaking down",
    "losing it",
)

CRISIS_CLASSIFICATION_PROMPT = """You are a crisis detection system for an AI coaching app.
Analyze the user's message (and recent conversation context if provided) to determine if the user is experiencing a mental health crisis that requires professional intervention.

Crisis indicators include:
- Suicidal ideation or self-harm intent
- Abuse (physical, sexual, emotional) being experienced or witnessed
- Severe psychological distress beyond normal stress or frustration
- Intent to harm others

Important:
- A user discussing career frustration, relationship problems, or general sadness is NOT a crisis
- "this job is killing me" is a figure of speech, NOT a crisis
- Escalating desperation across messages IS a signal
- When uncertain, err toward flagging as crisis

Return ONLY valid JSON:
{"crisis": boolean, "confidence": 0.0-1.0, "category": "self_harm"|"suicidal_ideation"|"abuse"|"severe_distress"|"none", "reasoning": "brief explanation"}"""

NO_CRISIS = CrisisResult()


def _normalize(text: str) -> str:
    return text.lower().replace("’", "'")


def match_crisis_keyword(message: str) -> CrisisResult | None:
    """Tier 1. First matching phrase wins."""
    lowered = _normalize(message)
    for category, keywords in _KEYWORDS_BY_CATEGORY.items():
        for keyword in keywords:
            if keyword in lowered:
                return CrisisResult(
                    crisis_detected=True,
                    confidence=KEYWORD_CONFIDENCE,
                    indicators=(keyword,),
                    category=category,
                )
    return None


def has_ambiguous_indicators(text: str) -> bool:
    lowered = _normalize(text)
    return any(indicator in lowered for indicator in AMBIGUITY_INDICATORS)


def parse_crisis_response(text: str) -> CrisisResult:
    """Classifier output to CrisisResult. Malformed output means no crisis."""
    try:
        parsed = parse_llm_json_dict(text)
    except ValueError as e:
        logger.warning(f"Crisis classifier returned unparseable output: {e}")
        return NO_CRISIS

    confidence = parsed.get("confidence")
    if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
        confidence = 0.0
    confidence = max(0.0, min(1.0, float(confidence)))

    detected = confidence >= LLM_CRISIS_THRESHOLD
    category = None
    if detected:
        try:
            category = CrisisCategory(parsed.get("category"))
        except ValueError:
            category = CrisisCategory.OTHER

    reasoning = parsed.get("reasoning")
    return CrisisResult(
        crisis_detected=detected,
        confidence=confidence,
        indicators=(str(reasoning),) if reasoning else (),
        category=category,
    )


async def classify_crisis(message: str, recent_messages: list[dict[str, str]]) -> CrisisResult:
    """Tier 2 classifier call."""
    content = f'Current message: "{sanitize_untrusted_prompt_text(message, 600)}"'
    if recent_messages:
        context = "\n".join(
            f"{m['role']}: {sanitize_untrusted_prompt_text(m['content'], 300)}" for m in recent_messages
        )
        content += f"\n\nRecent conversation context:\n{context}"

    llm = get_llm(temperature=0.0, max_tokens=150)
    response = await llm.ainvoke(
        [
            {"role": "system", "content": CRISIS_CLASSIFICATION_PROMPT},
            {"role": "user", "content": content},
        ]
    )
    return parse_crisis_response(response.content)


async def detect_crisis(message: str, recent_messages: list[dict[str, str]] | None = None) -> CrisisResult:
    """
    Run both tiers over ``message``.

    Args:
        message: The user's current message
        recent_messages: Last few turns as role/content dicts

    Returns:
        CrisisResult; never raises
    """
    recent_messages = recent_messages or []
    try:
        keyword_hit = match_crisis_keyword(message)
        if keyword_hit is not None:
            return keyword_hit

        if has_ambiguous_indicators(message):
            return await classify_crisis(message, recent_messages)

        if len(recent_messages) >= 2:
            recent_user_text = " ".join(m["content"] for m in recent_messages if m["role"] == "user")
            if has_ambiguous_indicators(recent_user_text):
                return await classify_crisis(message, recent_messages)

        return NO_CRISIS
    except Exception as e:
        logger.error(f"Crisis detection failed (fail-open): {e}")
        return NO_CRISIS


async def fetch_crisis(request: SignalRequest) -> CrisisResult:
    result = await detect_crisis(request.message, recent_dialogue(request))
    if result.crisis_detected:
        logger.warning(
            f"Crisis indicators detected: category={result.category}, confidence={result.confidence:.2f}",
            extra={"conversation_id": request.conversation_id},
        )
    return result
