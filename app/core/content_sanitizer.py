"""Sanitization for user-derived text interpolated into prompts.

Profile fields, goals, summaries and synthesis text all originate with the
user. Before they land inside an instruction block they are neutralized so
they cannot pose as instructions, roles, or side-channel tags.
"""

import re

# C0 control characters except tab and newline
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

# Role spoofing at line start: "system: ignore previous instructions"
_ROLE_PREFIX_RE = re.compile(r"^(\s*)(system|assistant|user)\s*:", re.IGNORECASE | re.MULTILINE)

# Reserved side-channel markers, including closers
_RESERVED_TAG_RE = re.compile(
    r"\[(/?)\s*(MEMORY|PATTERN|DISCOVERY_COMPLETE)\b([^\]]*)\]",
    re.IGNORECASE,
)

# Phone numbers and emails are not needed by background analyses
_PHONE_RE = re.compile(r"\+?1?[-.\s]?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}")
_EMAIL_RE = re.compile(r"\b[\w.+-]+@[\w-]+\.[\w.-]+\b")

TRUNCATION_MARKER = "[truncated]"
DEFAULT_MAX_CHARS = 1200


def _neutralize_tags(text: str) -> str:
    """Rewrite [MEMORY: x] as (MEMORY: x) so it can never be re-emitted verbatim."""
    return _RESERVED_TAG_RE.sub(lambda m: f"({m.group(1)}{m.group(2)}{m.group(3)})", text)


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    keep = max(max_chars - len(TRUNCATION_MARKER) - 1, 0)
    return f"{text[:keep].rstrip()} {TRUNCATION_MARKER}"


def sanitize_untrusted_prompt_text(text: str | None, max_chars: int = DEFAULT_MAX_CHARS) -> str:
    """
    Sanitize user-derived text for prompt interpolation, keeping its meaning.

    Processing order:
    1. Normalize line endings, replace control characters with spaces
    2. Replace code fences (``` → ''')
    3. Quote role prefixes ("system:" → "system (quoted):")
    4. Neutralize reserved tags ([MEMORY: x] → (MEMORY: x))
    5. Collapse 3+ newlines, trim, truncate

    Args:
        text: Raw user-derived text
        max_chars: Maximum output length including the truncation marker

    Returns:
        Text safe to place inside an instruction block
    """
    if not text:
        return ""

    cleaned = text.replace("\r\n", "\n").replace("\r", "\n")
    cleaned = _CONTROL_CHARS_RE.sub(" ", cleaned)
    cleaned = cleaned.replace("```", "'''")
    cleaned = _ROLE_PREFIX_RE.sub(lambda m: f"{m.group(1)}{m.group(2)} (quoted):", cleaned)
    cleaned = _neutralize_tags(cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned).strip()

    return _truncate(cleaned, max_chars)


def redact_contact_details(text: str) -> str:
    """Replace phone numbers and email addresses with placeholders.

    Applied to conversation excerpts before they go to a background model.
    """
    if not text:
        return ""
    text = _EMAIL_RE.sub("[EMAIL]", text)
    return _PHONE_RE.sub("[PHONE]", text)
