"""Incremental extraction of side-channel tags from streamed model output.

Two tag shapes are recognized:

  [MEMORY: promotion case]                      inline, single line
  [DISCOVERY_COMPLETE]{...}[/DISCOVERY_COMPLETE] block, multi-line payload

The scanner keeps an append-only buffer of raw model text and a scan
position. Each ``feed`` only re-examines text from the last unresolved
``[`` onward, so a marker split across token boundaries is matched once it
is whole and never shown half-typed.

Inline tags keep their payload in the display text (the brackets and name
are removed). Block tags are removed entirely; their payload is only
available through the extracted signal.
"""

import json
import re
from dataclasses import dataclass
from enum import Enum

from app.core.schemas_chat import ExtractedSignal


class TagShape(str, Enum):
    INLINE = "inline"
    BLOCK = "block"


@dataclass(frozen=True)
class TagSpec:
    name: str
    shape: TagShape
    json_payload: bool = False


MEMORY_TAG = TagSpec("MEMORY", TagShape.INLINE)
PATTERN_TAG = TagSpec("PATTERN", TagShape.INLINE)
DISCOVERY_COMPLETE_TAG = TagSpec("DISCOVERY_COMPLETE", TagShape.BLOCK, json_payload=True)

RESERVED_TAGS: dict[str, TagSpec] = {
    spec.name: spec for spec in (MEMORY_TAG, PATTERN_TAG, DISCOVERY_COMPLETE_TAG)
}

# Inline payloads longer than this are treated as a stray bracket
MAX_INLINE_PAYLOAD_CHARS = 500

_NAME_CHARS = re.compile(r"[A-Za-z_]")
_EXCESS_BLANK_LINES = re.compile(r"\n{3,}")


class _Pending:
    """Marker reached the end of the buffer before it could be resolved."""


_PENDING = _Pending()


@dataclass(frozen=True)
class _Opener:
    spec: TagSpec
    payload_start: int
    closer: bool = False


class IncrementalTagScanner:
    """Scan streamed text for reserved tags.

    Single-consumer: one stream feeds one scanner, in order.
    """

    def __init__(self, tags: dict[str, TagSpec] | None = None):
        self._specs = dict(tags or RESERVED_TAGS)
        self._raw = ""
        self._scan_pos = 0
        self._display_parts: list[str] = []
        self._signals: list[ExtractedSignal] = []
        self._finished = False

    # ── public surface ─────────────────────────────────────────────

    @property
    def raw_text(self) -> str:
        return self._raw

    @property
    def display_text(self) -> str:
        """Resolved text so far. Never contains a partial marker."""
        return "".join(self._display_parts)

    @property
    def clean_text(self) -> str:
        """Display text tidied for persistence."""
        return _EXCESS_BLANK_LINES.sub("\n\n", self.display_text).strip()

    @property
    def signals(self) -> list[ExtractedSignal]:
        return list(self._signals)

    @property
    def flags(self) -> dict[str, bool]:
        """Which tag names have produced at least one validated signal."""
        seen = {s.tag_name for s in self._signals if s.validated}
        return {name: name in seen for name in self._specs}

    def feed(self, chunk: str) -> list[ExtractedSignal]:
        """Append ``chunk`` and return tags completed by it, in text order."""
        if self._finished:
            raise RuntimeError("scanner already finished")
        if not chunk:
            return []
        self._raw += chunk
        before = len(self._signals)
        self._advance(final=False)
        return self._signals[before:]

    def finish(self) -> list[ExtractedSignal]:
        """Resolve whatever is still pending at end of stream."""
        if self._finished:
            return []
        before = len(self._signals)
        self._advance(final=True)
        self._finished = True
        return self._signals[before:]

    def reset(self) -> None:
        self.__init__(self._specs)

    # ── scanning ───────────────────────────────────────────────────

    def _advance(self, final: bool) -> None:
        raw = self._raw
        while self._scan_pos < len(raw):
            bracket = raw.find("[", self._scan_pos)
            if bracket == -1:
                self._emit(raw[self._scan_pos :])
                self._scan_pos = len(raw)
                return

            self._emit(raw[self._scan_pos : bracket])
            self._scan_pos = bracket

            opener = self._match_opener(raw, bracket)
            if opener is _PENDING:
                if final:
                    # Dangling prefix of a marker: drop it
                    self._scan_pos = len(raw)
                return
            if opener is None:
                self._emit("[")
                self._scan_pos = bracket + 1
                continue
            if opener.closer:
                # Stray block closer with no open block
                self._scan_pos = opener.payload_start
                continue

            if opener.spec.shape is TagShape.INLINE:
                if not self._resolve_inline(raw, opener, final):
                    return
            elif not self._resolve_block(raw, opener, final):
                return

    def _resolve_inline(self, raw: str, opener: _Opener, final: bool) -> bool:
        start = opener.payload_start
        end = start
        limit = min(len(raw), start + MAX_INLINE_PAYLOAD_CHARS)
        while end < limit and raw[end] not in "]\n":
            end += 1

        if end < len(raw) and raw[end] == "]":
            payload = raw[start:end].strip()
            self._emit(payload)
            self._signals.append(
                ExtractedSignal(tag_name=opener.spec.name, raw_payload=payload, validated=bool(payload))
            )
            self._scan_pos = end + 1
            return True

        if end < len(raw) or end - start >= MAX_INLINE_PAYLOAD_CHARS:
            # Malformed: line ended or payload ran too long. Keep the words.
            self._emit(raw[start:end].lstrip())
            self._scan_pos = end
            return True

        if final:
            # Never closed: keep the content, lose the opener
            self._emit(raw[start:].lstrip())
            self._scan_pos = len(raw)
            return True
        return False

    def _resolve_block(self, raw: str, opener: _Opener, final: bool) -> bool:
        closer = re.compile(r"\[\s*/\s*" + re.escape(opener.spec.name) + r"\s*\]", re.IGNORECASE)
        match = closer.search(raw, opener.payload_start)
        if match:
            payload = raw[opener.payload_start : match.start()].strip()
            self._signals.append(
                ExtractedSignal(
                    tag_name=opener.spec.name,
                    raw_payload=payload,
                    validated=_payload_is_valid(opener.spec, payload),
                )
            )
            self._scan_pos = match.end()
            return True
        if final:
            # Unterminated block is dropped from its opener onward
            self._scan_pos = len(raw)
            return True
        return False

    def _match_opener(self, raw: str, bracket: int) -> "_Opener | _Pending | None":
        """Classify the ``[`` at ``bracket``.

        Returns an _Opener for a reserved marker, _PENDING when the buffer
        ends while the text could still become one, otherwise None.
        """
        i = bracket + 1
        n = len(raw)
        while i < n and raw[i] == " ":
            i += 1
        closer = False
        if i < n and raw[i] == "/":
            closer = True
            i += 1
            while i < n and raw[i] == " ":
                i += 1

        name_start = i
        while i < n and _NAME_CHARS.match(raw[i]):
            i += 1
        name = raw[name_start:i].upper()

        if i >= n:
            if any(spec_name.startswith(name) for spec_name in self._specs):
                return _PENDING
            return None

        spec = self._specs.get(name)
        if spec is None:
            return None

        while i < n and raw[i] == " ":
            i += 1
        if i >= n:
            return _PENDING

        if closer:
            if spec.shape is TagShape.BLOCK and raw[i] == "]":
                return _Opener(spec=spec, payload_start=i + 1, closer=True)
            return None
        if spec.shape is TagShape.INLINE and raw[i] == ":":
            return _Opener(spec=spec, payload_start=i + 1)
        if spec.shape is TagShape.BLOCK and raw[i] == "]":
            return _Opener(spec=spec, payload_start=i + 1)
        return None

    def _emit(self, text: str) -> None:
        if text:
            self._display_parts.append(text)


def _payload_is_valid(spec: TagSpec, payload: str) -> bool:
    if not payload:
        return False
    if not spec.json_payload:
        return True
    try:
        return isinstance(json.loads(payload), dict)
    except json.JSONDecodeError:
        return False


@dataclass(frozen=True)
class TagExtraction:
    clean_text: str
    signals: list[ExtractedSignal]


def extract_tags(text: str, tags: dict[str, TagSpec] | None = None) -> TagExtraction:
    """One-shot extraction over a complete text."""
    scanner = IncrementalTagScanner(tags)
    scanner.feed(text)
    scanner.finish()
    return TagExtraction(clean_text=scanner.clean_text, signals=scanner.signals)
