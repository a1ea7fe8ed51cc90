"""Turn free-text completion summaries into structured completion details.

Parsing is best effort. Nothing here raises on odd input and the lists handed
back by ``build_completion_details`` are never empty: parsed items are used
when the caller supplied none, and fixed default sentences fill whatever is
still missing.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .models import CompletionDetails, utc_now_iso

DEFAULT_ACCOMPLISHMENT = "Task completed successfully"
DEFAULT_IMPLEMENTATION = "No implementation details were provided"
DEFAULT_CHALLENGE = "No technical challenges were reported"

_ACCOMPLISHMENT_HEADING = re.compile(
    r"^#{1,6}\s*(key\s*accomplishments?|accomplishments?|key\s*achievements?|achievements?|"
    r"what\s*was\s*(?:done|completed|achieved)|completed\s*(?:tasks?|items?|work)|summary|overview|results?)\b",
    re.IGNORECASE,
)
_IMPLEMENTATION_HEADING = re.compile(
    r"^#{1,6}\s*(implementation\s*details?|technical\s*implementation|implementation\s*notes?|implementation|"
    r"how\s*it\s*was\s*(?:done|implemented|built)|technical\s*(?:details?|notes?)|method(?:ology)?|approach)\b",
    re.IGNORECASE,
)
_CHALLENGE_HEADING = re.compile(
    r"^#{1,6}\s*(technical\s*challenges?|challenges?|issues?\s*resolved|problems?\s*solved)\b",
    re.IGNORECASE,
)
_ANY_HEADING = re.compile(r"^#{1,6}\s")
_BULLET = re.compile(r"^\s*[-*+]\s+(.+)$")
_NUMBERED = re.compile(r"^\s*\d+[.)]\s+(.+)$")
_SCORE_HINT = re.compile(r"\b(?:verification\s*)?score\s*[:=]\s*(\d{1,3})(?:\s*/\s*100)?%?", re.IGNORECASE)

_CHALLENGE_WORDS = ("challenge", "issue", "problem", "difficult")
_IMPLEMENTATION_WORDS = ("implement", "code", "technical", "api", "database")

_SECTIONS = (
    ("key_accomplishments", _ACCOMPLISHMENT_HEADING),
    ("implementation_details", _IMPLEMENTATION_HEADING),
    ("technical_challenges", _CHALLENGE_HEADING),
)


@dataclass(slots=True)
class ParsedSummary:
    """Items recovered from a summary; any list may be empty."""

    key_accomplishments: List[str] = field(default_factory=list)
    implementation_details: List[str] = field(default_factory=list)
    technical_challenges: List[str] = field(default_factory=list)
    score_hint: Optional[int] = None

    def is_empty(self) -> bool:
        return not (self.key_accomplishments or self.implementation_details or self.technical_challenges)


def clean_list_item(item: str) -> str:
    """Strip inline markdown (code, emphasis, links) from a list item."""
    cleaned = re.sub(r"`([^`]+)`", r"\1", item)
    cleaned = re.sub(r"\*\*([^*]+)\*\*", r"\1", cleaned)
    cleaned = re.sub(r"\*([^*]+)\*", r"\1", cleaned)
    cleaned = re.sub(r"__([^_]+)__", r"\1", cleaned)
    cleaned = re.sub(r"(?<!\w)_([^_]+)_(?!\w)", r"\1", cleaned)
    cleaned = re.sub(r"\[([^\]]+)\]\([^)]+\)", r"\1", cleaned)
    return cleaned.strip()


def extract_list_items(lines: Sequence[str]) -> List[str]:
    """Bullet and numbered list items, cleaned and deduplicated in order."""
    items: List[str] = []
    for line in lines:
        match = _BULLET.match(line) or _NUMBERED.match(line)
        if not match:
            continue
        content = clean_list_item(match.group(1))
        if content and content not in items:
            items.append(content)
    return items


def _split_sections(lines: Sequence[str]) -> Dict[str, List[str]]:
    sections: Dict[str, List[str]] = {}
    current: Optional[str] = None
    for line in lines:
        stripped = line.strip()
        if _ANY_HEADING.match(stripped):
            current = None
            for key, pattern in _SECTIONS:
                if pattern.match(stripped):
                    current = key
                    break
            if current is not None:
                sections.setdefault(current, [])
            continue
        if current is not None:
            sections[current].append(line)
    return sections


def _distribute_by_keyword(items: Sequence[str], parsed: ParsedSummary) -> None:
    for item in items:
        lowered = item.lower()
        if any(word in lowered for word in _CHALLENGE_WORDS):
            parsed.technical_challenges.append(item)
        elif any(word in lowered for word in _IMPLEMENTATION_WORDS):
            parsed.implementation_details.append(item)
        else:
            parsed.key_accomplishments.append(item)


def parse_completion_summary(summary: Any) -> ParsedSummary:
    """Parse a markdown-ish summary into accomplishment, implementation and challenge items."""
    parsed = ParsedSummary()
    if not isinstance(summary, str) or not summary.strip():
        return parsed

    lines = summary.splitlines()
    sections = _split_sections(lines)
    for key, _pattern in _SECTIONS:
        if key in sections:
            getattr(parsed, key).extend(extract_list_items(sections[key]))

    if parsed.is_empty():
        _distribute_by_keyword(extract_list_items(lines), parsed)

    score_match = _SCORE_HINT.search(summary)
    if score_match:
        value = int(score_match.group(1))
        if 0 <= value <= 100:
            parsed.score_hint = value

    return parsed


def _first_sentence(summary: str) -> Optional[str]:
    for line in summary.splitlines():
        text = line.strip()
        if not text or _ANY_HEADING.match(text) or _BULLET.match(text) or _NUMBERED.match(text):
            continue
        sentence = re.split(r"(?<=[.!?])\s+", text, maxsplit=1)[0]
        return clean_list_item(sentence) or None
    return None


def _choose(supplied: Optional[Sequence[str]], parsed: List[str], fallback: List[str]) -> List[str]:
    if supplied:
        chosen = [str(item) for item in supplied if str(item).strip()]
        if chosen:
            return chosen
    if parsed:
        return list(parsed)
    return list(fallback)


def build_completion_details(
    summary: Optional[str],
    score: int,
    *,
    key_accomplishments: Optional[Sequence[str]] = None,
    implementation_details: Optional[Sequence[str]] = None,
    technical_challenges: Optional[Sequence[str]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    completed_at: Optional[str] = None,
) -> CompletionDetails:
    """Assemble completion details that always carry at least one item per list.

    Caller-supplied lists are used verbatim. An omitted (or empty) list is
    filled from the parsed summary, and failing that, from a default
    sentence. When the summary has no list structure at all, its first
    sentence stands in as the key accomplishment.
    """
    text = summary if isinstance(summary, str) else ""
    parsed = parse_completion_summary(text)

    accomplishment_fallback = [DEFAULT_ACCOMPLISHMENT]
    lead = _first_sentence(text) if parsed.is_empty() else None
    if lead:
        accomplishment_fallback = [lead]

    return CompletionDetails(
        key_accomplishments=_choose(key_accomplishments, parsed.key_accomplishments, accomplishment_fallback),
        implementation_details=_choose(implementation_details, parsed.implementation_details, [DEFAULT_IMPLEMENTATION]),
        technical_challenges=_choose(technical_challenges, parsed.technical_challenges, [DEFAULT_CHALLENGE]),
        verification_score=int(score),
        completed_at=completed_at or utc_now_iso(),
        metadata=dict(metadata or {}),
    )
