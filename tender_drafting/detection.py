"""
detection.py — Heuristic question detection.

This pass runs before any AI call and its output is always kept. The AI
classifier can add questions the heuristics miss, but it never gets to
remove the obvious ones: a line ending in "?" under "Section 4 — Quality"
is a question whatever a model thinks about it.

Confidence is deliberately coarse: 0.9 when the line is literally a
question, 0.7 for everything inferred from wording or numbering.
"""

from __future__ import annotations

import logging
import re
from typing import List, Literal, Optional, Tuple

from tender_drafting.config import config
from tender_drafting.schemas import Question

logger = logging.getLogger(__name__)

DIRECT_CONFIDENCE = 0.9
INFERRED_CONFIDENCE = 0.7

IMPERATIVE_VERBS = (
    "describe", "provide", "explain", "list", "confirm", "outline", "detail",
    "demonstrate", "specify", "state", "identify", "indicate", "summarise",
    "summarize", "give",
)
INTERROGATIVES = (
    "what", "how", "when", "where", "why", "which", "who", "whom", "whose",
    "do", "does", "did", "can", "could", "will", "would", "are", "is",
    "have", "has", "should",
)

# "1.", "1)", "1.2", "(3)", "2.1.4." at the start of a line
_NUMBER_MARKER_RE = re.compile(r"^\(?\d+(?:\.\d+)*[.):]?\s+")
# "a)", "(b)", "A.": the closing mark is required so "A quality plan" survives
_LETTER_MARKER_RE = re.compile(r"^\(?[a-zA-Z][.)]\s+")
_BULLET_RE = re.compile(r"^[-–•*▪◦●·>]\s*")
# "Question 4:", "Question 4 -", "Q.4", "Q4)", "Q 4:"
_QUESTION_PREFIX_RE = re.compile(
    r"^(?:question\s*\d+(?:\.\d+)*|q\.?\s*\d+(?:\.\d+)*)\s*[:.)\-–]?\s*",
    re.IGNORECASE,
)
_IMPERATIVE_RE = re.compile(r"^(?:%s)\b" % "|".join(IMPERATIVE_VERBS), re.IGNORECASE)
_INTERROGATIVE_RE = re.compile(r"^(?:%s)\b" % "|".join(INTERROGATIVES), re.IGNORECASE)

_CLOSED_PATTERNS = (
    re.compile(r"^(do\s+you|have\s+you|can\s+you|will\s+you|are\s+you|is\s+your|does\s+your)\b"),
    re.compile(r"\b(yes\s*/\s*no|y\s*/\s*n)\b"),
    re.compile(r"\b(certified|accredited|compliant|registered|licensed)\b"),
    re.compile(r"\b(how\s+many|what\s+is\s+your|when\s+did)\b"),
)
_OPEN_PATTERNS = (
    re.compile(r"^(describe|explain|outline|detail|demonstrate|provide\s+details)\b"),
    re.compile(r"\b(approach|strategy|method|process|procedure|plan)\b"),
    re.compile(r"\b(how\s+do\s+you|how\s+would\s+you|what\s+steps)\b"),
    re.compile(r"\b(experience|capability|ability|expertise)\b"),
)


def detect_obvious(text: str) -> List[Question]:
    """
    Find high-confidence questions, one candidate per line, in document
    order. Indices are assigned in order of detection; the deduplicator
    re-indexes later anyway.
    """
    questions: List[Question] = []
    min_chars = config.segmentation.min_question_chars

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        hit = _match_question(line)
        if hit is None:
            continue

        candidate, confidence = hit
        if len(candidate) < min_chars:
            continue

        questions.append(Question(
            text=candidate,
            index=len(questions) + 1,
            confidence=confidence,
            source="heuristic",
        ))

    logger.info("Heuristic pass: %d questions detected", len(questions))
    return questions


def _match_question(line: str) -> Optional[Tuple[str, float]]:
    stripped, had_bullet = _strip_markers(line)
    if not stripped:
        return None

    if stripped.endswith("?"):
        prefixed = _QUESTION_PREFIX_RE.match(stripped)
        if prefixed:
            stripped = stripped[prefixed.end():].strip()
        return stripped, DIRECT_CONFIDENCE

    prefixed = _QUESTION_PREFIX_RE.match(stripped)
    if prefixed:
        body = stripped[prefixed.end():].strip()
        return (body, INFERRED_CONFIDENCE) if body else None

    if _IMPERATIVE_RE.match(stripped) and not _looks_like_heading(stripped):
        return stripped, INFERRED_CONFIDENCE

    if had_bullet and _INTERROGATIVE_RE.match(stripped):
        return stripped, INFERRED_CONFIDENCE

    return None


def _strip_markers(line: str) -> Tuple[str, bool]:
    """Remove leading numbering/bullets. Returns (text, was_enumerated)."""
    had_marker = False
    previous = None
    text = line
    while text != previous:
        previous = text
        for pattern in (_BULLET_RE, _NUMBER_MARKER_RE, _LETTER_MARKER_RE):
            match = pattern.match(text)
            if match and match.end() < len(text):
                text = text[match.end():].lstrip()
                had_marker = True
    return text, had_marker


def _looks_like_heading(text: str) -> bool:
    """'Provide Services' as a section title is not an instruction."""
    if text.endswith(":"):
        return True
    words = text.split()
    return len(words) <= 3 and all(w[:1].isupper() for w in words if w[:1].isalpha())


def classify_question_type(question: str) -> Literal["open", "closed"]:
    """
    closed = yes/no or a single fact (certification, count, date);
    open   = anything asking for an explanation.

    Open patterns win when both match: "Are you certified and what is your
    approach to audits?" needs a paragraph, not a "Yes".
    """
    q = question.lower().strip()
    is_closed = any(p.search(q) for p in _CLOSED_PATTERNS)
    is_open = any(p.search(q) for p in _OPEN_PATTERNS)
    if is_closed and not is_open:
        return "closed"
    return "open"
