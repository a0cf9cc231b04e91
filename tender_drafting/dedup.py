"""
dedup.py — Merge redundant candidates from the three detection passes.

The same question routinely arrives three times: "1. What is your
experience?" from the heuristic pass, "What is your experience?" from
the AI pass, and "2) what is your experience?" from an overlapping chunk.
They differ only in numbering, case and punctuation, so that is exactly
what the dedup key throws away.

Prefix rules are applied in order, repeatedly, until the text stops
changing ("Q1. (a) - Describe..." needs three passes). First occurrence
wins, which is why the segmentation step puts heuristic/rule results in
the pool before AI ones.
"""

from __future__ import annotations

import logging
import re
from typing import List, Sequence, TypeVar

from tender_drafting.config import config
from tender_drafting.schemas import Question, TextItem

logger = logging.getLogger(__name__)

ItemT = TypeVar("ItemT", bound=TextItem)

_PREFIX_RULES = (
    # "Question 4:", "Q.4", "Q4)", "Q 1.2 -"
    re.compile(r"^(?:question|q)\s*\.?\s*\d+(?:\.\d+)*\s*[:.)\-–]?\s+", re.IGNORECASE),
    # "Q:", "Question:", "Q -"
    re.compile(r"^(?:question|q)\s*[:\-–]\s*", re.IGNORECASE),
    # "1.", "2)", "(3)", "4:"
    re.compile(r"^\(?\d+(?:\.\d+)*\s*[.):](?!\d)\s*"),
    # "1.2 Scope", "3.1.4 Staffing"
    re.compile(r"^\d+(?:\.\d+)+\s+"),
    # bullet glyphs
    re.compile(r"^[-–—•*▪◦●·>]+\s*"),
    # "a)", "(b)", "C."
    re.compile(r"^\(?[a-zA-Z][.)]\s+"),
    # "(iv)", "[A1]", "(2b)"
    re.compile(r"^[(\[](?:[ivxlcdm]+|[a-z]?\d+[a-z]?)[)\]]\s*", re.IGNORECASE),
)

_WHITESPACE_RE = re.compile(r"\s+")
_PUNCT_RE = re.compile(r"[^\w\s]")


def clean_text(text: str) -> str:
    """Collapse whitespace and strip leading enumerations until stable."""
    cleaned = _WHITESPACE_RE.sub(" ", text).strip()
    previous = None
    while cleaned != previous:
        previous = cleaned
        for rule in _PREFIX_RULES:
            match = rule.match(cleaned)
            if match and match.end() < len(cleaned):
                cleaned = cleaned[match.end():].strip()
    return cleaned


def dedup_key(text: str) -> str:
    """Case-insensitive, punctuation-free comparison key."""
    key = _PUNCT_RE.sub("", text.lower())
    return _WHITESPACE_RE.sub(" ", key).strip()


def dedupe_questions(questions: Sequence[Question]) -> List[Question]:
    """
    Clean, drop short candidates, keep the first occurrence per key and
    re-index 1..N. Returned questions carry the cleaned text.
    """
    min_chars = config.segmentation.min_question_chars
    seen = set()
    survivors: List[Question] = []

    for question in questions:
        cleaned = clean_text(question.text)
        if len(cleaned) < min_chars:
            continue
        key = dedup_key(cleaned)
        if not key or key in seen:
            continue
        seen.add(key)
        survivors.append(question.model_copy(update={
            "text": cleaned,
            "index": len(survivors) + 1,
        }))

    if len(survivors) != len(questions):
        logger.info("Dedup: %d question candidates -> %d", len(questions), len(survivors))
    return survivors


def dedupe_text_items(items: Sequence[ItemT]) -> List[ItemT]:
    """
    Same normalisation as questions, keyed on the first 100 characters.

    Items keep their original text (section bodies are multi-line and the
    line breaks matter to the generator); only the key and the length check
    use the cleaned form.
    """
    min_chars = config.segmentation.min_item_chars
    prefix = config.segmentation.item_key_chars
    seen = set()
    survivors: List[ItemT] = []

    for item in items:
        cleaned = clean_text(item.text)
        if len(cleaned) < min_chars:
            continue
        key = dedup_key(cleaned[:prefix])
        if not key or key in seen:
            continue
        seen.add(key)
        survivors.append(item.model_copy(update={"text": item.text.strip()}))

    if len(survivors) != len(items):
        logger.info("Dedup: %d text item candidates -> %d", len(items), len(survivors))
    return survivors
