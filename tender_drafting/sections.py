"""
sections.py — Header-driven section splitting and rule-based labelling.

Most tenders are structured enough that their headings tell us what a
block of text is: "3. Submission Requirements" is instructions,
"1. Background" is context. We read that structure deterministically
before any AI call so the unambiguous cases never depend on a model.

Header heuristics, in the order they are tried:
  - delimiter lines (----, ====, ****) close the current section
  - numbered headings: "3", "3.2 Scope of Work", "10. Evaluation"
  - ALL-CAPS lines ("TERMS AND CONDITIONS")
  - title-case lines ending in ":" ("Submission Requirements:")
  - short title-case lines with no terminal punctuation
  - inline labels: "Background: We are seeking ..." opens a section whose
    first line is the whole line

A section is labelled by its header only. Instruction keywords win over
context keywords ("Technical Submission Format" is an instruction).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from tender_drafting.config import config
from tender_drafting.schemas import ContextItem, InstructionItem

logger = logging.getLogger(__name__)

RULE_CONFIDENCE = 0.8

INSTRUCTION_KEYWORDS = (
    "requirement", "submission", "submit", "terms", "condition", "format",
    "deadline", "evaluation", "criteria", "compliance", "mandatory", "must",
    "should", "instruction", "eligibility",
)
CONTEXT_KEYWORDS = (
    "introduction", "background", "objective", "scope", "overview",
    "purpose", "technical", "specification", "summary", "description",
    "about",
)

_DELIMITER_RE = re.compile(r"^\s*([-=*_#~])\1{2,}\s*$")
_NUMBERED_HEADING_RE = re.compile(r"^(?:section\s+)?\d+(?:\.\d+)*\.?\s+\S", re.IGNORECASE)
_INLINE_LABEL_RE = re.compile(r"^([A-Z][A-Za-z&/\-]*(?:\s+[A-Za-z&/\-]+){0,4})\s*:\s+\S")
_TERMINAL_PUNCT = (".", "?", "!", ";", ",")
_MINOR_WORDS = {"a", "an", "and", "the", "of", "for", "to", "in", "on", "or", "with", "by", "&"}

_MAX_HEADING_CHARS = 100
_MAX_SHORT_TITLE_WORDS = 8


@dataclass
class Section:
    header: str
    lines: List[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n".join(self.lines).strip()


def split_sections(text: str) -> List[Section]:
    """
    Split on detected headers. Text before the first header becomes a
    section with an empty header.
    """
    sections: List[Section] = []
    current = Section(header="")

    def _close():
        nonlocal current
        if current.lines:
            sections.append(current)
        current = Section(header="")

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        if _DELIMITER_RE.match(line):
            _close()
            continue

        inline = _INLINE_LABEL_RE.match(line)
        if inline and _is_title_case(inline.group(1)):
            _close()
            current = Section(header=inline.group(1), lines=[line])
            continue

        if _is_heading(line):
            _close()
            current = Section(header=line, lines=[line])
            continue

        current.lines.append(line)

    _close()
    logger.debug("Split document into %d sections", len(sections))
    return sections


def classify_by_headers(text: str) -> Dict[str, list]:
    """
    Returns {"context": [ContextItem], "instructions": [InstructionItem],
    "other": [str]}.

    Sections shorter than min_section_chars or ending in "?" are skipped:
    the former are headings on their own, the latter are questions that
    the detector already owns.
    """
    context: List[ContextItem] = []
    instructions: List[InstructionItem] = []
    other: List[str] = []
    min_chars = config.segmentation.min_section_chars

    for section in split_sections(text):
        body = section.text
        if len(body) < min_chars or body.endswith("?"):
            continue

        label = _label_for(section.header)
        if label == "instructions":
            instructions.append(InstructionItem(text=body, source="rule", confidence=RULE_CONFIDENCE))
        elif label == "context":
            context.append(ContextItem(text=body, source="rule", confidence=RULE_CONFIDENCE))
        else:
            other.append(body)

    logger.info(
        "Rule pass: %d context, %d instruction, %d unlabelled sections",
        len(context), len(instructions), len(other),
    )
    return {"context": context, "instructions": instructions, "other": other}


def _label_for(header: str) -> Optional[str]:
    h = header.lower()
    if not h:
        return None
    if any(re.search(rf"\b{kw}", h) for kw in INSTRUCTION_KEYWORDS):
        return "instructions"
    if any(re.search(rf"\b{kw}", h) for kw in CONTEXT_KEYWORDS):
        return "context"
    return None


def _is_heading(line: str) -> bool:
    if len(line) > _MAX_HEADING_CHARS:
        return False

    if _NUMBERED_HEADING_RE.match(line):
        return not line.endswith(_TERMINAL_PUNCT)

    letters = [c for c in line if c.isalpha()]
    if len(letters) >= 3 and all(c.isupper() for c in letters):
        return not line.endswith(("?", ","))

    if line.endswith(":"):
        return _is_title_case(line[:-1])

    words = line.split()
    if len(words) <= _MAX_SHORT_TITLE_WORDS and not line.endswith(_TERMINAL_PUNCT + (":",)):
        return _is_title_case(line)

    return False


def _is_title_case(text: str) -> bool:
    words = [w for w in re.split(r"\s+", text.strip()) if w]
    if not words:
        return False
    significant = [w for w in words if w.lower() not in _MINOR_WORDS]
    if not significant:
        return False
    first = words[0].lstrip("(\"'")
    if not first[:1].isupper() and not first[:1].isdigit():
        return False
    return all(w[:1].isupper() or w[:1].isdigit() for w in significant)
