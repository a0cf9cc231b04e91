"""
segmentation.py — Glue for the detection passes.

    detect_obvious ─┐
    classify_by_headers ─┼─> pool ─> dedup ─> Segments
    classify_document (AI, optional) ─┘

The pool is ordered heuristic/rule first and AI second so that, when the
same text is found twice, the deterministic version (and its confidence)
is the one that survives dedup.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from tender_drafting.classification import classify_document
from tender_drafting.dedup import dedupe_questions, dedupe_text_items
from tender_drafting.detection import detect_obvious
from tender_drafting.llm import CompletionClient
from tender_drafting.schemas import ContextItem, InstructionItem, Question, Segments
from tender_drafting.sections import classify_by_headers

logger = logging.getLogger(__name__)

AI_QUESTION_CONFIDENCE = 0.8
AI_ITEM_CONFIDENCE = 0.7


@dataclass
class SegmentationOutcome:
    segments: Segments
    used_ai: bool = False
    chunks_total: int = 0
    chunks_failed: int = 0


def segment_document(text: str, client: Optional[CompletionClient] = None) -> SegmentationOutcome:
    """
    Split a document into questions, context, instructions and leftovers.

    With client=None the AI pass is skipped entirely and the result is
    heuristics + rules only.
    """
    questions: List[Question] = list(detect_obvious(text))
    rules = classify_by_headers(text)
    context: List[ContextItem] = list(rules["context"])
    instructions: List[InstructionItem] = list(rules["instructions"])

    outcome = SegmentationOutcome(segments=Segments())

    if client is not None:
        ai = classify_document(client, text)
        outcome.used_ai = True
        outcome.chunks_total = ai.chunks_total
        outcome.chunks_failed = ai.chunks_failed

        offset = len(questions)
        questions.extend(
            Question(text=q, index=offset + i, confidence=AI_QUESTION_CONFIDENCE, source="ai")
            for i, q in enumerate(ai.questions, start=1)
        )
        context.extend(
            ContextItem(text=c, source="ai", confidence=AI_ITEM_CONFIDENCE) for c in ai.context
        )
        instructions.extend(
            InstructionItem(text=i, source="ai", confidence=AI_ITEM_CONFIDENCE)
            for i in ai.instructions
        )
    else:
        logger.info("No completion client configured; segmentation is heuristics-only")

    outcome.segments = Segments(
        questions=dedupe_questions(questions),
        context=dedupe_text_items(context),
        instructions=dedupe_text_items(instructions),
        other=list(rules["other"]),
    )
    logger.info(
        "Segmentation: %d questions, %d context, %d instructions (ai=%s)",
        len(outcome.segments.questions), len(outcome.segments.context),
        len(outcome.segments.instructions), outcome.used_ai,
    )
    return outcome


def minimal_segments(text: str) -> Segments:
    """
    Degraded segmentation for when segment_document blew up: heuristic
    questions only, marked as fallback. Empty segments if even that fails.
    """
    try:
        detected = detect_obvious(text)
        questions = [q.model_copy(update={"source": "fallback"}) for q in detected]
        return Segments(questions=dedupe_questions(questions))
    except Exception as exc:
        logger.error("Minimal segmentation failed too: %s", exc)
        return Segments()
