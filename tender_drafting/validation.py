"""
validation.py — Schema checks and grounding for AI classification payloads.

The classifier is told to copy text verbatim from its chunk. Models don't
always listen: they tidy up wording, merge two questions into one, or
invent a plausible "Please describe your quality approach" that appears
nowhere in the tender. Each returned item is checked against the chunk it
came from and dropped if it isn't really there.

Matching is difflib-based:
  - substring containment after lower-casing and collapsing whitespace is
    a perfect match (the common case: a clean verbatim copy)
  - otherwise the share of the item's characters that appear, in order and
    in runs of at least four, in the chunk. That tolerates the model fixing a stray hyphenation or a
    double space, and rejects anything rewritten.

Items below min_grounding_ratio (0.60) are dropped and logged.
"""

from __future__ import annotations

import logging
from difflib import SequenceMatcher
from typing import Any, List

from pydantic import ValidationError

from tender_drafting.config import config
from tender_drafting.errors import ClassificationError
from tender_drafting.schemas import ChunkClassification

logger = logging.getLogger(__name__)

# Shorter matching runs are coincidence (shared letters, "the "), not copying
_MIN_BLOCK_CHARS = 4


def validate_chunk_payload(payload: Any, chunk_id: str = "") -> ChunkClassification:
    """
    Validate a parsed completion against the classification contract.

    Raises ClassificationError for anything that isn't an object with
    list-of-string (or list-of-{"text"}) fields.
    """
    if not isinstance(payload, dict):
        raise ClassificationError(
            f"Chunk {chunk_id}: expected a JSON object, got {type(payload).__name__}"
        )
    try:
        return ChunkClassification.model_validate(payload)
    except ValidationError as exc:
        raise ClassificationError(f"Chunk {chunk_id}: schema violation: {exc}") from exc


def ground_items(items: List[str], chunk_text: str, kind: str = "item") -> List[str]:
    """Keep only the items that actually occur in chunk_text."""
    threshold = config.validation.min_grounding_ratio
    kept: List[str] = []

    for item in items:
        score = _compute_grounding(item, chunk_text)
        if score < threshold:
            logger.warning(
                "REJECTED %s — grounding=%.2f (threshold=%.2f): '%s'",
                kind, score, threshold, item[:80],
            )
            continue
        kept.append(item)

    if len(kept) < len(items):
        logger.info("Grounding kept %d/%d %s entries", len(kept), len(items), kind)
    return kept


def ground_classification(
    classification: ChunkClassification, chunk_text: str
) -> ChunkClassification:
    return ChunkClassification(
        questions=ground_items(classification.questions, chunk_text, "question"),
        context=ground_items(classification.context, chunk_text, "context"),
        instructions=ground_items(classification.instructions, chunk_text, "instruction"),
    )


def _compute_grounding(extracted_text: str, source_text: str) -> float:
    """
    0.0 to 1.0: how much of extracted_text is present in source_text.

    Fast path is a normalised substring check. The slow path counts the
    extracted characters covered by matching runs of 4+ characters, so a
    short item is not penalised for the chunk being long (which plain
    ratio() would do).
    """
    if not extracted_text or not source_text:
        return 0.0

    ext = " ".join(extracted_text.lower().split())
    src = " ".join(source_text.lower().split())
    if not ext:
        return 0.0

    if ext in src:
        return 1.0

    matcher = SequenceMatcher(None, ext, src, autojunk=False)
    matched = sum(
        block.size for block in matcher.get_matching_blocks() if block.size >= _MIN_BLOCK_CHARS
    )
    return matched / len(ext)
