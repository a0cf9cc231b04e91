"""
classification.py — AI chunk classification.

Each overlapping chunk is sent to the completion service with one job:
copy out the questions, the background context and the compliance
instructions, verbatim, as JSON arrays. The output is schema-checked and
grounded against the chunk (validation.py) before anything else sees it.

Failure is per chunk. A timeout on chunk 7 of 12 costs us chunk 7 and
nothing else; the heuristic and rule passes already cover the obvious
material, so the AI pass is additive by construction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from tender_drafting.chunking import TextChunk, create_chunks
from tender_drafting.config import config
from tender_drafting.errors import ClassificationError, CompletionError
from tender_drafting.llm import CompletionClient
from tender_drafting.schemas import ChunkClassification
from tender_drafting.validation import ground_classification, validate_chunk_payload

logger = logging.getLogger(__name__)

# Repeating "verbatim" is not an accident; models paraphrase less when
# the rule is stated more than once.
CLASSIFY_SYSTEM_PROMPT = """You classify text from tender (procurement) documents.

RULES:
1. Copy text VERBATIM from the chunk. Never paraphrase, summarise or merge items.
2. "questions": anything the bidder must answer or respond to, including instructions phrased as "Describe...", "Provide...", "Explain...".
3. "context": background about the buyer, the project, its objectives or scope.
4. "instructions": submission rules, formats, deadlines, evaluation criteria and compliance requirements.
5. If a category has nothing, return an empty array. Do NOT invent items.
6. Respond ONLY with a JSON object, no markdown fences."""

CLASSIFY_USER_PROMPT = """CHUNK:
{chunk}

OUTPUT FORMAT (JSON object, verbatim strings only):
{{"questions": ["..."], "context": ["..."], "instructions": ["..."]}}"""


@dataclass
class ChunkClassificationOutcome:
    questions: List[str] = field(default_factory=list)
    context: List[str] = field(default_factory=list)
    instructions: List[str] = field(default_factory=list)
    chunks_total: int = 0
    chunks_failed: int = 0

    @property
    def all_failed(self) -> bool:
        return self.chunks_total > 0 and self.chunks_failed == self.chunks_total


def classify_chunk(client: CompletionClient, chunk: TextChunk) -> Optional[ChunkClassification]:
    """
    Classify one chunk. Returns None on any failure: transport, timeout,
    malformed JSON or a payload that breaks the contract.
    """
    try:
        payload = client.complete_json(
            CLASSIFY_SYSTEM_PROMPT,
            CLASSIFY_USER_PROMPT.format(chunk=chunk.text),
            temperature=config.llm.classification_temperature,
        )
        classification = validate_chunk_payload(payload, chunk.chunk_id)
    except (CompletionError, ClassificationError) as exc:
        logger.warning("Chunk %s classification failed: %s", chunk.chunk_id, exc)
        return None
    except Exception as exc:
        # Adapters we don't own can raise anything; one chunk must not
        # take down the document.
        logger.exception("Chunk %s classification crashed: %s", chunk.chunk_id, exc)
        return None

    grounded = ground_classification(classification, chunk.text)
    logger.debug(
        "Chunk %s: %d questions, %d context, %d instructions",
        chunk.chunk_id, len(grounded.questions), len(grounded.context), len(grounded.instructions),
    )
    return grounded


def classify_document(
    client: CompletionClient,
    text: str,
    chunks: Optional[List[TextChunk]] = None,
) -> ChunkClassificationOutcome:
    """Run classify_chunk over every chunk (capped) and pool the results in order."""
    chunks = create_chunks(text) if chunks is None else chunks
    limit = config.segmentation.max_ai_chunks
    if len(chunks) > limit:
        logger.warning(
            "Document has %d chunks; only the first %d are sent for AI classification",
            len(chunks), limit,
        )
        chunks = chunks[:limit]

    outcome = ChunkClassificationOutcome(chunks_total=len(chunks))
    for chunk in chunks:
        result = classify_chunk(client, chunk)
        if result is None:
            outcome.chunks_failed += 1
            continue
        outcome.questions.extend(result.questions)
        outcome.context.extend(result.context)
        outcome.instructions.extend(result.instructions)

    logger.info(
        "AI pass: %d/%d chunks classified (%d questions, %d context, %d instructions)",
        outcome.chunks_total - outcome.chunks_failed, outcome.chunks_total,
        len(outcome.questions), len(outcome.context), len(outcome.instructions),
    )
    return outcome
