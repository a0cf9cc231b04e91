"""
enrichment.py — Company knowledge for the generator.

Three inputs go into an EnrichmentBundle:
  1. the company profile, with every missing field spelled out as "N/A"
  2. prior approved answers for similar questions (answer memory)
  3. the tender's own context and instructions, from segmentation

Only (1) and (2) do I/O. Retrieval is best-effort per question: a failed
embedding for question 3 means question 3 gets no prior answers, not that
enrichment fails. Only the first 10 questions are looked up at all.

remember_answer() is the write side: when a user approves an answer it is
folded back into the memory so the next tender benefits.
"""

from __future__ import annotations

import logging
import uuid
from typing import Dict, List, Optional, Sequence

from tender_drafting.config import config
from tender_drafting.errors import EnrichmentError
from tender_drafting.retrieval import AnswerMemory, Embedder, MemoryEntry
from tender_drafting.schemas import (
    CompanyProfile,
    EnrichmentBundle,
    Question,
    RetrievedSnippet,
    Segments,
)
from tender_drafting.storage import TenderStore

logger = logging.getLogger(__name__)


def fetch_company_profile(store: TenderStore, company_id: str) -> CompanyProfile:
    """
    Load and normalise the profile. A company that never filled in its
    profile gets CompanyProfile.unknown(); a datastore failure raises
    EnrichmentError so the orchestrator can record it.
    """
    try:
        record = store.get_company_profile(company_id)
    except Exception as exc:
        raise EnrichmentError(f"Failed to load company profile {company_id}: {exc}") from exc

    if record is None:
        logger.warning("No company profile for %s; using N/A profile", company_id)
        return CompanyProfile.unknown(company_id)

    profile = CompanyProfile.from_record({**record, "id": record.get("id") or company_id})
    logger.info("Loaded company profile: %s", profile.display_name)
    return profile


def vector_search(
    questions: Sequence[Question],
    company_id: str,
    embedder: Optional[Embedder],
    memory: Optional[AnswerMemory],
) -> List[RetrievedSnippet]:
    """Prior approved answers for the first `max_questions` questions."""
    if embedder is None or memory is None:
        logger.info("Answer memory not configured; skipping prior-answer retrieval")
        return []

    settings = config.retrieval
    snippets: List[RetrievedSnippet] = []
    searched = list(questions)[: settings.max_questions]
    failures = 0

    for question in searched:
        try:
            embedding = embedder.embed(question.text)
            matches = memory.search(
                embedding,
                company_id,
                threshold=settings.similarity_threshold,
                limit=settings.max_matches_per_question,
            )
        except Exception as exc:
            failures += 1
            logger.warning("Retrieval failed for question %d: %s", question.index, exc)
            continue

        snippets.extend(
            RetrievedSnippet(
                question_index=question.index,
                question=m.question,
                answer=m.answer,
                similarity=round(m.similarity, 4),
                confidence=m.confidence,
                usage_count=m.usage_count,
            )
            for m in matches
        )

    logger.info(
        "Retrieval: %d snippets for %d questions (%d failed, %d not searched)",
        len(snippets), len(searched), failures, max(0, len(questions) - len(searched)),
    )
    return snippets


def build_enrichment(
    profile: CompanyProfile,
    snippets: List[RetrievedSnippet],
    segments: Segments,
) -> EnrichmentBundle:
    return EnrichmentBundle(
        company_profile=profile,
        snippets=list(snippets),
        context=list(segments.context),
        instructions=list(segments.instructions),
        degraded=False,
    )


def fallback_enrichment(company_id: Optional[str], segments: Segments) -> EnrichmentBundle:
    """What the generator gets when enrichment itself failed."""
    return EnrichmentBundle(
        company_profile=CompanyProfile.unknown(company_id),
        snippets=[],
        context=list(segments.context),
        instructions=list(segments.instructions),
        degraded=True,
    )


def remember_answer(
    embedder: Embedder,
    memory: AnswerMemory,
    company_id: str,
    question: str,
    answer: str,
    source_tender_id: Optional[str] = None,
) -> Dict[str, object]:
    """
    Store an approved answer.

    If the memory already holds a near-identical question (similarity at
    or above memory_match_threshold) that entry takes the new answer, its
    confidence goes up by one step (capped at 1.0) and its usage count by
    one. Otherwise a new entry starts at the initial confidence.
    """
    if not question.strip() or not answer.strip():
        raise ValueError("Question and answer are required")

    settings = config.retrieval
    embedding = embedder.embed(question)
    existing = memory.search(embedding, company_id, threshold=settings.memory_match_threshold, limit=1)

    if existing:
        match = existing[0]
        updated = MemoryEntry(
            id=match.id,
            company_id=company_id,
            question=match.question,
            answer=answer.strip(),
            embedding=match.embedding or embedding,
            confidence=min(match.confidence + settings.memory_confidence_step, 1.0),
            usage_count=match.usage_count + 1,
            source_tender_id=match.source_tender_id,
        )
        memory.update(updated)
        logger.info("Updated existing memory entry: %s", match.id)
        return {"memory_id": match.id, "created": False, "confidence": updated.confidence}

    entry_id = memory.add(MemoryEntry(
        id=str(uuid.uuid4()),
        company_id=company_id,
        question=question.strip(),
        answer=answer.strip(),
        embedding=embedding,
        confidence=settings.memory_initial_confidence,
        usage_count=1,
        source_tender_id=source_tender_id,
    ))
    logger.info("Created new memory entry: %s", entry_id)
    return {"memory_id": entry_id, "created": True, "confidence": settings.memory_initial_confidence}
