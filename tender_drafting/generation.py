"""
generation.py — Batched answer drafting.

Questions go to the completion service five at a time. Each batch prompt
carries the same company profile, document context and instructions, plus
whatever prior approved answers were retrieved for those five questions.

Failure policy per batch, via retry.with_retry:
  attempt 1 fails -> retry once
  attempt 2 fails -> every question in the batch gets the fallback answer
A question the model simply skipped also gets the fallback answer, and its
batch is counted as failed so the run reports the degradation. The
invariant is one non-empty row per question, always.

generate_batch() does no I/O beyond the completion call. Persistence is a
callback (on_batch) invoked after each batch so the UI sees answers appear
as they are written, and a datastore hiccup on batch 3 doesn't lose
batches 4 and 5.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import ValidationError

from tender_drafting.config import config
from tender_drafting.dedup import clean_text, dedup_key
from tender_drafting.detection import classify_question_type
from tender_drafting.errors import GenerationError
from tender_drafting.llm import CompletionClient
from tender_drafting.retry import with_retry
from tender_drafting.schemas import (
    NOT_AVAILABLE,
    EnrichmentBundle,
    GeneratedAnswer,
    GenerationResult,
    Question,
    TenderResponse,
)

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "[... document context truncated ...]"
FALLBACK_DISCLAIMER = "We are unable to provide a complete answer to this question at this time."
FALLBACK_MODEL = "fallback"

GENERATION_SYSTEM_PROMPT = f"""You are a professional tender response writer drafting answers on behalf of a bidding company.

RULES:
1. Use ONLY the company facts provided. A value of "{NOT_AVAILABLE}" means the fact is unknown.
2. NEVER fabricate certifications, figures, names, dates or projects. If a fact is unknown, answer professionally without it.
3. NEVER use placeholder text in brackets like [Name] or [Title].
4. Respect the compliance instructions exactly as written.
5. Write in British English, confident and professional.
6. Closed questions get a direct, factual answer. Open questions get a detailed explanation.
7. Respond ONLY with a JSON object, no markdown fences."""

GENERATION_USER_PROMPT = """COMPANY PROFILE:
{profile}

DOCUMENT CONTEXT:
{context}

COMPLIANCE INSTRUCTIONS (verbatim):
{instructions}

PRIOR APPROVED ANSWERS:
{prior_answers}

QUESTIONS:
{questions}

OUTPUT FORMAT (JSON object, one entry per question, in the same order):
{{"answers": [{{"question": "<question text>", "answer": "<answer>"}}]}}"""


def build_document_context(bundle: EnrichmentBundle, max_words: Optional[int] = None) -> str:
    """
    Context items joined, capped at max_words. Over the cap the text is cut
    hard and TRUNCATION_MARKER appended so the model knows there was more.
    """
    max_words = max_words or config.generation.max_context_words
    text = "\n\n".join(item.text for item in bundle.context).strip()
    if not text:
        return NOT_AVAILABLE

    words = text.split()
    if len(words) <= max_words:
        return text
    logger.info("Document context truncated from %d to %d words", len(words), max_words)
    return " ".join(words[:max_words]) + "\n" + TRUNCATION_MARKER


def build_batch_prompt(batch: Sequence[Question], bundle: EnrichmentBundle) -> str:
    instructions = "\n".join(
        f"- {item.text}" for item in bundle.instructions
    ) or NOT_AVAILABLE

    prior: List[str] = []
    for question in batch:
        for snippet in bundle.snippets_for(question.index):
            prior.append(
                f"- (for question {question.index}, similarity {snippet.similarity:.2f}) "
                f"Q: {snippet.question}\n  A: {snippet.answer}"
            )

    numbered = "\n".join(
        f"{question.index}. [{classify_question_type(question.text)}] {question.text}"
        for question in batch
    )

    return GENERATION_USER_PROMPT.format(
        profile="\n".join(bundle.company_profile.prompt_lines()),
        context=build_document_context(bundle),
        instructions=instructions,
        prior_answers="\n".join(prior) or "None",
        questions=numbered,
    )


def _token_budget(batch: Sequence[Question]) -> int:
    gen = config.generation
    budget = sum(
        gen.closed_answer_tokens if classify_question_type(q.text) == "closed" else gen.open_answer_tokens
        for q in batch
    )
    return min(budget + 100, config.llm.max_tokens)


def _parse_answers(payload: Any) -> List[GeneratedAnswer]:
    if isinstance(payload, dict):
        payload = payload.get("answers")
    if not isinstance(payload, list):
        raise GenerationError("Completion did not contain an answers array")

    answers: List[GeneratedAnswer] = []
    for item in payload:
        if isinstance(item, str):
            item = {"answer": item}
        try:
            answers.append(GeneratedAnswer.model_validate(item))
        except ValidationError as exc:
            logger.debug("Dropping invalid answer entry: %s", exc)
    return answers


def _make_response(
    question: Question,
    answer: str,
    bundle: EnrichmentBundle,
    tender_id: str,
    model_used: str,
    is_fallback: bool = False,
) -> TenderResponse:
    return TenderResponse(
        tender_id=tender_id,
        company_profile_id=bundle.company_profile.id,
        question=question.text,
        question_index=question.index,
        ai_generated_answer=answer,
        is_approved=False,
        model_used=model_used,
        question_type=classify_question_type(question.text),
        response_length=len(answer),
        is_fallback=is_fallback,
    )


def fallback_answer_text(bundle: EnrichmentBundle) -> str:
    return (
        f"{FALLBACK_DISCLAIMER} Please contact {bundle.company_profile.display_name} "
        f"directly for further details on this requirement."
    )


def fallback_answers(
    batch: Sequence[Question], bundle: EnrichmentBundle, tender_id: str
) -> List[TenderResponse]:
    text = fallback_answer_text(bundle)
    return [
        _make_response(q, text, bundle, tender_id, FALLBACK_MODEL, is_fallback=True)
        for q in batch
    ]


# Questions are listed in the prompt as "3. [closed] Do you hold ...?" and
# models often echo that line back verbatim
_TYPE_TAG_RE = re.compile(r"^\[(?:open|closed)\]\s*", re.IGNORECASE)


def _match_key(text: str) -> str:
    cleaned = _TYPE_TAG_RE.sub("", clean_text(text))
    return dedup_key(clean_text(cleaned))


def _match_answers(
    batch: Sequence[Question], answers: Sequence[GeneratedAnswer]
) -> List[Optional[GeneratedAnswer]]:
    """
    Pair answers with questions. Normalised question text first; answers
    that matched nothing are then handed out in order to the questions
    still open.
    """
    matched: List[Optional[GeneratedAnswer]] = [None] * len(batch)
    slots: Dict[str, List[int]] = {}
    for i, question in enumerate(batch):
        slots.setdefault(_match_key(question.text), []).append(i)

    leftovers: List[GeneratedAnswer] = []
    for answer in answers:
        open_slots = slots.get(_match_key(answer.question)) if answer.question.strip() else None
        if open_slots:
            matched[open_slots.pop(0)] = answer
        else:
            leftovers.append(answer)

    for i in range(len(batch)):
        if not leftovers:
            break
        if matched[i] is None:
            matched[i] = leftovers.pop(0)

    if leftovers:
        logger.warning("Discarding %d answers that match no question in the batch", len(leftovers))
    return matched


def generate_batch(
    client: CompletionClient,
    batch: Sequence[Question],
    bundle: EnrichmentBundle,
    tender_id: str,
) -> List[TenderResponse]:
    """
    One completion call for the whole batch.

    Answers are paired with questions by normalised question text (numbering
    and the [open]/[closed] tag are ignored), then any unpaired answers by
    position. A question left without an answer gets the fallback answer.
    Raises GenerationError (or CompletionError) when no valid answer came
    back, so the caller's retry policy applies.
    """
    payload = client.complete_json(
        GENERATION_SYSTEM_PROMPT,
        build_batch_prompt(batch, bundle),
        max_tokens=_token_budget(batch),
    )
    answers = _parse_answers(payload)
    if not answers:
        raise GenerationError(f"No valid answers for batch of {len(batch)} questions")

    matched = _match_answers(batch, answers)

    responses: List[TenderResponse] = []
    skipped = 0
    for question, answer in zip(batch, matched):
        if answer is None:
            skipped += 1
            responses.append(_make_response(
                question, fallback_answer_text(bundle), bundle, tender_id,
                FALLBACK_MODEL, is_fallback=True,
            ))
            continue
        responses.append(_make_response(
            question, answer.answer, bundle, tender_id, client.model_name,
        ))

    if skipped:
        logger.warning("Completion skipped %d/%d questions; fallback used", skipped, len(batch))
    return responses


def generate_all(
    client: Optional[CompletionClient],
    questions: Sequence[Question],
    bundle: EnrichmentBundle,
    tender_id: str,
    on_batch: Optional[Callable[[List[TenderResponse]], Any]] = None,
    check_cancelled: Optional[Callable[[], None]] = None,
) -> GenerationResult:
    """
    Draft every question, batch by batch, persisting through on_batch.

    With client=None every question gets the fallback answer; the rows
    still exist so the UI has something to edit.
    """
    gen = config.generation
    result = GenerationResult()
    batches = [list(questions[i:i + gen.batch_size]) for i in range(0, len(questions), gen.batch_size)]

    for n, batch in enumerate(batches, start=1):
        if check_cancelled is not None:
            check_cancelled()

        logger.info("Generating batch %d/%d (%d questions)", n, len(batches), len(batch))
        failed = False

        if client is None:
            responses = fallback_answers(batch, bundle, tender_id)
            failed = True
        else:
            def _fallback(err: Exception, batch=batch) -> List[TenderResponse]:
                nonlocal failed
                failed = True
                return fallback_answers(batch, bundle, tender_id)

            responses = with_retry(
                lambda batch=batch: generate_batch(client, batch, bundle, tender_id),
                attempts=gen.max_attempts,
                fallback=_fallback,
                delay=gen.retry_delay_seconds,
                label=f"Batch {n}/{len(batches)}",
            )

        # A batch that left questions unanswered is degraded even without an exception
        failed = failed or any(r.is_fallback for r in responses)

        result.batches += 1
        result.failed_batches += int(failed)
        result.fallback_answers += sum(1 for r in responses if r.is_fallback)
        result.total_answers += len(responses)
        result.answers.extend(responses)

        if on_batch is not None:
            try:
                on_batch(responses)
            except Exception as exc:
                result.persistence_failures += 1
                logger.error("Persisting batch %d failed: %s", n, exc)

    logger.info(
        "Generation complete: %d answers in %d batches (%d failed batches, %d fallback answers)",
        result.total_answers, result.batches, result.failed_batches, result.fallback_answers,
    )
    return result
