"""
main.py — Pipeline orchestration for the tender drafting pipeline.

    validating -> extracting -> segmenting -> enriching -> generating -> finalizing

Every stage writes its progress to the tender record so the UI can poll
it. The contract with callers is simple: run() always returns a
PipelineEnvelope and never raises.

What ends a run (status=failed):
  - missing tender id, unknown tender
  - no text source, or the document couldn't be extracted
  - the company is definitively over its quota
  - cancellation or the overall deadline

What doesn't (recorded in partial_errors, run continues degraded):
  - segmentation blowing up -> heuristic questions only
  - AI chunks failing       -> those chunks contribute nothing
  - enrichment failing      -> N/A profile, no prior answers
  - a generation batch failing twice -> fallback answers for that batch
  - a datastore write for one batch failing
  - the quota check itself erroring (advisory only)

The CLI runs the same pipeline against a local file with in-memory
collaborators:

    python -m tender_drafting.main tender.docx --company-profile acme.json -o out.json
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from tender_drafting.config import config
from tender_drafting.enrichment import (
    build_enrichment,
    fallback_enrichment,
    fetch_company_profile,
    vector_search,
)
from tender_drafting.errors import (
    ExtractionError,
    FatalPipelineError,
    PipelineCancelled,
    QuotaExceededError,
    make_error_payload,
)
from tender_drafting.generation import generate_all
from tender_drafting.ingestion import OCRProvider, extract_text
from tender_drafting.llm import CompletionClient, describe_client, get_completion_client
from tender_drafting.ocr import get_ocr_provider
from tender_drafting.retrieval import AnswerMemory, Embedder, get_answer_memory, get_embedder
from tender_drafting.schemas import (
    EnrichmentBundle,
    GenerationResult,
    PipelineEnvelope,
    ProcessingStage,
    ProcessTenderRequest,
    Segments,
    Tender,
    TenderResponse,
    TenderStatus,
)
from tender_drafting.segmentation import minimal_segments, segment_document
from tender_drafting.storage import (
    InMemoryObjectStore,
    InMemoryTenderStore,
    JsonFileTenderStore,
    LocalObjectStore,
    ObjectStore,
    QuotaChecker,
    TenderStore,
    UnlimitedQuota,
)

logger = logging.getLogger("tender_drafting")

# Progress written at each milestone; generation fills the gap between
# ENRICHED and 100 batch by batch.
_PROGRESS_STARTED = 5
_PROGRESS_EXTRACTED = 20
_PROGRESS_SEGMENTED = 50
_PROGRESS_ENRICHED = 60
_PROGRESS_GENERATED = 95


class CancellationToken:
    """Explicit cancel() plus an overall deadline, checked between stages."""

    def __init__(
        self,
        deadline_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._event = threading.Event()
        self._clock = clock
        seconds = config.pipeline.deadline_seconds if deadline_seconds is None else deadline_seconds
        self._seconds = seconds
        self._deadline = clock() + seconds if seconds and seconds > 0 else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def expired(self) -> bool:
        return self._deadline is not None and self._clock() >= self._deadline

    def raise_if_cancelled(self, stage: Optional[str] = None) -> None:
        if self.cancelled:
            raise PipelineCancelled("Processing was cancelled", stage=stage)
        if self.expired:
            raise PipelineCancelled(
                f"Processing exceeded the {self._seconds:.0f}s deadline",
                stage=stage,
            )


class TenderPipeline:
    """
    End-to-end drafting pipeline.

    Usage:
        pipeline = TenderPipeline(store, object_store, client=get_completion_client())
        envelope = pipeline.run({"tenderId": "t-123"})
    """

    def __init__(
        self,
        store: TenderStore,
        object_store: Optional[ObjectStore] = None,
        client: Optional[CompletionClient] = None,
        embedder: Optional[Embedder] = None,
        memory: Optional[AnswerMemory] = None,
        quota: Optional[QuotaChecker] = None,
        ocr: Optional[OCRProvider] = None,
    ):
        self.store = store
        self.object_store = object_store or LocalObjectStore()
        self.client = client
        self.embedder = embedder
        self.memory = memory
        self.quota = quota or UnlimitedQuota()
        self.ocr = ocr

    def run(
        self,
        request: Union[ProcessTenderRequest, Dict[str, Any]],
        cancel_token: Optional[CancellationToken] = None,
    ) -> PipelineEnvelope:
        started = time.time()
        token = cancel_token or CancellationToken()
        envelope = PipelineEnvelope()
        partial: List[Dict[str, Any]] = []
        degraded: List[str] = []
        stage = ProcessingStage.VALIDATING
        tender: Optional[Tender] = None

        try:
            if not isinstance(request, ProcessTenderRequest):
                try:
                    request = ProcessTenderRequest.model_validate(request or {})
                except ValidationError as exc:
                    raise FatalPipelineError(f"Invalid request: {exc}") from exc

            envelope.tender_id = request.tender_id
            logger.info("=" * 60)
            logger.info("Processing tender: %s (%s)", request.tender_id, describe_client(self.client))
            logger.info("=" * 60)

            # ── Stage 1: Validation ───────────────────────────────────
            logger.info("[1/5] Validating request ...")
            tender = self._validate(request, partial)
            self._update(tender.id, partial, stage,
                         status=TenderStatus.PROCESSING, progress=_PROGRESS_STARTED,
                         processing_stage=stage, error=None)
            token.raise_if_cancelled(stage.value)

            # ── Stage 2: Extraction ───────────────────────────────────
            stage = ProcessingStage.EXTRACTING
            t0 = time.time()
            logger.info("[2/5] Extracting text ...")
            self._update(tender.id, partial, stage, processing_stage=stage)
            text = self._resolve_text(request, tender)
            envelope.raw_text_chars = len(text)
            self._update(tender.id, partial, stage, progress=_PROGRESS_EXTRACTED)
            logger.info("  ✓ %d characters in %.1fs", len(text), time.time() - t0)
            token.raise_if_cancelled(stage.value)

            # ── Stage 3: Segmentation ─────────────────────────────────
            stage = ProcessingStage.SEGMENTING
            t0 = time.time()
            logger.info("[3/5] Segmenting ...")
            self._update(tender.id, partial, stage, processing_stage=stage)
            segments = self._segment(text, partial, degraded)
            envelope.segments = segments
            envelope.questions_found = len(segments.questions)
            envelope.context_found = len(segments.context)
            envelope.instructions_found = len(segments.instructions)
            self._update(tender.id, partial, stage,
                         status=TenderStatus.SEGMENTED, progress=_PROGRESS_SEGMENTED,
                         segments=segments, total_questions=len(segments.questions),
                         processed_questions=0)
            logger.info(
                "  ✓ %d questions, %d context, %d instructions in %.1fs",
                len(segments.questions), len(segments.context),
                len(segments.instructions), time.time() - t0,
            )
            token.raise_if_cancelled(stage.value)

            # ── Stage 4: Enrichment ───────────────────────────────────
            stage = ProcessingStage.ENRICHING
            t0 = time.time()
            logger.info("[4/5] Building enrichment ...")
            self._update(tender.id, partial, stage, processing_stage=stage)
            bundle = self._enrich(tender, segments, partial, degraded)
            self._update(tender.id, partial, stage,
                         status=TenderStatus.ENRICHED, progress=_PROGRESS_ENRICHED)
            logger.info("  ✓ %d prior answers in %.1fs", len(bundle.snippets), time.time() - t0)
            token.raise_if_cancelled(stage.value)

            # ── Stage 5: Generation ───────────────────────────────────
            stage = ProcessingStage.GENERATING
            t0 = time.time()
            logger.info("[5/5] Generating answers ...")
            self._update(tender.id, partial, stage, processing_stage=stage)
            result = self._generate(tender, segments, bundle, token, partial, degraded)
            envelope.answers_generated = result.total_answers
            envelope.fallback_answers = result.fallback_answers
            logger.info(
                "  ✓ %d answers (%d fallback) in %.1fs",
                result.total_answers, result.fallback_answers, time.time() - t0,
            )

            # ── Finalize ──────────────────────────────────────────────
            stage = ProcessingStage.FINALIZING
            self._update(tender.id, partial, stage,
                         status=TenderStatus.DRAFT, progress=100,
                         processing_stage=ProcessingStage.COMPLETE,
                         processed_questions=result.total_answers)

            envelope.success = True
            envelope.status = TenderStatus.DRAFT.value
            envelope.stage = ProcessingStage.COMPLETE.value
            envelope.message = _summary_message(envelope, degraded)

        except (FatalPipelineError, ExtractionError) as exc:
            self._fail(envelope, tender, stage, exc, partial)
        except Exception as exc:
            # Last line of defence for the never-raises contract
            logger.exception("Unexpected error at stage %s", stage.value)
            self._fail(envelope, tender, stage, exc, partial)

        envelope.partial_errors = partial
        envelope.elapsed_seconds = round(time.time() - started, 3)
        logger.info("=" * 60)
        logger.info("%s in %.1fs | %s", envelope.status.upper(), envelope.elapsed_seconds, envelope.message)
        logger.info("=" * 60)
        return envelope

    # ── Stages ────────────────────────────────────────────────────────────

    def _validate(self, request: ProcessTenderRequest, partial: List[Dict[str, Any]]) -> Tender:
        if not request.tender_id:
            raise FatalPipelineError("tenderId is required", stage=ProcessingStage.VALIDATING.value)

        tender = self.store.get_tender(request.tender_id)
        if tender is None:
            raise FatalPipelineError(
                f"Tender not found: {request.tender_id}", stage=ProcessingStage.VALIDATING.value
            )

        try:
            allowed = self.quota.has_quota(tender.company_id)
        except Exception as exc:
            logger.warning("Quota check failed for %s, continuing: %s", tender.company_id, exc)
            partial.append(make_error_payload(ProcessingStage.VALIDATING.value, exc, {"advisory": True}))
            allowed = True
        if not allowed:
            raise QuotaExceededError(f"Company {tender.company_id} has no generation quota left")
        return tender

    def _resolve_text(self, request: ProcessTenderRequest, tender: Tender) -> str:
        """
        Pre-extracted text wins when it is long enough to be a document;
        otherwise download and extract the file (request path first).
        """
        provided = (request.extracted_text or "").strip()
        min_chars = config.pipeline.min_document_chars
        if len(provided) >= min_chars:
            logger.info("Using provided extracted text (%d chars)", len(provided))
            return provided

        path = request.file_path or tender.file_path
        if not path:
            if provided:
                raise ExtractionError(
                    f"Extracted text too short ({len(provided)} chars, need {min_chars}) "
                    f"and no file path to fall back on"
                )
            raise FatalPipelineError(
                "No extracted text or file path provided", stage=ProcessingStage.EXTRACTING.value
            )

        try:
            data = self.object_store.download(path)
        except (OSError, ValueError) as exc:
            raise ExtractionError(f"Failed to download {path}: {exc}") from exc
        return extract_text(data, path, ocr=self.ocr)

    def _segment(self, text: str, partial: List[Dict[str, Any]], degraded: List[str]) -> Segments:
        stage = ProcessingStage.SEGMENTING.value
        try:
            outcome = segment_document(text, self.client)
        except Exception as exc:
            logger.error("Segmentation failed, using heuristic questions only: %s", exc)
            partial.append(make_error_payload(stage, exc))
            degraded.append("segmentation")
            return minimal_segments(text)

        if outcome.chunks_failed:
            partial.append(make_error_payload(
                stage,
                f"{outcome.chunks_failed}/{outcome.chunks_total} chunks failed AI classification",
                {"chunks_total": outcome.chunks_total, "chunks_failed": outcome.chunks_failed},
            ))
            degraded.append("ai classification")
        return outcome.segments

    def _enrich(
        self,
        tender: Tender,
        segments: Segments,
        partial: List[Dict[str, Any]],
        degraded: List[str],
    ) -> EnrichmentBundle:
        try:
            profile = fetch_company_profile(self.store, tender.company_id)
            snippets = vector_search(segments.questions, tender.company_id, self.embedder, self.memory)
            return build_enrichment(profile, snippets, segments)
        except Exception as exc:
            logger.error("Enrichment failed, continuing with N/A profile: %s", exc)
            partial.append(make_error_payload(ProcessingStage.ENRICHING.value, exc))
            degraded.append("enrichment")
            return fallback_enrichment(tender.company_id, segments)

    def _generate(
        self,
        tender: Tender,
        segments: Segments,
        bundle: EnrichmentBundle,
        token: CancellationToken,
        partial: List[Dict[str, Any]],
        degraded: List[str],
    ) -> GenerationResult:
        stage = ProcessingStage.GENERATING.value
        questions = segments.questions
        if not questions:
            logger.warning("No questions detected; nothing to generate")
            return GenerationResult()

        if self.client is None:
            partial.append(make_error_payload(
                stage, "No completion client configured; fallback answers used for every question"
            ))
            degraded.append("generation")

        processed = 0

        def _persist(responses: List[TenderResponse]) -> None:
            nonlocal processed
            self.store.upsert_responses(responses)
            processed += len(responses)
            share = processed / len(questions)
            self._update(
                tender.id, partial, ProcessingStage.GENERATING,
                processed_questions=processed,
                progress=_PROGRESS_ENRICHED + int((_PROGRESS_GENERATED - _PROGRESS_ENRICHED) * share),
            )

        result = generate_all(
            self.client, questions, bundle, tender.id,
            on_batch=_persist,
            check_cancelled=lambda: token.raise_if_cancelled(stage),
        )

        if result.failed_batches and self.client is not None:
            partial.append(make_error_payload(
                stage,
                f"{result.failed_batches}/{result.batches} batches failed; fallback answers used",
                {"fallback_answers": result.fallback_answers},
            ))
            degraded.append("generation")
        if result.persistence_failures:
            partial.append(make_error_payload(
                stage,
                f"{result.persistence_failures} batches could not be saved",
                {"persistence_failures": result.persistence_failures},
            ))
            degraded.append("persistence")
        return result

    # ── Helpers ───────────────────────────────────────────────────────────

    def _update(
        self,
        tender_id: str,
        partial: List[Dict[str, Any]],
        stage: ProcessingStage,
        **fields: Any,
    ) -> None:
        """Progress writes are best-effort; a failed write is recorded, not fatal."""
        try:
            self.store.update_tender(tender_id, **fields)
        except Exception as exc:
            logger.warning("Failed to update tender %s at %s: %s", tender_id, stage.value, exc)
            partial.append(make_error_payload(stage.value, exc, {"operation": "update_tender"}))

    def _fail(
        self,
        envelope: PipelineEnvelope,
        tender: Optional[Tender],
        stage: ProcessingStage,
        exc: Exception,
        partial: List[Dict[str, Any]],
    ) -> None:
        failed_stage = getattr(exc, "stage", None)
        if not failed_stage or failed_stage == "unknown":
            failed_stage = stage.value
        logger.error("Processing failed at %s: %s", failed_stage, exc)

        envelope.success = False
        envelope.status = TenderStatus.FAILED.value
        envelope.stage = failed_stage
        envelope.error = str(exc)
        envelope.message = f"Processing failed at {failed_stage}: {exc}"

        if tender is not None:
            self._update(tender.id, partial, stage,
                         status=TenderStatus.FAILED, error=str(exc), processing_stage=stage)


def _summary_message(envelope: PipelineEnvelope, degraded: List[str]) -> str:
    message = (
        f"{envelope.questions_found} questions, {envelope.context_found} context items, "
        f"{envelope.instructions_found} instructions, {envelope.answers_generated} answers generated"
    )
    if degraded:
        steps = list(dict.fromkeys(degraded))
        message += f" (degraded: {', '.join(steps)})"
    return message


def build_default_pipeline() -> TenderPipeline:
    """Pipeline wired from config: JSON datastore, local files, configured services."""
    return TenderPipeline(
        store=JsonFileTenderStore(),
        object_store=LocalObjectStore(),
        client=get_completion_client(),
        embedder=get_embedder(),
        memory=get_answer_memory(),
        ocr=get_ocr_provider(),
    )


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="tender_drafting",
        description="Draft answers for every question in a tender document",
    )
    parser.add_argument("file", help="Path to tender document (TXT, DOCX, XLSX, RTF, PDF with OCR)")
    parser.add_argument("--company-profile", "-c", default=None,
                        help="JSON file with the company profile fields")
    parser.add_argument("--output", "-o", default=None, help="JSON output path (default: stdout)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    path = Path(args.file)
    if not path.is_file():
        logger.error("File not found: %s", path)
        sys.exit(1)

    profile: Dict[str, Any] = {}
    if args.company_profile:
        try:
            profile = json.loads(Path(args.company_profile).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Invalid company profile: %s", exc)
            sys.exit(1)

    store = InMemoryTenderStore()
    company_id = str(profile.get("id") or "local")
    store.save_company_profile(company_id, profile)
    tender_id = f"cli-{uuid.uuid4().hex[:8]}"
    store.save_tender(Tender(id=tender_id, company_id=company_id, file_path=path.name, title=path.stem))

    pipeline = TenderPipeline(
        store=store,
        object_store=InMemoryObjectStore({path.name: path.read_bytes()}),
        client=get_completion_client(),
        embedder=get_embedder(),
        memory=get_answer_memory(),
        ocr=get_ocr_provider(),
    )
    envelope = pipeline.run(ProcessTenderRequest(tender_id=tender_id))

    output = {
        "result": envelope.model_dump(mode="json"),
        "responses": [r.model_dump(mode="json") for r in store.list_responses(tender_id)],
    }
    if args.output:
        os.makedirs(os.path.dirname(args.output) or ".", exist_ok=True)
        with open(args.output, "w", encoding="utf-8") as f:
            json.dump(output, f, indent=2, ensure_ascii=False)
        logger.info("Output written to: %s", args.output)
    else:
        print(json.dumps(output, indent=2, ensure_ascii=False))

    if not envelope.success:
        sys.exit(1)


if __name__ == "__main__":
    main()
