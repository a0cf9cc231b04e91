"""
test_pipeline.py — End-to-end runs of TenderPipeline.

Every collaborator is an in-memory fake (no network, no LLM, no files
outside a temp dir). These tests pin the orchestrator's contract:
  - run() always returns an envelope, never raises
  - fatal problems end the run at the right stage with status=failed
  - recoverable problems leave a draft plus partial_errors
  - responses are upserted on (tender_id, question_index), so a rerun
    never duplicates rows

Run with:
    python tests/test_pipeline.py
    python -m pytest tests/test_pipeline.py -v
"""

from __future__ import annotations

import logging
import sys
import tempfile
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from fakes import FakeCompletionClient, FakeEmbedder, always_fail

import tender_drafting.main as pipeline_main
from tender_drafting.config import config
from tender_drafting.enrichment import remember_answer
from tender_drafting.errors import PersistenceError
from tender_drafting.generation import FALLBACK_MODEL
from tender_drafting.main import CancellationToken, TenderPipeline
from tender_drafting.retrieval import InMemoryAnswerMemory
from tender_drafting.schemas import ProcessingStage, Tender, TenderStatus
from tender_drafting.storage import InMemoryObjectStore, InMemoryTenderStore, JsonFileTenderStore

logging.basicConfig(level=logging.INFO, format="%(levelname)s | %(message)s")

# No real waiting between retries in tests
config.generation.retry_delay_seconds = 0.0

SCENARIO = (
    "1. Describe your quality policy.\n"
    "2. Do you hold ISO 9001?\n\n"
    "Background: We are seeking a contractor for the provision of cleaning "
    "services across our three regional offices from April 2025."
)

PROFILE = {
    "company_name": "Acme Facilities Ltd",
    "industry": "Facilities management",
    "accreditations": "ISO 9001",
}


def _store(store=None, file_path=None) -> InMemoryTenderStore:
    store = store if store is not None else InMemoryTenderStore()
    store.save_company_profile("co-1", PROFILE)
    store.save_tender(Tender(id="t-1", company_id="co-1", file_path=file_path, title="Cleaning"))
    return store


def _stages(envelope):
    return [e["stage"] for e in envelope.partial_errors]


class NoQuota:
    def has_quota(self, company_id):
        return False


class BrokenQuota:
    def has_quota(self, company_id):
        raise ConnectionError("billing service down")


class BrokenProfileStore(InMemoryTenderStore):
    def get_company_profile(self, company_id):
        raise ConnectionError("profiles table unavailable")


class ReadOnlyResponsesStore(InMemoryTenderStore):
    def upsert_responses(self, responses):
        raise PersistenceError("responses table is read-only")


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


# ── Happy path ───────────────────────────────────────────────────────────

def test_scenario_end_to_end():
    store = _store()
    client = FakeCompletionClient()
    pipeline = TenderPipeline(store, client=client)

    envelope = pipeline.run({"tenderId": "t-1", "extractedText": SCENARIO})

    assert envelope.success, envelope.error
    assert envelope.status == "draft"
    assert envelope.stage == "complete"
    assert envelope.questions_found == 2
    assert [q.index for q in envelope.segments.questions] == [1, 2]
    assert envelope.context_found >= 1
    assert envelope.segments.context[0].text.startswith("Background:")
    assert envelope.answers_generated == 2
    assert envelope.fallback_answers == 0
    assert envelope.partial_errors == []
    assert envelope.raw_text_chars == len(SCENARIO)
    assert "2 questions" in envelope.message

    responses = store.list_responses("t-1")
    assert len(responses) == 2
    assert [r.question_index for r in responses] == [1, 2]
    assert responses[0].ai_generated_answer == "Answer to: Describe your quality policy."
    assert responses[1].question_type == "closed"
    assert all(r.model_used == "fake-model" and not r.is_approved for r in responses)

    tender = store.get_tender("t-1")
    assert tender.status == TenderStatus.DRAFT
    assert tender.progress == 100
    assert tender.processing_stage == ProcessingStage.COMPLETE
    assert tender.total_questions == 2
    assert tender.processed_questions == 2
    assert tender.segments is not None and len(tender.segments.questions) == 2
    print("  ✓ test_scenario_end_to_end")


def test_file_path_is_downloaded_and_extracted():
    store = _store(file_path="tenders/t-1.txt")
    objects = InMemoryObjectStore({"tenders/t-1.txt": SCENARIO.encode("utf-8")})
    pipeline = TenderPipeline(store, object_store=objects, client=FakeCompletionClient())

    envelope = pipeline.run({"tenderId": "t-1"})
    assert envelope.success, envelope.error
    assert envelope.questions_found == 2
    assert len(store.list_responses("t-1")) == 2
    print("  ✓ test_file_path_is_downloaded_and_extracted")


def test_prior_answers_reach_the_prompt():
    embedder = FakeEmbedder()
    memory = InMemoryAnswerMemory()
    remember_answer(embedder, memory, "co-1", "Do you hold ISO 9001?", "Yes, certified since 2019.")

    client = FakeCompletionClient()
    pipeline = TenderPipeline(_store(), client=client, embedder=embedder, memory=memory)
    envelope = pipeline.run({"tenderId": "t-1", "extractedText": SCENARIO})

    assert envelope.success
    prompt = [c for c in client.calls if c["kind"] == "generate"][0]["prompt"]
    assert "Yes, certified since 2019." in prompt
    assert "Acme Facilities Ltd" in prompt
    print("  ✓ test_prior_answers_reach_the_prompt")


def test_rerun_does_not_duplicate_responses():
    store = _store()
    pipeline = TenderPipeline(store, client=FakeCompletionClient())
    first = pipeline.run({"tenderId": "t-1", "extractedText": SCENARIO})
    created = {r.question_index: r.created_at for r in store.list_responses("t-1")}
    second = pipeline.run({"tenderId": "t-1", "extractedText": SCENARIO})

    assert first.success and second.success
    responses = store.list_responses("t-1")
    assert len(responses) == 2
    assert len({r.key for r in responses}) == 2
    assert all(r.created_at == created[r.question_index] for r in responses)
    print("  ✓ test_rerun_does_not_duplicate_responses")


# ── Fatal failures ───────────────────────────────────────────────────────

def test_missing_tender_id():
    envelope = TenderPipeline(_store()).run({"extractedText": SCENARIO})
    assert not envelope.success
    assert envelope.status == "failed"
    assert envelope.stage == "validating"
    assert "tenderId" in envelope.error
    print("  ✓ test_missing_tender_id")


def test_unknown_tender():
    envelope = TenderPipeline(_store()).run({"tenderId": "t-404", "extractedText": SCENARIO})
    assert not envelope.success
    assert envelope.stage == "validating"
    assert "not found" in envelope.error
    print("  ✓ test_unknown_tender")


def test_invalid_request_shape():
    envelope = TenderPipeline(_store()).run({"tenderId": ["not", "a", "string"]})
    assert not envelope.success
    assert envelope.stage == "validating"
    print("  ✓ test_invalid_request_shape")


def test_empty_document_fails_at_extracting():
    store = _store(file_path="tenders/empty.txt")
    objects = InMemoryObjectStore({"tenders/empty.txt": b""})
    envelope = TenderPipeline(store, object_store=objects).run({"tenderId": "t-1"})
    assert not envelope.success
    assert envelope.stage == "extracting"
    tender = store.get_tender("t-1")
    assert tender.status == TenderStatus.FAILED
    assert tender.error
    print("  ✓ test_empty_document_fails_at_extracting")


def test_short_text_without_file_fails_at_extracting():
    store = _store()
    envelope = TenderPipeline(store).run({"tenderId": "t-1", "extractedText": "Too short."})
    assert not envelope.success
    assert envelope.stage == "extracting"
    assert "too short" in envelope.error.lower()
    assert store.list_responses("t-1") == []
    print("  ✓ test_short_text_without_file_fails_at_extracting")


def test_missing_object_fails_at_extracting():
    store = _store(file_path="tenders/gone.pdf")
    envelope = TenderPipeline(store, object_store=InMemoryObjectStore()).run({"tenderId": "t-1"})
    assert not envelope.success
    assert envelope.stage == "extracting"
    print("  ✓ test_missing_object_fails_at_extracting")


def test_quota_exceeded_is_fatal():
    envelope = TenderPipeline(_store(), quota=NoQuota()).run(
        {"tenderId": "t-1", "extractedText": SCENARIO}
    )
    assert not envelope.success
    assert envelope.stage == "validating"
    assert "quota" in envelope.error
    print("  ✓ test_quota_exceeded_is_fatal")


def test_quota_check_error_is_advisory():
    envelope = TenderPipeline(_store(), client=FakeCompletionClient(), quota=BrokenQuota()).run(
        {"tenderId": "t-1", "extractedText": SCENARIO}
    )
    assert envelope.success
    assert envelope.partial_errors[0]["stage"] == "validating"
    assert envelope.partial_errors[0]["advisory"] is True
    print("  ✓ test_quota_check_error_is_advisory")


def test_cancelled_before_extraction():
    store = _store()
    token = CancellationToken()
    token.cancel()
    envelope = TenderPipeline(store, client=FakeCompletionClient()).run(
        {"tenderId": "t-1", "extractedText": SCENARIO}, cancel_token=token
    )
    assert not envelope.success
    assert envelope.stage == "validating"
    assert "cancelled" in envelope.error
    assert store.get_tender("t-1").status == TenderStatus.FAILED
    print("  ✓ test_cancelled_before_extraction")


def test_deadline_expires_during_segmentation():
    clock = FakeClock()
    token = CancellationToken(deadline_seconds=60, clock=clock)

    def slow_classifier(prompt):
        clock.now = 120.0
        return {"questions": [], "context": [], "instructions": []}

    store = _store()
    envelope = TenderPipeline(store, client=FakeCompletionClient(classify=slow_classifier)).run(
        {"tenderId": "t-1", "extractedText": SCENARIO}, cancel_token=token
    )
    assert not envelope.success
    assert envelope.stage == "segmenting"
    assert "deadline" in envelope.error
    assert store.list_responses("t-1") == []
    print("  ✓ test_deadline_expires_during_segmentation")


# ── Degraded runs ────────────────────────────────────────────────────────

def test_segmentation_crash_uses_heuristic_questions():
    def exploding(text, client=None):
        raise RuntimeError("segmenter bug")

    original = pipeline_main.segment_document
    pipeline_main.segment_document = exploding
    try:
        envelope = TenderPipeline(_store(), client=FakeCompletionClient()).run(
            {"tenderId": "t-1", "extractedText": SCENARIO}
        )
    finally:
        pipeline_main.segment_document = original

    assert envelope.success
    assert envelope.questions_found == 2
    assert all(q.source == "fallback" for q in envelope.segments.questions)
    assert envelope.context_found == 0
    assert "segmenting" in _stages(envelope)
    assert "degraded: segmentation" in envelope.message
    print("  ✓ test_segmentation_crash_uses_heuristic_questions")


def test_ai_chunk_failures_are_partial():
    client = FakeCompletionClient(classify=always_fail)
    envelope = TenderPipeline(_store(), client=client).run(
        {"tenderId": "t-1", "extractedText": SCENARIO}
    )
    assert envelope.success
    assert envelope.questions_found == 2
    entry = envelope.partial_errors[0]
    assert entry["stage"] == "segmenting"
    assert entry["chunks_failed"] == entry["chunks_total"] >= 1
    print("  ✓ test_ai_chunk_failures_are_partial")


def test_enrichment_failure_uses_na_profile():
    store = _store(BrokenProfileStore())
    client = FakeCompletionClient()
    envelope = TenderPipeline(store, client=client).run({"tenderId": "t-1", "extractedText": SCENARIO})

    assert envelope.success
    assert envelope.answers_generated == 2
    assert "enriching" in _stages(envelope)
    prompt = [c for c in client.calls if c["kind"] == "generate"][0]["prompt"]
    assert "Company name: N/A" in prompt
    print("  ✓ test_enrichment_failure_uses_na_profile")


def test_no_client_gives_fallback_answers():
    store = _store()
    envelope = TenderPipeline(store, client=None).run({"tenderId": "t-1", "extractedText": SCENARIO})

    assert envelope.success
    assert envelope.answers_generated == 2
    assert envelope.fallback_answers == 2
    assert "generating" in _stages(envelope)
    responses = store.list_responses("t-1")
    assert all(r.is_fallback and r.model_used == FALLBACK_MODEL for r in responses)
    assert all("Acme Facilities Ltd" in r.ai_generated_answer for r in responses)
    print("  ✓ test_no_client_gives_fallback_answers")


def test_generation_outage_gives_fallback_answers():
    client = FakeCompletionClient(generate=always_fail)
    envelope = TenderPipeline(_store(), client=client).run({"tenderId": "t-1", "extractedText": SCENARIO})

    assert envelope.success
    assert envelope.fallback_answers == 2
    assert client.count("generate") == config.generation.max_attempts
    generating = [e for e in envelope.partial_errors if e["stage"] == "generating"]
    assert len(generating) == 1
    assert generating[0]["fallback_answers"] == 2
    print("  ✓ test_generation_outage_gives_fallback_answers")


def test_skipped_question_is_reported_as_degraded():
    client = FakeCompletionClient(generate=lambda prompt: {"answers": [
        {"question": "1. [open] Describe your quality policy.", "answer": "Our policy is ISO aligned."},
    ]})
    store = _store()
    envelope = TenderPipeline(store, client=client).run({"tenderId": "t-1", "extractedText": SCENARIO})

    assert envelope.success
    assert envelope.answers_generated == 2
    assert envelope.fallback_answers == 1
    generating = [e for e in envelope.partial_errors if e["stage"] == "generating"]
    assert len(generating) == 1 and generating[0]["fallback_answers"] == 1
    assert "degraded: generation" in envelope.message
    responses = store.list_responses("t-1")
    assert responses[0].ai_generated_answer == "Our policy is ISO aligned."
    assert responses[1].is_fallback
    print("  ✓ test_skipped_question_is_reported_as_degraded")


def test_persistence_failure_is_partial():
    store = _store(ReadOnlyResponsesStore())
    envelope = TenderPipeline(store, client=FakeCompletionClient()).run(
        {"tenderId": "t-1", "extractedText": SCENARIO}
    )
    assert envelope.success
    assert envelope.answers_generated == 2
    entry = [e for e in envelope.partial_errors if "persistence_failures" in e][0]
    assert entry["persistence_failures"] == 1
    assert "degraded: persistence" in envelope.message
    print("  ✓ test_persistence_failure_is_partial")


# ── Storage ──────────────────────────────────────────────────────────────

def test_json_store_round_trip():
    with tempfile.TemporaryDirectory() as tmp:
        path = str(Path(tmp) / "data" / "tenders.json")
        store = _store(JsonFileTenderStore(path))
        envelope = TenderPipeline(store, client=FakeCompletionClient()).run(
            {"tenderId": "t-1", "extractedText": SCENARIO}
        )
        assert envelope.success

        reloaded = JsonFileTenderStore(path)
        tender = reloaded.get_tender("t-1")
        assert tender.status == TenderStatus.DRAFT
        assert tender.segments is not None and len(tender.segments.questions) == 2
        assert len(reloaded.list_responses("t-1")) == 2
        assert reloaded.get_company_profile("co-1")["company_name"] == "Acme Facilities Ltd"
    print("  ✓ test_json_store_round_trip")


def test_update_unknown_tender_raises():
    try:
        InMemoryTenderStore().update_tender("t-404", progress=10)
    except PersistenceError:
        pass
    else:
        raise AssertionError("update of unknown tender did not raise")
    print("  ✓ test_update_unknown_tender_raises")


def run_all_tests():
    tests = [
        test_scenario_end_to_end,
        test_file_path_is_downloaded_and_extracted,
        test_prior_answers_reach_the_prompt,
        test_rerun_does_not_duplicate_responses,
        test_missing_tender_id,
        test_unknown_tender,
        test_invalid_request_shape,
        test_empty_document_fails_at_extracting,
        test_short_text_without_file_fails_at_extracting,
        test_missing_object_fails_at_extracting,
        test_quota_exceeded_is_fatal,
        test_quota_check_error_is_advisory,
        test_cancelled_before_extraction,
        test_deadline_expires_during_segmentation,
        test_segmentation_crash_uses_heuristic_questions,
        test_ai_chunk_failures_are_partial,
        test_enrichment_failure_uses_na_profile,
        test_no_client_gives_fallback_answers,
        test_generation_outage_gives_fallback_answers,
        test_skipped_question_is_reported_as_degraded,
        test_persistence_failure_is_partial,
        test_json_store_round_trip,
        test_update_unknown_tender_raises,
    ]

    passed = 0
    failed = 0
    for test_fn in tests:
        try:
            test_fn()
            passed += 1
        except Exception as exc:
            failed += 1
            print(f"  ✗ {test_fn.__name__} FAILED: {exc}")

    print(f"\n{'=' * 60}")
    print(f"  Results: {passed} passed, {failed} failed, {len(tests)} total")
    print(f"{'=' * 60}\n")
    return failed == 0


if __name__ == "__main__":
    success = run_all_tests()
    sys.exit(0 if success else 1)
