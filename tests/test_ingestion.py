"""
test_ingestion.py — Text extraction per format.

Documents are built in memory with python-docx and openpyxl, so these run
without any fixture files. PDF handling is only checked at the OCR seam:
the real Tesseract adapter needs binaries we don't assume on CI.

Run with:
    python tests/test_ingestion.py
    python -m pytest tests/test_ingestion.py -v
"""

from __future__ import annotations

import io
import logging
import sys
import tempfile
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import openpyxl
from docx import Document

from tender_drafting.config import config
from tender_drafting.errors import ExtractionError
from tender_drafting.ingestion import extract_file, extract_text
from tender_drafting.ocr import TesseractOCR, get_ocr_provider
from tender_drafting.config import OCRConfig

logging.basicConfig(level=logging.INFO, format="%(levelname)s | %(message)s")

BODY = (
    "1. Describe your quality policy.\n"
    "2. Do you hold ISO 9001?\n\n"
    "Background: We are seeking a contractor for cleaning services."
)


class FakeOCR:
    def __init__(self, text: str):
        self.text = text
        self.calls = []

    def extract(self, data: bytes, suffix: str) -> str:
        self.calls.append(suffix)
        return self.text


class BrokenOCR:
    def extract(self, data: bytes, suffix: str) -> str:
        raise RuntimeError("tesseract crashed")


def _expect_extraction_error(fn, *args, **kwargs) -> str:
    try:
        fn(*args, **kwargs)
    except ExtractionError as exc:
        return str(exc)
    raise AssertionError("ExtractionError not raised")


def test_plain_text_roundtrip():
    text = extract_text(BODY.encode("utf-8"), "tender.txt")
    assert text == BODY.strip()
    print("  ✓ test_plain_text_roundtrip")


def test_plain_text_strips_bom_and_survives_bad_bytes():
    data = b"\xef\xbb\xbf" + BODY.encode("utf-8") + b"\xff"
    text = extract_text(data, "tender.md")
    assert text.startswith("1. Describe")
    assert "�" in text
    print("  ✓ test_plain_text_strips_bom_and_survives_bad_bytes")


def test_unknown_extension_treated_as_text():
    text = extract_text(BODY.encode("utf-8"), "tender.final")
    assert "Do you hold ISO 9001?" in text
    print("  ✓ test_unknown_extension_treated_as_text")


def test_empty_document_rejected():
    message = _expect_extraction_error(extract_text, b"", "empty.txt")
    assert "empty" in message.lower()
    print("  ✓ test_empty_document_rejected")


def test_short_document_rejected():
    message = _expect_extraction_error(extract_text, b"Too short.", "short.txt")
    assert "need at least 50" in message
    print("  ✓ test_short_document_rejected")


def test_oversized_document_rejected():
    original = config.extraction.max_file_size_mb
    config.extraction.max_file_size_mb = 0
    try:
        message = _expect_extraction_error(extract_text, BODY.encode(), "big.txt")
        assert "too large" in message.lower()
    finally:
        config.extraction.max_file_size_mb = original
    print("  ✓ test_oversized_document_rejected")


def test_docx_paragraphs_and_tables():
    doc = Document()
    doc.add_paragraph("Invitation to tender for facilities management services.")
    doc.add_paragraph("")
    table = doc.add_table(rows=2, cols=3)
    table.cell(0, 0).text = "No."
    table.cell(0, 1).text = "Question"
    table.cell(0, 2).text = "Response"
    table.cell(1, 0).text = "1"
    table.cell(1, 1).text = "Describe your mobilisation plan."
    buf = io.BytesIO()
    doc.save(buf)

    text = extract_text(buf.getvalue(), "itt.docx")
    lines = text.splitlines()
    assert lines[0] == "Invitation to tender for facilities management services."
    assert "No. | Question | Response" in lines
    assert "1 | Describe your mobilisation plan." in lines
    print("  ✓ test_docx_paragraphs_and_tables")


def test_docx_corrupt_file():
    message = _expect_extraction_error(extract_text, b"PK\x03\x04 not a zip", "broken.docx")
    assert "DOCX" in message
    print("  ✓ test_docx_corrupt_file")


def test_xlsx_sheets():
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Questions"
    ws.append(["Ref", "Question"])
    ws.append(["Q1", "Do you hold ISO 9001?"])
    ws.append([None, None])
    notes = wb.create_sheet("Notes")
    notes.append(["Submit by 1 March"])
    buf = io.BytesIO()
    wb.save(buf)

    text = extract_text(buf.getvalue(), "questions.xlsx")
    assert text.startswith("[Sheet: Questions]")
    assert "Q1\tDo you hold ISO 9001?" in text
    assert "[Sheet: Notes]\nSubmit by 1 March" in text
    print("  ✓ test_xlsx_sheets")


def test_xlsx_lower_threshold():
    wb = openpyxl.Workbook()
    wb.active.append(["Confirm insurance cover"])
    buf = io.BytesIO()
    wb.save(buf)
    # Under the 50-char document floor but over the 20-char spreadsheet floor
    text = extract_text(buf.getvalue(), "short.xlsx")
    assert "Confirm insurance cover" in text
    print("  ✓ test_xlsx_lower_threshold")


def test_rtf_stripping():
    rtf = (
        r"{\rtf1\ansi{\fonttbl{\f0 Times New Roman;}}{\*\generator Writer;}"
        r"\f0\fs24 Section 1 Background\par "
        r"We are seeking a contractor to deliver facilities management services.\par}"
    )
    text = extract_text(rtf.encode("latin-1"), "template.rtf")
    assert "Section 1 Background" in text
    assert "We are seeking a contractor to deliver facilities management services." in text
    assert "Times" not in text and "Writer" not in text
    assert "\\" not in text and "{" not in text
    print("  ✓ test_rtf_stripping")


def test_legacy_formats_rejected():
    message = _expect_extraction_error(extract_text, BODY.encode(), "old.doc")
    assert ".docx" in message
    print("  ✓ test_legacy_formats_rejected")


def test_pdf_without_ocr_rejected():
    message = _expect_extraction_error(extract_text, b"%PDF-1.4 fake", "scan.pdf")
    assert "requires OCR" in message
    print("  ✓ test_pdf_without_ocr_rejected")


def test_pdf_with_ocr_collaborator():
    ocr = FakeOCR(BODY)
    text = extract_text(b"%PDF-1.4 fake", "scan.pdf", ocr=ocr)
    assert text == BODY.strip()
    assert ocr.calls == [".pdf"]
    print("  ✓ test_pdf_with_ocr_collaborator")


def test_ocr_failure_becomes_extraction_error():
    message = _expect_extraction_error(extract_text, b"\x89PNG", "scan.png", ocr=BrokenOCR())
    assert "tesseract crashed" in message
    print("  ✓ test_ocr_failure_becomes_extraction_error")


def test_format_hint_overrides_filename():
    ocr = FakeOCR(BODY)
    extract_text(b"%PDF-1.4", "upload.bin", format_hint="application/pdf", ocr=ocr)
    assert ocr.calls == [".pdf"]
    print("  ✓ test_format_hint_overrides_filename")


def test_extract_file_reads_disk():
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "tender.txt"
        path.write_text(BODY, encoding="utf-8")
        assert extract_file(str(path)) == BODY.strip()
        _expect_extraction_error(extract_file, str(Path(tmp) / "missing.txt"))
    print("  ✓ test_extract_file_reads_disk")


def test_ocr_provider_selection():
    assert get_ocr_provider(OCRConfig(provider="none")) is None
    assert isinstance(get_ocr_provider(OCRConfig(provider="tesseract")), TesseractOCR)
    try:
        get_ocr_provider(OCRConfig(provider="abbyy"))
    except ValueError:
        pass
    else:
        raise AssertionError("unknown OCR provider accepted")
    print("  ✓ test_ocr_provider_selection")


def run_all_tests():
    tests = [
        test_plain_text_roundtrip,
        test_plain_text_strips_bom_and_survives_bad_bytes,
        test_unknown_extension_treated_as_text,
        test_empty_document_rejected,
        test_short_document_rejected,
        test_oversized_document_rejected,
        test_docx_paragraphs_and_tables,
        test_docx_corrupt_file,
        test_xlsx_sheets,
        test_xlsx_lower_threshold,
        test_rtf_stripping,
        test_legacy_formats_rejected,
        test_pdf_without_ocr_rejected,
        test_pdf_with_ocr_collaborator,
        test_ocr_failure_becomes_extraction_error,
        test_format_hint_overrides_filename,
        test_extract_file_reads_disk,
        test_ocr_provider_selection,
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
