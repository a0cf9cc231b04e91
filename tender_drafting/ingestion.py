"""
ingestion.py — Format-dispatched text extraction.

Tenders arrive as whatever the buyer happened to export: Word documents,
spreadsheets of questions, RTF from old templates, plain text pasted from
a portal, and PDFs/scans. This module turns any of those into one plain
string for the segmentation stage.

Rules that matter downstream:
  - We never return "" on failure. An extractor that recovers less than the
    per-format minimum raises ExtractionError so the orchestrator can stop
    cleanly instead of running detection over nothing.
  - PDFs and images are not read in-process. They go to the OCR
    collaborator (see ocr.py); if none is configured that is an
    ExtractionError telling the caller to send extracted text.
  - Unknown extensions are tried as plain text. Buyers rename files.
"""

from __future__ import annotations

import io
import logging
import mimetypes
import re
from pathlib import Path
from typing import List, Optional, Protocol

from tender_drafting.config import config
from tender_drafting.errors import ExtractionError

logger = logging.getLogger(__name__)

# RTF control words (\par, \b0, \fs24 ...) and control symbols (\', \~ ...)
_RTF_HEADER_RE = re.compile(r"^{\s*\\rtf\d+")
_RTF_DESTINATION_RE = re.compile(r"{\\(?:\*|fonttbl|colortbl|stylesheet|info|pict)")
_RTF_HEX_RE = re.compile(r"\\'[0-9a-fA-F]{2}")
_RTF_PAR_RE = re.compile(r"\\(?:par|line)\b ?")
_RTF_CONTROL_WORD_RE = re.compile(r"\\[a-zA-Z]+-?\d* ?")
_RTF_CONTROL_SYMBOL_RE = re.compile(r"\\[^a-zA-Z\s]")


class OCRProvider(Protocol):
    """External OCR collaborator. Returns plain text for a PDF or image."""

    def extract(self, data: bytes, suffix: str) -> str: ...


def extract_file(file_path: str, ocr: Optional[OCRProvider] = None) -> str:
    """Read a local file and extract its text. See extract_text()."""
    path = Path(file_path)
    if not path.exists():
        raise ExtractionError(f"File not found: {path}")
    return extract_text(path.read_bytes(), path.name, ocr=ocr)


def extract_text(
    data: bytes,
    filename: str,
    format_hint: Optional[str] = None,
    ocr: Optional[OCRProvider] = None,
) -> str:
    """
    Extract plain text from a stored document.

    Args:
        data:        Raw file bytes (from the object store).
        filename:    Used for the extension; the storage path works too.
        format_hint: Optional extension (".docx") or MIME type
                     ("application/pdf"). Wins over the filename.
        ocr:         OCR collaborator for PDFs and images.

    Raises:
        ExtractionError: too large, unsupported, corrupt, or too little text.
    """
    _validate_payload(data, filename)
    suffix = _resolve_suffix(filename, format_hint)

    if suffix in config.extraction.ocr_formats:
        text = _extract_with_ocr(data, suffix, ocr)
        min_chars = config.extraction.min_chars_default
    elif suffix == ".docx":
        text = _extract_docx(data)
        min_chars = config.extraction.min_chars_default
    elif suffix == ".xlsx":
        text = _extract_xlsx(data)
        min_chars = config.extraction.min_chars_xlsx
    elif suffix == ".rtf":
        text = _extract_rtf(data)
        min_chars = config.extraction.min_chars_default
    elif suffix in (".doc", ".xls"):
        raise ExtractionError(
            f"Legacy binary format '{suffix}' is not supported. "
            f"Save the file as {suffix}x and upload again."
        )
    else:
        if suffix not in config.extraction.text_formats:
            logger.info("Unknown file type '%s' for %s, trying as plain text", suffix, filename)
        text = _extract_plain(data)
        min_chars = config.extraction.min_chars_default

    text = text.strip()
    if len(text) < min_chars:
        raise ExtractionError(
            f"No readable text found in {filename}: recovered {len(text)} characters, "
            f"need at least {min_chars}"
        )

    logger.info("Extracted %d chars from %s (%s)", len(text), filename, suffix or "no extension")
    return text


def _resolve_suffix(filename: str, format_hint: Optional[str]) -> str:
    if format_hint:
        hint = format_hint.strip().lower()
        if "/" in hint:
            guessed = mimetypes.guess_extension(hint.split(";")[0].strip())
            if guessed:
                return guessed.lower()
        elif hint:
            return hint if hint.startswith(".") else f".{hint}"
    return Path(filename).suffix.lower()


def _extract_plain(data: bytes) -> str:
    # utf-8-sig drops a BOM if present; errors="replace" keeps going on
    # the odd Windows-1252 byte instead of rejecting the whole file.
    return data.decode("utf-8-sig", errors="replace")


def _extract_docx(data: bytes) -> str:
    """
    Paragraphs first, then table rows joined with " | ".

    Tender questionnaires are very often a table (No. | Question | Response),
    so skipping tables would lose most of the questions.
    """
    from docx import Document

    try:
        doc = Document(io.BytesIO(data))
    except Exception as exc:
        raise ExtractionError(f"DOCX file could not be opened: {exc}") from exc

    parts: List[str] = [p.text for p in doc.paragraphs if p.text.strip()]

    for table in doc.tables:
        for row in table.rows:
            cells: List[str] = []
            for cell in row.cells:
                value = cell.text.strip()
                # Merged cells repeat the same text across the span
                if value and (not cells or cells[-1] != value):
                    cells.append(value)
            if cells:
                parts.append(" | ".join(cells))

    logger.debug("DOCX: %d paragraphs/rows recovered", len(parts))
    return "\n".join(parts)


def _extract_xlsx(data: bytes) -> str:
    import openpyxl

    try:
        wb = openpyxl.load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except Exception as exc:
        raise ExtractionError(f"XLSX file could not be opened: {exc}") from exc

    blocks: List[str] = []
    try:
        for sheet in wb.worksheets:
            rows: List[str] = []
            for row in sheet.iter_rows(values_only=True):
                cells = [str(c).strip() for c in row if c is not None and str(c).strip()]
                if cells:
                    rows.append("\t".join(cells))
            if rows:
                blocks.append(f"[Sheet: {sheet.title}]\n" + "\n".join(rows))
    finally:
        wb.close()

    return "\n\n".join(blocks)


def _extract_rtf(data: bytes) -> str:
    """
    Best-effort RTF stripping: drop destination groups (font tables,
    stylesheets), turn \\par into newlines, remove control words/symbols
    and braces. Good enough for the text-heavy RTF that tender templates
    produce; not a general RTF reader.
    """
    raw = data.decode("latin-1", errors="replace")
    if not _RTF_HEADER_RE.match(raw.lstrip()):
        logger.warning("File has .rtf extension but no RTF header; stripping anyway")

    text = _drop_rtf_destinations(raw)
    text = _RTF_HEX_RE.sub("", text)
    text = _RTF_PAR_RE.sub("\n", text)
    text = _RTF_CONTROL_WORD_RE.sub("", text)
    text = _RTF_CONTROL_SYMBOL_RE.sub("", text)
    text = text.replace("{", "").replace("}", "")

    lines = [" ".join(line.split()) for line in text.splitlines()]
    return "\n".join(line for line in lines if line)


def _drop_rtf_destinations(text: str) -> str:
    """Remove whole groups that hold metadata rather than body text."""
    out: List[str] = []
    i = 0
    n = len(text)
    while i < n:
        if text[i] == "{" and _RTF_DESTINATION_RE.match(text, i):
            depth = 0
            while i < n:
                if text[i] == "\\":
                    i += 2
                    continue
                if text[i] == "{":
                    depth += 1
                elif text[i] == "}":
                    depth -= 1
                    if depth == 0:
                        i += 1
                        break
                i += 1
            continue
        out.append(text[i])
        i += 1
    return "".join(out)


def _extract_with_ocr(data: bytes, suffix: str, ocr: Optional[OCRProvider]) -> str:
    if ocr is None:
        raise ExtractionError(
            f"{suffix.upper().lstrip('.')} files require OCR, which is not configured. "
            f"Set OCR_PROVIDER or submit extracted text instead."
        )
    try:
        return ocr.extract(data, suffix)
    except ExtractionError:
        raise
    except Exception as exc:
        raise ExtractionError(f"OCR failed for {suffix} document: {exc}") from exc


def _validate_payload(data: bytes, filename: str) -> None:
    if not data:
        raise ExtractionError(f"Document is empty: {filename}")

    size_mb = len(data) / (1024 * 1024)
    if size_mb > config.extraction.max_file_size_mb:
        raise ExtractionError(
            f"File too large ({size_mb:.1f} MB). Max: {config.extraction.max_file_size_mb} MB"
        )
