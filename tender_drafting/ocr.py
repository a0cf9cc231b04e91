"""
ocr.py — Tesseract-backed OCR collaborator for PDFs and images.

The pipeline itself never OCRs anything. This adapter exists for
deployments that want PDFs handled on the same box: it reads the PDF text
layer with pdfplumber and only renders + OCRs the pages whose text layer
is (nearly) empty, which is how scanned annexures usually show up inside
otherwise typed tenders.

pytesseract and pdf2image are optional extras; they're imported when a
page actually needs OCR.
"""

from __future__ import annotations

import io
import logging
from typing import List, Optional

import pdfplumber
from PIL import Image, ImageEnhance, ImageFilter

from tender_drafting.config import OCRConfig, config
from tender_drafting.errors import ExtractionError

logger = logging.getLogger(__name__)


class TesseractOCR:
    """OCRProvider implementation. See ingestion.OCRProvider."""

    def __init__(self, settings: Optional[OCRConfig] = None):
        self.settings = settings or config.ocr

    def extract(self, data: bytes, suffix: str) -> str:
        if suffix == ".pdf":
            return self._extract_pdf(data)
        img = Image.open(io.BytesIO(data))
        return self._ocr_image(self._preprocess(img))

    def _extract_pdf(self, data: bytes) -> str:
        pages: List[str] = []
        ocr_pages = 0
        with pdfplumber.open(io.BytesIO(data)) as pdf:
            total = len(pdf.pages)
            for idx, page in enumerate(pdf.pages, start=1):
                text = page.extract_text() or ""
                if len(text.strip()) < self.settings.scanned_char_threshold:
                    logger.info(
                        "Page %d/%d: only %d chars in text layer, treating as scanned",
                        idx, total, len(text.strip()),
                    )
                    text = self._ocr_pdf_page(data, idx)
                    ocr_pages += 1
                pages.append(text)

        logger.info("PDF: %d pages (%d via OCR)", len(pages), ocr_pages)
        return "\n\n".join(p for p in pages if p.strip())

    def _ocr_pdf_page(self, data: bytes, page_number: int) -> str:
        """Render one page at a time; rendering a whole PDF at 300 DPI
        holds every page image in memory."""
        try:
            from pdf2image import convert_from_bytes
        except ImportError as exc:
            raise ExtractionError(
                "pdf2image is not installed; cannot OCR scanned pages. "
                "Install the 'ocr' extra."
            ) from exc

        images = convert_from_bytes(
            data,
            dpi=self.settings.dpi,
            first_page=page_number,
            last_page=page_number,
        )
        if not images:
            logger.warning("pdf2image returned nothing for page %d", page_number)
            return ""
        return self._ocr_image(self._preprocess(images[0]))

    def _preprocess(self, img: Image.Image) -> Image.Image:
        """Grayscale → contrast → median filter. Order matters: the median
        filter works best on the already-stretched contrast."""
        img = img.convert("L")
        if self.settings.contrast_enhance:
            img = ImageEnhance.Contrast(img).enhance(2.0)
        if self.settings.denoise:
            img = img.filter(ImageFilter.MedianFilter(size=3))
        return img

    def _ocr_image(self, img: Image.Image) -> str:
        try:
            import pytesseract
        except ImportError as exc:
            raise ExtractionError(
                "pytesseract is not installed. Install the 'ocr' extra."
            ) from exc

        pytesseract.pytesseract.tesseract_cmd = self.settings.tesseract_cmd
        return pytesseract.image_to_string(img, lang=self.settings.lang).strip()


def get_ocr_provider(settings: Optional[OCRConfig] = None) -> Optional[TesseractOCR]:
    """The configured OCR collaborator, or None when OCR is disabled."""
    settings = settings or config.ocr
    provider = settings.provider.strip().lower()
    if provider in ("", "none", "off"):
        return None
    if provider == "tesseract":
        return TesseractOCR(settings)
    raise ValueError(f"Unknown OCR provider: {settings.provider}")
