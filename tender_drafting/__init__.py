"""
Tender drafting pipeline

Turns an uploaded tender document (TXT, DOCX, XLSX, RTF, or PDF/images
through an OCR collaborator) into segmented questions, context and
instructions, then drafts an answer for every question using the
company's profile and previously approved answers.
"""

__version__ = "1.0.0"
__author__ = "TenderDrafting"
