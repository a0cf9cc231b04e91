"""
chunking.py — Overlapping character windows for AI classification.

Section-aware chunking is what the rule classifier does; this module is
the dumb-but-safe complement for the AI pass. The document is cut into
~2,500 character windows that overlap by ~500, so any sentence (or
multi-line question) that straddles a boundary is complete in at least
one window. Duplicates created by the overlap are cleaned up by the
deduplicator.

Window ends are pulled back to the nearest whitespace so we never send a
half word; "ISO 90" + "01" is how you get a question about ISO 90.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional

from tender_drafting.config import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextChunk:
    chunk_id: str
    text: str
    start: int
    end: int
    token_count: int


def _count_tokens(text: str) -> int:
    """
    tiktoken count for logging and prompt budgeting. Falls back to the
    len/4 heuristic if tiktoken can't load its encoding (offline boxes).
    """
    try:
        import tiktoken
        enc = tiktoken.get_encoding(config.segmentation.tiktoken_model)
        return len(enc.encode(text))
    except Exception:
        return max(1, len(text) // 4)


def create_chunks(
    text: str,
    size: Optional[int] = None,
    overlap: Optional[int] = None,
) -> List[TextChunk]:
    """
    Split text into overlapping windows.

    Args:
        text:    Full document text.
        size:    Window size in characters (default from config).
        overlap: Characters shared by consecutive windows.

    Returns:
        Chunks in document order. Empty list for blank text.
    """
    size = size or config.segmentation.chunk_size_chars
    overlap = config.segmentation.chunk_overlap_chars if overlap is None else overlap
    if overlap >= size:
        raise ValueError(f"overlap ({overlap}) must be smaller than size ({size})")

    if not text.strip():
        return []

    chunks: List[TextChunk] = []
    lookback = min(config.segmentation.boundary_lookback_chars, size // 2)
    n = len(text)
    start = 0

    while start < n:
        end = min(start + size, n)
        if end < n:
            end = _snap_to_whitespace(text, start, end, lookback)

        piece = text[start:end].strip()
        if piece:
            chunks.append(TextChunk(
                chunk_id=f"chunk_{len(chunks) + 1:03d}_{_short_uuid()}",
                text=piece,
                start=start,
                end=end,
                token_count=_count_tokens(piece),
            ))

        if end >= n:
            break
        # Always advance, even if snapping pulled the end back a lot
        start = max(end - overlap, start + 1)

    logger.info(
        "Created %d chunks (size=%d, overlap=%d, ~%d tokens total)",
        len(chunks), size, overlap, sum(c.token_count for c in chunks),
    )
    return chunks


def _snap_to_whitespace(text: str, start: int, end: int, lookback: int) -> int:
    floor = max(start + 1, end - lookback)
    for i in range(end, floor - 1, -1):
        if text[i - 1].isspace():
            return i
    return end


def _short_uuid() -> str:
    return uuid.uuid4().hex[:8]
