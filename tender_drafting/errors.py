"""
errors.py — Exception taxonomy for the drafting pipeline.

Only FatalPipelineError (and ExtractionError, which the orchestrator
promotes to fatal) ends a run. Everything else is caught at the stage
that raised it and turned into a degraded result plus an entry in the
envelope's partial_errors list.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union


class TenderPipelineError(Exception):
    """Base class. `stage` names the pipeline stage that raised."""

    stage: str = "unknown"

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class ExtractionError(TenderPipelineError):
    """Unsupported, corrupt or empty document."""
    stage = "extracting"


class ClassificationError(TenderPipelineError):
    """A single chunk could not be classified. Recoverable: skip the chunk."""
    stage = "segmenting"


class EnrichmentError(TenderPipelineError):
    """Profile or retrieval failure. Recoverable: fall back to N/A profile."""
    stage = "enriching"


class GenerationError(TenderPipelineError):
    """A batch could not be answered. Recoverable: fallback answers."""
    stage = "generating"


class PersistenceError(TenderPipelineError):
    """A datastore write failed. Logged; remaining batches continue."""
    stage = "generating"


class CompletionError(TenderPipelineError):
    """
    The completion or embedding service failed: transport error, timeout,
    non-2xx, or a body that isn't the JSON we asked for. Callers treat all
    of these the same way.
    """


class FatalPipelineError(TenderPipelineError):
    """Tender not found, no text source, cancelled. Aborts the run."""


class PipelineCancelled(FatalPipelineError):
    """Cancelled explicitly or the overall deadline passed."""


class QuotaExceededError(FatalPipelineError):
    """The company has no generation quota left."""
    stage = "validating"


def make_error_payload(
    stage: str, err: Union[Exception, str], extra: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Partial-error entry for the response envelope."""
    payload: Dict[str, Any] = {
        "stage": stage,
        "error": str(err),
        "error_type": type(err).__name__ if isinstance(err, Exception) else "str",
        "timestamp": datetime.now(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z"),
    }
    if extra:
        payload.update(extra)
    return payload
