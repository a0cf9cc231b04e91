"""
storage.py — Object store, datastore and quota adapters.

The pipeline only talks to these through small protocols so the same
orchestrator runs against local files in the CLI, in-memory dicts in the
tests, and whatever the deployment plugs in behind the HTTP API.

Write semantics:
  - tender progress fields are last-write-wins
  - responses are upserted on (tender_id, question_index); regenerating a
    tender replaces its rows instead of appending duplicates, and resets
    is_approved to False
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from tender_drafting.config import config
from tender_drafting.errors import PersistenceError
from tender_drafting.schemas import Tender, TenderResponse, _utcnow

logger = logging.getLogger(__name__)


# ── Object store ──────────────────────────────────────────────────────────

class ObjectStore(Protocol):
    def download(self, path: str) -> bytes: ...

    def upload(self, path: str, data: bytes) -> str: ...


class LocalObjectStore:
    """Files under STORAGE_ROOT. Paths are relative to the root."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or config.storage.storage_root).resolve()

    def _resolve(self, path: str) -> Path:
        candidate = (self.root / path).resolve()
        if self.root != candidate and self.root not in candidate.parents:
            raise ValueError(f"Path escapes storage root: {path}")
        return candidate

    def download(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.is_file():
            raise FileNotFoundError(f"Object not found: {path}")
        return target.read_bytes()

    def upload(self, path: str, data: bytes) -> str:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return path


class InMemoryObjectStore:
    def __init__(self, objects: Optional[Dict[str, bytes]] = None):
        self._objects: Dict[str, bytes] = dict(objects or {})

    def download(self, path: str) -> bytes:
        try:
            return self._objects[path]
        except KeyError:
            raise FileNotFoundError(f"Object not found: {path}") from None

    def upload(self, path: str, data: bytes) -> str:
        self._objects[path] = data
        return path


# ── Datastore ─────────────────────────────────────────────────────────────

class TenderStore(Protocol):
    def get_tender(self, tender_id: str) -> Optional[Tender]: ...

    def save_tender(self, tender: Tender) -> None: ...

    def update_tender(self, tender_id: str, **fields: Any) -> Tender: ...

    def get_company_profile(self, company_id: str) -> Optional[Dict[str, Any]]: ...

    def save_company_profile(self, company_id: str, record: Dict[str, Any]) -> None: ...

    def upsert_responses(self, responses: Iterable[TenderResponse]) -> int: ...

    def list_responses(self, tender_id: str) -> List[TenderResponse]: ...


class InMemoryTenderStore:
    def __init__(self):
        self._tenders: Dict[str, Tender] = {}
        self._companies: Dict[str, Dict[str, Any]] = {}
        self._responses: Dict[Tuple[str, int], TenderResponse] = {}
        self._lock = threading.Lock()

    def get_tender(self, tender_id: str) -> Optional[Tender]:
        with self._lock:
            return self._tenders.get(tender_id)

    def save_tender(self, tender: Tender) -> None:
        with self._lock:
            self._tenders[tender.id] = tender
        self._persist()

    def update_tender(self, tender_id: str, **fields: Any) -> Tender:
        with self._lock:
            current = self._tenders.get(tender_id)
            if current is None:
                raise PersistenceError(f"Tender not found: {tender_id}")
            fields["updated_at"] = _utcnow()
            # model_validate so enum strings and nested dicts are coerced
            updated = Tender.model_validate({**current.model_dump(), **fields})
            self._tenders[tender_id] = updated
        self._persist()
        return updated

    def get_company_profile(self, company_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._companies.get(company_id)
            return dict(record) if record is not None else None

    def save_company_profile(self, company_id: str, record: Dict[str, Any]) -> None:
        with self._lock:
            self._companies[company_id] = {**record, "id": company_id}
        self._persist()

    def upsert_responses(self, responses: Iterable[TenderResponse]) -> int:
        count = 0
        now = _utcnow()
        with self._lock:
            for response in responses:
                existing = self._responses.get(response.key)
                update: Dict[str, Any] = {"is_approved": False, "updated_at": now}
                if existing is not None:
                    update["created_at"] = existing.created_at
                self._responses[response.key] = response.model_copy(update=update)
                count += 1
        self._persist()
        return count

    def list_responses(self, tender_id: str) -> List[TenderResponse]:
        with self._lock:
            rows = [r for (tid, _), r in self._responses.items() if tid == tender_id]
        return sorted(rows, key=lambda r: r.question_index)

    def _persist(self) -> None:
        """Hook for durable subclasses."""


class JsonFileTenderStore(InMemoryTenderStore):
    """
    InMemoryTenderStore that mirrors its state into one JSON file after
    every write. Good enough for a single-process deployment; the write
    goes through a temp file and os.replace so a crash never leaves half a
    file behind.
    """

    def __init__(self, path: Optional[str] = None):
        super().__init__()
        self.path = Path(path or config.storage.datastore_path)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"Cannot read datastore {self.path}: {exc}") from exc

        for raw in data.get("tenders", {}).values():
            tender = Tender.model_validate(raw)
            self._tenders[tender.id] = tender
        self._companies.update(data.get("companies", {}))
        for raw in data.get("responses", []):
            response = TenderResponse.model_validate(raw)
            self._responses[response.key] = response
        logger.info(
            "Loaded datastore %s: %d tenders, %d companies, %d responses",
            self.path, len(self._tenders), len(self._companies), len(self._responses),
        )

    def _persist(self) -> None:
        with self._lock:
            snapshot = {
                "tenders": {k: t.model_dump(mode="json") for k, t in self._tenders.items()},
                "companies": dict(self._companies),
                "responses": [r.model_dump(mode="json") for r in self._responses.values()],
            }
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                tmp = self.path.with_suffix(self.path.suffix + ".tmp")
                tmp.write_text(json.dumps(snapshot, indent=2), encoding="utf-8")
                os.replace(tmp, self.path)
            except OSError as exc:
                raise PersistenceError(f"Cannot write datastore {self.path}: {exc}") from exc


# ── Quota ─────────────────────────────────────────────────────────────────

class QuotaChecker(Protocol):
    def has_quota(self, company_id: str) -> bool: ...


class UnlimitedQuota:
    def has_quota(self, company_id: str) -> bool:
        return True
