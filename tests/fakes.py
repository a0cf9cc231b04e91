"""
fakes.py — Offline stand-ins for the completion and embedding services.

Tests never touch the network. FakeCompletionClient routes on the system
prompt: classification calls and generation calls get separate handlers,
each of which may return a payload or an Exception instance to raise.
"""

from __future__ import annotations

import re
import sys
import zlib
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

import numpy as np

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from tender_drafting.classification import CLASSIFY_SYSTEM_PROMPT
from tender_drafting.errors import CompletionError

_QUESTION_LINE_RE = re.compile(r"^(\d+)\. \[(open|closed)\] (.+)$")

Handler = Callable[[str], Any]


def prompt_questions(user_prompt: str) -> List[str]:
    """The question texts listed in a generation prompt, in order."""
    section = user_prompt.split("QUESTIONS:\n", 1)[-1].split("\n\nOUTPUT FORMAT", 1)[0]
    questions = []
    for line in section.splitlines():
        match = _QUESTION_LINE_RE.match(line.strip())
        if match:
            questions.append(match.group(3))
    return questions


def echo_answers(user_prompt: str) -> Dict[str, Any]:
    return {
        "answers": [
            {"question": q, "answer": f"Answer to: {q}"} for q in prompt_questions(user_prompt)
        ]
    }


def empty_classification(user_prompt: str) -> Dict[str, Any]:
    return {"questions": [], "context": [], "instructions": []}


class FakeCompletionClient:
    model_name = "fake-model"

    def __init__(
        self,
        classify: Optional[Handler] = None,
        generate: Optional[Handler] = None,
    ):
        self.classify = classify or empty_classification
        self.generate = generate or echo_answers
        self.calls: List[Dict[str, Any]] = []

    def complete_json(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Any:
        kind = "classify" if system_prompt == CLASSIFY_SYSTEM_PROMPT else "generate"
        self.calls.append({"kind": kind, "prompt": user_prompt, "max_tokens": max_tokens})
        handler = self.classify if kind == "classify" else self.generate
        result = handler(user_prompt)
        if isinstance(result, Exception):
            raise result
        return result

    def count(self, kind: str) -> int:
        return sum(1 for c in self.calls if c["kind"] == kind)


def always_fail(user_prompt: str) -> Exception:
    return CompletionError("service unavailable (503)")


class FakeEmbedder:
    """Hashed bag-of-words vectors: identical text -> similarity 1.0."""

    def __init__(self, dim: int = 64, fail_on: Optional[Set[str]] = None):
        self.dim = dim
        self.fail_on = fail_on or set()
        self.calls: List[str] = []

    def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if text in self.fail_on:
            raise CompletionError(f"embedding failed for {text[:20]!r}")
        vector = np.zeros(self.dim, dtype="float32")
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            vector[zlib.crc32(word.encode()) % self.dim] += 1.0
        norm = np.linalg.norm(vector)
        if norm:
            vector /= norm
        return vector.tolist()
