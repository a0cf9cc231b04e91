"""
llm.py — Completion service clients.

Two backends behind one small interface:
  - OpenAICompletionClient: hosted chat completions in JSON mode. This is
    what production uses.
  - LlamaCppCompletionClient: a local GGUF model through llama-cpp-python,
    for air-gapped deployments and for working on prompts without paying
    per token.

Both return parsed JSON or raise CompletionError. Non-2xx, timeouts,
connection resets and malformed JSON are all the same thing to callers:
a failed attempt that the retry policy decides what to do with. No retry
happens in here.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from tender_drafting.config import LLMConfig, config
from tender_drafting.errors import CompletionError

logger = logging.getLogger(__name__)


class CompletionClient(Protocol):
    model_name: str

    def complete_json(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Any: ...


class OpenAICompletionClient:
    """Chat completions with response_format=json_object."""

    def __init__(self, settings: Optional[LLMConfig] = None, client: Any = None):
        self.settings = settings or config.llm
        self.model_name = self.settings.model
        if client is None:
            from openai import OpenAI
            client = OpenAI(api_key=self.settings.api_key, max_retries=0)
        self._client = client

    def complete_json(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Any:
        from openai import OpenAIError

        try:
            response = self._client.chat.completions.create(
                model=self.model_name,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                response_format={"type": "json_object"},
                temperature=self.settings.temperature if temperature is None else temperature,
                max_tokens=max_tokens or self.settings.max_tokens,
                timeout=self.settings.timeout_seconds,
            )
        except OpenAIError as exc:
            raise CompletionError(f"Completion request failed: {exc}") from exc

        if not response.choices:
            raise CompletionError("Completion response had no choices")
        content = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        if usage is not None:
            logger.debug(
                "%s usage: %s prompt / %s completion tokens",
                self.model_name, usage.prompt_tokens, usage.completion_tokens,
            )
        return _require_json(content)


class LlamaCppCompletionClient:
    """
    Local model via llama-cpp-python. The model is loaded on first use and
    cached on the instance; loading a 4GB GGUF at import time made every
    unit test pay for it.
    """

    def __init__(self, settings: Optional[LLMConfig] = None):
        self.settings = settings or config.llm
        self.model_name = Path(self.settings.model_path).stem
        self._llm = None

    def _get_llm(self):
        if self._llm is not None:
            return self._llm
        try:
            from llama_cpp import Llama
        except ImportError as exc:
            raise CompletionError(
                "llama-cpp-python is not installed. Install the 'local' extra."
            ) from exc

        logger.info("Loading local model from: %s", self.settings.model_path)
        try:
            self._llm = Llama(
                model_path=self.settings.model_path,
                n_ctx=self.settings.n_ctx,
                n_threads=self.settings.n_threads or None,
                verbose=False,
            )
        except Exception as exc:
            raise CompletionError(f"Failed to load local model: {exc}") from exc
        logger.info("Local model loaded.")
        return self._llm

    def complete_json(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Any:
        llm = self._get_llm()
        try:
            response = llm.create_chat_completion(
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                response_format={"type": "json_object"},
                temperature=self.settings.temperature if temperature is None else temperature,
                max_tokens=max_tokens or self.settings.max_tokens,
            )
            content = response["choices"][0]["message"]["content"] or ""
        except Exception as exc:
            raise CompletionError(f"Local generation failed: {exc}") from exc
        return _require_json(content)


def get_completion_client(settings: Optional[LLMConfig] = None) -> Optional[CompletionClient]:
    """
    The configured completion client, or None when no credential/model is
    available. None means "run heuristics-only"; it is not an error.
    """
    settings = settings or config.llm
    provider = settings.provider.strip().lower()

    if provider == "openai":
        if not settings.api_key:
            logger.warning("OPENAI_API_KEY not set; AI classification and generation disabled")
            return None
        return OpenAICompletionClient(settings)

    if provider in ("llama_cpp", "llama-cpp", "local"):
        if not Path(settings.model_path).exists():
            logger.warning(
                "Local model not found at %s; AI classification and generation disabled",
                settings.model_path,
            )
            return None
        return LlamaCppCompletionClient(settings)

    if provider in ("", "none", "off"):
        return None

    raise ValueError(f"Unknown LLM provider: {settings.provider}")


def _require_json(text: str) -> Any:
    parsed = _parse_json_output(text)
    if parsed is None:
        raise CompletionError(f"Completion was not valid JSON. First 200 chars: {text[:200]!r}")
    return parsed


def _parse_json_output(text: str) -> Optional[Any]:
    """
    Lenient JSON parser for model output.

    JSON mode makes this mostly a formality for the hosted backend, but the
    local models still wrap output in ```json fences or add a sentence
    before the object. Strategies, strictest first:
      1. direct parse
      2. strip markdown fences
      3. first {...} or [...] span in the text
    Returns None when nothing parses.
    """
    if not text or not text.strip():
        return None

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    cleaned = re.sub(r"```(?:json)?\s*", "", text).strip().rstrip("`")
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    candidates: List[str] = []
    for pattern in (r"\{[\s\S]*\}", r"\[[\s\S]*\]"):
        match = re.search(pattern, cleaned)
        if match:
            candidates.append(match.group())
    # Prefer whichever span starts first in the text
    candidates.sort(key=cleaned.find)
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue

    return None


def describe_client(client: Optional[CompletionClient]) -> Dict[str, str]:
    """Small dict for logs and envelopes."""
    if client is None:
        return {"provider": "none", "model": "none"}
    return {"provider": type(client).__name__, "model": getattr(client, "model_name", "unknown")}
